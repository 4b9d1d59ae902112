# this is a minimal test program which sends an email to a running relay.  It is provided for testing purposes.
import sys
from smtplib import SMTP

port = int(sys.argv[1]) if len(sys.argv) > 1 else 25

s = SMTP('localhost', port)
s.helo('test')
s.sendmail('dev@jpro.no', ['utlysninger-test@mail.cr3.me'], """\
From: dev@jpro.no
To: utlysninger-test@mail.cr3.me
Subject: A test posting from the relay

hello
""")
s.quit()
