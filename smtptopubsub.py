# smtptopubsub v1, based on arniemailbufferserver v2
# copyright 2021 Andrew Stuart andrew.stuart@supercoders.com.au
# MIT licensed


import asyncio
import enum
import io
import logging
import os
import re
import signal
import sys
from configparser import ConfigParser
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

import fastavro
from aiosmtpd.controller import Controller
from aiosmtpd.smtp import SMTP, Envelope, Session
from google.cloud import pubsub_v1

# --- Structured Logging Setup ---
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - [%(levelname)s] - %(name)s - %(message)s'
)
logger = logging.getLogger(__name__)

# --- Constants ---
MAX_MESSAGE_SIZE_BYTES = 0  # no SIZE limit; bodies are bounded by memory only
DEFAULT_PUBLISH_TIMEOUT = 60
CONFIG_ENV_VAR = 'SMTP2PUBSUB_CONFIG'

# Matches a single-character local part only; kept as deployed.
DEFAULT_SENDER_DENY_PATTERN = r'[a-z0-9._\-]@jpro.no'
DEFAULT_RECIPIENT_ALLOW_PATTERN = r'utlysninger(-test)?@mail.cr3.me'

# --- Configuration with Validation ---
def load_config(config_path: Optional[Path] = None) -> ConfigParser:
    config = ConfigParser()
    config['server'] = {
        'host': '0.0.0.0',
        'port': '25',
        'max_message_size': str(MAX_MESSAGE_SIZE_BYTES),
    }
    config['pubsub'] = {
        'project_id': 'my-page-jpro-test',
        'topic_id': 'email',
        'endpoint': 'europe-west1-pubsub.googleapis.com:443',
        'ordering_key': 'email',
        'publish_timeout': str(DEFAULT_PUBLISH_TIMEOUT),
    }
    config['filter'] = {
        'sender_deny_pattern': DEFAULT_SENDER_DENY_PATTERN,
        'recipient_allow_pattern': DEFAULT_RECIPIENT_ALLOW_PATTERN,
    }
    if config_path is None:
        config_path = Path(os.getenv(CONFIG_ENV_VAR, 'config.ini'))
    if config_path.exists():
        config.read(config_path)
    else:
        with open(config_path, 'w') as f:
            config.write(f)
        logger.info(f"Created default {config_path}")
    return config


@dataclass
class RelayConfig:
    host: str = '0.0.0.0'
    port: int = 25
    max_message_size: int = MAX_MESSAGE_SIZE_BYTES
    project_id: str = 'my-page-jpro-test'
    topic_id: str = 'email'
    endpoint: str = 'europe-west1-pubsub.googleapis.com:443'
    ordering_key: str = 'email'
    publish_timeout: float = DEFAULT_PUBLISH_TIMEOUT
    sender_deny_pattern: str = DEFAULT_SENDER_DENY_PATTERN
    recipient_allow_pattern: str = DEFAULT_RECIPIENT_ALLOW_PATTERN

    @classmethod
    def from_parser(cls, config: ConfigParser) -> 'RelayConfig':
        return cls(
            host=config.get('server', 'host'),
            port=config.getint('server', 'port'),
            max_message_size=config.getint('server', 'max_message_size'),
            project_id=config.get('pubsub', 'project_id'),
            topic_id=config.get('pubsub', 'topic_id'),
            endpoint=config.get('pubsub', 'endpoint'),
            ordering_key=config.get('pubsub', 'ordering_key'),
            publish_timeout=config.getfloat('pubsub', 'publish_timeout'),
            sender_deny_pattern=config.get('filter', 'sender_deny_pattern'),
            recipient_allow_pattern=config.get('filter', 'recipient_allow_pattern'),
        )

# --- Avro Envelope Codec ---
RAW_EMAIL_SCHEMA = fastavro.parse_schema({
    'type': 'record',
    'name': 'RawEmail',
    'namespace': 'no.jpro.mypage',
    'fields': [
        {'name': 'from', 'type': 'string'},
        {'name': 'to', 'type': {'type': 'array', 'items': 'string'}},
        {'name': 'content', 'type': 'bytes'},
    ],
})


@dataclass
class RawEmail:
    sender: str
    recipients: List[str]
    content: bytes


def encode_envelope(sender: str, recipients: List[str], body: Optional[bytes]) -> bytes:
    """Encode a transaction as a schemaless Avro datum (no header, no schema)."""
    if body is None:
        raise ValueError("Envelope body is missing")
    buffer = io.BytesIO()
    fastavro.schemaless_writer(buffer, RAW_EMAIL_SCHEMA, {
        'from': sender,
        'to': list(recipients),
        'content': bytes(body),
    })
    return buffer.getvalue()


def decode_envelope(data: bytes) -> RawEmail:
    """Read back an envelope written by encode_envelope."""
    record = fastavro.schemaless_reader(io.BytesIO(data), RAW_EMAIL_SCHEMA)
    return RawEmail(sender=record['from'], recipients=list(record['to']), content=record['content'])

# --- Admission Filter ---
class AdmissionOutcome(enum.Enum):
    ADMITTED = 'admitted'
    REJECTED_MISSING_SENDER = 'missing sender'
    REJECTED_SENDER_FILTERED = 'sender filtered'
    REJECTED_NO_MATCHING_RECIPIENT = 'no matching recipient'


class AdmissionFilter:
    def __init__(self, sender_deny_pattern: str = DEFAULT_SENDER_DENY_PATTERN,
                 recipient_allow_pattern: str = DEFAULT_RECIPIENT_ALLOW_PATTERN):
        self.sender_deny = re.compile(sender_deny_pattern)
        self.recipient_allow = re.compile(recipient_allow_pattern)

    def evaluate(self, sender: Optional[str], recipients: List[str]) -> AdmissionOutcome:
        if sender is None:
            logger.info("Ignoring message without FROM")
            return AdmissionOutcome.REJECTED_MISSING_SENDER
        if self.sender_deny.fullmatch(sender):
            logger.info(f"Ignoring message with MAIL FROM matching {self.sender_deny.pattern}")
            return AdmissionOutcome.REJECTED_SENDER_FILTERED
        if not any(self.recipient_allow.fullmatch(rcpt) for rcpt in recipients):
            logger.info(f"Ignoring message with no RCPT TO matching {self.recipient_allow.pattern}")
            return AdmissionOutcome.REJECTED_NO_MATCHING_RECIPIENT
        return AdmissionOutcome.ADMITTED

    def is_admitted(self, sender: Optional[str], recipients: List[str]) -> bool:
        return self.evaluate(sender, recipients) is AdmissionOutcome.ADMITTED

# --- Ordered Publisher ---
class OrderedPublisher:
    """Publishes envelopes to one Pub/Sub topic under a single ordering key.

    The underlying client is thread-safe and shared by every connection.
    Honours PUBSUB_EMULATOR_HOST for local runs.
    """

    def __init__(self, config: RelayConfig, client=None):
        if client is None:
            client = pubsub_v1.PublisherClient(
                publisher_options=pubsub_v1.types.PublisherOptions(enable_message_ordering=True),
                client_options={'api_endpoint': config.endpoint},
            )
        self.client = client
        self.topic_path = client.topic_path(config.project_id, config.topic_id)
        self.ordering_key = config.ordering_key
        self.timeout = config.publish_timeout

    async def publish(self, data: bytes) -> str:
        # Issued on the loop thread so publish order follows done() order.
        try:
            future = self.client.publish(self.topic_path, data, ordering_key=self.ordering_key)
            return await asyncio.to_thread(future.result, self.timeout)
        except Exception:
            if self.ordering_key:
                # A failed publish pauses the key until resumed.
                self.client.resume_publish(self.topic_path, self.ordering_key)
            raise

    def close(self):
        logger.info(f"Stopping publisher for {self.topic_path}")
        self.client.stop()

# --- Transaction Accumulator ---
class TransactionState(enum.Enum):
    IDLE = 'idle'
    HAS_SENDER = 'has_sender'
    HAS_RECIPIENTS = 'has_recipients'


@dataclass
class MailTransaction:
    sender: Optional[str] = None
    recipients: List[str] = field(default_factory=list)
    body: Optional[bytes] = None

    @property
    def state(self) -> TransactionState:
        if self.sender is None:
            return TransactionState.IDLE
        if self.recipients:
            return TransactionState.HAS_RECIPIENTS
        return TransactionState.HAS_SENDER


class TransactionAccumulator:
    def __init__(self, publisher: OrderedPublisher, admission_filter: AdmissionFilter):
        self.publisher = publisher
        self.admission_filter = admission_filter
        self.transaction = MailTransaction()

    def mail_from(self, sender: str):
        self.transaction.sender = sender
        logger.info("From added")

    def recipient(self, address: str):
        self.transaction.recipients.append(address)
        logger.info("Recipient added")

    def data(self, content: bytes):
        self.transaction.body = content
        logger.info(f"Body received. Length: {len(content)}")

    def reset(self):
        self.transaction = MailTransaction()

    async def done(self) -> Optional[str]:
        """Commit the current transaction. Returns the Pub/Sub message id, or None if dropped."""
        transaction = self.transaction
        self.reset()

        if not self.admission_filter.is_admitted(transaction.sender, transaction.recipients):
            return None

        envelope = encode_envelope(transaction.sender, transaction.recipients, transaction.body)
        logger.info("Ready to publish message")
        message_id = await self.publisher.publish(envelope)
        logger.info(f"MAIL FROM: {transaction.sender}")
        for rcpt in transaction.recipients:
            logger.info(f"RCPT TO: {rcpt}")
        if logger.isEnabledFor(logging.DEBUG):
            logger.debug("---BODY---")
            logger.debug(transaction.body.decode('ascii', errors='replace'))
            logger.debug("---END-BODY---")
        logger.info(f"Done. Message ID: {message_id}")
        return message_id


class AccumulatorFactory:
    def __init__(self, publisher: OrderedPublisher, admission_filter: AdmissionFilter):
        self.publisher = publisher
        self.admission_filter = admission_filter

    def create(self, helo: Optional[str]) -> TransactionAccumulator:
        logger.info(f"Helo: {helo}")
        return TransactionAccumulator(self.publisher, self.admission_filter)

# --- Session Lifecycle ---
class SessionHandler:
    """Accepts every peer; override accept() to restrict by address."""

    def accept(self, peer) -> bool:
        logger.info(f"Accepting session from: {peer}")
        return True

    def on_session_end(self, peer):
        logger.info(f"Ending session from: {peer}")


class RelaySMTP(SMTP):
    """One instance per connection, owning that connection's accumulator."""

    def __init__(self, handler, session_handler: SessionHandler, **kwargs):
        super().__init__(handler, **kwargs)
        self.session_handler = session_handler
        self.accumulator: Optional[TransactionAccumulator] = None
        self._refused = False

    def connection_made(self, transport):
        # STARTTLS calls connection_made again on the same protocol.
        if self.transport is None:
            peer = transport.get_extra_info('peername')
            if not self.session_handler.accept(peer):
                logger.info(f"Refusing session from: {peer}")
                self._refused = True
                transport.write(b'554 5.7.1 Connection refused\r\n')
                transport.close()
                return
        super().connection_made(transport)

    def connection_lost(self, error):
        if self._refused:
            return
        self.session_handler.on_session_end(self.session.peer)
        super().connection_lost(error)


class RelayController(Controller):
    def __init__(self, handler, session_handler: SessionHandler, **kwargs):
        self.session_handler = session_handler
        super().__init__(handler, **kwargs)

    def factory(self):
        return RelaySMTP(self.handler, self.session_handler, **self.SMTP_kwargs)

# --- SMTP Handler ---
class RelayHandler:
    def __init__(self, accumulator_factory: AccumulatorFactory):
        self.accumulator_factory = accumulator_factory

    def _accumulator(self, server: RelaySMTP, session: Session) -> TransactionAccumulator:
        if server.accumulator is None:
            server.accumulator = self.accumulator_factory.create(session.host_name)
        return server.accumulator

    async def handle_MAIL(self, server, session: Session, envelope: Envelope, address, mail_options):
        self._accumulator(server, session).mail_from(address)
        envelope.mail_from = address
        envelope.mail_options.extend(mail_options)
        return '250 OK'

    async def handle_RCPT(self, server, session: Session, envelope: Envelope, address, rcpt_options):
        self._accumulator(server, session).recipient(address)
        envelope.rcpt_tos.append(address)
        return '250 OK'

    async def handle_DATA(self, server, session: Session, envelope: Envelope):
        accumulator = self._accumulator(server, session)
        accumulator.data(envelope.content)
        try:
            await accumulator.done()
        except Exception as e:
            logger.error(f"Error relaying message from {envelope.mail_from}: {e}")
            return '451 4.3.0 Temporary failure'
        # Filtered messages are dropped silently; the client still sees 250.
        return '250 OK: Message accepted for delivery'

    def _reset(self, server: RelaySMTP):
        if server.accumulator is not None:
            server.accumulator.reset()

    # HELO, EHLO and RSET all abort the open transaction (RFC 5321 4.1.4).
    async def handle_HELO(self, server, session: Session, envelope: Envelope, hostname):
        self._reset(server)
        session.host_name = hostname
        return f'250 {server.hostname}'

    async def handle_EHLO(self, server, session: Session, envelope: Envelope, hostname, responses):
        self._reset(server)
        session.host_name = hostname
        return responses

    async def handle_RSET(self, server, session: Session, envelope: Envelope):
        self._reset(server)
        return '250 OK'

# --- Main Application ---
async def main():
    try:
        config = RelayConfig.from_parser(load_config())

        shutdown_event = asyncio.Event()

        def signal_handler():
            if not shutdown_event.is_set():
                logger.info("Shutdown signal received")
                shutdown_event.set()

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, signal_handler)

        publisher = OrderedPublisher(config)
        controller = None
        try:
            admission_filter = AdmissionFilter(config.sender_deny_pattern, config.recipient_allow_pattern)
            handler = RelayHandler(AccumulatorFactory(publisher, admission_filter))
            controller = RelayController(
                handler, SessionHandler(),
                hostname=config.host,
                port=config.port,
                data_size_limit=config.max_message_size,
            )
            controller.start()
            logger.info(f"SMTP server started on {config.host}:{config.port}, publishing to {publisher.topic_path}")

            await shutdown_event.wait()
        finally:
            logger.info("Shutting down...")
            if controller is not None:
                try:
                    controller.stop()
                except Exception as e:
                    logger.error(f"Error stopping controller: {e}")

            try:
                await asyncio.to_thread(publisher.close)
            except Exception as e:
                logger.error(f"Error stopping publisher: {e}")

            for sig in (signal.SIGINT, signal.SIGTERM):
                loop.remove_signal_handler(sig)

            logger.info("Shutdown complete")
    except Exception as e:
        logger.critical(f"Fatal error in main: {e}", exc_info=True)
        sys.exit(1)


def run():
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        logger.info("Interrupted by user")


if __name__ == "__main__":
    run()
