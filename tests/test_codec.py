import pytest

from smtptopubsub import RawEmail, decode_envelope, encode_envelope


def test_round_trip():
    data = encode_envelope("a@b.com", ["x@y.com", "z@y.com"], bytes([0x41, 0x42]))
    assert decode_envelope(data) == RawEmail("a@b.com", ["x@y.com", "z@y.com"], b"AB")


def test_round_trip_empty_recipients_and_body():
    data = encode_envelope("a@b.com", [], b"")
    assert decode_envelope(data) == RawEmail("a@b.com", [], b"")


def test_round_trip_large_body():
    body = bytes(range(256)) * (4 * 1024 * 16)  # 16 MB
    data = encode_envelope("a@b.com", ["x@y.com"], body)
    decoded = decode_envelope(data)
    assert decoded.content == body
    assert decoded.recipients == ["x@y.com"]


def test_round_trip_non_ascii_sender():
    data = encode_envelope("ærlig@jpro.no", ["utlysninger@mail.cr3.me"], b"\x00\xff")
    assert decode_envelope(data).sender == "ærlig@jpro.no"


def test_wire_format_is_plain_avro_binary():
    # zigzag lengths, array block of one item, then the end-of-array marker
    data = encode_envelope("a", ["x"], b"AB")
    assert data == b"\x02a" + b"\x02\x02x\x00" + b"\x04AB"


def test_empty_fields_wire_format():
    assert encode_envelope("a", [], b"") == b"\x02a\x00\x00"


def test_encoding_is_deterministic():
    args = ("dev@jpro.no", ["utlysninger@mail.cr3.me"], b"hello")
    assert encode_envelope(*args) == encode_envelope(*args)


def test_missing_body_fails():
    with pytest.raises(ValueError):
        encode_envelope("dev@jpro.no", ["utlysninger@mail.cr3.me"], None)
