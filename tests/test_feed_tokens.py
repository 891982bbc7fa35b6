import base64
import dataclasses
import json
import zlib

import pytest

from feedgate.audit import MemoryAuditLog
from feedgate.feed_tokens import (
    DEFAULT_EXPIRY,
    FeedToken,
    constant_time_equals,
    sign,
    validate_and_decode,
    verify_signature,
)

from .conftest import NOW, SECRET

URL = "https://news.example/a"


def _b64(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def _wire(obj) -> str:
    return _b64(zlib.compress(json.dumps(obj).encode("utf-8")))


@pytest.fixture
def token():
    return FeedToken.create("alice", URL, SECRET, 3600, now=NOW)


def test_create_signs_the_canonical_triple(token):
    assert token.username == "alice"
    assert token.url == URL
    assert token.expires_at == NOW + 3600
    assert token.signature == sign(SECRET, "alice", URL, NOW + 3600)
    assert len(token.signature) == 64


def test_default_expiry_is_ten_years():
    t = FeedToken.create("alice", URL, SECRET, now=NOW)
    assert t.expires_at == NOW + DEFAULT_EXPIRY == NOW + 315_360_000


@pytest.mark.parametrize(
    "username, url, secret",
    [
        ("bad user", URL, SECRET),
        ("", URL, SECRET),
        ("a" * 101, URL, SECRET),
        (None, URL, SECRET),
        ("alice", "ftp://news.example/a", SECRET),
        ("alice", "not a url", SECRET),
        ("alice", " " + URL, SECRET),
        ("alice", URL + "\n", SECRET),
        ("alice", None, SECRET),
        ("alice", URL, ""),
        ("alice", URL, None),
    ],
)
def test_create_rejects_invalid_input(username, url, secret):
    assert FeedToken.create(username, url, secret, now=NOW) is None


def test_encode_decode_round_trip(token):
    encoded = token.encode()
    assert FeedToken.decode(encoded) == token


def test_encoding_is_url_safe_and_unpadded(token):
    encoded = token.encode()
    assert "=" not in encoded
    assert all(c.isalnum() or c in "-_" for c in encoded)


def test_padded_encoding_also_decodes(token):
    encoded = token.encode()
    padded = encoded + "=" * (-len(encoded) % 4)
    assert FeedToken.decode(padded) == token


def test_wire_shape_uses_short_keys(token):
    raw = base64.urlsafe_b64decode(token.encode() + "===")
    data = json.loads(zlib.decompress(raw))
    assert data == {"p": {"u": "alice", "l": URL, "e": NOW + 3600}, "s": token.signature}


@pytest.mark.parametrize(
    "encoded",
    [
        None,
        "",
        12345,
        "not-base64!!",
        "a",
        _b64(b"definitely not zlib"),
        _b64(zlib.compress(b"not json")),
        _b64(zlib.compress(b"\xff\xfe")),
        _wire(["p", "s"]),
        _wire({"p": {}, "s": "abc"}),
        _wire({"p": {"u": "alice", "l": URL, "e": NOW}}),
        _wire({"p": {"u": "alice", "l": URL, "e": NOW}, "s": ""}),
        _wire({"p": {"u": "alice", "l": URL, "e": str(NOW)}, "s": "abc"}),
        _wire({"p": {"u": "alice", "l": URL, "e": True}, "s": "abc"}),
        _wire({"p": {"u": "", "l": URL, "e": NOW}, "s": "abc"}),
        _wire({"p": {"u": "alice", "e": NOW}, "s": "abc"}),
        _wire({"payload": {"username": "alice"}, "signature": "abc"}),
        # legacy uncompressed shape
        _b64(json.dumps({"p": {"u": "alice", "l": URL, "e": NOW}, "s": "abc"}).encode()),
    ],
)
def test_decode_rejects_malformed_input(encoded):
    assert FeedToken.decode(encoded) is None
    assert validate_and_decode(encoded, URL, SECRET, now=NOW) is None


def test_decode_rejects_trailing_bytes_after_stream(token):
    raw = base64.urlsafe_b64decode(token.encode() + "===")
    assert FeedToken.decode(_b64(raw + b"junk")) is None


def test_decode_rejects_oversized_inflation():
    bomb = {"p": {"u": "alice", "l": URL + "?" + "a" * 100_000, "e": NOW}, "s": "abc"}
    assert FeedToken.decode(_wire(bomb)) is None


def test_valid_token_verifies(token):
    assert validate_and_decode(token.encode(), URL, SECRET, now=NOW) == token
    assert verify_signature(token, SECRET)


def test_wrong_or_missing_secret_fails(token):
    encoded = token.encode()
    assert validate_and_decode(encoded, URL, SECRET + "x", now=NOW) is None
    assert validate_and_decode(encoded, URL, "", now=NOW) is None
    assert validate_and_decode(encoded, URL, None, now=NOW) is None
    assert not verify_signature(token, None)


@pytest.mark.parametrize(
    "change",
    [
        {"username": "mallory"},
        {"username": "alicf"},
        {"url": "https://evil.example/a"},
        {"url": URL + "b"},
        {"expires_at": NOW + 3601},
        {"expires_at": NOW + 10 * DEFAULT_EXPIRY},
        {"signature": "0" * 64},
        {"signature": "fake-signature"},
    ],
)
def test_tampered_tokens_are_rejected(token, change):
    tampered = dataclasses.replace(token, **change)
    expected_url = tampered.url
    assert validate_and_decode(tampered.encode(), expected_url, SECRET, now=NOW) is None


def test_tampering_raw_payload_is_rejected(token):
    raw = base64.urlsafe_b64decode(token.encode() + "===")
    data = json.loads(zlib.decompress(raw))
    data["p"]["e"] += 1
    assert validate_and_decode(_wire(data), URL, SECRET, now=NOW) is None


@pytest.mark.parametrize(
    "other_url",
    [
        "https://malicious.example/a",
        "https://news.example/a/",
        "https://news.example/a?query=1",
        "http://news.example/a",
        "https://NEWS.example/a",
        "https://sub.news.example/a",
        "https://news.example/A",
    ],
)
def test_token_is_bound_to_its_exact_url(token, other_url):
    assert validate_and_decode(token.encode(), other_url, SECRET, now=NOW) is None


def test_expiry_boundary():
    t = FeedToken.create("alice", URL, SECRET, 100, now=NOW)
    encoded = t.encode()
    expires_at = NOW + 100

    assert validate_and_decode(encoded, URL, SECRET, now=expires_at - 1) == t
    assert validate_and_decode(encoded, URL, SECRET, now=expires_at) == t
    assert validate_and_decode(encoded, URL, SECRET, now=expires_at + 1) is None


def test_negative_lifetime_is_already_expired():
    t = FeedToken.create("alice", URL, SECRET, -3600, now=NOW)
    assert t.expired(now=NOW)
    assert validate_and_decode(t.encode(), URL, SECRET, now=NOW) is None


def test_constant_time_equals_truth_table():
    sig = "a" * 64
    assert constant_time_equals(sig, "a" * 64)
    assert not constant_time_equals(sig, "b" + "a" * 63)
    assert not constant_time_equals(sig, "a" * 63 + "b")
    assert not constant_time_equals(sig, "a" * 32 + "b" + "a" * 31)
    assert not constant_time_equals(sig, "a" * 63)
    assert not constant_time_equals(sig, "a" * 65)
    assert not constant_time_equals(sig, None)
    assert not constant_time_equals(None, None)
    assert constant_time_equals("", "")


def test_usage_is_audited_without_secrets(token):
    audit = MemoryAuditLog()
    encoded = token.encode()

    validate_and_decode(encoded, URL, SECRET, now=NOW, audit=audit)
    validate_and_decode(encoded, "https://other.example/", SECRET, now=NOW, audit=audit)
    validate_and_decode(encoded, URL, SECRET, now=NOW + 3601, audit=audit)

    assert audit.kinds() == ["token_usage"] * 3
    ok, mismatch, expired = audit.events
    assert ok["success"] is True and "reason" not in ok
    assert mismatch["success"] is False and mismatch["reason"] == "url_mismatch"
    assert expired["reason"] == "expired"
    assert len(ok["token_hash"]) == 8

    dumped = json.dumps(audit.events)
    assert encoded not in dumped
    assert SECRET not in dumped
    assert token.signature not in dumped
