# feedgate/feed_tokens.py
#
# -----------------------------------------------------------------------------
# Architectural notes
# -----------------------------------------------------------------------------
# This module defines the *feed token layer*: a capability that lets whoever
# holds it fetch exactly one feed URL, without the account's bearer credential.
#
# Responsibilities:
#   - Create, sign, encode, decode and verify feed tokens
#   - Enforce expiry and URL binding
#   - Remain stateless: verification needs only the process-wide secret
#
# What this module is NOT:
#   - Not an account lookup (accounts.py)
#   - Not a policy engine (allow-lists live in urls.py / authorization.py)
#
# Token lifecycle:
#
#     create()  -> FeedToken (signed, immutable)
#     encode()  -> transport string
#     decode()  -> FeedToken or None
#     validate_and_decode() -> FeedToken or None (signature, URL, expiry checked)
#
# Signature:
#     HMAC-SHA256(secret, canonical_json({username, url, expires_at})) as hex
#   where canonical JSON has sorted keys and no whitespace.
#
# Wire format:
#     base64url( deflate( {"p":{"u":username,"l":url,"e":expires_at},"s":signature} ) )
#   emitted without "=" padding; padded input is accepted too. Tokens travel in
#   query strings, hence the short keys and the compression.
#
# Failure model:
#   Every malformed, tampered, expired or misbound token yields None. The reason
#   is only visible in the security log, never in the return value.
#
# Known limitation: there is no key id. Rotating the secret invalidates every
# token issued under the old one.
# -----------------------------------------------------------------------------

import base64
import binascii
import json
import logging
import time
import zlib
from dataclasses import dataclass
from typing import Any, Dict, Optional

from cryptography.hazmat.primitives import hashes, hmac

from .accounts import valid_username
from .urls import is_valid_url

logger = logging.getLogger(__name__)

DEFAULT_EXPIRY = 315_360_000  # 10 years in seconds

# upper bounds on untrusted input before and after inflation
MAX_ENCODED_LENGTH = 8192
MAX_INFLATED_LENGTH = 16384


def now_epoch() -> int:
    # Keep time source centralized for easier testing/mocking.
    return int(time.time())


# -----------------------------------------------------------------------------
# Base64 helpers
# -----------------------------------------------------------------------------
def b64url_encode(b: bytes) -> str:
    """URL-safe Base64 WITHOUT padding."""
    return base64.urlsafe_b64encode(b).decode("ascii").rstrip("=")


def b64url_decode(s: str) -> bytes:
    """
    Decode URL-safe Base64, padded or not.

    Characters outside the alphabet are rejected rather than skipped.
    """
    s = s.strip()
    s += "=" * (-len(s) % 4)
    return base64.b64decode(s.encode("ascii"), altchars=b"-_", validate=True)


# -----------------------------------------------------------------------------
# Signing
# -----------------------------------------------------------------------------
def canonical_payload(username: str, url: str, expires_at: int) -> bytes:
    """
    Bytes the signature is computed over.

    Sorted keys, no whitespace: the same triple always yields the same bytes.
    """
    return json.dumps(
        {"username": username, "url": url, "expires_at": expires_at},
        separators=(",", ":"),
        sort_keys=True,
    ).encode("utf-8")


def sign(secret: str, username: str, url: str, expires_at: int) -> str:
    h = hmac.HMAC(secret.encode("utf-8"), hashes.SHA256())
    h.update(canonical_payload(username, url, expires_at))
    return h.finalize().hex()


def constant_time_equals(first: Optional[str], second: Optional[str]) -> bool:
    """
    Compare two strings without an early exit on the first differing byte.

    Length is not secret, so a length mismatch returns immediately. Otherwise
    every byte pair is XORed and ORed into an accumulator.
    """
    if not isinstance(first, str) or not isinstance(second, str):
        return False

    a = first.encode("utf-8")
    b = second.encode("utf-8")
    if len(a) != len(b):
        return False

    acc = 0
    for x, y in zip(a, b):
        acc |= x ^ y
    return acc == 0


def _valid_secret(secret) -> bool:
    return isinstance(secret, str) and secret != ""


# -----------------------------------------------------------------------------
# Token value
# -----------------------------------------------------------------------------
@dataclass(frozen=True)
class FeedToken:
    username: str
    url: str
    expires_at: int
    signature: str

    @classmethod
    def create(
        cls,
        username: str,
        url: str,
        secret: str,
        expires_in: int = DEFAULT_EXPIRY,
        *,
        now: Optional[int] = None,
    ) -> Optional["FeedToken"]:
        """
        Mint a signed token, or None if any input is unusable.

        `username` must match the account username grammar, `url` must be a
        valid absolute http(s) URL, `secret` must be non-empty. The URL is
        stored exactly as given; binding is byte-for-byte.
        """
        if not valid_username(username) or not is_valid_url(url) or not _valid_secret(secret):
            return None

        expires_at = (now_epoch() if now is None else now) + int(expires_in)
        return cls(
            username=username,
            url=url,
            expires_at=expires_at,
            signature=sign(secret, username, url, expires_at),
        )

    @classmethod
    def decode(cls, encoded_token) -> Optional["FeedToken"]:
        """Parse a transport string. Structure only; nothing is verified here."""
        data = _parse_token_data(encoded_token)
        if data is None:
            return None

        payload = data["p"]
        return cls(
            username=payload["u"],
            url=payload["l"],
            expires_at=payload["e"],
            signature=data["s"],
        )

    def to_wire(self) -> Dict[str, Any]:
        return {"p": {"u": self.username, "l": self.url, "e": self.expires_at}, "s": self.signature}

    def encode(self) -> str:
        raw = json.dumps(self.to_wire(), separators=(",", ":")).encode("utf-8")
        return b64url_encode(zlib.compress(raw, 9))

    def expired(self, now: Optional[int] = None) -> bool:
        # valid up to and including expires_at
        return (now_epoch() if now is None else now) > self.expires_at

    def valid_for_url(self, candidate_url) -> bool:
        return isinstance(candidate_url, str) and self.url == candidate_url

    def valid_signature(self, secret) -> bool:
        if not _valid_secret(secret):
            return False
        return constant_time_equals(self.signature, sign(secret, self.username, self.url, self.expires_at))


def verify_signature(token: FeedToken, secret) -> bool:
    return token.valid_signature(secret)


# -----------------------------------------------------------------------------
# Decoding
# -----------------------------------------------------------------------------
def _inflate(raw: bytes) -> Optional[bytes]:
    d = zlib.decompressobj()
    out = d.decompress(raw, MAX_INFLATED_LENGTH)
    # oversize, truncated, or trailing bytes after the stream
    if d.unconsumed_tail or not d.eof or d.unused_data:
        return None
    return out


def _parse_token_data(encoded_token) -> Optional[Dict[str, Any]]:
    if not isinstance(encoded_token, str) or not encoded_token:
        return None
    if len(encoded_token) > MAX_ENCODED_LENGTH:
        return None

    try:
        raw = b64url_decode(encoded_token)
        inflated = _inflate(raw)
        if inflated is None:
            return None
        data = json.loads(inflated.decode("utf-8"))
    except (binascii.Error, UnicodeError, zlib.error, ValueError, RecursionError):
        return None

    return data if _valid_token_data(data) else None


def _valid_token_data(data) -> bool:
    if not isinstance(data, dict):
        return False

    payload = data.get("p")
    signature = data.get("s")
    if not isinstance(payload, dict) or not isinstance(signature, str) or not signature:
        return False

    username = payload.get("u")
    url = payload.get("l")
    expires_at = payload.get("e")

    return (
        isinstance(username, str) and username != ""
        and isinstance(url, str) and url != ""
        # bool is an int subclass; reject it explicitly
        and isinstance(expires_at, int) and not isinstance(expires_at, bool)
    )


# -----------------------------------------------------------------------------
# Verification
# -----------------------------------------------------------------------------
def check_token(
    encoded_token,
    expected_url,
    secret,
    *,
    now: Optional[int] = None,
):
    """
    Full check, returning (token or None, reason).

    reason is one of: ok, malformed, bad_signature, url_mismatch, expired.
    Callers outside this module should use validate_and_decode and must not
    surface the reason to the token holder.
    """
    token = FeedToken.decode(encoded_token)
    if token is None:
        return None, "malformed"
    if not token.valid_signature(secret):
        return None, "bad_signature"
    if not token.valid_for_url(expected_url):
        return None, "url_mismatch"
    if token.expired(now):
        return None, "expired"
    return token, "ok"


def validate_and_decode(
    encoded_token,
    expected_url,
    secret,
    *,
    now: Optional[int] = None,
    audit=None,
) -> Optional[FeedToken]:
    """
    Decode and fully verify a token for `expected_url`.

    Checks, in order: structure, signature, exact URL binding, expiry.
    Every call is reported to `audit` (if given) as a token_usage event.
    """
    token, reason = check_token(encoded_token, expected_url, secret, now=now)

    if audit is not None:
        audit.token_usage(encoded_token, expected_url, token is not None, None if token else reason)
    elif token is None:
        logger.debug("Feed token rejected", extra={"reason": reason})

    return token
