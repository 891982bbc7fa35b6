"""
feedgate/feed_identity.py

Public feed identifiers and shareable feed URLs.

The feed id is a display/reference value only. It is derived, never stored,
and grants nothing: the feed token in the same URL is the authorization proof.
"""

import hashlib
from urllib.parse import quote, urlencode

FEED_ID_LENGTH = 16


def derive_feed_id(username: str, url: str, credential: str) -> str:
    """
    First 16 hex chars of SHA-256("username:url:credential").

    Deterministic, so creating the same feed twice yields the same id.
    """
    content = f"{username}:{url}:{credential}"
    return hashlib.sha256(content.encode("utf-8")).hexdigest()[:FEED_ID_LENGTH]


def public_feed_url(origin: str, feed_id: str, feed_token: str, url: str, strategy: str = None) -> str:
    """
    {origin}/feeds/{feed_id}?token=...&url=...[&strategy=...]

    All values are percent-encoded; `origin` is expected without a trailing slash.
    """
    params = {"token": feed_token, "url": url}
    if strategy:
        params["strategy"] = strategy
    return f"{origin.rstrip('/')}/feeds/{quote(feed_id, safe='')}?{urlencode(params)}"
