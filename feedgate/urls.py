"""
feedgate/urls.py

URL normalisation and allow-list matching.

An account's allow-list is an ordered list of patterns:
- If the list is empty -> OPEN MODE (any valid URL is allowed)
- Otherwise a URL is allowed when at least one pattern matches it

Pattern kinds:
- "*"                         matches every valid URL
- "https://github.com/*"      glob; "*" matches any run of characters, "/" included
- "https://example.com"       exact; compared against the normalised URL, and
                              against the normalised form of the pattern

Case policy: all pattern comparisons are case-insensitive, wildcard and exact
alike. Scheme and host are lowercased by normalisation anyway; path and query
are folded only for the comparison, never in the returned URL.

Globbing is a plain two-pointer matcher. Patterns come from configuration and
are never compiled to regular expressions, so "[", "?", "(" and friends are
literal characters and no pattern can trigger catastrophic backtracking.
"""

from typing import Iterable, NamedTuple, Optional
from urllib.parse import urlsplit, urlunsplit

MAX_URL_LENGTH = 2048

ALLOWED_SCHEMES = ("http", "https")
DEFAULT_PORTS = {"http": 80, "https": 443}


class AllowListDecision(NamedTuple):
    allowed: bool
    pattern: Optional[str] = None  # diagnostics only


def normalize(raw_url) -> Optional[str]:
    """
    Canonical form of an absolute http(s) URL, or None.

    Canonicalisation:
      - lowercase scheme and host
      - drop the default port, keep any other
      - empty path becomes "/"
      - query kept verbatim, fragment dropped

    Rejected (None): non-strings, empty strings, anything over MAX_URL_LENGTH
    bytes, whitespace or control characters anywhere (surrounding whitespace
    included), non-http(s) schemes, missing host, userinfo, unparseable ports.
    """
    if not isinstance(raw_url, str) or not raw_url:
        return None
    if len(raw_url.encode("utf-8", "surrogatepass")) > MAX_URL_LENGTH:
        return None

    # whitespace anywhere, including around the URL, makes it invalid
    url = raw_url
    if any(c.isspace() or ord(c) < 0x20 or ord(c) == 0x7F for c in url):
        return None

    try:
        parts = urlsplit(url)
        port = parts.port
    except ValueError:
        return None

    scheme = parts.scheme.lower()
    if scheme not in ALLOWED_SCHEMES:
        return None

    host = (parts.hostname or "").lower()
    if not host:
        return None

    # credentials inside a feed URL are never legitimate here
    if parts.username is not None or parts.password is not None:
        return None

    if ":" in host:
        host = f"[{host}]"

    netloc = host
    if port is not None and port != DEFAULT_PORTS[scheme]:
        netloc = f"{host}:{port}"

    path = parts.path or "/"
    return urlunsplit((scheme, netloc, path, parts.query, ""))


def is_valid_url(raw_url) -> bool:
    return normalize(raw_url) is not None


def _glob_match(pattern: str, text: str) -> bool:
    # "*" is the only metacharacter. On mismatch, retry from the most recent
    # star with one more character consumed; worst case O(len(pattern) * len(text)).
    p = t = 0
    star = -1
    resume = 0

    while t < len(text):
        if p < len(pattern) and pattern[p] == "*":
            star = p
            resume = t
            p += 1
        elif p < len(pattern) and pattern[p] == text[t]:
            p += 1
            t += 1
        elif star != -1:
            p = star + 1
            resume += 1
            t = resume
        else:
            return False

    while p < len(pattern) and pattern[p] == "*":
        p += 1

    return p == len(pattern)


def _matches_normalized(normalized_url: str, pattern) -> bool:
    if not isinstance(pattern, str) or not pattern:
        return False

    folded_url = normalized_url.casefold()

    if "*" in pattern:
        if pattern == "*":
            return True
        return _glob_match(pattern.strip().casefold(), folded_url)

    if pattern.casefold() == folded_url:
        return True

    normalized_pattern = normalize(pattern)
    return normalized_pattern is not None and normalized_pattern.casefold() == folded_url


def matches(url, pattern) -> bool:
    """True when `url` is valid and matches a single allow-list pattern."""
    normalized_url = normalize(url)
    if normalized_url is None:
        return False
    return _matches_normalized(normalized_url, pattern)


def check_allowed(url, allowed_patterns: Optional[Iterable[str]]) -> AllowListDecision:
    """
    Evaluate `url` against an allow-list and report the first matching pattern.

    An invalid URL is never allowed, even under an empty (open) allow-list.
    """
    normalized_url = normalize(url)
    if normalized_url is None:
        return AllowListDecision(False)

    patterns = list(allowed_patterns or ())
    if not patterns:
        return AllowListDecision(True)

    for pattern in patterns:
        if _matches_normalized(normalized_url, pattern):
            return AllowListDecision(True, pattern)

    return AllowListDecision(False)


def is_allowed(url, allowed_patterns: Optional[Iterable[str]]) -> bool:
    return check_allowed(url, allowed_patterns).allowed


def matches_any(url, patterns: Optional[Iterable[str]]) -> bool:
    """
    Like is_allowed, but an empty pattern list matches nothing.

    Used where a missing list means "no grant" rather than "no restriction".
    """
    normalized_url = normalize(url)
    if normalized_url is None:
        return False
    return any(_matches_normalized(normalized_url, p) for p in (patterns or ()))
