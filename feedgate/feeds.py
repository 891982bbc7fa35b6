"""
feedgate/feeds.py

Seam to the feed-building engine, plus stable feed creation.

The engine that fetches a page and turns it into RSS is an external
collaborator. This service only decides *whether* it may be called and with
which URL; anything implementing FeedBuilder can be plugged in at app creation.
"""

import logging
from typing import Optional, Protocol

from .accounts import Account
from .authorization import AuthorizationFacade
from .feed_identity import derive_feed_id, public_feed_url

logger = logging.getLogger(__name__)


class FeedBuildError(Exception):
    """The feed builder could not produce a feed for the URL."""


class FeedBuilder(Protocol):
    def build(self, url: str, strategy: str) -> str:
        """Return the feed document (RSS XML) or raise FeedBuildError."""
        ...


def create_stable_feed(
    facade: AuthorizationFacade,
    account: Account,
    url: str,
    *,
    origin: str,
    name: Optional[str] = None,
    strategy: str,
) -> Optional[dict]:
    """
    Everything a client needs to share a feed for `url`.

    Returns None if the account may not issue a token for the URL.
    """
    feed_token = facade.issue_feed_token(account, url)
    if feed_token is None:
        return None

    feed_id = derive_feed_id(account.username, url, account.credential)
    logger.info("Stable feed created", extra={"feed_id": feed_id, "username": account.username})

    return {
        "id": feed_id,
        "name": name or f"Auto-generated feed for {url}",
        "url": url,
        "strategy": strategy,
        "feed_token": feed_token,
        "public_url": public_feed_url(origin, feed_id, feed_token, url),
    }
