from types import SimpleNamespace

import pytest
from starlette.datastructures import Headers

from feedgate.accounts import Account, AccountDirectory
from feedgate.audit import MemoryAuditLog
from feedgate.authorization import AuthorizationFacade

SECRET = "test-secret-key-with-enough-length-0123456789"
NOW = 1_700_000_000


def make_request(authorization=None, *, ip="203.0.113.7", user_agent="pytest-agent"):
    """Minimal Starlette-style request: case-insensitive headers + client."""
    headers = {"User-Agent": user_agent}
    if authorization is not None:
        headers["Authorization"] = authorization
    return SimpleNamespace(headers=Headers(headers), client=SimpleNamespace(host=ip))


@pytest.fixture
def alice():
    return Account(username="alice", credential="tok-123", allowed_urls=("https://news.example/*",))


@pytest.fixture
def admin():
    return Account(username="admin", credential="admin-token-xyz789", allowed_urls=())


@pytest.fixture
def directory(alice, admin):
    return AccountDirectory([alice, admin])


@pytest.fixture
def audit():
    return MemoryAuditLog()


@pytest.fixture
def facade(directory, audit):
    return AuthorizationFacade(directory, SECRET, audit, clock=lambda: NOW)
