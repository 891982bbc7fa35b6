"""
feedgate/accounts.py

Static account directory.

Accounts are loaded once from a JSON file at startup:

   {
     "accounts": [
       {
         "username": "alice",
         "token": "<opaque bearer credential>",
         "allowed_urls": ["https://news.example/*"]
       }
     ]
   }

- A missing file means "no accounts configured" (every bearer request fails).
- An absent, null or empty (`[]`) `allowed_urls` means the account may use
  any URL. A blank pattern is a load error, never "no restriction".
- Anything else that does not fit the shape above is a startup error.

The directory itself is an immutable value. Its two lookup indexes are built
lazily on first use behind a lock, so concurrent first access from several
request threads builds them exactly once.
"""

import json
import logging
import re
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Tuple

logger = logging.getLogger(__name__)

USERNAME_RE = re.compile(r"\A[A-Za-z0-9_-]{1,100}\Z")


def valid_username(username) -> bool:
    return isinstance(username, str) and USERNAME_RE.match(username) is not None


@dataclass(frozen=True)
class Account:
    username: str
    # never include in repr/logs
    credential: str = field(repr=False)
    allowed_urls: Tuple[str, ...] = ()

    @property
    def unrestricted(self) -> bool:
        return len(self.allowed_urls) == 0


def _parse_account(raw, index: int) -> Account:
    if not isinstance(raw, dict):
        raise ValueError(f"accounts[{index}] must be an object")

    username = raw.get("username")
    if not valid_username(username):
        raise ValueError(f"accounts[{index}].username is missing or invalid")

    credential = raw.get("token")
    if not isinstance(credential, str) or not credential.strip():
        raise ValueError(f"accounts[{index}] ({username}) has no token")

    # only an absent/null value or [] means "no restriction"
    allowed = raw.get("allowed_urls")
    if allowed is None:
        allowed = []
    elif isinstance(allowed, str):
        allowed = [allowed]
    if not isinstance(allowed, list) or not all(isinstance(p, str) for p in allowed):
        raise ValueError(f"accounts[{index}] ({username}).allowed_urls must be a list of strings")
    if any(not p.strip() for p in allowed):
        raise ValueError(f"accounts[{index}] ({username}).allowed_urls contains a blank pattern")

    patterns = tuple(p.strip() for p in allowed)
    return Account(username=username, credential=credential.strip(), allowed_urls=patterns)


def parse_accounts(data) -> List[Account]:
    """
    Build Account values from already-decoded configuration.

    Accepts {"accounts": [...]} or None. Usernames and credentials must be unique.
    """
    if data is None:
        return []
    if not isinstance(data, dict):
        raise ValueError("accounts configuration must be a JSON object")

    raw_accounts = data.get("accounts") or []
    if not isinstance(raw_accounts, list):
        raise ValueError("'accounts' must be a list")

    accounts = [_parse_account(raw, i) for i, raw in enumerate(raw_accounts)]

    seen_users: set[str] = set()
    seen_credentials: set[str] = set()
    for acc in accounts:
        if acc.username in seen_users:
            raise ValueError(f"duplicate username: {acc.username}")
        if acc.credential in seen_credentials:
            raise ValueError(f"duplicate token for user: {acc.username}")
        seen_users.add(acc.username)
        seen_credentials.add(acc.credential)

    return accounts


def load_accounts(path: Path) -> List[Account]:
    """Read and parse the accounts file; [] if it does not exist."""
    path = Path(path)
    if not path.exists():
        logger.warning("Accounts file not found, no accounts configured", extra={"path": str(path)})
        return []

    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as e:
        raise ValueError(f"{path}: invalid JSON: {e}") from e

    accounts = parse_accounts(data)
    logger.info("Loaded accounts", extra={"path": str(path), "count": len(accounts)})
    return accounts


class AccountDirectory:
    """Credential and username lookup over a fixed list of accounts."""

    def __init__(self, accounts: Iterable[Account] = ()):
        self._accounts: Tuple[Account, ...] = tuple(accounts)
        self._lock = threading.Lock()
        self._by_credential: Optional[Dict[str, Account]] = None
        self._by_username: Optional[Dict[str, Account]] = None

    @classmethod
    def from_file(cls, path: Path) -> "AccountDirectory":
        return cls(load_accounts(path))

    @property
    def accounts(self) -> Tuple[Account, ...]:
        return self._accounts

    def __len__(self) -> int:
        return len(self._accounts)

    def _indexes(self) -> Tuple[Dict[str, Account], Dict[str, Account]]:
        # double-checked: the unlocked read is safe because both dicts are
        # published together, after they are fully built
        by_credential, by_username = self._by_credential, self._by_username
        if by_credential is not None and by_username is not None:
            return by_credential, by_username

        with self._lock:
            if self._by_credential is None or self._by_username is None:
                by_username = {a.username: a for a in self._accounts}
                by_credential = {a.credential: a for a in self._accounts}
                self._by_username = by_username
                self._by_credential = by_credential
            return self._by_credential, self._by_username

    def find_by_credential(self, credential: Optional[str]) -> Optional[Account]:
        if not credential:
            return None
        by_credential, _ = self._indexes()
        return by_credential.get(credential)

    def find_by_username(self, username: Optional[str]) -> Optional[Account]:
        if not username:
            return None
        _, by_username = self._indexes()
        return by_username.get(username)
