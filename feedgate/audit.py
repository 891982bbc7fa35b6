"""
feedgate/audit.py

Security event log.

Every authentication and feed-token decision is reported here. Events go to
the `feedgate.security` logger and, when an audit directory is configured, are
also appended to a tamper-evident JSONL file where each line is hash-chained:

  H_0 = "0"*64
  H_n = SHA3-256( bytes.fromhex(H_{n-1}) || canonical_json(event_without_hash_fields) )

Each line stores:
  - prev_hash: hex string (64 chars)
  - hash:      hex string (64 chars)

Properties:
- Any modification, deletion, or reordering of log lines breaks the chain.
- Chain state is persisted in security_audit.state
- Uses file locking (flock) to keep chain consistent under concurrency.

Secrets never reach this module: credentials are not passed in at all and feed
tokens are reduced to the first 8 hex chars of their SHA-256 (token_hash).
"""

from __future__ import annotations

import hashlib
import json
import logging
import os
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional

# Linux file lock (works in Docker/Linux)
import fcntl

logger = logging.getLogger("feedgate.security")

GENESIS_HASH = "0" * 64  # 32 bytes hex

LOG_FILENAME = "security_audit.jsonl"
STATE_FILENAME = "security_audit.state"
LOCK_FILENAME = "security_audit.lock"

MAX_USER_AGENT = 200


# -----------------------------------------------------------------------------
# Canonical JSON / hashing
# -----------------------------------------------------------------------------
def _canonical_json_bytes(obj: Dict[str, Any]) -> bytes:
    """
    Produce deterministic JSON bytes for hashing and logging:
    - sorted keys
    - no whitespace
    - UTF-8
    """
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def _sha3_256_hex(data: bytes) -> str:
    return hashlib.sha3_256(data).hexdigest()


def token_hash(feed_token) -> str:
    """Short, non-reversible correlation id for a feed token."""
    return hashlib.sha256(str(feed_token or "").encode("utf-8")).hexdigest()[:8]


def build_common(
    *,
    request_ip: Optional[str] = None,
    user_agent: Optional[str] = None,
    username: Optional[str] = None,
    url: Optional[str] = None,
) -> Dict[str, Any]:
    """Common event fields. Keep this "boring" and stable."""
    out: Dict[str, Any] = {"ts": int(time.time())}

    if username:
        out["username"] = username
    if url:
        out["url"] = url
    if request_ip:
        out["ip"] = request_ip
    if user_agent:
        out["user_agent"] = user_agent[:MAX_USER_AGENT]

    return out


# -----------------------------------------------------------------------------
# Hash-chained JSONL file
# -----------------------------------------------------------------------------
class AuditChain:
    """Append-only hash-chained JSONL file under `directory`."""

    def __init__(self, directory: Path):
        self.directory = Path(directory)
        self.log_path = self.directory / LOG_FILENAME
        self.state_path = self.directory / STATE_FILENAME
        self.lock_path = self.directory / LOCK_FILENAME

    def _read_last_hash_unlocked(self) -> str:
        """
        Read last hash from the state file. Caller must hold lock.
        Returns GENESIS_HASH if state missing/empty/garbled.
        """
        if not self.state_path.exists():
            return GENESIS_HASH
        s = self.state_path.read_text(encoding="utf-8").strip()
        if len(s) != 64:
            return GENESIS_HASH
        try:
            bytes.fromhex(s)
        except ValueError:
            return GENESIS_HASH
        return s.lower()

    def append(self, event: Dict[str, Any]) -> Dict[str, Any]:
        """
        Append one event with hash chaining and return the stored record.

        Locks a dedicated lock file so it works even if log/state don't exist yet.
        """
        self.directory.mkdir(parents=True, exist_ok=True)

        with open(self.lock_path, "a+", encoding="utf-8") as lockf:
            fcntl.flock(lockf.fileno(), fcntl.LOCK_EX)
            try:
                prev_hash = self._read_last_hash_unlocked()

                # Never allow callers to inject their own chain fields.
                e = dict(event)
                e.pop("prev_hash", None)
                e.pop("hash", None)

                next_hash = _sha3_256_hex(bytes.fromhex(prev_hash) + _canonical_json_bytes(e))

                stored = dict(e)
                stored["prev_hash"] = prev_hash
                stored["hash"] = next_hash

                with open(self.log_path, "ab") as f:
                    f.write(_canonical_json_bytes(stored) + b"\n")
                    f.flush()
                    os.fsync(f.fileno())

                self.state_path.write_text(next_hash + "\n", encoding="utf-8")
                return stored
            finally:
                fcntl.flock(lockf.fileno(), fcntl.LOCK_UN)


@dataclass
class ChainReport:
    ok: bool
    lines: int
    last_hash: Optional[str]
    message: str


def check_log_chain(path: Path, state_path: Optional[Path] = None) -> ChainReport:
    """
    Walk an audit log and re-derive every hash.

    A missing log is an empty, valid chain. When `state_path` is given, its
    value must equal the last hash in the log.
    """
    path = Path(path)
    lines = 0
    prev = GENESIS_HASH
    last_hash: Optional[str] = None

    if path.exists():
        with open(path, "rb") as f:
            for lineno, raw_line in enumerate(f, start=1):
                raw_line = raw_line.strip()
                if not raw_line:
                    continue
                lines += 1
                try:
                    obj = json.loads(raw_line.decode("utf-8"))
                except (UnicodeDecodeError, json.JSONDecodeError) as e:
                    return ChainReport(False, lines, last_hash, f"{path}:{lineno}: invalid JSON: {e}")
                if not isinstance(obj, dict):
                    return ChainReport(False, lines, last_hash, f"{path}:{lineno}: JSON root must be an object")

                if obj.get("prev_hash") != prev:
                    return ChainReport(
                        False, lines, last_hash,
                        f"{path}:{lineno}: prev_hash mismatch: expected {prev} got {obj.get('prev_hash')}",
                    )

                line_hash = obj.get("hash")
                obj2 = dict(obj)
                obj2.pop("prev_hash", None)
                obj2.pop("hash", None)

                expect = _sha3_256_hex(bytes.fromhex(prev) + _canonical_json_bytes(obj2))
                if expect != line_hash:
                    return ChainReport(
                        False, lines, last_hash,
                        f"{path}:{lineno}: hash mismatch: expected {expect} got {line_hash}",
                    )

                prev = last_hash = line_hash

    if state_path is not None:
        state_path = Path(state_path)
        if not state_path.exists():
            return ChainReport(False, lines, last_hash, f"State file not found: {state_path}")
        state_val = state_path.read_text(encoding="utf-8").strip().lower()
        if state_val != (last_hash or GENESIS_HASH):
            return ChainReport(False, lines, last_hash, f"State mismatch: state={state_val} log_last={last_hash}")

    return ChainReport(True, lines, last_hash, "OK")


def verify_log_chain(path: Path) -> bool:
    """True if the audit log's hash chain is intact (or the log is absent)."""
    return check_log_chain(path).ok


# -----------------------------------------------------------------------------
# Event sink
# -----------------------------------------------------------------------------
class SecurityAuditLog:
    """
    Structured security events.

    One method per event kind. Recording is best effort: a failing audit
    write is logged and never turns into an authorization failure.
    """

    def __init__(self, directory: Optional[Path] = None):
        self.chain = AuditChain(directory) if directory else None

    def record(self, kind: str, fields: Dict[str, Any], level: int = logging.WARNING) -> None:
        event = {"security_event": kind, **fields}
        logger.log(level, kind, extra={"event": event})

        if self.chain is None:
            return
        try:
            self.chain.append(event)
        except OSError as e:
            logger.error("Security audit write failed", extra={"event_kind": kind, "error": str(e)})

    def auth_success(self, username: str, request_ip: Optional[str] = None) -> None:
        self.record(
            "auth_success",
            build_common(username=username, request_ip=request_ip),
            level=logging.INFO,
        )

    def auth_failure(self, request_ip: Optional[str], user_agent: Optional[str], reason: str) -> None:
        self.record(
            "auth_failure",
            {**build_common(request_ip=request_ip, user_agent=user_agent), "reason": reason},
        )

    def token_usage(self, feed_token, url, success: bool, reason: Optional[str] = None) -> None:
        fields = {
            **build_common(url=url if isinstance(url, str) else None),
            "success": success,
            "token_hash": token_hash(feed_token),
        }
        if reason:
            fields["reason"] = reason
        self.record("token_usage", fields, level=logging.INFO if success else logging.WARNING)

    def token_issued(self, username: str, url: str, expires_at: int) -> None:
        self.record(
            "token_issued",
            {**build_common(username=username, url=url), "expires_at": expires_at},
            level=logging.INFO,
        )

    def access_denied(self, username: Optional[str], url, reason: str, request_ip: Optional[str] = None) -> None:
        self.record(
            "access_denied",
            {
                **build_common(username=username, url=url if isinstance(url, str) else None, request_ip=request_ip),
                "reason": reason,
            },
        )

    def config_validation_failure(self, component: str, details: str) -> None:
        self.record(
            "config_validation_failure",
            {**build_common(), "component": component, "details": details},
            level=logging.ERROR,
        )


class MemoryAuditLog(SecurityAuditLog):
    """Keeps events in memory instead of on disk; still logs them."""

    def __init__(self):
        super().__init__(directory=None)
        self._lock = threading.Lock()
        self.events: List[Dict[str, Any]] = []

    def record(self, kind: str, fields: Dict[str, Any], level: int = logging.WARNING) -> None:
        super().record(kind, fields, level)
        with self._lock:
            self.events.append({"security_event": kind, **fields})

    def kinds(self) -> List[str]:
        with self._lock:
            return [e["security_event"] for e in self.events]
