#!/usr/bin/env python3
"""
feedgate security audit viewer (Textual)

Loads security_audit.jsonl on startup and, unless --no-follow is given,
keeps reading new lines as the service appends them.

    python -m feedgate.audit_tui audit/security_audit.jsonl

Layout
- Table (left): one row per event
- Details (right): every field of the selected event
- Stats bar (top): counters per outcome + hash-link status

Keys
  q        Quit
  p        Pause/Resume follow updates
  f, /     Focus filter input (substring over user, url, ip, reason)
  Esc      Back to the table
  Space    Pin details for the highlighted row
  u        Unpin (follow the latest row again)
  h        Toggle hash/prev_hash in details
"""

from __future__ import annotations

import argparse
import json
import os
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Deque, Dict, List, Optional

from textual import events
from textual.app import App, ComposeResult
from textual.containers import Container, Horizontal, Vertical
from textual.reactive import reactive
from textual.widgets import DataTable, Footer, Input, Static

COLUMNS = ("Time", "Event", "Outcome", "User", "URL", "IP", "Chain")

# counter name per (event kind, success) outcome
OUTCOMES = ("auth_ok", "auth_fail", "issued", "token_ok", "token_rejected", "denied", "config")

FILTER_FIELDS = ("security_event", "username", "url", "ip", "reason", "token_hash", "user_agent", "component")

# events kept in memory for filtering; counters and the link check see all of them
MAX_HISTORY = 10_000


# -----------------------------
# Event helpers (no UI)
# -----------------------------

def safe_get(d: Dict[str, Any], key: str, default: str = "") -> str:
    v = d.get(key, default)
    if v is None:
        return default
    return str(v)


def short(s: str, n: int) -> str:
    if len(s) <= n:
        return s
    return s[: max(0, n - 1)] + "…"


def ts_to_hhmmss(ts) -> str:
    if not ts:
        return ""
    try:
        return datetime.fromtimestamp(int(ts)).strftime("%H:%M:%S")
    except (TypeError, ValueError, OverflowError, OSError):
        return ""


def classify_event(e: Dict[str, Any]) -> str:
    """Counter bucket for an event; see OUTCOMES."""
    kind = safe_get(e, "security_event")
    if kind == "auth_success":
        return "auth_ok"
    if kind == "auth_failure":
        return "auth_fail"
    if kind == "token_issued":
        return "issued"
    if kind == "token_usage":
        return "token_ok" if e.get("success") is True else "token_rejected"
    if kind == "access_denied":
        return "denied"
    if kind == "config_validation_failure":
        return "config"
    return "other"


def outcome_label(e: Dict[str, Any]) -> str:
    if "reason" in e:
        return safe_get(e, "reason")
    if e.get("success") is True or safe_get(e, "security_event") in ("auth_success", "token_issued"):
        return "ok"
    return safe_get(e, "component")


def matches_filter(e: Dict[str, Any], filt: str) -> bool:
    if not filt:
        return True
    blob = " ".join(safe_get(e, k) for k in FILTER_FIELDS).lower()
    return filt.lower() in blob


@dataclass
class LinkCheck:
    """Running prev_hash -> hash link check over a stream of events."""
    last_hash: Optional[str] = None
    breaks: int = 0

    @property
    def ok(self) -> bool:
        return self.breaks == 0

    def feed(self, e: Dict[str, Any]) -> bool:
        h = safe_get(e, "hash")
        prev = safe_get(e, "prev_hash")
        ok = not (self.last_hash and prev and prev != self.last_hash)
        if not ok:
            self.breaks += 1
        if h:
            self.last_hash = h
        return ok


@dataclass
class Counters:
    values: Dict[str, int] = field(default_factory=lambda: {k: 0 for k in OUTCOMES + ("other",)})
    total: int = 0

    def add(self, e: Dict[str, Any]) -> None:
        self.total += 1
        self.values[classify_event(e)] += 1


class EventHistory:
    """Bounded window of recent events, plus counters over the whole stream."""

    def __init__(self, maxlen: int = MAX_HISTORY):
        self.events: Deque[Dict[str, Any]] = deque(maxlen=maxlen)
        self.counters = Counters()
        self.links = LinkCheck()

    def ingest(self, e: Dict[str, Any]) -> bool:
        link_ok = self.links.feed(e)
        e.setdefault("_link_ok", link_ok)
        self.events.append(e)
        self.counters.add(e)
        return link_ok


# -----------------------------
# JSONL reader
# -----------------------------

class JsonlReader:
    """Incremental JSONL reader that reopens the file if it is replaced."""

    def __init__(self, path: str):
        self.path = path
        self._fp = None
        self._ino = None

    def open(self) -> None:
        self._fp = open(self.path, "r", encoding="utf-8", errors="replace")
        self._ino = os.fstat(self._fp.fileno()).st_ino

    def close(self) -> None:
        if self._fp:
            try:
                self._fp.close()
            finally:
                self._fp = None
                self._ino = None

    def _reopen_if_rotated(self) -> None:
        try:
            st = os.stat(self.path)
        except FileNotFoundError:
            return
        if self._ino is not None and st.st_ino != self._ino:
            self.close()
            self.open()

    def read_one(self) -> Optional[Dict[str, Any]]:
        """Next JSON object, or None when there is no complete new line."""
        if not self._fp:
            self.open()
        self._reopen_if_rotated()

        line = self._fp.readline()
        if not line:
            return None
        line = line.strip()
        if not line:
            return None

        try:
            obj = json.loads(line)
        except json.JSONDecodeError:
            return {"security_event": "unparseable", "raw": line}
        return obj if isinstance(obj, dict) else {"security_event": "unparseable", "raw": line}

    def read_all(self) -> List[Dict[str, Any]]:
        out = []
        while True:
            e = self.read_one()
            if e is None:
                return out
            out.append(e)


# -----------------------------
# Widgets
# -----------------------------

class StatsBar(Static):
    counters: Optional[Counters] = None
    chain_ok = reactive(True)
    chain_breaks = reactive(0)
    paused = reactive(False)
    filter_text = reactive("")
    hashes_on = reactive(True)
    tick = reactive(0)

    def render(self) -> str:
        c = self.counters or Counters()
        parts = [f"[b]Events[/b]: {c.total}"]
        parts += [f"[b]{k}[/b]: {c.values[k]}" for k in OUTCOMES]

        style = "green" if self.chain_ok else "red"
        parts.append(f"[b]chain[/b]: [{style}]{'OK' if self.chain_ok else 'BROKEN'}[/{style}] ({self.chain_breaks})")
        parts.append(f"[b]hashes[/b]: {'ON' if self.hashes_on else 'OFF'}")
        if self.paused:
            parts.append("[yellow][b]PAUSED[/b][/yellow]")
        if self.filter_text:
            parts.append(f"[b]filter[/b]: “{short(self.filter_text, 40)}”")
        return "  |  ".join(parts)


class DetailsPane(Static):
    HINT = "↑↓ select • Space pin • f / filter • p pause • h hashes • u unpin"

    def show_event(self, e: Optional[Dict[str, Any]], show_hashes: bool = True) -> None:
        if not e:
            self.update(self.HINT)
            return

        bucket = classify_event(e)
        style = "green" if bucket in ("auth_ok", "issued", "token_ok") else "red"
        lines = [
            f"[b]Event[/b]: [bold]{safe_get(e, 'security_event')}[/bold]",
            f"[b]Outcome[/b]: [{style}]{outcome_label(e) or '-'}[/{style}]",
            f"[b]Time[/b]: [cyan]{safe_get(e, 'ts')}[/cyan] {ts_to_hhmmss(e.get('ts'))}",
            "",
        ]
        for key, label in (("username", "User"), ("url", "URL"), ("ip", "IP"), ("user_agent", "User-Agent"),
                           ("token_hash", "Token hash"), ("expires_at", "Expires at")):
            if key in e:
                lines.append(f"[b]{label}[/b]: {e[key]}")

        if show_hashes:
            if "hash" in e:
                lines.append(f"[b]Hash[/b]: [dim]{e['hash']}[/dim]")
            if "prev_hash" in e:
                lines.append(f"[b]Prev Hash[/b]: [dim]{e['prev_hash']}[/dim]")
        elif "hash" in e:
            lines.append("[dim]Hashes hidden (press h)[/dim]")

        known = {"security_event", "reason", "success", "ts", "username", "url", "ip", "user_agent",
                 "token_hash", "expires_at", "hash", "prev_hash"}
        extras = sorted(k for k in e if k not in known)
        if extras:
            lines += ["", "[b]Other[/b]:"] + [f"  {k}: [dim]{e[k]}[/dim]" for k in extras]

        self.update("\n".join(lines))


# -----------------------------
# App
# -----------------------------

class AuditTui(App):
    TITLE = "feedgate security audit"

    CSS = """
    Screen { layout: vertical; }
    #top { height: 3; }
    #stats { padding: 0 1; }
    #filter_row { height: 3; }
    #filter { width: 1fr; }
    #body { height: 1fr; }
    #left { width: 3fr; }
    #right { width: 2fr; }
    DataTable { height: 1fr; }
    #details { height: 1fr; padding: 1; border: round $accent; }
    """

    BINDINGS = [
        ("q", "quit", "Quit"),
        ("p", "toggle_pause", "Pause"),
        ("u", "unpin", "Unpin"),
        ("h", "toggle_hashes", "Hashes"),
        ("f", "focus_filter", "Filter"),
        ("/", "focus_filter", "Filter"),
        ("space", "pin_details", "Pin"),
    ]

    def __init__(self, log_path: str, follow: bool = True, refresh_hz: float = 4.0, max_rows: int = 500,
                 history: int = MAX_HISTORY):
        super().__init__()
        self.reader = JsonlReader(log_path)
        self.follow = follow
        self.refresh_hz = refresh_hz
        self.max_rows = max_rows

        self.paused = False
        self.show_hashes = True
        self._pinned = False

        self.history = EventHistory(max(history, max_rows))
        self._visible: List[Dict[str, Any]] = []

    def compose(self) -> ComposeResult:
        with Container(id="top"):
            yield StatsBar(id="stats")
        with Horizontal(id="filter_row"):
            yield Input(placeholder="substring match (user, url, ip, reason…)", id="filter")
        with Horizontal(id="body"):
            with Vertical(id="left"):
                table = DataTable(id="table")
                table.cursor_type = "row"
                table.add_columns(*COLUMNS)
                yield table
            with Vertical(id="right"):
                yield DetailsPane(DetailsPane.HINT, id="details")
        yield Footer()

    def on_mount(self) -> None:
        self.query_one(StatsBar).counters = self.history.counters
        for e in iter(self.reader.read_one, None):
            self._ingest(e)
        self._rebuild()
        self.query_one(DataTable).focus()

        if self.follow:
            self.set_interval(1.0 / self.refresh_hz, self._tick_follow)

    # --- actions

    def action_toggle_pause(self) -> None:
        self.paused = not self.paused
        self.query_one(StatsBar).paused = self.paused

    def action_focus_filter(self) -> None:
        self.query_one(Input).focus()

    def action_pin_details(self) -> None:
        self._pinned = True
        self._show_current()

    def action_unpin(self) -> None:
        self._pinned = False
        self._select_latest()

    def action_toggle_hashes(self) -> None:
        self.show_hashes = not self.show_hashes
        self.query_one(StatsBar).hashes_on = self.show_hashes
        self._show_current()

    # --- callbacks

    def on_input_submitted(self, event: Input.Submitted) -> None:
        self.query_one(StatsBar).filter_text = event.value.strip()
        self._rebuild()
        self.query_one(DataTable).focus()

    def on_key(self, event: events.Key) -> None:
        if event.key == "escape":
            self.query_one(DataTable).focus()

    def on_data_table_row_highlighted(self, event: DataTable.RowHighlighted) -> None:
        if not self._pinned:
            self._show_current()

    # --- core

    def _ingest(self, e: Dict[str, Any]) -> bool:
        link_ok = self.history.ingest(e)

        stats = self.query_one(StatsBar)
        stats.chain_ok = self.history.links.ok
        stats.chain_breaks = self.history.links.breaks
        stats.tick += 1
        return link_ok

    def _add_row(self, e: Dict[str, Any]) -> None:
        self._visible.append(e)
        self.query_one(DataTable).add_row(
            ts_to_hhmmss(e.get("ts")),
            short(safe_get(e, "security_event"), 26),
            short(outcome_label(e), 18),
            short(safe_get(e, "username"), 16),
            short(safe_get(e, "url"), 40),
            short(safe_get(e, "ip"), 16),
            "OK" if e.get("_link_ok", True) else "BROKE",
        )

    def _rebuild(self) -> None:
        table = self.query_one(DataTable)
        filt = self.query_one(StatsBar).filter_text
        table.clear()
        self._visible = []

        matched = [e for e in self.history.events if matches_filter(e, filt)]
        for e in matched[-self.max_rows:]:
            self._add_row(e)
        self._select_latest()

    def _select_latest(self) -> None:
        table = self.query_one(DataTable)
        if table.row_count == 0:
            self.query_one(DetailsPane).show_event(None)
            return
        table.move_cursor(row=table.row_count - 1)
        if not self._pinned:
            self._show_current()

    def _show_current(self) -> None:
        row = self.query_one(DataTable).cursor_row
        e = self._visible[row] if 0 <= row < len(self._visible) else None
        shown = {k: v for k, v in e.items() if not k.startswith("_")} if e else None
        self.query_one(DetailsPane).show_event(shown, show_hashes=self.show_hashes)

    def _tick_follow(self) -> None:
        if self.paused:
            return

        filt = self.query_one(StatsBar).filter_text
        added = False
        for _ in range(500):
            e = self.reader.read_one()
            if e is None:
                break
            self._ingest(e)
            if matches_filter(e, filt):
                self._add_row(e)
                added = True

        if not added:
            return
        if len(self._visible) > self.max_rows:
            self._rebuild()
        elif not self._pinned:
            self._select_latest()


def main(argv: Optional[List[str]] = None) -> None:
    ap = argparse.ArgumentParser(description="View the feedgate security audit log (JSONL)")
    ap.add_argument("logfile", help="Path to security_audit.jsonl")
    ap.add_argument("--no-follow", action="store_true", help="Load once and do NOT follow new lines")
    ap.add_argument("--hz", type=float, default=4.0, help="Follow refresh rate (default: 4)")
    ap.add_argument("--max-rows", type=int, default=500, help="Max visible rows (default: 500)")
    ap.add_argument("--history", type=int, default=MAX_HISTORY, help=f"Events kept for filtering (default: {MAX_HISTORY})")
    args = ap.parse_args(argv)

    if not os.path.exists(args.logfile):
        raise SystemExit(f"Log file not found: {args.logfile}")

    AuditTui(args.logfile, follow=not args.no_follow, refresh_hz=args.hz, max_rows=args.max_rows,
             history=args.history).run()


if __name__ == "__main__":
    main()
