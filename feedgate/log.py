"""
Structured logging for feedgate.

Usage:
    from feedgate.log import setup_logging

    setup_logging(service_name="feedgate", level="INFO", fmt="json")

    logger = logging.getLogger(__name__)
    logger.info("Loaded accounts", extra={"count": 3})

JSON output:
    {"timestamp": "...", "level": "INFO", "service": "feedgate",
     "logger": "feedgate.accounts", "message": "Loaded accounts", "count": 3}
"""

import json
import logging
import sys
from datetime import datetime, timezone

# LogRecord attributes that are not user-supplied `extra` fields
_SKIP_FIELDS = {
    "name", "msg", "args", "levelname", "levelno", "pathname",
    "filename", "module", "lineno", "funcName", "created",
    "thread", "threadName", "processName", "process", "exc_info",
    "exc_text", "stack_info", "message", "msecs", "relativeCreated",
    "taskName",
}


def _extra_fields(record: logging.LogRecord) -> dict:
    out = {}
    for key, value in record.__dict__.items():
        if key in _SKIP_FIELDS or key.startswith("_"):
            continue
        try:
            json.dumps(value)
            out[key] = value
        except (TypeError, ValueError):
            out[key] = str(value)
    return out


class JSONFormatter(logging.Formatter):
    """One JSON object per line, extra={} fields merged in."""

    def __init__(self, service_name: str = "feedgate"):
        super().__init__()
        self.service_name = service_name

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "service": self.service_name,
            "logger": record.name,
            "message": record.getMessage(),
        }

        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)

        entry.update(_extra_fields(record))
        return json.dumps(entry, ensure_ascii=False, default=str)


class ConsoleFormatter(logging.Formatter):
    """[LEVEL] logger: message {extra}"""

    def format(self, record: logging.LogRecord) -> str:
        line = f"[{record.levelname}] {record.name}: {record.getMessage()}"
        extra = _extra_fields(record)
        if extra:
            line += " " + json.dumps(extra, ensure_ascii=False, default=str)
        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


def setup_logging(service_name: str = "feedgate", level: str = "INFO", fmt: str = "json") -> None:
    """Install a single stdout handler on the root logger."""
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JSONFormatter(service_name) if fmt == "json" else ConsoleFormatter())

    root = logging.getLogger()
    for h in list(root.handlers):
        root.removeHandler(h)
    root.addHandler(handler)
    root.setLevel(getattr(logging, str(level).upper(), logging.INFO))
