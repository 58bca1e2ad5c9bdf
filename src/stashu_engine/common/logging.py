"""Structured JSON logging for Stashu-Engine."""

import logging
import json
import sys
from datetime import datetime, timezone


class JSONFormatter(logging.Formatter):
    """Format log records as JSON lines."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info and record.exc_info[1]:
            log_entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_entry)


def setup_logging(level: str = "INFO") -> None:
    """Configure structured logging for the application."""
    root = logging.getLogger("stashu_engine")
    root.setLevel(getattr(logging, level.upper(), logging.INFO))
    if any(isinstance(h.formatter, JSONFormatter) for h in root.handlers):
        return

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JSONFormatter())
    root.addHandler(handler)
    root.propagate = False


def short(value: str | None, length: int = 8) -> str:
    """Truncate an identifier (pubkey, quote id) for log lines."""
    if not value:
        return "-"
    return value[:length] + "..." if len(value) > length else value
