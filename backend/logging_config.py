"""Structured logging configuration for IncidentDesk.

Two renderings of the same structured entry: ``text`` (key=value, for
terminals) and ``json`` (one object per line, for log shippers).
"""

from __future__ import annotations

import json
import logging
import sys

from backend.utils.time import utc_now

CONTEXT_KEYS = ("request_id", "method", "path", "status_code", "duration_ms", "incident_id", "actor_id")


class StructuredFormatter(logging.Formatter):
    def __init__(self, fmt: str = "text") -> None:
        super().__init__()
        self.fmt = fmt

    def entry(self, record: logging.LogRecord) -> dict:
        log_entry = {
            "timestamp": utc_now().isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        # Request and incident context arrive through ``extra=``.
        for key in CONTEXT_KEYS:
            value = getattr(record, key, None)
            if value is not None:
                log_entry[key] = value
        if record.exc_info and record.exc_info[1]:
            log_entry["exception"] = self.formatException(record.exc_info)
        return log_entry

    def format(self, record: logging.LogRecord) -> str:
        log_entry = self.entry(record)
        if self.fmt == "json":
            return json.dumps(log_entry, default=str)

        parts = [
            f"[{log_entry['level']:<7}]",
            log_entry["timestamp"],
            f"{log_entry['logger']}:",
            log_entry["message"],
        ]
        parts.extend(f"{key}={log_entry[key]}" for key in CONTEXT_KEYS if key in log_entry)
        if "exception" in log_entry:
            parts.append(f"\n{log_entry['exception']}")
        return " ".join(parts)


def setup_logging(level: str = "INFO", fmt: str = "text") -> None:
    """Install one stdout handler on the root logger; repeated calls are no-ops."""
    root_logger = logging.getLogger()
    if root_logger.handlers:
        return

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(StructuredFormatter(fmt.lower()))
    root_logger.addHandler(handler)
    root_logger.setLevel(getattr(logging, level.upper(), logging.INFO))

    # Request access lines come from our own middleware.
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
