"""Structured JSON logging.

Every module logs through the standard library under the ``tembea`` logger
tree; configure_logging() attaches a single JSON handler to the tree root.
Structured context goes in ``extra={"extra_fields": {...}}`` and is merged
into the JSON line together with the current correlation id.
"""

import json
import logging
import os
import sys
from datetime import datetime, timezone
from typing import Any

from .correlation import get_correlation_id

ROOT_LOGGER = "tembea"
DEFAULT_LEVEL = "INFO"

# LogRecord attributes that are never copied as structured fields.
_RESERVED = {"extra_fields"}


class JsonFormatter(logging.Formatter):
    """One JSON object per line: time, level, logger, message, context."""

    def __init__(self, service: str | None = None) -> None:
        super().__init__()
        self._service = service or os.environ.get("TEMBEA_SERVICE_NAME", "tembea")

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "service": self._service,
            "logger": record.name,
            "message": record.getMessage(),
        }

        cid = get_correlation_id()
        if cid:
            entry["correlationId"] = cid

        fields = getattr(record, "extra_fields", None)
        if isinstance(fields, dict):
            for key, value in fields.items():
                if key not in entry and key not in _RESERVED:
                    entry[key] = value

        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(entry, default=str)


def configure_logging(level: str | None = None) -> logging.Logger:
    """Attach the JSON handler to the ``tembea`` logger tree (idempotent)."""
    root = logging.getLogger(ROOT_LOGGER)
    if not any(isinstance(h.formatter, JsonFormatter) for h in root.handlers):
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(JsonFormatter())
        root.addHandler(handler)
        root.propagate = False
    root.setLevel((level or os.environ.get("LOG_LEVEL", DEFAULT_LEVEL)).upper())
    return root


def get_logger(name: str) -> logging.Logger:
    """Get a module logger, making sure the JSON handler is installed."""
    configure_logging()
    return logging.getLogger(name)
