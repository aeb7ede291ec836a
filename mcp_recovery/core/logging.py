"""Logging setup for the recovery engine.

Modules log through ``logging.getLogger(__name__)`` and pass structured
fields (``category``, ``severity``, ``endpoint_id``...) via ``extra=``.
``JsonLogFormatter`` turns each record into one JSON line for log sinks.
"""

from __future__ import annotations

import json
import logging
from datetime import UTC, datetime

from mcp_recovery.core.config import Settings

# Attributes every LogRecord has; anything else came in through ``extra=``.
_RESERVED_ATTRS: frozenset[str] = frozenset(
    vars(logging.LogRecord("", 0, "", 0, "", (), None)).keys() | {"message", "asctime"}
)

_TEXT_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


class JsonLogFormatter(logging.Formatter):
    """Render a record as a single-line JSON object (JSONL-safe)."""

    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "timestamp": datetime.fromtimestamp(record.created, UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for key, value in record.__dict__.items():
            if key not in _RESERVED_ATTRS and not key.startswith("_"):
                payload[key] = value
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, separators=(",", ":"), default=str)


def configure_logging(settings: Settings | None = None) -> None:
    """Attach a stream handler to the ``mcp_recovery`` logger tree."""
    settings = settings or Settings()
    logger = logging.getLogger("mcp_recovery")
    logger.setLevel(settings.LOG_LEVEL.upper())

    handler = logging.StreamHandler()
    if settings.LOG_JSON:
        handler.setFormatter(JsonLogFormatter())
    else:
        handler.setFormatter(logging.Formatter(_TEXT_FORMAT))

    for existing in list(logger.handlers):
        logger.removeHandler(existing)
    logger.addHandler(handler)
