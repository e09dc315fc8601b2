from __future__ import annotations

import json
import logging
import os
from datetime import UTC, datetime
from typing import Any, Final

ROOT_LOGGER: Final[str] = "smspit"


class JsonFormatter(logging.Formatter):
    """
    Renders a record as one JSON object per line:

      {"ts": "...", "level": "INFO", "logger": "smspit.pipeline", "event": "sms.captured", "id": "msg_..."}

    The log message is the event name. Values passed as
    ``extra={"fields": {...}}`` are merged into the top level.
    """

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, UTC).isoformat(timespec="milliseconds"),
            "level": record.levelname,
            "logger": record.name,
            "event": record.getMessage(),
        }
        fields = getattr(record, "fields", None)
        if isinstance(fields, dict):
            entry.update(fields)
        if record.exc_info:
            entry["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


def configure_logging(level: str | None = None) -> logging.Logger:
    """
    Attach the JSON handler to the ``smspit`` logger and set its level.

    Every module logs through a child of this logger, so one handler covers
    them all. Calling it again only changes the level.
    """
    root = logging.getLogger(ROOT_LOGGER)
    if not root.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(JsonFormatter())
        root.addHandler(handler)
        root.propagate = False

    level_name = (level or os.getenv("SMSPIT_LOG_LEVEL") or "INFO").upper()
    root.setLevel(getattr(logging, level_name, logging.INFO))
    return root


def get_logger(name: str) -> logging.Logger:
    if not logging.getLogger(ROOT_LOGGER).handlers:
        configure_logging()
    return logging.getLogger(name)
