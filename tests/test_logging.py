from __future__ import annotations

import json
import logging
import sys

from smspit.logging_utils import ROOT_LOGGER, JsonFormatter, configure_logging, get_logger


def test_formatter_merges_fields_into_one_json_line() -> None:
    record = logging.makeLogRecord(
        {
            "name": "smspit.pipeline",
            "levelno": logging.INFO,
            "levelname": "INFO",
            "msg": "sms.captured",
            "created": 1700000000.25,
            "fields": {"id": "msg_12345678", "to": "+15551234567"},
        }
    )

    line = JsonFormatter().format(record)

    assert "\n" not in line
    entry = json.loads(line)
    assert entry["event"] == "sms.captured"
    assert entry["level"] == "INFO"
    assert entry["logger"] == "smspit.pipeline"
    assert entry["ts"] == "2023-11-14T22:13:20.250+00:00"
    assert entry["id"] == "msg_12345678"
    assert entry["to"] == "+15551234567"


def test_formatter_includes_exception() -> None:
    try:
        raise ValueError("boom")
    except ValueError:
        record = logging.getLogger("smspit.test").makeRecord(
            "smspit.test", logging.ERROR, __file__, 1, "http.unhandled_error", None, sys.exc_info()
        )

    entry = json.loads(JsonFormatter().format(record))
    assert "ValueError: boom" in entry["exc_info"]


def test_child_loggers_share_one_handler() -> None:
    root = configure_logging("debug")
    configure_logging("warning")

    assert len(root.handlers) == 1
    assert root.level == logging.WARNING
    assert root.propagate is False
    assert get_logger("smspit.server").parent is root
    assert root.name == ROOT_LOGGER
