from __future__ import annotations

import json
import logging
import sys

from txengine.utils.logging import _json_formatter

EXPECTED_STRIPE = 3
EXPECTED_ATTEMPT = 2


def _record(msg: str = "hello") -> logging.LogRecord:
    return logging.LogRecord(
        name="test.logger",
        level=logging.INFO,
        pathname=__file__,
        lineno=1,
        msg=msg,
        args=(),
        exc_info=None,
    )


def test_json_formatter_promotes_standard_extra_fields() -> None:
    record = _record()
    record.stripe = EXPECTED_STRIPE
    record.handle = "0"

    payload = json.loads(_json_formatter(record))

    assert payload["level"] == "INFO"
    assert payload["logger"] == "test.logger"
    assert payload["message"] == "hello"
    assert payload["stripe"] == EXPECTED_STRIPE
    assert payload["handle"] == "0"
    assert "pathname" not in payload


def test_json_formatter_supports_legacy_nested_extra_field() -> None:
    record = _record()
    record.extra = {"attempt": EXPECTED_ATTEMPT}

    payload = json.loads(_json_formatter(record))

    assert payload["attempt"] == EXPECTED_ATTEMPT


def test_json_formatter_includes_exception_text() -> None:
    try:
        raise ValueError("rollback failed")
    except ValueError:
        record = logging.LogRecord(
            name="test.logger",
            level=logging.WARNING,
            pathname=__file__,
            lineno=1,
            msg="discarding connection",
            args=(),
            exc_info=sys.exc_info(),
        )

    payload = json.loads(_json_formatter(record))

    assert "ValueError: rollback failed" in payload["exc_info"]


def test_json_formatter_serializes_unknown_values_as_text() -> None:
    record = _record()
    record.target = object

    payload = json.loads(_json_formatter(record))

    assert payload["target"] == str(object)
