"""Tests for the JSON log formatter and correlation filter."""

from __future__ import annotations

import json
import logging
import sys

import pytest

from keygate_api.middleware.json_formatter import JSONFormatter
from keygate_api.middleware.logging import CorrelationLoggingFilter


@pytest.fixture
def formatter() -> JSONFormatter:
    return JSONFormatter()


def _record(msg: str = "test message", **extra) -> logging.LogRecord:
    record = logging.LogRecord(
        name="keygate.test",
        level=logging.INFO,
        pathname="test.py",
        lineno=1,
        msg=msg,
        args=(),
        exc_info=None,
    )
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class TestJSONFormatter:
    def test_basic_format(self, formatter: JSONFormatter) -> None:
        data = json.loads(formatter.format(_record()))
        assert data["level"] == "INFO"
        assert data["logger"] == "keygate.test"
        assert data["message"] == "test message"
        assert "timestamp" in data

    def test_single_line_output(self, formatter: JSONFormatter) -> None:
        assert "\n" not in formatter.format(_record("line one\nline two"))

    def test_request_and_correlation_included(self, formatter: JSONFormatter) -> None:
        record = _record(request={"path": "/api/v1/client/login", "status_code": 200}, correlation_id="abc")
        data = json.loads(formatter.format(record))
        assert data["request"]["status_code"] == 200
        assert data["correlation_id"] == "abc"

    def test_exception_included(self, formatter: JSONFormatter) -> None:
        try:
            raise RuntimeError("boom")
        except RuntimeError:
            record = _record()
            record.exc_info = sys.exc_info()
        data = json.loads(formatter.format(record))
        assert "RuntimeError: boom" in data["exc_info"]


def test_filter_outside_request_sets_empty_id() -> None:
    record = _record()
    assert CorrelationLoggingFilter().filter(record) is True
    assert record.correlation_id == ""
