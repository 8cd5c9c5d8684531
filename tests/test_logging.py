"""Smoke tests for the structured JSON log shape."""

import json
import logging
import sys

from relaybus.core.logging import JSONFormatter, configure_logger


def make_record(msg: str = "hello", level: int = logging.INFO, exc_info=None, **extra) -> logging.LogRecord:
    record = logging.LogRecord(
        name="relaybus.worker",
        level=level,
        pathname=__file__,
        lineno=1,
        msg=msg,
        args=(),
        exc_info=exc_info,
    )
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class TestJSONFormatter:
    def test_base_fields(self):
        data = json.loads(JSONFormatter().format(make_record("Processing event")))

        assert data["message"] == "Processing event"
        assert data["level"] == "INFO"
        assert data["logger"] == "relaybus.worker"
        assert data["timestamp"].endswith("+00:00")

    def test_relaybus_fields(self):
        record = make_record(
            event_name="user_created",
            handler="Email",
            event_id="evt-1",
            idempotency_key="key-1",
            job_id="job-1",
            attempt=2,
        )

        data = json.loads(JSONFormatter().format(record))

        assert data["event_name"] == "user_created"
        assert data["handler"] == "Email"
        assert data["event_id"] == "evt-1"
        assert data["idempotency_key"] == "key-1"
        assert data["job_id"] == "job-1"
        assert data["attempt"] == 2

    def test_other_extras_included(self):
        data = json.loads(JSONFormatter().format(make_record(handlers=["A", "B"], skipped=1)))

        assert data["handlers"] == ["A", "B"]
        assert data["skipped"] == 1

    def test_standard_attributes_excluded(self):
        data = json.loads(JSONFormatter().format(make_record()))

        for key in ("pathname", "lineno", "msg", "args", "levelno", "thread"):
            assert key not in data

    def test_non_serializable_values_use_str(self):
        data = json.loads(JSONFormatter().format(make_record(error=ValueError("bad"))))
        assert data["error"] == "bad"

    def test_exception_included(self):
        try:
            raise RuntimeError("pager offline")
        except RuntimeError:
            record = make_record("hook failed", level=logging.ERROR, exc_info=sys.exc_info())

        data = json.loads(JSONFormatter().format(record))

        assert data["level"] == "ERROR"
        assert "RuntimeError: pager offline" in data["exception"]


class TestConfigureLogger:
    def test_attaches_json_handler_once(self):
        name = "relaybus.test.configure"
        logger = logging.getLogger(name)
        try:
            configure_logger(name)
            configure_logger(name, level=logging.DEBUG)

            assert len(logger.handlers) == 1
            assert isinstance(logger.handlers[0].formatter, JSONFormatter)
            assert logger.level == logging.DEBUG
            assert logger.propagate is False
        finally:
            for handler in list(logger.handlers):
                logger.removeHandler(handler)
