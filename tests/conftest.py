"""Pytest configuration, Hypothesis profiles and shared test doubles."""

import logging
from collections.abc import Callable, Iterator
from typing import Any

import pytest
from hypothesis import settings

from relaybus.core.envelope import Envelope
from relaybus.core.handler import Handler
from relaybus.queues.memory import InMemoryJobQueue

# Register Hypothesis profiles
settings.register_profile("ci", max_examples=100)
settings.register_profile("dev", max_examples=20)

# Load dev profile by default, CI can override via --hypothesis-profile=ci
settings.load_profile("dev")


class RecordingHandler(Handler):
    """Handler that records every call and returns a fixed value."""

    def __init__(self, name: str | None = None, returns: Any = None) -> None:
        super().__init__(name=name)
        self.returns = returns
        self.calls: list[tuple[str, Envelope]] = []

    def handle(self, event_name: str, envelope: Envelope) -> Any:
        self.calls.append((event_name, envelope))
        return self.returns


class AsyncRecordingHandler(RecordingHandler):
    """Async variant of RecordingHandler."""

    async def handle(self, event_name: str, envelope: Envelope) -> Any:
        self.calls.append((event_name, envelope))
        return self.returns


class RaisingHandler(Handler):
    """Handler that always raises."""

    def __init__(self, name: str | None = None, error: Exception | None = None) -> None:
        super().__init__(name=name)
        self.error = error or RuntimeError("handler crashed")
        self.calls = 0

    def handle(self, event_name: str, envelope: Envelope) -> None:
        self.calls += 1
        raise self.error


class LogCapture(logging.Handler):
    """Custom handler to capture log records for testing."""

    def __init__(self) -> None:
        super().__init__()
        self.records: list[logging.LogRecord] = []

    def emit(self, record: logging.LogRecord) -> None:
        self.records.append(record)

    def messages(self, level: int | None = None) -> list[str]:
        return [r.getMessage() for r in self.records if level is None or r.levelno == level]


@pytest.fixture
def log_capture() -> Iterator[Callable[[str], LogCapture]]:
    """Attach a LogCapture to a relaybus logger; handlers are restored afterwards."""
    attached: list[tuple[logging.Logger, LogCapture, int]] = []

    def attach(name: str) -> LogCapture:
        logger = logging.getLogger(name)
        capture = LogCapture()
        capture.setLevel(logging.DEBUG)
        attached.append((logger, capture, logger.level))
        logger.addHandler(capture)
        return capture

    yield attach

    for logger, capture, level in attached:
        logger.removeHandler(capture)
        logger.setLevel(level)


@pytest.fixture
def job_queue() -> InMemoryJobQueue:
    return InMemoryJobQueue()
