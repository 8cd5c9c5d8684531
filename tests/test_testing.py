"""Tests for the handler testing helpers."""

from relaybus.core.envelope import Envelope
from relaybus.testing import build_envelope
from tests.conftest import RecordingHandler


def test_generates_ids():
    envelope = build_envelope({"user_id": 123})

    assert isinstance(envelope, Envelope)
    assert envelope.data == {"user_id": 123}
    assert envelope.event_id
    assert envelope.idempotency_key
    assert envelope.event_id != envelope.idempotency_key
    assert envelope.causation_id is None
    assert envelope.correlation_id is None


def test_explicit_ids():
    envelope = build_envelope(
        {"user_id": 1},
        event_id="evt-1",
        idempotency_key="key-1",
        causation_id="evt-0",
        correlation_id="req-1",
    )

    assert envelope == Envelope(
        data={"user_id": 1},
        event_id="evt-1",
        idempotency_key="key-1",
        causation_id="evt-0",
        correlation_id="req-1",
    )


def test_data_defaults_to_empty():
    assert build_envelope().data == {}


def test_data_is_normalized_like_emit():
    assert build_envelope({1: ("a",)}).data == {"1": ["a"]}


def test_handler_can_be_called_directly():
    handler = RecordingHandler(name="Welcome")
    envelope = build_envelope({"email": "test@example.com"})

    assert handler.handle("user_created", envelope) is None
    assert handler.calls == [("user_created", envelope)]
