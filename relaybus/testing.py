"""Helpers for unit testing handlers without an EventBus.

Usage::

    from relaybus.testing import build_envelope

    def test_sends_welcome_email():
        envelope = build_envelope({"user_id": 123, "email": "test@example.com"})
        assert WelcomeEmail().handle("user_created", envelope) is None
"""

from collections.abc import Mapping
from typing import Any

from relaybus.core.envelope import Envelope, generate_id, normalize_data


def build_envelope(
    data: Mapping[str, Any] | None = None,
    *,
    event_id: str | None = None,
    idempotency_key: str | None = None,
    causation_id: str | None = None,
    correlation_id: str | None = None,
) -> Envelope:
    """Build a complete Envelope as a handler would receive it.

    ``event_id`` and ``idempotency_key`` are generated unless given. The data
    is normalized the same way emit() does it, so keys become strings.
    """
    return Envelope(
        data=normalize_data(data or {}),
        event_id=event_id or generate_id(),
        idempotency_key=idempotency_key or generate_id(),
        causation_id=causation_id,
        correlation_id=correlation_id,
    )
