"""Audit handler recording every account event."""

from datetime import UTC, datetime

from relaybus import Envelope, Handler


class AuditTrail(Handler):
    """Records account events for the audit trail.

    Registered for several events, which demonstrates that one handler
    instance may serve more than one event name.
    """

    def __init__(self) -> None:
        super().__init__()
        # Instance-level state - not shared across instances
        self.audit_log: list[dict] = []

    def handle(self, event_name: str, envelope: Envelope) -> None:
        self.audit_log.append(
            {
                "event": event_name,
                "user_id": envelope.data.get("user_id"),
                "event_id": envelope.event_id,
                "correlation_id": envelope.correlation_id,
                "recorded_at": datetime.now(UTC).isoformat(),
            }
        )
