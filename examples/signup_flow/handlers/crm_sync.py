"""CRM sync handler, dispatched only for paying plans."""

from relaybus import Envelope, Handler


def is_paying(plans: list[str], envelope: Envelope) -> bool:
    """Named condition: ``("handlers.crm_sync:is_paying", [["pro", "team"]])``."""
    return envelope.data.get("plan") in plans


class CrmSync(Handler):
    """Pushes new paying customers to the (simulated) CRM."""

    def __init__(self) -> None:
        super().__init__()
        self.contacts: dict[str, dict] = {}

    def handle(self, event_name: str, envelope: Envelope) -> None:
        user_id = envelope.data["user_id"]
        # Upsert keyed by user, so replays are harmless
        self.contacts[user_id] = {
            "plan": envelope.data["plan"],
            "event_id": envelope.event_id,
        }
