"""Welcome email handler with simulated transient failures."""

import asyncio
import random

from cachetools import TTLCache

from relaybus import Envelope, Error, Handler, Ok


class WelcomeEmail(Handler):
    """Sends the welcome email via simulated SMTP.

    This is an ASYNC handler demonstrating:
    - Returning Error(reason) so the job queue retries the job
    - Deduplication on envelope.idempotency_key, which is stable across retries
    """

    def __init__(self, failure_rate: float = 0.3, ttl: float = 3600.0) -> None:
        super().__init__()
        self._failure_rate = failure_rate
        # Keys of emails already sent; a retry after a lost ack must not send twice
        self._sent: TTLCache[str, str] = TTLCache(maxsize=10000, ttl=ttl)
        self.outbox: list[dict] = []

    async def handle(self, event_name: str, envelope: Envelope) -> Ok | Error:
        email = envelope.data.get("email")
        if not email:
            return Error("missing email")

        if envelope.idempotency_key in self._sent:
            return Ok("already sent")

        # Simulate network latency
        await asyncio.sleep(0.01)

        if random.random() < self._failure_rate:
            return Error(f"SMTP connection failed for {email}")

        self._sent[envelope.idempotency_key] = email
        self.outbox.append({"to": email, "user_id": envelope.data.get("user_id")})
        return Ok(email)
