"""Job queue protocol.

Durable storage, attempt counting and retry scheduling live in the queue. The
bus only hands it batches of jobs; the runner pulls them back out.
"""

from contextlib import AbstractAsyncContextManager
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any, Protocol, Sequence

# Invocation target stored on every job created by EventBus.emit
DISPATCH_WORKER = "relaybus.dispatch"


class JobStatus(Enum):
    AVAILABLE = "available"
    EXECUTING = "executing"
    COMPLETED = "completed"
    RETRYABLE = "retryable"
    DISCARDED = "discarded"


@dataclass(frozen=True)
class JobRequest:
    """What the bus asks the queue to persist for one handler."""

    worker: str
    payload: dict[str, Any]
    options: dict[str, Any]


@dataclass
class Job:
    """A persisted job as seen by the worker.

    ``attempt`` is incremented by the queue each time the job is pulled, so
    the first execution runs with ``attempt == 1``.
    """

    id: str
    worker: str
    payload: dict[str, Any]
    options: dict[str, Any]
    attempt: int = 0
    max_attempts: int = 1
    status: JobStatus = JobStatus.AVAILABLE
    errors: list[str] = field(default_factory=list)
    inserted_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    @property
    def queue(self) -> str:
        return self.options.get("queue", "events")

    @property
    def priority(self) -> int:
        return self.options.get("priority", 0)


class JobQueue(Protocol):
    """Protocol defining the interface relaybus needs from a job queue."""

    async def bulk_create(self, requests: list[JobRequest]) -> list[str]:
        """Persist all requests atomically and return their job ids.

        When called inside ``transaction()`` the jobs persist only if the
        transaction commits.
        """
        ...

    async def pull(self, queues: Sequence[str] | None = None, timeout: float = 1.0) -> Job | None:
        """Return the next job to execute, or None if timeout expires."""
        ...

    async def complete(self, job: Job) -> None:
        """Mark a job as successfully executed."""
        ...

    async def fail(self, job: Job, error: str) -> bool:
        """Record a failed attempt.

        Returns:
            True if the job will be attempted again.
        """
        ...

    async def discard(self, job: Job, reason: str) -> None:
        """Stop a job permanently without further attempts."""
        ...

    def transaction(self) -> AbstractAsyncContextManager[None]:
        """Open a unit of work that bulk_create calls join."""
        ...
