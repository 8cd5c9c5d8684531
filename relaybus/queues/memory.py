"""In-memory job queue for development and testing.

Jobs live in this object only and are lost when the process exits. Payloads
are stored after a JSON round-trip so handlers see exactly what a durable
queue would hand back.
"""

import asyncio
import copy
import itertools
import json
import logging
from collections.abc import AsyncIterator, Sequence
from contextlib import asynccontextmanager
from contextvars import ContextVar
from uuid import uuid4

from relaybus.core.errors import QueueFullError
from relaybus.queues.base import Job, JobRequest, JobStatus

logger = logging.getLogger("relaybus.queues.memory")


class InMemoryJobQueue:
    """Priority job queue with attempt tracking and transactional inserts.

    Available jobs are pulled lowest ``priority`` first, FIFO within one
    priority. A failed job goes back to the end of its priority until it has
    used ``max_attempts`` attempts.

    Args:
        max_size: Maximum number of available jobs. 0 means unbounded (default).
    """

    def __init__(self, max_size: int = 0) -> None:
        self._max_size = max_size
        self._jobs: dict[str, Job] = {}
        # job id -> insertion sequence, for jobs waiting to be pulled
        self._available: dict[str, int] = {}
        self._sequence = itertools.count()
        self._wakeup = asyncio.Event()
        self._transaction: ContextVar[list[Job] | None] = ContextVar(
            f"relaybus_memory_tx_{id(self)}", default=None
        )

    @staticmethod
    def _build_job(request: JobRequest) -> Job:
        options = copy.deepcopy(request.options)
        return Job(
            id=str(uuid4()),
            worker=request.worker,
            payload=json.loads(json.dumps(request.payload)),
            options=options,
            max_attempts=int(options.get("max_attempts", 1)),
        )

    def _insert(self, jobs: list[Job]) -> None:
        if self._max_size > 0 and len(self._available) + len(jobs) > self._max_size:
            raise QueueFullError(
                f"Queue full (max_size={self._max_size}), cannot insert batch of {len(jobs)} job(s)"
            )
        for job in jobs:
            self._jobs[job.id] = job
            self._available[job.id] = next(self._sequence)
        if jobs:
            self._wakeup.set()

    async def bulk_create(self, requests: list[JobRequest]) -> list[str]:
        """Insert all requests, or none of them.

        Raises:
            QueueFullError: If the batch does not fit (when max_size > 0).
        """
        jobs = [self._build_job(request) for request in requests]
        staged = self._transaction.get()
        if staged is not None:
            staged.extend(jobs)
        else:
            self._insert(jobs)
        return [job.id for job in jobs]

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[None]:
        """Stage jobs created inside the block; insert them on clean exit.

        Nested transactions join the outermost one.
        """
        if self._transaction.get() is not None:
            yield
            return

        staged: list[Job] = []
        token = self._transaction.set(staged)
        try:
            yield
        except BaseException:
            logger.debug(f"Transaction rolled back, dropping {len(staged)} staged job(s)")
            raise
        else:
            self._insert(staged)
        finally:
            self._transaction.reset(token)

    def _pop_available(self, queues: Sequence[str] | None) -> Job | None:
        candidates = [
            (self._jobs[job_id].priority, sequence, job_id)
            for job_id, sequence in self._available.items()
            if queues is None or self._jobs[job_id].queue in queues
        ]
        if not candidates:
            return None
        _, _, job_id = min(candidates)
        del self._available[job_id]
        job = self._jobs[job_id]
        job.attempt += 1
        job.status = JobStatus.EXECUTING
        return job

    async def pull(self, queues: Sequence[str] | None = None, timeout: float = 1.0) -> Job | None:
        """Return the next available job, waiting up to ``timeout`` seconds.

        Args:
            queues: Queue names to pull from. None means every queue.
            timeout: Maximum seconds to wait for a job.
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while True:
            job = self._pop_available(queues)
            if job is not None:
                return job
            remaining = deadline - loop.time()
            if remaining <= 0:
                return None
            self._wakeup.clear()
            try:
                await asyncio.wait_for(self._wakeup.wait(), remaining)
            except TimeoutError:
                return self._pop_available(queues)

    async def complete(self, job: Job) -> None:
        self._jobs[job.id].status = JobStatus.COMPLETED

    async def fail(self, job: Job, error: str) -> bool:
        stored = self._jobs[job.id]
        stored.errors.append(error)
        if stored.attempt < stored.max_attempts:
            stored.status = JobStatus.RETRYABLE
            self._available[stored.id] = next(self._sequence)
            self._wakeup.set()
            return True
        stored.status = JobStatus.DISCARDED
        logger.debug(f"Job {stored.id} discarded after {stored.attempt} attempt(s)")
        return False

    async def discard(self, job: Job, reason: str) -> None:
        stored = self._jobs[job.id]
        stored.errors.append(reason)
        stored.status = JobStatus.DISCARDED

    def get_job(self, job_id: str) -> Job:
        return self._jobs[job_id]

    def jobs(self, status: JobStatus | None = None) -> list[Job]:
        """Return stored jobs in insertion order, optionally filtered by status."""
        return [job for job in self._jobs.values() if status is None or job.status is status]

    def qsize(self) -> int:
        """Return the number of jobs waiting to be pulled."""
        return len(self._available)
