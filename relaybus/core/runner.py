"""Runner: pulls jobs from a job queue and feeds them to a DispatchWorker.

The runner plays the job queue's side of the contract: it reports every
outcome back to the queue, which decides whether a job is retried. Handler
exceptions and timeouts are recorded as failed attempts.
"""

import asyncio
from collections import defaultdict
from collections.abc import Sequence
from dataclasses import dataclass, field

from relaybus.core.errors import QueueUnavailableError
from relaybus.core.logging import configure_logger
from relaybus.core.worker import DispatchWorker, JobResult, JobState
from relaybus.queues.base import Job, JobQueue

# Circuit breaker default
DEFAULT_MAX_CONSECUTIVE_FAILURES = 10


@dataclass
class RunnerStats:
    """Statistics from a Runner run."""

    jobs_processed: int = 0
    jobs_succeeded: int = 0
    jobs_failed: int = 0
    jobs_retried: int = 0
    jobs_discarded: int = 0
    handler_errors: dict[str, int] = field(default_factory=lambda: defaultdict(int))
    queue_errors: int = 0


class Runner:
    """Drive a DispatchWorker from a job queue.

    Args:
        job_queue: Queue to pull jobs from and report outcomes to.
        worker: Worker executing the jobs.
        queues: Queue names to pull from. None means the queue's default.
        concurrency: Number of jobs executed at the same time.
        max_jobs: Stop after this many jobs. None means no limit.
        job_timeout: Seconds a single attempt may take before it counts as failed.
        poll_timeout: Seconds each pull waits for a job.
        drain: Stop as soon as a pull finds the queue empty.
        max_consecutive_queue_failures: Pull failures tolerated in a row.
    """

    def __init__(
        self,
        job_queue: JobQueue,
        worker: DispatchWorker,
        *,
        queues: Sequence[str] | None = None,
        concurrency: int = 1,
        max_jobs: int | None = None,
        job_timeout: float = 30.0,
        poll_timeout: float = 1.0,
        drain: bool = False,
        max_consecutive_queue_failures: int = DEFAULT_MAX_CONSECUTIVE_FAILURES,
    ) -> None:
        if concurrency < 1:
            raise ValueError(f"concurrency must be at least 1, got {concurrency}")
        self.job_queue = job_queue
        self.worker = worker
        self.queues = list(queues) if queues is not None else None
        self.concurrency = concurrency
        self.max_jobs = max_jobs
        self.job_timeout = job_timeout
        self.poll_timeout = poll_timeout
        self.drain = drain
        self.max_consecutive_queue_failures = max_consecutive_queue_failures
        self._log = configure_logger("relaybus.runner")
        self._running = False
        self._stats = RunnerStats()
        self._consecutive_pull_failures = 0
        self._last_queue_error: str | None = None
        # Jobs pulled or being pulled, counted against max_jobs
        self._reserved = 0

    def stop(self) -> None:
        self._running = False

    def get_stats(self) -> RunnerStats:
        """Return a snapshot of current statistics."""
        return RunnerStats(
            jobs_processed=self._stats.jobs_processed,
            jobs_succeeded=self._stats.jobs_succeeded,
            jobs_failed=self._stats.jobs_failed,
            jobs_retried=self._stats.jobs_retried,
            jobs_discarded=self._stats.jobs_discarded,
            handler_errors=defaultdict(int, self._stats.handler_errors),
            queue_errors=self._stats.queue_errors,
        )

    async def _record_failure(self, job: Job, error: str) -> None:
        self._stats.jobs_failed += 1
        if await self.job_queue.fail(job, error):
            self._stats.jobs_retried += 1
        else:
            self._stats.jobs_discarded += 1

    async def process(self, job: Job) -> JobResult | None:
        """Run one job and report its outcome to the queue.

        Returns:
            The worker's result, or None if the attempt raised.
        """
        self._stats.jobs_processed += 1
        payload = job.payload if isinstance(job.payload, dict) else {}
        handler = str(payload.get("handler", "<unknown>"))

        try:
            result = await asyncio.wait_for(self.worker.perform(job), timeout=self.job_timeout)
        except Exception as e:
            self._stats.handler_errors[handler] += 1
            error = (
                f"timed out after {self.job_timeout}s"
                if isinstance(e, TimeoutError)
                else f"{type(e).__name__}: {e}"
            )
            self._log.error(
                f"Job {job.id} raised during attempt {job.attempt}: {error}",
                extra={"job_id": job.id, "handler": handler, "attempt": job.attempt, "error": error},
            )
            try:
                await self._record_failure(job, error)
            except Exception as queue_error:
                self._report_queue_error(job, queue_error)
            return None

        try:
            if result.state is JobState.SUCCESS:
                await self.job_queue.complete(job)
                self._stats.jobs_succeeded += 1
            elif result.state is JobState.PERMANENT_FAILURE:
                await self.job_queue.discard(job, str(result.reason))
                self._stats.jobs_discarded += 1
            else:
                await self._record_failure(job, repr(result.reason))
        except Exception as e:
            self._report_queue_error(job, e)
        return result

    def _report_queue_error(self, job: Job, error: Exception) -> None:
        self._stats.queue_errors += 1
        self._log.error(
            f"Failed to report outcome of job {job.id}: {error}",
            extra={"job_id": job.id, "error": str(error)},
        )

    async def _loop(self) -> None:
        while self._running:
            if self.max_jobs is not None and self._reserved >= self.max_jobs:
                break

            if self._consecutive_pull_failures >= self.max_consecutive_queue_failures:
                raise QueueUnavailableError(
                    f"Job queue unavailable after {self._consecutive_pull_failures} failures",
                    failure_count=self._consecutive_pull_failures,
                    last_error=self._last_queue_error,
                )

            # Claim a slot before pulling so concurrent loops cannot overshoot max_jobs
            self._reserved += 1
            try:
                job = await self.job_queue.pull(self.queues, timeout=self.poll_timeout)
                self._consecutive_pull_failures = 0
                self._last_queue_error = None
            except Exception as e:
                self._reserved -= 1
                self._consecutive_pull_failures += 1
                self._stats.queue_errors += 1
                self._last_queue_error = str(e)
                self._log.error(
                    f"Job queue pull failed ({self._consecutive_pull_failures}/"
                    f"{self.max_consecutive_queue_failures}): {e}",
                    extra={
                        "error": str(e),
                        "consecutive_failures": self._consecutive_pull_failures,
                    },
                )
                continue

            if job is None:
                self._reserved -= 1
                if self.drain:
                    break
                continue

            await self.process(job)

    async def run(self) -> RunnerStats:
        """Process jobs until stopped, ``max_jobs`` is reached or (with drain) the queue is empty."""
        self._stats = RunnerStats()
        self._running = True
        self._consecutive_pull_failures = 0
        self._reserved = 0
        try:
            await asyncio.gather(*(self._loop() for _ in range(self.concurrency)))
        finally:
            self._running = False
        return self._stats
