"""Job queue implementations."""

from relaybus.queues.base import DISPATCH_WORKER, Job, JobQueue, JobRequest, JobStatus
from relaybus.queues.memory import InMemoryJobQueue
from relaybus.queues.redis import RedisJobQueue

__all__ = [
    "DISPATCH_WORKER",
    "InMemoryJobQueue",
    "Job",
    "JobQueue",
    "JobRequest",
    "JobStatus",
    "RedisJobQueue",
]
