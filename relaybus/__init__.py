"""relaybus - Transactional event fan-out onto a durable job queue."""

from relaybus.core import (
    BUILTIN_DEFAULTS,
    DispatchWorker,
    Envelope,
    Error,
    EventBus,
    EventRegistry,
    ExhaustionReport,
    Handler,
    HandlerSpec,
    InvalidConditionSpec,
    InvalidHandlerSpecShape,
    InvalidJobConfig,
    InvalidJobPayload,
    InvalidPayload,
    InvalidRegistryDeclaration,
    JobRecord,
    JobResult,
    JobState,
    NamedCondition,
    Ok,
    QueueFullError,
    QueueUnavailableError,
    RelaybusError,
    ResolvedJobConfig,
    Runner,
    RunnerStats,
    UnknownHandlerReference,
    UnregisteredEvent,
    resolve_job_config,
    should_dispatch,
)
from relaybus.queues import InMemoryJobQueue, Job, JobQueue, JobRequest, RedisJobQueue

__version__ = "0.1.0"

__all__ = [
    # Core
    "EventBus",
    "EventRegistry",
    "HandlerSpec",
    "Handler",
    "Ok",
    "Error",
    "Envelope",
    "JobRecord",
    "NamedCondition",
    "should_dispatch",
    "BUILTIN_DEFAULTS",
    "ResolvedJobConfig",
    "resolve_job_config",
    # Worker side
    "DispatchWorker",
    "ExhaustionReport",
    "JobResult",
    "JobState",
    "Runner",
    "RunnerStats",
    # Errors
    "RelaybusError",
    "UnregisteredEvent",
    "InvalidRegistryDeclaration",
    "InvalidHandlerSpecShape",
    "InvalidConditionSpec",
    "InvalidPayload",
    "InvalidJobConfig",
    "InvalidJobPayload",
    "UnknownHandlerReference",
    "QueueFullError",
    "QueueUnavailableError",
    # Queues
    "JobQueue",
    "Job",
    "JobRequest",
    "InMemoryJobQueue",
    "RedisJobQueue",
    # Meta
    "__version__",
]
