"""Core components of the relaybus dispatch engine.

Types:
    EventRegistry: Immutable, validated event name -> handler specs mapping.
    HandlerSpec: One handler declared for one event, with options and condition.
    Handler: Abstract base class for event handlers.
    Ok, Error: Handler result markers.
    Envelope: Event data plus event_id, idempotency_key and causation ids.
    JobRecord: One handler's job as built by EventBus.emit.
    ResolvedJobConfig: Final job options after three-tier resolution.
    NamedCondition: Condition given as a function reference plus arguments.
    EventBus: Emitter turning one event into one job per handler.
    ExhaustionReport: Passed to the exhaustion hook after the final attempt.
    DispatchWorker: Executes one persisted job against its handler.
    JobResult, JobState: Outcome of one worker attempt.
    Runner, RunnerStats: Queue-driven loop around DispatchWorker.

Functions:
    resolve_job_config: Merge built-in, engine and per-handler job options.
    should_dispatch: Evaluate a condition against an envelope.

Constants:
    BUILTIN_DEFAULTS: Built-in job options.
    MAX_PAYLOAD_SIZE: Maximum serialized data size in bytes (1MB).
"""

from relaybus.core.bus import EventBus, ExhaustionReport
from relaybus.core.conditions import NamedCondition, should_dispatch
from relaybus.core.config import BUILTIN_DEFAULTS, ResolvedJobConfig, resolve_job_config
from relaybus.core.envelope import MAX_PAYLOAD_SIZE, Envelope, JobRecord
from relaybus.core.errors import (
    InvalidConditionSpec,
    InvalidHandlerSpecShape,
    InvalidJobConfig,
    InvalidJobPayload,
    InvalidPayload,
    InvalidRegistryDeclaration,
    QueueFullError,
    QueueUnavailableError,
    RelaybusError,
    UnknownHandlerReference,
    UnregisteredEvent,
)
from relaybus.core.handler import Error, Handler, Ok
from relaybus.core.registry import EventRegistry, HandlerSpec
from relaybus.core.runner import Runner, RunnerStats
from relaybus.core.worker import DispatchWorker, JobResult, JobState

__all__ = [
    "BUILTIN_DEFAULTS",
    "MAX_PAYLOAD_SIZE",
    "DispatchWorker",
    "Envelope",
    "Error",
    "EventBus",
    "EventRegistry",
    "ExhaustionReport",
    "Handler",
    "HandlerSpec",
    "InvalidConditionSpec",
    "InvalidHandlerSpecShape",
    "InvalidJobConfig",
    "InvalidJobPayload",
    "InvalidPayload",
    "InvalidRegistryDeclaration",
    "JobRecord",
    "JobResult",
    "JobState",
    "NamedCondition",
    "Ok",
    "QueueFullError",
    "QueueUnavailableError",
    "RelaybusError",
    "ResolvedJobConfig",
    "Runner",
    "RunnerStats",
    "UnknownHandlerReference",
    "UnregisteredEvent",
    "resolve_job_config",
    "should_dispatch",
]
