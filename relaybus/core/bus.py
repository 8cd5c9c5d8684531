"""EventBus: turns one emitted event into one job per interested handler.

The bus does NOT run handlers. It looks handlers up in the registry, checks
their conditions, resolves job options and hands the whole batch to the job
queue in a single bulk_create call. Handlers run later, in DispatchWorker.
"""

import copy
import inspect
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from types import MappingProxyType
from typing import Any

from pydantic import ValidationError

from relaybus.core.conditions import should_dispatch
from relaybus.core.config import BUILTIN_DEFAULTS, resolve_job_config
from relaybus.core.envelope import Envelope, JobRecord, generate_id, normalize_data
from relaybus.core.errors import InvalidPayload
from relaybus.core.logging import configure_logger
from relaybus.core.registry import EventRegistry, HandlerSpec
from relaybus.queues.base import DISPATCH_WORKER, JobQueue, JobRequest


@dataclass(frozen=True)
class ExhaustionReport:
    """Passed to the exhaustion hook when a job fails its final attempt."""

    event_name: str
    handler: str
    envelope: Envelope
    error: Any
    job_id: str | None = None
    attempt: int | None = None


ExhaustionHook = Callable[[ExhaustionReport], Any]


class EventBus:
    """Emitter bound to one registry and one job queue.

    Args:
        registry: An EventRegistry, or a declaration mapping to build one from.
        job_queue: Where emitted jobs are persisted.
        name: Persisted in every job as ``originating_module``; the worker
            uses it to find this bus's exhaustion hook again.
        job_defaults: Engine-wide job options (queue, max_attempts, priority,
            tags and any pass-through key). Overridden per handler.
        exhaustion_hook: Called with an ExhaustionReport when a job fails its
            final attempt. Subclasses may override ``handle_exhausted`` instead.
    """

    def __init__(
        self,
        registry: EventRegistry | Mapping[str, Any],
        job_queue: JobQueue,
        *,
        name: str = "relaybus",
        job_defaults: Mapping[str, Any] | None = None,
        exhaustion_hook: ExhaustionHook | None = None,
    ) -> None:
        if not isinstance(registry, EventRegistry):
            registry = EventRegistry(registry)
        self.registry = registry
        self.job_queue = job_queue
        self.name = name
        self.job_defaults: Mapping[str, Any] = MappingProxyType(
            copy.deepcopy(dict(job_defaults or {}))
        )
        self._exhaustion_hook = exhaustion_hook
        self._log = configure_logger("relaybus.bus")

        # Fail at construction rather than on the first emit
        resolve_job_config(BUILTIN_DEFAULTS, self.job_defaults)

    def get_handlers(self, event_name: str) -> tuple[HandlerSpec, ...]:
        return self.registry.get_handlers(event_name)

    def all_events(self) -> frozenset[str]:
        return self.registry.all_events()

    def is_registered(self, event_name: str) -> bool:
        return self.registry.is_registered(event_name)

    def _build_record(
        self, event_name: str, spec: HandlerSpec, provisional: Envelope
    ) -> JobRecord:
        config = resolve_job_config(BUILTIN_DEFAULTS, self.job_defaults, spec.options)
        # Each job owns its data; siblings must not share one dict
        envelope = provisional.model_copy(update={"idempotency_key": generate_id()}, deep=True)
        return JobRecord(
            event_name=event_name,
            handler=spec.name,
            originating_module=self.name,
            envelope=envelope,
            config=config,
        )

    async def emit(
        self,
        event_name: str,
        data: Mapping[str, Any],
        *,
        causation_id: str | None = None,
        correlation_id: str | None = None,
    ) -> list[JobRecord]:
        """Create one job per handler of ``event_name`` whose condition passes.

        Call this inside ``job_queue.transaction()`` (or the queue's own
        transactional context) so the jobs are rolled back with the
        surrounding unit of work.

        Args:
            event_name: A registered event name.
            data: JSON-serializable mapping. Handlers receive it with string keys.
            causation_id: event_id of the emit that caused this one.
            correlation_id: Groups emits belonging to one business operation.

        Returns:
            The created JobRecords, in handler declaration order, with their
            queue-assigned ``job_id``. Empty if no handler applies.

        Raises:
            UnregisteredEvent: If the event is not registered.
            InvalidPayload: If data is not a serializable mapping.
            InvalidConditionSpec: If a handler's condition has an invalid shape.
            InvalidJobConfig: If a handler's job options are invalid.
        """
        specs = self.registry.get_handlers(event_name)
        normalized = normalize_data(data)

        # One event_id per emit, shared by every job
        event_id = generate_id()
        try:
            provisional = Envelope(
                data=normalized,
                event_id=event_id,
                causation_id=None if causation_id is None else str(causation_id),
                correlation_id=None if correlation_id is None else str(correlation_id),
            )
        except ValidationError as e:
            raise InvalidPayload(f"Invalid envelope for {event_name!r}: {e}") from e

        # Every condition is checked before anything is created
        selected = [spec for spec in specs if should_dispatch(spec.condition, provisional)]
        records = [self._build_record(event_name, spec, provisional) for spec in selected]

        if not records:
            self._log.debug(
                f"No handlers to dispatch for {event_name}",
                extra={
                    "event_name": event_name,
                    "event_id": event_id,
                    "skipped": len(specs),
                },
            )
            return []

        requests = [
            JobRequest(
                worker=DISPATCH_WORKER,
                payload=record.to_payload(),
                options=record.config.as_options(),
            )
            for record in records
        ]
        job_ids = await self.job_queue.bulk_create(requests)

        self._log.info(
            f"Emitted {event_name} to {len(records)} handler(s)",
            extra={
                "event_name": event_name,
                "event_id": event_id,
                "handlers": [record.handler for record in records],
                "skipped": len(specs) - len(records),
                "causation_id": provisional.causation_id,
                "correlation_id": provisional.correlation_id,
            },
        )
        return [
            record.model_copy(update={"job_id": job_id})
            for record, job_id in zip(records, job_ids)
        ]

    async def handle_exhausted(self, report: ExhaustionReport) -> None:
        """Called by the worker when a job fails its final attempt.

        The default does nothing beyond calling ``exhaustion_hook`` when one
        was given; the worker has already logged the failure.
        """
        if self._exhaustion_hook is None:
            return
        result = self._exhaustion_hook(report)
        if inspect.isawaitable(result):
            await result
