"""DispatchWorker: executes one persisted job against its handler.

Per attempt the worker ends in one of three states:

- SUCCESS: the handler returned None, Ok(result), or an unexpected value.
- RETRYABLE_FAILURE: the handler returned Error(reason). On the final
  attempt the exhaustion hook of the originating bus runs first.
- PERMANENT_FAILURE: the payload is incomplete or names something that was
  never registered. The handler is not invoked.

Exceptions raised by a handler are not caught here; the job queue's crash
policy applies to them.
"""

import inspect
from collections.abc import Mapping
from dataclasses import dataclass
from enum import Enum
from typing import Any

from pydantic import ValidationError

from relaybus.core.bus import EventBus, ExhaustionReport
from relaybus.core.envelope import REQUIRED_PAYLOAD_FIELDS, Envelope
from relaybus.core.errors import InvalidJobPayload, UnknownHandlerReference
from relaybus.core.handler import Error, Handler, Ok
from relaybus.core.logging import configure_logger
from relaybus.queues.base import Job


class JobState(Enum):
    SUCCESS = "success"
    RETRYABLE_FAILURE = "retryable_failure"
    PERMANENT_FAILURE = "permanent_failure"


@dataclass(frozen=True)
class JobResult:
    """Outcome of one attempt, reported back to the job queue."""

    state: JobState
    result: Any = None
    reason: Any = None

    @classmethod
    def success(cls, result: Any = None) -> "JobResult":
        return cls(JobState.SUCCESS, result=result)

    @classmethod
    def retryable(cls, reason: Any) -> "JobResult":
        return cls(JobState.RETRYABLE_FAILURE, reason=reason)

    @classmethod
    def permanent(cls, reason: Any) -> "JobResult":
        return cls(JobState.PERMANENT_FAILURE, reason=reason)

    @property
    def ok(self) -> bool:
        return self.state is JobState.SUCCESS


class DispatchWorker:
    """Runs dispatch jobs created by one or more EventBus instances."""

    def __init__(self, *buses: EventBus) -> None:
        if not buses:
            raise ValueError("DispatchWorker needs at least one EventBus")
        self._buses: dict[str, EventBus] = {}
        for bus in buses:
            if bus.name in self._buses:
                raise ValueError(f"Duplicate EventBus name: {bus.name!r}")
            self._buses[bus.name] = bus
        self._log = configure_logger("relaybus.worker")

    def _check_payload(self, job: Job) -> Mapping[str, Any]:
        payload = job.payload
        if not isinstance(payload, Mapping):
            raise InvalidJobPayload(
                f"Job payload must be a mapping, got {type(payload).__name__}",
                missing=REQUIRED_PAYLOAD_FIELDS,
            )
        missing = [name for name in REQUIRED_PAYLOAD_FIELDS if payload.get(name) is None]
        if missing:
            raise InvalidJobPayload(
                f"Invalid job arguments: missing {', '.join(missing)}", missing=missing
            )
        return payload

    def _resolve(self, payload: Mapping[str, Any]) -> tuple[EventBus, Handler]:
        origin = payload["originating_module"]
        bus = self._buses.get(origin) if isinstance(origin, str) else None
        if bus is None:
            raise UnknownHandlerReference(f"Unknown originating module in job payload: {origin!r}")
        return bus, bus.registry.resolve_handler(payload["event_name"], payload["handler"])

    async def perform(self, job: Job) -> JobResult:
        """Execute one attempt of ``job``.

        Raises:
            Exception: Whatever the handler raises, unchanged.
        """
        try:
            payload = self._check_payload(job)
            bus, handler = self._resolve(payload)
            envelope = Envelope.from_payload(payload)
        except (InvalidJobPayload, UnknownHandlerReference, ValidationError) as e:
            self._log.error(
                f"DispatchWorker received invalid job arguments: {e}",
                extra={"job_id": job.id, "attempt": job.attempt, "error": str(e)},
            )
            return JobResult.permanent(str(e))

        event_name = payload["event_name"]
        context = {
            "event_name": event_name,
            "handler": handler.name,
            "event_id": envelope.event_id,
            "idempotency_key": envelope.idempotency_key,
            "job_id": job.id,
            "attempt": job.attempt,
        }
        self._log.info(f"Processing event {event_name} with handler {handler.name}", extra=context)

        outcome = handler.handle(event_name, envelope)
        if inspect.isawaitable(outcome):
            outcome = await outcome

        if outcome is None:
            self._log.info(
                f"Event processed successfully: {event_name} by {handler.name}", extra=context
            )
            return JobResult.success()

        if isinstance(outcome, Ok):
            self._log.info(
                f"Event processed successfully: {event_name} by {handler.name}, "
                f"result: {outcome.result!r}",
                extra={**context, "result": repr(outcome.result)},
            )
            return JobResult.success(outcome.result)

        if isinstance(outcome, Error):
            self._log.error(
                f"Event handler failed: {event_name} by {handler.name}, error: {outcome.reason!r}",
                extra={**context, "error": repr(outcome.reason)},
            )
            if job.attempt >= job.max_attempts:
                await self._handle_exhausted(bus, job, event_name, handler, envelope, outcome.reason)
            return JobResult.retryable(outcome.reason)

        # Unexpected returns count as success so they cannot cause retry loops
        self._log.warning(
            f"Event handler returned unexpected value: {outcome!r} "
            f"for {event_name} by {handler.name}",
            extra={**context, "returned": repr(outcome)},
        )
        return JobResult.success(outcome)

    async def _handle_exhausted(
        self,
        bus: EventBus,
        job: Job,
        event_name: str,
        handler: Handler,
        envelope: Envelope,
        error: Any,
    ) -> None:
        # Always logged, whatever the hook does
        self._log.warning(
            f"Event handler exhausted all retry attempts. Event: {event_name}, "
            f"Handler: {handler.name}, Event ID: {envelope.event_id}, Job ID: {job.id}, "
            f"Error: {error!r}",
            extra={
                "event_name": event_name,
                "handler": handler.name,
                "event_id": envelope.event_id,
                "job_id": job.id,
                "attempt": job.attempt,
                "error": repr(error),
            },
        )

        report = ExhaustionReport(
            event_name=event_name,
            handler=handler.name,
            envelope=envelope,
            error=error,
            job_id=job.id,
            attempt=job.attempt,
        )
        try:
            await bus.handle_exhausted(report)
        except Exception as e:
            self._log.error(
                f"Failed to invoke exhaustion hook of {bus.name}: {e!r}",
                extra={
                    "event_name": event_name,
                    "handler": handler.name,
                    "job_id": job.id,
                    "error": repr(e),
                },
                exc_info=True,
            )
