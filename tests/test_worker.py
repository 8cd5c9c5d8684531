"""Tests for DispatchWorker.perform."""

import logging

import pytest

from relaybus.core.bus import EventBus, ExhaustionReport
from relaybus.core.handler import Error, Ok
from relaybus.core.worker import DispatchWorker, JobResult, JobState
from relaybus.queues.base import DISPATCH_WORKER, Job
from tests.conftest import AsyncRecordingHandler, RaisingHandler, RecordingHandler


async def emit_and_pull(bus: EventBus, event_name: str = "user_created", data=None) -> Job:
    await bus.emit(event_name, data if data is not None else {"user_id": 1})
    job = await bus.job_queue.pull(timeout=0)
    assert job is not None
    return job


def job_with_payload(payload, attempt: int = 1, max_attempts: int = 3) -> Job:
    return Job(
        id="job-1",
        worker=DISPATCH_WORKER,
        payload=payload,
        options={"max_attempts": max_attempts},
        attempt=attempt,
        max_attempts=max_attempts,
    )


def valid_payload(**changes):
    payload = {
        "event_name": "user_created",
        "handler": "Email",
        "originating_module": "relaybus",
        "data": {"user_id": 1},
        "event_id": "evt-1",
        "idempotency_key": "key-1",
        "causation_id": None,
        "correlation_id": None,
    }
    payload.update(changes)
    return payload


# =============================================================================
# Outcomes
# =============================================================================


class TestOutcomes:
    async def test_none_is_success(self, job_queue):
        handler = RecordingHandler(name="Email")
        bus = EventBus({"user_created": [handler]}, job_queue)
        job = await emit_and_pull(bus)

        result = await DispatchWorker(bus).perform(job)

        assert result == JobResult.success()
        assert result.ok
        assert len(handler.calls) == 1

    async def test_handler_receives_envelope(self, job_queue):
        handler = RecordingHandler(name="Email")
        bus = EventBus({"user_created": [handler]}, job_queue)
        (record,) = await bus.emit("user_created", {"user_id": 1}, correlation_id="req-1")
        job = await job_queue.pull(timeout=0)

        await DispatchWorker(bus).perform(job)

        ((event_name, envelope),) = handler.calls
        assert event_name == "user_created"
        assert envelope == record.envelope
        assert envelope.correlation_id == "req-1"

    async def test_ok_is_success_with_result(self, job_queue):
        bus = EventBus({"user_created": [RecordingHandler(name="Email", returns=Ok("sent"))]}, job_queue)
        job = await emit_and_pull(bus)

        result = await DispatchWorker(bus).perform(job)

        assert result.state is JobState.SUCCESS
        assert result.result == "sent"

    async def test_error_is_retryable(self, job_queue):
        bus = EventBus(
            {"user_created": [RecordingHandler(name="Email", returns=Error("smtp down"))]}, job_queue
        )
        job = await emit_and_pull(bus)

        result = await DispatchWorker(bus).perform(job)

        assert result == JobResult.retryable("smtp down")
        assert not result.ok

    async def test_async_handler(self, job_queue):
        handler = AsyncRecordingHandler(name="Email", returns=Ok(1))
        bus = EventBus({"user_created": [handler]}, job_queue)
        job = await emit_and_pull(bus)

        result = await DispatchWorker(bus).perform(job)

        assert result.result == 1
        assert len(handler.calls) == 1

    async def test_unexpected_return_is_success_with_warning(self, job_queue, log_capture):
        bus = EventBus({"user_created": [RecordingHandler(name="Email", returns="done")]}, job_queue)
        worker = DispatchWorker(bus)
        capture = log_capture("relaybus.worker")
        job = await emit_and_pull(bus)

        result = await worker.perform(job)

        assert result == JobResult.success("done")
        (warning,) = capture.messages(logging.WARNING)
        assert warning.startswith("Event handler returned unexpected value: 'done'")

    async def test_exceptions_propagate(self, job_queue):
        handler = RaisingHandler(name="Email", error=ValueError("bad row"))
        bus = EventBus({"user_created": [handler]}, job_queue)
        job = await emit_and_pull(bus)

        with pytest.raises(ValueError, match="bad row"):
            await DispatchWorker(bus).perform(job)
        assert handler.calls == 1


# =============================================================================
# Invalid jobs
# =============================================================================


class TestInvalidJobs:
    @pytest.fixture
    def handler(self):
        return RecordingHandler(name="Email")

    @pytest.fixture
    def worker(self, handler, job_queue):
        return DispatchWorker(EventBus({"user_created": [handler]}, job_queue))

    async def test_valid_payload_runs(self, worker, handler):
        result = await worker.perform(job_with_payload(valid_payload()))
        assert result.ok
        assert handler.calls[0][1].idempotency_key == "key-1"

    @pytest.mark.parametrize(
        "field",
        ["event_name", "handler", "originating_module", "data", "event_id", "idempotency_key"],
    )
    async def test_missing_field_is_permanent(self, worker, handler, field):
        payload = valid_payload()
        del payload[field]

        result = await worker.perform(job_with_payload(payload))

        assert result.state is JobState.PERMANENT_FAILURE
        assert field in result.reason
        assert handler.calls == []

    async def test_null_event_id_is_permanent(self, worker, handler):
        result = await worker.perform(job_with_payload(valid_payload(event_id=None)))

        assert result.state is JobState.PERMANENT_FAILURE
        assert handler.calls == []

    async def test_optional_fields_may_be_absent(self, worker, handler):
        payload = valid_payload()
        del payload["causation_id"]
        del payload["correlation_id"]

        result = await worker.perform(job_with_payload(payload))

        assert result.ok

    @pytest.mark.parametrize(
        "changes",
        [
            {"originating_module": "other_service"},
            {"event_name": "user_deleted"},
            {"handler": "builtins.eval"},
        ],
    )
    async def test_unknown_reference_is_permanent(self, worker, handler, changes):
        result = await worker.perform(job_with_payload(valid_payload(**changes)))

        assert result.state is JobState.PERMANENT_FAILURE
        assert handler.calls == []

    async def test_malformed_envelope_is_permanent(self, worker, handler):
        result = await worker.perform(job_with_payload(valid_payload(data="not a mapping")))

        assert result.state is JobState.PERMANENT_FAILURE
        assert handler.calls == []

    async def test_payload_not_a_mapping(self, worker):
        result = await worker.perform(job_with_payload(["user_created"]))
        assert result.state is JobState.PERMANENT_FAILURE

    async def test_invalid_job_is_logged(self, worker, log_capture):
        capture = log_capture("relaybus.worker")
        payload = valid_payload()
        del payload["event_id"]

        await worker.perform(job_with_payload(payload))

        (message,) = capture.messages(logging.ERROR)
        assert message.startswith("DispatchWorker received invalid job arguments")


# =============================================================================
# Exhaustion
# =============================================================================


class TestExhaustion:
    def make(self, job_queue, hook, returns=Error("smtp down"), max_attempts=3):
        bus = EventBus(
            {"user_created": [(RecordingHandler(name="Email", returns=returns), {"max_attempts": max_attempts})]},
            job_queue,
            exhaustion_hook=hook,
        )
        return bus, DispatchWorker(bus)

    async def test_hook_runs_on_final_attempt(self, job_queue):
        reports: list[ExhaustionReport] = []
        bus, worker = self.make(job_queue, reports.append, max_attempts=1)
        (record,) = await bus.emit("user_created", {"user_id": 1})
        job = await job_queue.pull(timeout=0)

        result = await worker.perform(job)

        assert result == JobResult.retryable("smtp down")
        (report,) = reports
        assert report.event_name == "user_created"
        assert report.handler == "Email"
        assert report.envelope == record.envelope
        assert report.error == "smtp down"
        assert report.job_id == job.id
        assert report.attempt == 1

    async def test_hook_not_run_before_final_attempt(self, job_queue):
        reports = []
        bus, worker = self.make(job_queue, reports.append, max_attempts=3)
        job = await emit_and_pull(bus)

        for attempt in (1, 2):
            job.attempt = attempt
            await worker.perform(job)
        assert reports == []

        job.attempt = 3
        await worker.perform(job)
        assert len(reports) == 1

    async def test_hook_not_run_on_success(self, job_queue):
        reports = []
        bus, worker = self.make(job_queue, reports.append, returns=Ok(), max_attempts=1)
        job = await emit_and_pull(bus)

        await worker.perform(job)

        assert reports == []

    async def test_hook_not_run_for_exceptions(self, job_queue):
        reports = []
        bus = EventBus(
            {"user_created": [(RaisingHandler(name="Email"), {"max_attempts": 1})]},
            job_queue,
            exhaustion_hook=reports.append,
        )
        job = await emit_and_pull(bus)

        with pytest.raises(RuntimeError):
            await DispatchWorker(bus).perform(job)
        assert reports == []

    async def test_exhaustion_is_logged(self, job_queue, log_capture):
        bus, worker = self.make(job_queue, None, max_attempts=1)
        capture = log_capture("relaybus.worker")
        job = await emit_and_pull(bus)

        await worker.perform(job)

        (warning,) = capture.messages(logging.WARNING)
        assert "exhausted all retry attempts" in warning
        assert "Handler: Email" in warning
        assert f"Job ID: {job.id}" in warning

    async def test_failing_hook_does_not_change_outcome(self, job_queue, log_capture):
        def hook(report):
            raise RuntimeError("pager offline")

        bus, worker = self.make(job_queue, hook, max_attempts=1)
        capture = log_capture("relaybus.worker")
        job = await emit_and_pull(bus)

        result = await worker.perform(job)

        assert result == JobResult.retryable("smtp down")
        hook_errors = [m for m in capture.messages(logging.ERROR) if "exhaustion hook" in m]
        assert len(hook_errors) == 1
        assert hook_errors[0].startswith("Failed to invoke exhaustion hook of relaybus")

    async def test_hook_of_originating_bus_is_used(self, job_queue):
        accounts_reports, billing_reports = [], []
        accounts = EventBus(
            {"user_created": [(RecordingHandler(name="Email", returns=Error("x")), {"max_attempts": 1})]},
            job_queue,
            name="accounts",
            exhaustion_hook=accounts_reports.append,
        )
        billing = EventBus(
            {"invoice_paid": [(RecordingHandler(name="Receipt", returns=Error("y")), {"max_attempts": 1})]},
            job_queue,
            name="billing",
            exhaustion_hook=billing_reports.append,
        )
        worker = DispatchWorker(accounts, billing)

        await billing.emit("invoice_paid", {})
        await worker.perform(await job_queue.pull(timeout=0))

        assert accounts_reports == []
        assert [r.handler for r in billing_reports] == ["Receipt"]


# =============================================================================
# Construction and logging
# =============================================================================


class TestWorkerSetup:
    def test_needs_a_bus(self):
        with pytest.raises(ValueError, match="at least one"):
            DispatchWorker()

    def test_bus_names_must_be_unique(self, job_queue):
        with pytest.raises(ValueError, match="Duplicate"):
            DispatchWorker(EventBus({}, job_queue), EventBus({}, job_queue))

    async def test_processing_is_logged_with_context(self, job_queue, log_capture):
        bus = EventBus({"user_created": [RecordingHandler(name="Email")]}, job_queue)
        worker = DispatchWorker(bus)
        capture = log_capture("relaybus.worker")
        job = await emit_and_pull(bus)

        await worker.perform(job)

        first, second = capture.records
        assert first.getMessage() == "Processing event user_created with handler Email"
        assert second.getMessage() == "Event processed successfully: user_created by Email"
        assert first.job_id == job.id
        assert first.attempt == 1
        assert first.idempotency_key == job.payload["idempotency_key"]
