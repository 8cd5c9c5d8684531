"""Tests for InMemoryJobQueue."""

import asyncio

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from relaybus.core.errors import QueueFullError
from relaybus.queues.base import JobRequest, JobStatus
from relaybus.queues.memory import InMemoryJobQueue


def request(name: str = "job", queue: str = "events", priority: int = 2, max_attempts: int = 3):
    return JobRequest(
        worker="relaybus.dispatch",
        payload={"name": name},
        options={"queue": queue, "priority": priority, "max_attempts": max_attempts},
    )


async def drain(job_queue: InMemoryJobQueue, queues=None) -> list[str]:
    names = []
    while (job := await job_queue.pull(queues, timeout=0)) is not None:
        names.append(job.payload["name"])
    return names


# =============================================================================
# Ordering
# =============================================================================


@given(priorities=st.lists(st.integers(min_value=0, max_value=3), min_size=1, max_size=30))
@settings(max_examples=50)
def test_pull_order_is_priority_then_fifo(priorities: list[int]):
    """Jobs come out lowest priority first, in insertion order within a priority."""

    async def run() -> list[str]:
        job_queue = InMemoryJobQueue()
        await job_queue.bulk_create(
            [request(f"{i}", priority=p) for i, p in enumerate(priorities)]
        )
        return await drain(job_queue)

    pulled = asyncio.run(run())
    expected = [f"{i}" for i, _ in sorted(enumerate(priorities), key=lambda item: (item[1], item[0]))]
    assert pulled == expected


class TestPull:
    async def test_empty_queue_times_out(self, job_queue):
        assert await job_queue.pull(timeout=0.01) is None

    async def test_pull_increments_attempt(self, job_queue):
        await job_queue.bulk_create([request()])

        job = await job_queue.pull(timeout=0)

        assert job.attempt == 1
        assert job.status is JobStatus.EXECUTING
        assert job.max_attempts == 3

    async def test_filter_by_queue(self, job_queue):
        await job_queue.bulk_create([request("a", queue="mailers"), request("b", queue="events")])

        assert await drain(job_queue, ["events"]) == ["b"]
        assert await drain(job_queue, ["mailers"]) == ["a"]

    async def test_waiting_pull_wakes_on_insert(self, job_queue):
        async def insert_later():
            await asyncio.sleep(0.01)
            await job_queue.bulk_create([request("late")])

        task = asyncio.create_task(insert_later())
        job = await job_queue.pull(timeout=1.0)
        await task

        assert job is not None
        assert job.payload == {"name": "late"}

    async def test_payload_is_json_copy(self, job_queue):
        payload = {"ids": (1, 2), 3: "x"}
        await job_queue.bulk_create([JobRequest("w", payload, {})])
        payload["ids"] = ()

        job = await job_queue.pull(timeout=0)

        assert job.payload == {"ids": [1, 2], "3": "x"}


# =============================================================================
# Outcomes
# =============================================================================


class TestOutcomes:
    async def test_complete(self, job_queue):
        (job_id,) = await job_queue.bulk_create([request()])
        job = await job_queue.pull(timeout=0)

        await job_queue.complete(job)

        assert job_queue.get_job(job_id).status is JobStatus.COMPLETED
        assert job_queue.qsize() == 0

    async def test_fail_requeues_until_max_attempts(self, job_queue):
        await job_queue.bulk_create([request(max_attempts=2)])

        first = await job_queue.pull(timeout=0)
        assert await job_queue.fail(first, "boom") is True
        assert first.status is JobStatus.RETRYABLE

        second = await job_queue.pull(timeout=0)
        assert second.attempt == 2
        assert await job_queue.fail(second, "boom again") is False

        assert second.status is JobStatus.DISCARDED
        assert second.errors == ["boom", "boom again"]
        assert await job_queue.pull(timeout=0) is None

    async def test_retry_goes_behind_waiting_jobs(self, job_queue):
        await job_queue.bulk_create([request("a"), request("b")])

        a = await job_queue.pull(timeout=0)
        await job_queue.fail(a, "boom")

        assert await drain(job_queue) == ["b", "a"]

    async def test_discard(self, job_queue):
        await job_queue.bulk_create([request()])
        job = await job_queue.pull(timeout=0)

        await job_queue.discard(job, "bad payload")

        assert job.status is JobStatus.DISCARDED
        assert job.errors == ["bad payload"]
        assert job_queue.jobs(JobStatus.DISCARDED) == [job]


# =============================================================================
# Capacity and transactions
# =============================================================================


class TestCapacity:
    async def test_batch_is_all_or_nothing(self):
        job_queue = InMemoryJobQueue(max_size=2)
        await job_queue.bulk_create([request("a")])

        with pytest.raises(QueueFullError):
            await job_queue.bulk_create([request("b"), request("c")])

        assert job_queue.qsize() == 1
        assert len(job_queue.jobs()) == 1

    async def test_unbounded_by_default(self, job_queue):
        await job_queue.bulk_create([request(str(i)) for i in range(500)])
        assert job_queue.qsize() == 500


class TestTransaction:
    async def test_commit(self, job_queue):
        async with job_queue.transaction():
            ids = await job_queue.bulk_create([request("a")])
            assert job_queue.qsize() == 0

        assert job_queue.get_job(ids[0]).status is JobStatus.AVAILABLE
        assert job_queue.qsize() == 1

    async def test_rollback(self, job_queue):
        with pytest.raises(ValueError):
            async with job_queue.transaction():
                await job_queue.bulk_create([request("a")])
                raise ValueError("rollback")

        assert job_queue.jobs() == []

    async def test_nested_joins_outer(self, job_queue):
        with pytest.raises(ValueError):
            async with job_queue.transaction():
                async with job_queue.transaction():
                    await job_queue.bulk_create([request("inner")])
                assert job_queue.qsize() == 0
                raise ValueError("outer fails")

        assert job_queue.jobs() == []

    async def test_commit_respects_capacity(self):
        job_queue = InMemoryJobQueue(max_size=1)

        with pytest.raises(QueueFullError):
            async with job_queue.transaction():
                await job_queue.bulk_create([request("a"), request("b")])

        assert job_queue.jobs() == []

    async def test_concurrent_tasks_do_not_share_transaction(self, job_queue):
        entered = asyncio.Event()
        release = asyncio.Event()

        async def in_transaction():
            async with job_queue.transaction():
                await job_queue.bulk_create([request("tx")])
                entered.set()
                await release.wait()

        task = asyncio.create_task(in_transaction())
        await entered.wait()
        await job_queue.bulk_create([request("outside")])
        assert await drain(job_queue) == ["outside"]

        release.set()
        await task
        assert await drain(job_queue) == ["tx"]
