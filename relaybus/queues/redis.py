"""Redis Streams job queue.

Features:
- One stream per queue name, consumer groups with XREADGROUP/XACK
- Atomic batch inserts with MULTI/EXEC, joinable through transaction()
- Pending job recovery (XPENDING/XCLAIM) for crashed consumers
- Retries re-added with the next attempt number, dead letter stream after
  the last attempt
- Connection pooling with automatic reconnection
- Health checks
"""

import asyncio
import json
import logging
import time
from collections.abc import AsyncIterator, Sequence
from contextlib import asynccontextmanager
from contextvars import ContextVar
from dataclasses import asdict, dataclass
from datetime import UTC, datetime
from typing import Any
from urllib.parse import urlparse, urlunparse
from uuid import uuid4

from relaybus.queues.base import Job, JobRequest, JobStatus

logger = logging.getLogger("relaybus.queues.redis")


def _sanitize_url(url: str) -> str:
    """Mask password in Redis URL for logging."""
    try:
        parsed = urlparse(url)
        if parsed.password:
            netloc = f"{parsed.username or ''}:****@{parsed.hostname}"
            if parsed.port:
                netloc += f":{parsed.port}"
            return urlunparse(
                (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
            )
        return f"{parsed.hostname}:{parsed.port or 6379}"
    except ValueError:
        return "<url>"


@dataclass
class QueueHealth:
    """Health check result."""

    healthy: bool
    latency_ms: float
    details: dict[str, Any]


@dataclass
class RedisQueueMetrics:
    jobs_created: int = 0
    jobs_pulled: int = 0
    jobs_completed: int = 0
    jobs_retried: int = 0
    jobs_dead_lettered: int = 0
    reconnections: int = 0
    pending_recovered: int = 0


def _serialize_job(job: Job) -> str:
    data = asdict(job)
    data["status"] = job.status.value
    data["inserted_at"] = job.inserted_at.isoformat()
    return json.dumps(data, default=str)


def _deserialize_job(raw: str) -> Job:
    data = json.loads(raw)
    data["status"] = JobStatus(data["status"])
    data["inserted_at"] = datetime.fromisoformat(data["inserted_at"])
    return Job(**data)


class RedisJobQueue:
    """Durable job queue on Redis Streams.

    Priority is not reordered within a stream; jobs of one queue are pulled
    in insertion order.
    """

    def __init__(
        self,
        redis_url: str = "redis://localhost:6379",
        prefix: str = "relaybus",
        queues: Sequence[str] = ("events",),
        consumer_group: str = "relaybus",
        consumer_name: str | None = None,
        pool_size: int = 10,
        claim_min_idle_ms: int = 30000,
        dlq_stream: str | None = None,
    ) -> None:
        """Initialize Redis job queue.

        Args:
            redis_url: Redis connection URL.
            prefix: Key prefix for every stream this queue uses.
            queues: Queue names pulled when ``pull`` gets no explicit list.
            consumer_group: Consumer group name.
            consumer_name: Unique consumer name (auto-generated if None).
            pool_size: Connection pool size.
            claim_min_idle_ms: Min idle time before claiming pending messages.
            dlq_stream: Dead letter stream (default: {prefix}:dlq).
        """
        self._url = redis_url
        self._url_safe = _sanitize_url(redis_url)
        self.prefix = prefix
        self.queues = tuple(queues)
        self.consumer_group = consumer_group
        self.consumer_name = consumer_name or f"consumer-{uuid4().hex[:8]}"
        self._pool_size = pool_size
        self._claim_min_idle_ms = claim_min_idle_ms
        self.dlq_stream = dlq_stream or f"{prefix}:dlq"

        self._redis: Any = None
        self._connected = False
        self._groups_created: set[str] = set()
        self._metrics = RedisQueueMetrics()
        # job id -> (stream, message id) for jobs pulled by this consumer
        self._inflight: dict[str, tuple[str, str]] = {}
        self._inflight_lock = asyncio.Lock()
        self._conn_lock = asyncio.Lock()
        self._transaction: ContextVar[list[tuple[str, str]] | None] = ContextVar(
            f"relaybus_redis_tx_{id(self)}", default=None
        )

    @property
    def metrics(self) -> RedisQueueMetrics:
        return self._metrics

    def stream_key(self, queue: str) -> str:
        return f"{self.prefix}:queue:{queue}"

    async def _get_client(self) -> Any:
        """Get Redis client with connection pooling, reconnecting if needed."""
        try:
            from redis.asyncio import ConnectionPool, Redis
        except ImportError as e:
            raise ImportError("Install redis: pip install relaybus[redis]") from e

        if self._redis is not None:
            try:
                await self._redis.ping()
                return self._redis
            except Exception as e:
                logger.warning(f"Redis connection lost: {e}, reconnecting...")

        async with self._conn_lock:
            # Another coroutine may have reconnected while we waited
            if self._redis is not None:
                try:
                    await self._redis.ping()
                    return self._redis
                except Exception:
                    pass

            old_redis = self._redis
            if old_redis is not None:
                try:
                    await old_redis.aclose()
                except Exception as close_err:
                    logger.debug(f"Error closing old connection: {close_err}")

            is_reconnection = self._connected
            pool = ConnectionPool.from_url(
                self._url, max_connections=self._pool_size, decode_responses=True
            )
            new_redis = Redis(connection_pool=pool)
            try:
                await new_redis.ping()
            except Exception:
                await new_redis.aclose()
                raise

            self._redis = new_redis
            self._connected = True
            if is_reconnection:
                self._metrics.reconnections += 1
                self._groups_created.clear()
                logger.info(f"Reconnected to Redis at {self._url_safe}")
            else:
                logger.info(f"Connected to Redis at {self._url_safe}")
            return self._redis

    async def _ensure_consumer_group(self, stream: str) -> None:
        if stream in self._groups_created:
            return
        redis = await self._get_client()
        try:
            await redis.xgroup_create(stream, self.consumer_group, id="0", mkstream=True)
            logger.info(f"Created consumer group '{self.consumer_group}' on '{stream}'")
        except Exception as e:
            if "BUSYGROUP" not in str(e):
                raise
        self._groups_created.add(stream)

    async def _write(self, entries: list[tuple[str, str]]) -> None:
        """XADD every entry in one MULTI/EXEC block."""
        if not entries:
            return
        for stream in {stream for stream, _ in entries}:
            await self._ensure_consumer_group(stream)
        redis = await self._get_client()
        async with redis.pipeline(transaction=True) as pipe:
            for stream, raw in entries:
                pipe.xadd(stream, {"job": raw})
            await pipe.execute()

    async def bulk_create(self, requests: list[JobRequest]) -> list[str]:
        jobs = [
            Job(
                id=str(uuid4()),
                worker=request.worker,
                payload=request.payload,
                options=dict(request.options),
                max_attempts=int(request.options.get("max_attempts", 1)),
            )
            for request in requests
        ]
        entries = [(self.stream_key(job.queue), _serialize_job(job)) for job in jobs]

        staged = self._transaction.get()
        if staged is not None:
            staged.extend(entries)
        else:
            await self._write(entries)
            self._metrics.jobs_created += len(jobs)
        return [job.id for job in jobs]

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[None]:
        """Buffer bulk_create writes and execute them atomically on clean exit."""
        if self._transaction.get() is not None:
            yield
            return

        staged: list[tuple[str, str]] = []
        token = self._transaction.set(staged)
        try:
            yield
        except BaseException:
            logger.debug(f"Transaction rolled back, dropping {len(staged)} staged job(s)")
            raise
        else:
            await self._write(staged)
            self._metrics.jobs_created += len(staged)
        finally:
            self._transaction.reset(token)

    async def _track(self, stream: str, message: tuple[str, dict[str, str] | None]) -> Job | None:
        msg_id, data = message
        data = data or {}
        try:
            job = _deserialize_job(data["job"])
        except (KeyError, TypeError, ValueError) as e:
            logger.error(f"Failed to deserialize {msg_id} on {stream}: {e}")
            await self._dead_letter(stream, msg_id, data.get("job", "{}"), f"Undecodable job: {e}")
            return None

        job.attempt += 1
        job.status = JobStatus.EXECUTING
        async with self._inflight_lock:
            self._inflight[job.id] = (stream, msg_id)
        return job

    async def _recover_pending(self, streams: list[str]) -> Job | None:
        """Claim jobs left pending by consumers that stopped mid-attempt."""
        redis = await self._get_client()
        for stream in streams:
            try:
                pending = await redis.xpending_range(
                    stream, self.consumer_group, min="-", max="+", count=10
                )
            except Exception as e:
                logger.debug(f"XPENDING failed on {stream}: {e}")
                continue

            for entry in pending:
                if entry["time_since_delivered"] < self._claim_min_idle_ms:
                    continue
                msg_id = entry["message_id"]
                try:
                    claimed = await redis.xclaim(
                        stream,
                        self.consumer_group,
                        self.consumer_name,
                        min_idle_time=self._claim_min_idle_ms,
                        message_ids=[msg_id],
                    )
                except Exception as e:
                    logger.warning(f"Failed to claim {msg_id}: {e}")
                    continue
                if not claimed:
                    continue

                job = await self._track(stream, claimed[0])
                if job is None:
                    continue
                # Every earlier delivery of this message was an attempt that never reported back
                job.attempt += entry["times_delivered"]
                if job.attempt > job.max_attempts:
                    # The crashed attempt was the last one allowed
                    await self._dead_letter(
                        stream, msg_id, _serialize_job(job), "Exceeded max attempts"
                    )
                    async with self._inflight_lock:
                        self._inflight.pop(job.id, None)
                    continue
                self._metrics.pending_recovered += 1
                return job
        return None

    async def pull(self, queues: Sequence[str] | None = None, timeout: float = 1.0) -> Job | None:
        """Read the next job using XREADGROUP, recovering stale pending jobs first."""
        streams = [self.stream_key(queue) for queue in (queues or self.queues)]
        for stream in streams:
            await self._ensure_consumer_group(stream)
        redis = await self._get_client()

        recovered = await self._recover_pending(streams)
        if recovered is not None:
            return recovered

        try:
            response = await redis.xreadgroup(
                groupname=self.consumer_group,
                consumername=self.consumer_name,
                streams={stream: ">" for stream in streams},
                count=1,
                block=max(int(timeout * 1000), 1),
            )
        except Exception as e:
            logger.error(f"XREADGROUP failed: {e}")
            self._redis = None
            raise

        for stream, messages in response or []:
            if messages:
                job = await self._track(stream, messages[0])
                if job is not None:
                    self._metrics.jobs_pulled += 1
                return job
        return None

    async def _pop_inflight(self, job: Job) -> tuple[str, str] | None:
        async with self._inflight_lock:
            location = self._inflight.pop(job.id, None)
        if location is None:
            logger.warning(f"No message ID found for job {job.id}, cannot ack")
        return location

    async def complete(self, job: Job) -> None:
        location = await self._pop_inflight(job)
        if location is None:
            return
        stream, msg_id = location
        redis = await self._get_client()
        await redis.xack(stream, self.consumer_group, msg_id)
        self._metrics.jobs_completed += 1

    async def fail(self, job: Job, error: str) -> bool:
        job.errors.append(error)
        location = await self._pop_inflight(job)
        if location is None:
            return False
        stream, msg_id = location

        if job.attempt >= job.max_attempts:
            job.status = JobStatus.DISCARDED
            await self._dead_letter(stream, msg_id, _serialize_job(job), error)
            return False

        job.status = JobStatus.RETRYABLE
        redis = await self._get_client()
        async with redis.pipeline(transaction=True) as pipe:
            pipe.xack(stream, self.consumer_group, msg_id)
            pipe.xadd(stream, {"job": _serialize_job(job)})
            await pipe.execute()
        self._metrics.jobs_retried += 1
        return True

    async def discard(self, job: Job, reason: str) -> None:
        job.errors.append(reason)
        job.status = JobStatus.DISCARDED
        location = await self._pop_inflight(job)
        if location is None:
            return
        stream, msg_id = location
        await self._dead_letter(stream, msg_id, _serialize_job(job), reason)

    async def _dead_letter(self, stream: str, msg_id: str, raw_job: str, reason: str) -> None:
        """Move a message to the dead letter stream and ack the original."""
        redis = await self._get_client()
        async with redis.pipeline(transaction=True) as pipe:
            pipe.xadd(
                self.dlq_stream,
                {
                    "original_id": msg_id,
                    "stream": stream,
                    "job": raw_job,
                    "reason": reason,
                    "failed_at": datetime.now(UTC).isoformat(),
                },
            )
            pipe.xack(stream, self.consumer_group, msg_id)
            await pipe.execute()
        self._metrics.jobs_dead_lettered += 1
        logger.warning(f"Moved {msg_id} from {stream} to {self.dlq_stream}: {reason}")

    async def dead_letters(self, count: int = 100) -> list[dict[str, Any]]:
        """Return up to ``count`` dead-lettered entries, oldest first."""
        redis = await self._get_client()
        entries = await redis.xrange(self.dlq_stream, min="-", max="+", count=count)
        return [
            {**fields, "job": json.loads(fields["job"]), "message_id": msg_id}
            for msg_id, fields in entries
        ]

    async def health(self) -> QueueHealth:
        start = time.monotonic()
        try:
            redis = await self._get_client()
            await redis.ping()
            lengths = {queue: await redis.xlen(self.stream_key(queue)) for queue in self.queues}
            return QueueHealth(
                healthy=True,
                latency_ms=(time.monotonic() - start) * 1000,
                details={
                    "stream_lengths": lengths,
                    "consumer_group": self.consumer_group,
                    "consumer_name": self.consumer_name,
                    "metrics": asdict(self._metrics),
                },
            )
        except Exception as e:
            return QueueHealth(
                healthy=False,
                latency_ms=(time.monotonic() - start) * 1000,
                details={"error": str(e)},
            )

    async def close(self) -> None:
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None
            logger.info("Closed Redis connection")

    async def delete_streams(self) -> None:
        """Delete every stream this queue uses (for testing)."""
        redis = await self._get_client()
        keys = [self.stream_key(queue) for queue in self.queues]
        await redis.delete(*keys, self.dlq_stream)
        self._groups_created.clear()
