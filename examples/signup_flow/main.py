#!/usr/bin/env python3
"""
Signup Flow - relaybus Demo Application

Run modes:
  python main.py                              # Demo with sample signups
  python main.py --count 200 --quiet          # Larger batch
  python main.py --redis redis://localhost:6379   # Durable Redis Streams queue
"""

import argparse
import asyncio
import logging
import random
import sys
import time
import uuid
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent))

from handlers import AuditTrail, CrmSync, WelcomeEmail

from relaybus import (
    DispatchWorker,
    EventBus,
    EventRegistry,
    ExhaustionReport,
    InMemoryJobQueue,
    RedisJobQueue,
    Runner,
)

logging.basicConfig(level=logging.INFO, format="%(message)s", stream=sys.stderr)

PLANS = ["free", "free", "pro", "team"]


class SignupRejected(Exception):
    """Simulated failure of the surrounding database transaction."""


def create_sample_signups(count: int) -> list[dict]:
    return [
        {
            "user_id": f"user_{i:03d}",
            "email": f"user{i}@example.com",
            "plan": random.choice(PLANS),
        }
        for i in range(count)
    ]


def build_bus(job_queue, exhausted: list[ExhaustionReport], failure_rate: float) -> EventBus:
    audit = AuditTrail()
    registry = EventRegistry(
        {
            "user_signed_up": [
                (WelcomeEmail(failure_rate=failure_rate), {"priority": 0, "max_attempts": 5}),
                (CrmSync, {"condition": ("handlers.crm_sync:is_paying", [["pro", "team"]])}),
                (audit, {"queue": "audit", "priority": 3}),
            ],
            "user_deleted": [audit],
        }
    )
    return EventBus(
        registry,
        job_queue,
        name="signup",
        job_defaults={"tags": ["signup"]},
        exhaustion_hook=exhausted.append,
    )


async def signup(bus: EventBus, job_queue, user: dict, reject_rate: float) -> bool:
    """Create the user and emit inside one unit of work."""
    correlation_id = str(uuid.uuid4())
    try:
        async with job_queue.transaction():
            await bus.emit("user_signed_up", user, correlation_id=correlation_id)
            if random.random() < reject_rate:
                raise SignupRejected(user["user_id"])
    except SignupRejected:
        return False
    return True


async def run_flow(args: argparse.Namespace) -> None:
    if args.redis:
        job_queue = RedisJobQueue(redis_url=args.redis, queues=("events", "audit"))
    else:
        job_queue = InMemoryJobQueue()

    exhausted: list[ExhaustionReport] = []
    bus = build_bus(job_queue, exhausted, args.failure_rate)
    users = create_sample_signups(args.count)

    committed = 0
    for user in users:
        committed += await signup(bus, job_queue, user, args.reject_rate)

    if not args.quiet:
        print("=" * 60)
        print("SIGNUP FLOW")
        print("=" * 60)
        print(f"  Signups: {len(users)} ({committed} committed, {len(users) - committed} rolled back)")
        print("\nProcessing...\n")

    runner = Runner(
        job_queue,
        DispatchWorker(bus),
        queues=["events", "audit"],
        concurrency=args.concurrency,
        drain=True,
        poll_timeout=0.1,
    )
    start = time.monotonic()
    stats = await runner.run()
    elapsed = time.monotonic() - start

    if isinstance(job_queue, RedisJobQueue):
        await job_queue.close()

    if args.quiet:
        return

    print("\n" + "=" * 60)
    print("RESULTS")
    print("=" * 60)
    print(f"  Jobs processed: {stats.jobs_processed}")
    print(f"  Succeeded: {stats.jobs_succeeded}")
    print(f"  Retried: {stats.jobs_retried}")
    print(f"  Discarded: {stats.jobs_discarded}")
    print(f"  Time: {elapsed:.2f}s")
    if exhausted:
        print(f"\n  Exhausted: {len(exhausted)} job(s)")
        for report in exhausted[:3]:
            print(f"    - {report.handler} for {report.envelope.data.get('user_id')}: {report.error}")


def main():
    parser = argparse.ArgumentParser(description="Signup Flow Demo")
    parser.add_argument("--count", type=int, default=10, help="Number of signups")
    parser.add_argument("--redis", type=str, help="Redis URL; in-memory queue when omitted")
    parser.add_argument("--concurrency", type=int, default=4, help="Jobs executed at once")
    parser.add_argument("--failure-rate", type=float, default=0.3, help="Simulated SMTP failure rate")
    parser.add_argument("--reject-rate", type=float, default=0.2, help="Simulated rollback rate")
    parser.add_argument("--quiet", "-q", action="store_true", help="Minimal output")
    args = parser.parse_args()

    asyncio.run(run_flow(args))


if __name__ == "__main__":
    main()
