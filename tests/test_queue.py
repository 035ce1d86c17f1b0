"""Tests for the job brokers (in-memory and SQLite run the same suite).

Covers:
- enqueue de-duplication by execution id
- FIFO delivery, leases, ack/nack
- redelivery backoff, attempt exhaustion and the on_failed hook
- visibility timeout reclaim
- retention pruning and counts
"""

import asyncio
from collections.abc import AsyncIterator
from pathlib import Path

import pytest

from atelier.core.config import QueueConfig
from atelier.queue.base import LEASE_EXPIRED_REASON, JobQueue, JobState
from atelier.queue.memory import InMemoryJobQueue
from atelier.queue.sqlite_queue import SQLiteJobQueue


class FakeClock:
    def __init__(self, start: float = 1_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def queue_config(tmp_path: Path) -> QueueConfig:
    return QueueConfig(
        db_path=tmp_path / "queue.db",
        max_attempts=3,
        backoff_base_seconds=2.0,
        visibility_timeout_seconds=60.0,
        poll_interval_seconds=0.01,
        keep_completed=2,
        keep_failed=1,
    )


@pytest.fixture(params=["memory", "sqlite"])
async def queue(request, queue_config: QueueConfig, clock: FakeClock) -> AsyncIterator[JobQueue]:
    q: JobQueue
    if request.param == "memory":
        q = InMemoryJobQueue(queue_config)
    else:
        q = SQLiteJobQueue(queue_config)
    q._now = clock  # type: ignore[method-assign]
    yield q
    await q.close()


class TestEnqueue:
    """Tests for enqueue."""

    async def test_enqueue_then_dequeue(self, queue: JobQueue, make_job):
        job = make_job("e1")
        receipt = await queue.enqueue(job)
        assert receipt.job_id == "e1"
        assert receipt.attempt == 0
        assert receipt.lease_token is None

        handle = await queue.dequeue(timeout=0.1)
        assert handle is not None
        assert handle.job == job
        assert handle.attempt == 1
        assert handle.lease_token

    async def test_duplicate_execution_id_returns_existing(self, queue: JobQueue, make_job):
        """The execution id is the de-duplication key."""
        await queue.enqueue(make_job("e1", prompts=["first prompt"]))
        receipt = await queue.enqueue(make_job("e1", prompts=["other prompt"]))
        assert receipt.job.input_data.prompts == ["first prompt"]

        counts = await queue.counts()
        assert counts[JobState.WAITING] == 1

    async def test_fifo_order(self, queue: JobQueue, make_job, clock: FakeClock):
        for eid in ("a", "b", "c"):
            await queue.enqueue(make_job(eid))
            clock.advance(0.001)
        order = [(await queue.dequeue(timeout=0.1)).job_id for _ in range(3)]
        assert order == ["a", "b", "c"]

    async def test_dequeue_times_out_when_empty(self, queue: JobQueue):
        assert await queue.dequeue(timeout=0.05) is None


class TestAckNack:
    """Tests for settling deliveries."""

    async def test_ack_completes(self, queue: JobQueue, make_job):
        await queue.enqueue(make_job("e1"))
        handle = await queue.dequeue(timeout=0.1)
        assert await queue.ack(handle) is True

        status = await queue.get_job_status("e1")
        assert status.state == JobState.COMPLETED
        assert status.attempts_made == 1
        assert await queue.dequeue(timeout=0.05) is None

    async def test_nack_schedules_backoff(self, queue: JobQueue, make_job, clock: FakeClock):
        """First retry waits 2s, the second 4s."""
        await queue.enqueue(make_job("e1"))

        handle = await queue.dequeue(timeout=0.1)
        assert await queue.nack(handle, "boom") is True
        status = await queue.get_job_status("e1")
        assert status.state == JobState.DELAYED
        assert status.failed_reason == "boom"
        assert await queue.dequeue(timeout=0.05) is None

        clock.advance(2.0)
        handle = await queue.dequeue(timeout=0.1)
        assert handle.attempt == 2
        await queue.nack(handle, "boom again")

        clock.advance(3.9)
        assert await queue.dequeue(timeout=0.05) is None
        clock.advance(0.1)
        assert (await queue.dequeue(timeout=0.1)).attempt == 3

    async def test_exhaustion_fails_job_and_fires_hook(
        self, queue: JobQueue, make_job, clock: FakeClock
    ):
        calls: list[tuple[str, str]] = []

        async def on_failed(job, reason):
            calls.append((job.execution_id, reason))

        queue.on_failed(on_failed)
        await queue.enqueue(make_job("e1"))
        for _ in range(3):
            handle = await queue.dequeue(timeout=0.1)
            await queue.nack(handle, "crash")
            clock.advance(10.0)

        status = await queue.get_job_status("e1")
        assert status.state == JobState.FAILED
        assert status.attempts_made == 3
        assert calls == [("e1", "crash")]
        assert await queue.dequeue(timeout=0.05) is None

    async def test_failing_hook_does_not_break_broker(self, queue: JobQueue, make_job):
        async def broken(job, reason):
            raise RuntimeError("hook down")

        queue.config.max_attempts = 1
        queue.on_failed(broken)
        await queue.enqueue(make_job("e1"))
        handle = await queue.dequeue(timeout=0.1)
        assert await queue.nack(handle, "crash") is True
        assert (await queue.get_job_status("e1")).state == JobState.FAILED

    async def test_stale_lease_rejected(self, queue: JobQueue, make_job):
        await queue.enqueue(make_job("e1"))
        handle = await queue.dequeue(timeout=0.1)
        await queue.ack(handle)
        assert await queue.ack(handle) is False
        assert await queue.nack(handle, "late") is False


class TestVisibilityTimeout:
    """Tests for abandoned deliveries."""

    async def test_expired_lease_is_redelivered(
        self, queue: JobQueue, make_job, clock: FakeClock
    ):
        await queue.enqueue(make_job("e1"))
        first = await queue.dequeue(timeout=0.1)

        clock.advance(61.0)
        assert await queue.dequeue(timeout=0.05) is None  # reclaimed, now backing off
        status = await queue.get_job_status("e1")
        assert status.state == JobState.DELAYED
        assert status.failed_reason == LEASE_EXPIRED_REASON

        clock.advance(2.0)
        second = await queue.dequeue(timeout=0.1)
        assert second.attempt == 2
        assert second.lease_token != first.lease_token

        # The slow first delivery can no longer settle the job
        assert await queue.ack(first) is False
        assert await queue.ack(second) is True

    async def test_expired_last_attempt_fails(
        self, queue: JobQueue, make_job, clock: FakeClock
    ):
        reasons: list[str] = []

        async def on_failed(job, reason):
            reasons.append(reason)

        queue.config.max_attempts = 1
        queue.on_failed(on_failed)
        await queue.enqueue(make_job("e1"))
        await queue.dequeue(timeout=0.1)

        clock.advance(61.0)
        assert await queue.dequeue(timeout=0.05) is None
        assert (await queue.get_job_status("e1")).state == JobState.FAILED
        assert reasons == [LEASE_EXPIRED_REASON]

    async def test_extend_keeps_live_delivery(
        self, queue: JobQueue, make_job, clock: FakeClock
    ):
        """A renewed lease survives past the original visibility timeout."""
        await queue.enqueue(make_job("e1"))
        handle = await queue.dequeue(timeout=0.1)

        for _ in range(3):
            clock.advance(45.0)
            assert await queue.extend(handle) is True
            assert await queue.dequeue(timeout=0.02) is None

        status = await queue.get_job_status("e1")
        assert status.state == JobState.ACTIVE
        assert status.attempts_made == 1
        assert await queue.ack(handle) is True

    async def test_extend_after_reclaim_is_rejected(
        self, queue: JobQueue, make_job, clock: FakeClock
    ):
        await queue.enqueue(make_job("e1"))
        first = await queue.dequeue(timeout=0.1)
        clock.advance(61.0)
        await queue.dequeue(timeout=0.02)
        clock.advance(2.0)
        second = await queue.dequeue(timeout=0.1)

        assert await queue.extend(first) is False
        assert await queue.extend(second) is True


class TestRetention:
    """Tests for pruning of finished jobs."""

    async def test_keeps_latest_completed(self, queue: JobQueue, make_job, clock: FakeClock):
        for eid in ("a", "b", "c"):
            await queue.enqueue(make_job(eid))
        for _ in range(3):
            handle = await queue.dequeue(timeout=0.1)
            await queue.ack(handle)
            clock.advance(1.0)

        counts = await queue.counts()
        assert counts[JobState.COMPLETED] == 2
        assert await queue.get_job_status("a") is None
        assert await queue.get_job_status("c") is not None

    async def test_keeps_latest_failed(self, queue: JobQueue, make_job, clock: FakeClock):
        queue.config.max_attempts = 1
        for eid in ("a", "b"):
            await queue.enqueue(make_job(eid))
        for _ in range(2):
            handle = await queue.dequeue(timeout=0.1)
            await queue.nack(handle, "x")
            clock.advance(1.0)

        counts = await queue.counts()
        assert counts[JobState.FAILED] == 1
        assert await queue.get_job_status("a") is None


class TestBlockingDequeue:
    async def test_dequeue_wakes_on_enqueue(self, queue: JobQueue, make_job):
        waiter = asyncio.create_task(queue.dequeue(timeout=2.0))
        await asyncio.sleep(0.02)
        await queue.enqueue(make_job("e1"))
        handle = await waiter
        assert handle is not None
        assert handle.job_id == "e1"


class TestSQLiteQueueDurability:
    async def test_jobs_survive_new_instance(self, queue_config: QueueConfig, make_job):
        first = SQLiteJobQueue(queue_config)
        await first.enqueue(make_job("e1"))

        second = SQLiteJobQueue(queue_config)
        handle = await second.dequeue(timeout=0.5)
        assert handle is not None
        assert handle.job.execution_id == "e1"

    async def test_queue_names_are_isolated(self, queue_config: QueueConfig, make_job):
        other = SQLiteJobQueue(queue_config.model_copy(update={"name": "other"}))
        await SQLiteJobQueue(queue_config).enqueue(make_job("e1"))
        assert await other.dequeue(timeout=0.05) is None
