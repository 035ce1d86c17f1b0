"""Tests for WorkerPool against the in-memory queue and store."""

import asyncio
from unittest.mock import AsyncMock, patch

import pytest

from atelier.collaborators.credentials import StaticCredentialResolver
from atelier.collaborators.storage import InMemoryStorageBackend
from atelier.core.config import QueueConfig, StorageConfig, WorkerConfig
from atelier.core.errors import LeaseLostError
from atelier.core.models import BatchStatus, ExecutionStatus
from atelier.generation.client import GenerationClient, GenerationResult
from atelier.queue.base import JobState
from atelier.queue.memory import InMemoryJobQueue
from atelier.state.memory import InMemoryExecutionStore
from atelier.worker.pool import SHUTDOWN_REASON, WorkerPool
from atelier.worker.processor import EXHAUSTED_MESSAGE, INTERRUPTED_MESSAGE, BatchProcessor

OK = GenerationResult(
    success=True, processing_time_ms=10, attempts=1, image_data=b"img", mime_type="image/png"
)


@pytest.fixture
def store() -> InMemoryExecutionStore:
    return InMemoryExecutionStore()


@pytest.fixture
def client() -> AsyncMock:
    mock = AsyncMock(spec=GenerationClient)
    mock.generate.return_value = OK
    return mock


@pytest.fixture
def processor(store, client) -> BatchProcessor:
    return BatchProcessor(
        store=store,
        client=client,
        storage=InMemoryStorageBackend(),
        credentials=StaticCredentialResolver({"GEMINI_KEY": "key-123"}),
        storage_config=StorageConfig(retry_delay_seconds=0.0),
    )


@pytest.fixture
def queue(fast_queue_config: QueueConfig) -> InMemoryJobQueue:
    return InMemoryJobQueue(fast_queue_config)


@pytest.fixture
def pool(queue, processor) -> WorkerPool:
    return WorkerPool(queue, processor, WorkerConfig(pool_size=2, shutdown_timeout_seconds=0.1))


async def _wait_for(predicate, timeout: float = 2.0) -> None:
    deadline = asyncio.get_running_loop().time() + timeout
    while not await predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)


class TestProcessNext:
    """Single-delivery handling."""

    async def test_acks_after_finalize(self, pool, queue, store, make_job):
        await queue.enqueue(make_job())

        assert await pool.process_next(timeout=1.0) is True

        execution = await store.get_execution("exec-1")
        assert execution.status == ExecutionStatus.COMPLETED
        status = await queue.get_job_status("exec-1")
        assert status.state == JobState.COMPLETED
        assert status.attempts_made == 1

    async def test_empty_queue_times_out(self, pool):
        assert await pool.process_next(timeout=0.02) is False

    async def test_exception_nacks_for_redelivery(self, pool, queue, processor, make_job):
        await queue.enqueue(make_job())
        with patch.object(processor, "process", side_effect=RuntimeError("store offline")):
            await pool.process_next(timeout=1.0)

        status = await queue.get_job_status("exec-1")
        assert status.state == JobState.DELAYED
        assert status.failed_reason == "RuntimeError: store offline"
        assert pool.active_jobs == {}

    async def test_redelivery_resumes_batch(self, pool, queue, store, client, make_job):
        """A crash mid-prompt fails that prompt on redelivery and finishes the rest."""
        client.generate.side_effect = [ConnectionResetError("socket closed"), OK, OK]
        await queue.enqueue(make_job())

        await pool.process_next(timeout=1.0)
        await pool.process_next(timeout=1.0)

        execution = await store.get_execution("exec-1")
        assert execution.status == ExecutionStatus.COMPLETED
        results = await store.list_batch_results("exec-1")
        assert results[0].error_message == INTERRUPTED_MESSAGE
        assert [r.status for r in results[1:]] == [BatchStatus.COMPLETED] * 2
        status = await queue.get_job_status("exec-1")
        assert status.state == JobState.COMPLETED
        assert status.attempts_made == 2

    async def test_exhausted_job_fails_execution(self, processor, store, make_job, tmp_path):
        queue = InMemoryJobQueue(QueueConfig(db_path=tmp_path / "q.db", max_attempts=1))
        pool = WorkerPool(queue, processor)
        await queue.enqueue(make_job())

        with patch.object(processor, "process", side_effect=RuntimeError("boom")):
            await pool.process_next(timeout=1.0)

        status = await queue.get_job_status("exec-1")
        assert status.state == JobState.FAILED
        execution = await store.get_execution("exec-1")
        assert execution.status == ExecutionStatus.FAILED
        assert execution.error == EXHAUSTED_MESSAGE


class TestLifecycle:
    """Start, drain and shutdown."""

    async def test_drains_queue_concurrently(self, pool, queue, store, make_job):
        for i in range(4):
            await queue.enqueue(make_job(execution_id=f"exec-{i}"))

        await pool.start()
        assert pool.running

        async def all_completed() -> bool:
            counts = await queue.counts()
            return counts[JobState.COMPLETED] == 4

        await _wait_for(all_completed)
        await pool.shutdown()

        assert not pool.running
        for i in range(4):
            execution = await store.get_execution(f"exec-{i}")
            assert execution.status == ExecutionStatus.COMPLETED

    async def test_start_is_idempotent(self, pool):
        await pool.start()
        tasks = list(pool._tasks)
        await pool.start()
        assert pool._tasks == tasks
        await pool.shutdown()

    async def test_shutdown_nacks_in_flight_job(self, pool, queue, client, make_job):
        never = asyncio.Event()

        async def hang(api_key, request):
            await never.wait()

        client.generate.side_effect = hang
        await queue.enqueue(make_job())
        await pool.start()

        async def in_flight() -> bool:
            return bool(pool.active_jobs)

        await _wait_for(in_flight)
        await pool.shutdown(graceful=True)

        status = await queue.get_job_status("exec-1")
        assert status.state == JobState.DELAYED
        assert status.failed_reason == SHUTDOWN_REASON
        assert not pool.running

    async def test_request_stop_releases_waiter(self, pool):
        await pool.start()
        waiter = asyncio.create_task(pool.wait_until_stopped())
        await asyncio.sleep(0)
        assert not waiter.done()

        pool.request_stop()
        await asyncio.wait_for(waiter, timeout=1.0)
        await pool.shutdown()


class TestLeaseSafety:
    """Deliveries that outlive their lease never overwrite a newer outcome."""

    async def test_stale_delivery_cannot_revive_exhausted_execution(
        self, processor, store, client, make_job, tmp_path
    ):
        queue = InMemoryJobQueue(
            QueueConfig(
                db_path=tmp_path / "q.db",
                max_attempts=1,
                visibility_timeout_seconds=0.05,
                poll_interval_seconds=0.01,
            )
        )
        pool = WorkerPool(queue, processor)
        started = asyncio.Event()
        release = asyncio.Event()

        async def slow_generate(api_key, request):
            started.set()
            await release.wait()
            return OK

        client.generate.side_effect = slow_generate
        await queue.enqueue(make_job(prompts=["first prompt", "second prompt"]))
        delivery = asyncio.create_task(pool.process_next(timeout=1.0))
        await started.wait()

        # Lease runs out while the prompt is in flight; the next claim reclaims it
        await asyncio.sleep(0.1)
        assert await queue.dequeue(timeout=0.02) is None
        assert (await store.get_execution("exec-1")).status == ExecutionStatus.FAILED

        release.set()
        await delivery

        execution = await store.get_execution("exec-1")
        assert execution.status == ExecutionStatus.FAILED
        assert execution.error == EXHAUSTED_MESSAGE
        results = await store.list_batch_results("exec-1")
        assert [r.error_message for r in results] == [EXHAUSTED_MESSAGE] * 2
        assert (await queue.get_job_status("exec-1")).state == JobState.FAILED

    async def test_long_batch_is_not_redelivered(self, processor, store, client, make_job, tmp_path):
        """Renewing between prompts keeps a batch longer than the lease to one delivery."""
        queue = InMemoryJobQueue(
            QueueConfig(
                db_path=tmp_path / "q.db",
                visibility_timeout_seconds=0.15,
                backoff_base_seconds=0.0,
                poll_interval_seconds=0.01,
            )
        )
        pool = WorkerPool(queue, processor, WorkerConfig(pool_size=2))
        prompts = [f"prompt {i}" for i in range(5)]

        async def steady_generate(api_key, request):
            await asyncio.sleep(0.06)
            return OK

        client.generate.side_effect = steady_generate
        await queue.enqueue(make_job(prompts=prompts))
        await pool.start()

        async def acked() -> bool:
            status = await queue.get_job_status("exec-1")
            return status.state == JobState.COMPLETED

        await _wait_for(acked, timeout=5.0)
        await pool.shutdown()

        assert [c.args[1].prompt for c in client.generate.await_args_list] == prompts
        assert (await queue.get_job_status("exec-1")).attempts_made == 1
        execution = await store.get_execution("exec-1")
        assert execution.output.model_dump() == {"successful": 5, "failed": 0, "total": 5}

    async def test_lost_lease_leaves_job_unsettled(self, pool, queue, processor, make_job):
        await queue.enqueue(make_job())
        lost = LeaseLostError("Lease on exec-1 was lost before batch index 1")
        with patch.object(processor, "process", side_effect=lost):
            await pool.process_next(timeout=1.0)

        status = await queue.get_job_status("exec-1")
        assert status.state == JobState.ACTIVE
        assert status.failed_reason is None
        assert pool.active_jobs == {}
