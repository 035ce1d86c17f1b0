"""Fixed-size pool of asyncio workers draining a JobQueue.

Each worker holds at most one delivery and renews its lease before every
prompt. A job is acknowledged only after its Execution was finalized; any
exception escaping the processor nacks the delivery so the queue redelivers
it with backoff. A delivery that lost its lease stops without settling. When
the queue reports a job exhausted the pool fails its Execution with
``processing could not complete``.
"""

from __future__ import annotations

import asyncio
from functools import partial

from atelier.core.config import WorkerConfig
from atelier.core.errors import LeaseLostError
from atelier.core.logging import ExecutionContext, get_logger, with_context
from atelier.core.models import Job
from atelier.queue.base import JobHandle, JobQueue
from atelier.worker.processor import BatchProcessor

_logger = get_logger("worker.pool")

SHUTDOWN_REASON = "worker shut down before completion"


class WorkerPool:
    """Runs ``config.pool_size`` worker tasks against one queue."""

    def __init__(
        self,
        queue: JobQueue,
        processor: BatchProcessor,
        config: WorkerConfig | None = None,
    ) -> None:
        self.queue = queue
        self.processor = processor
        self.config = config or WorkerConfig()
        self._tasks: list[asyncio.Task[None]] = []
        self._stopping = asyncio.Event()
        self._active: dict[int, str] = {}
        queue.on_failed(self._on_job_exhausted)

    @property
    def running(self) -> bool:
        return any(not t.done() for t in self._tasks)

    @property
    def active_jobs(self) -> dict[int, str]:
        """``{worker_id: job_id}`` of deliveries in flight."""
        return dict(self._active)

    # ─── Lifecycle ────────────────────────────────────────────────────

    async def start(self) -> None:
        if self.running:
            return
        self._stopping.clear()
        self._tasks = [
            asyncio.create_task(self._worker_loop(worker_id), name=f"atelier-worker-{worker_id}")
            for worker_id in range(self.config.pool_size)
        ]
        _logger.info("pool.started", pool_size=self.config.pool_size)

    def request_stop(self) -> None:
        """Stop taking new jobs; in-flight jobs continue."""
        self._stopping.set()

    async def wait_until_stopped(self) -> None:
        await self._stopping.wait()

    async def shutdown(self, graceful: bool = True) -> None:
        """Stop the pool.

        Graceful shutdown waits up to ``shutdown_timeout_seconds`` for in-flight
        jobs, then cancels them; cancelled deliveries are nacked for redelivery.
        """
        self._stopping.set()
        running = [t for t in self._tasks if not t.done()]
        _logger.info(
            "pool.shutting_down",
            graceful=graceful,
            in_flight=len(self._active),
            timeout=self.config.shutdown_timeout_seconds,
        )
        if running and graceful:
            _, pending = await asyncio.wait(running, timeout=self.config.shutdown_timeout_seconds)
        else:
            pending = set(running)
        for task in pending:
            task.cancel()
        if pending:
            results = await asyncio.gather(*pending, return_exceptions=True)
            for result in results:
                if isinstance(result, BaseException) and not isinstance(
                    result, asyncio.CancelledError
                ):
                    _logger.warning(
                        "pool.shutdown_task_exception",
                        error=str(result),
                        error_type=type(result).__name__,
                    )
        self._tasks = []
        _logger.info("pool.shutdown_complete")

    # ─── Work ─────────────────────────────────────────────────────────

    async def _worker_loop(self, worker_id: int) -> None:
        poll = self.queue.config.poll_interval_seconds
        while not self._stopping.is_set():
            try:
                handle = await self.queue.dequeue(timeout=poll)
            except Exception as e:
                _logger.exception("pool.dequeue_error", worker_id=worker_id, error=str(e))
                await asyncio.sleep(poll)
                continue
            if handle is None:
                continue
            await self.handle(handle, worker_id)

    async def process_next(self, timeout: float | None = None, worker_id: int = 0) -> bool:
        """Dequeue and handle a single job. Returns False if none arrived in time."""
        handle = await self.queue.dequeue(timeout=timeout)
        if handle is None:
            return False
        await self.handle(handle, worker_id)
        return True

    async def handle(self, handle: JobHandle, worker_id: int = 0) -> None:
        """Process one delivery and settle it with the queue."""
        ctx = ExecutionContext(
            execution_id=handle.job_id,
            attempt=handle.attempt,
            worker_id=worker_id,
            component="pool",
        )
        with with_context(ctx):
            self._active[worker_id] = handle.job_id
            _logger.info("job_received", prompts=handle.job.prompt_count)
            try:
                execution = await self.processor.process(
                    handle.job,
                    attempt=handle.attempt,
                    heartbeat=partial(self.queue.extend, handle),
                )
            except asyncio.CancelledError:
                await self.queue.nack(handle, SHUTDOWN_REASON)
                raise
            except LeaseLostError as e:
                # Another delivery owns the job now
                _logger.warning("job_lease_lost", error=str(e))
                return
            except Exception as e:
                _logger.exception("job_processing_error", error=str(e), error_type=type(e).__name__)
                await self.queue.nack(handle, f"{type(e).__name__}: {e}")
                return
            finally:
                self._active.pop(worker_id, None)

            if await self.queue.ack(handle):
                _logger.info("job_completed", status=execution.status.value)
            else:
                _logger.warning("job_ack_rejected", status=execution.status.value)

    async def _on_job_exhausted(self, job: Job, reason: str) -> None:
        await self.processor.mark_exhausted(job, reason)
