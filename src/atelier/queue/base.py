"""Job broker contract shared by the SQLite and in-memory queues.

Delivery is at-least-once. Each delivery carries a lease token; the lease
expires after ``QueueConfig.visibility_timeout_seconds`` and the job becomes
eligible for redelivery, which counts as an attempt. Once ``max_attempts``
deliveries have failed the job moves to ``failed`` and every registered
``on_failed`` callback is awaited with the job and the failure reason.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum

from atelier.core.config import QueueConfig
from atelier.core.logging import get_logger
from atelier.core.models import Job

_logger = get_logger("queue")

LEASE_EXPIRED_REASON = "lease expired before acknowledgement"

FailedCallback = Callable[[Job, str], Awaitable[None]]


class JobState(str, Enum):
    """Broker-side state of a job."""

    WAITING = "waiting"
    DELAYED = "delayed"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobState.COMPLETED, JobState.FAILED)


@dataclass(frozen=True)
class JobHandle:
    """One delivery (or enqueue receipt) of a job.

    ``attempt`` is the 1-based delivery number; enqueue receipts carry the
    number of deliveries made so far and no lease.
    """

    job_id: str
    job: Job
    attempt: int
    lease_token: str | None = None


@dataclass(frozen=True)
class JobStatusInfo:
    """The broker's view of one job."""

    job_id: str
    state: JobState
    attempts_made: int
    max_attempts: int
    failed_reason: str | None = None
    available_at: float | None = None
    finished_at: float | None = None


class JobQueue(ABC):
    """Durable at-least-once job broker."""

    def __init__(self, config: QueueConfig | None = None) -> None:
        self.config = config or QueueConfig()
        self._failed_callbacks: list[FailedCallback] = []

    def on_failed(self, callback: FailedCallback) -> None:
        """Register a callback awaited when a job exhausts its attempts."""
        self._failed_callbacks.append(callback)

    async def _notify_failed(self, job: Job, reason: str) -> None:
        _logger.warning(
            "queue.job_exhausted",
            job_id=job.execution_id,
            reason=reason,
            max_attempts=self.config.max_attempts,
        )
        for callback in self._failed_callbacks:
            try:
                await callback(job, reason)
            except Exception as e:
                # The job is already failed on the broker; later callbacks still run
                _logger.exception(
                    "queue.failed_callback_error",
                    job_id=job.execution_id,
                    error=str(e),
                )

    @abstractmethod
    async def enqueue(self, job: Job) -> JobHandle:
        """Add a job keyed by its ``execution_id``.

        An id already known to the broker returns the existing job's handle
        instead of creating a second one.
        """
        ...

    @abstractmethod
    async def _claim(self) -> JobHandle | None:
        """Lease the next available job without waiting, or return None."""
        ...

    async def _wait_for_work(self, timeout: float) -> None:
        await asyncio.sleep(timeout)

    async def dequeue(self, timeout: float | None = None) -> JobHandle | None:
        """Lease the next available job, waiting until one is ready.

        Args:
            timeout: Give up after this many seconds and return None.
                Waits indefinitely when None.
        """
        loop = asyncio.get_running_loop()
        deadline = None if timeout is None else loop.time() + timeout
        while True:
            handle = await self._claim()
            if handle is not None:
                return handle
            wait = self.config.poll_interval_seconds
            if deadline is not None:
                remaining = deadline - loop.time()
                if remaining <= 0:
                    return None
                wait = min(wait, remaining)
            await self._wait_for_work(wait)

    @abstractmethod
    async def ack(self, handle: JobHandle) -> bool:
        """Mark a delivery completed.

        Returns:
            False if the lease is no longer held by this delivery.
        """
        ...

    @abstractmethod
    async def nack(self, handle: JobHandle, reason: str) -> bool:
        """Report a failed delivery; schedules a retry or fails the job.

        Returns:
            False if the lease is no longer held by this delivery.
        """
        ...

    @abstractmethod
    async def extend(self, handle: JobHandle) -> bool:
        """Push a held lease out by another ``visibility_timeout_seconds``.

        Long-running deliveries call this between units of work so the job is
        not redelivered while it is still being processed.

        Returns:
            False if the lease is no longer held by this delivery.
        """
        ...

    @abstractmethod
    async def get_job_status(self, job_id: str) -> JobStatusInfo | None:
        """Broker state of a job, or None if unknown (or pruned)."""
        ...

    @abstractmethod
    async def counts(self) -> dict[JobState, int]:
        """Number of jobs per state."""
        ...

    async def close(self) -> None:
        """Release broker resources."""
