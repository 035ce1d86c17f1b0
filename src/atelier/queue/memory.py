"""In-process job queue for tests and single-process runs."""

from __future__ import annotations

import asyncio
import itertools
import time
import uuid
from dataclasses import dataclass

from atelier.core.config import QueueConfig
from atelier.core.logging import get_logger
from atelier.core.models import Job
from atelier.queue.base import (
    LEASE_EXPIRED_REASON,
    JobHandle,
    JobQueue,
    JobState,
    JobStatusInfo,
)

_logger = get_logger("queue.memory")


@dataclass
class _Entry:
    job: Job
    seq: int
    state: JobState = JobState.WAITING
    attempts_made: int = 0
    available_at: float = 0.0
    lease_token: str | None = None
    lease_expires_at: float | None = None
    failed_reason: str | None = None
    finished_at: float | None = None


class InMemoryJobQueue(JobQueue):
    """Job queue held in a dict. Not durable across restarts."""

    def __init__(self, config: QueueConfig | None = None) -> None:
        super().__init__(config)
        self._entries: dict[str, _Entry] = {}
        self._seq = itertools.count()
        self._lock = asyncio.Lock()
        self._wakeup = asyncio.Event()

    def _now(self) -> float:
        return time.time()

    def _handle(self, entry: _Entry) -> JobHandle:
        return JobHandle(
            job_id=entry.job.execution_id,
            job=entry.job,
            attempt=entry.attempts_made,
            lease_token=entry.lease_token,
        )

    async def enqueue(self, job: Job) -> JobHandle:
        async with self._lock:
            existing = self._entries.get(job.execution_id)
            if existing is not None:
                _logger.info(
                    "queue.duplicate_enqueue",
                    job_id=job.execution_id,
                    state=existing.state.value,
                )
                return JobHandle(job.execution_id, existing.job, existing.attempts_made)
            entry = _Entry(job=job, seq=next(self._seq), available_at=self._now())
            self._entries[job.execution_id] = entry
        self._wakeup.set()
        _logger.info("queue.enqueued", job_id=job.execution_id, prompts=job.prompt_count)
        return JobHandle(job.execution_id, job, 0)

    def _reclaim_expired(self, now: float) -> list[_Entry]:
        """Release expired leases. Returns entries that ran out of attempts."""
        exhausted: list[_Entry] = []
        for entry in self._entries.values():
            if entry.state != JobState.ACTIVE or entry.lease_expires_at is None:
                continue
            if entry.lease_expires_at > now:
                continue
            entry.lease_token = None
            entry.lease_expires_at = None
            if entry.attempts_made >= self.config.max_attempts:
                self._finish(entry, JobState.FAILED, now, LEASE_EXPIRED_REASON)
                exhausted.append(entry)
            else:
                entry.state = JobState.DELAYED
                entry.failed_reason = LEASE_EXPIRED_REASON
                entry.available_at = now + self.config.backoff_for(entry.attempts_made)
            _logger.warning(
                "queue.lease_expired",
                job_id=entry.job.execution_id,
                attempts_made=entry.attempts_made,
            )
        return exhausted

    async def _claim(self) -> JobHandle | None:
        now = self._now()
        async with self._lock:
            exhausted = self._reclaim_expired(now)
            ready = [
                e for e in self._entries.values()
                if e.state in (JobState.WAITING, JobState.DELAYED) and e.available_at <= now
            ]
            entry = min(ready, key=lambda e: (e.available_at, e.seq)) if ready else None
            if entry is not None:
                entry.state = JobState.ACTIVE
                entry.attempts_made += 1
                entry.lease_token = uuid.uuid4().hex
                entry.lease_expires_at = now + self.config.visibility_timeout_seconds
                handle = self._handle(entry)
            else:
                handle = None
            self._prune()
        for dead in exhausted:
            await self._notify_failed(dead.job, LEASE_EXPIRED_REASON)
        return handle

    async def _wait_for_work(self, timeout: float) -> None:
        self._wakeup.clear()
        try:
            await asyncio.wait_for(self._wakeup.wait(), timeout)
        except TimeoutError:
            pass

    def _held(self, handle: JobHandle) -> _Entry | None:
        entry = self._entries.get(handle.job_id)
        if (
            entry is None
            or entry.state != JobState.ACTIVE
            or handle.lease_token is None
            or entry.lease_token != handle.lease_token
        ):
            _logger.warning("queue.stale_lease", job_id=handle.job_id, attempt=handle.attempt)
            return None
        return entry

    def _finish(
        self,
        entry: _Entry,
        state: JobState,
        now: float,
        reason: str | None = None,
    ) -> None:
        entry.state = state
        entry.finished_at = now
        entry.lease_token = None
        entry.lease_expires_at = None
        if reason is not None:
            entry.failed_reason = reason

    async def ack(self, handle: JobHandle) -> bool:
        async with self._lock:
            entry = self._held(handle)
            if entry is None:
                return False
            self._finish(entry, JobState.COMPLETED, self._now())
            self._prune()
        _logger.info("queue.acked", job_id=handle.job_id, attempt=handle.attempt)
        return True

    async def nack(self, handle: JobHandle, reason: str) -> bool:
        now = self._now()
        async with self._lock:
            entry = self._held(handle)
            if entry is None:
                return False
            exhausted = entry.attempts_made >= self.config.max_attempts
            if exhausted:
                self._finish(entry, JobState.FAILED, now, reason)
                self._prune()
            else:
                delay = self.config.backoff_for(entry.attempts_made)
                entry.state = JobState.DELAYED
                entry.failed_reason = reason
                entry.available_at = now + delay
                entry.lease_token = None
                entry.lease_expires_at = None
                _logger.info(
                    "queue.retry_scheduled",
                    job_id=handle.job_id,
                    attempt=entry.attempts_made,
                    delay_seconds=delay,
                    reason=reason,
                )
        if exhausted:
            await self._notify_failed(entry.job, reason)
        else:
            self._wakeup.set()
        return True

    async def extend(self, handle: JobHandle) -> bool:
        async with self._lock:
            entry = self._held(handle)
            if entry is None:
                return False
            entry.lease_expires_at = self._now() + self.config.visibility_timeout_seconds
        _logger.debug("queue.lease_extended", job_id=handle.job_id, attempt=handle.attempt)
        return True

    def _prune(self) -> None:
        for state, keep in (
            (JobState.COMPLETED, self.config.keep_completed),
            (JobState.FAILED, self.config.keep_failed),
        ):
            finished = sorted(
                (e for e in self._entries.values() if e.state == state),
                key=lambda e: (e.finished_at or 0.0, e.seq),
                reverse=True,
            )
            for stale in finished[keep:]:
                del self._entries[stale.job.execution_id]

    async def get_job_status(self, job_id: str) -> JobStatusInfo | None:
        entry = self._entries.get(job_id)
        if entry is None:
            return None
        return JobStatusInfo(
            job_id=job_id,
            state=entry.state,
            attempts_made=entry.attempts_made,
            max_attempts=self.config.max_attempts,
            failed_reason=entry.failed_reason,
            available_at=entry.available_at,
            finished_at=entry.finished_at,
        )

    async def counts(self) -> dict[JobState, int]:
        totals = dict.fromkeys(JobState, 0)
        for entry in self._entries.values():
            totals[entry.state] += 1
        return totals
