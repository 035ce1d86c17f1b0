"""Durable job queue on SQLite.

Several processes may share one database file: claims run inside
``BEGIN IMMEDIATE`` transactions so only one worker can lease a given job.
Times are stored as UNIX seconds so leases survive restarts.
"""

from __future__ import annotations

import asyncio
import json
import time
import uuid
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from pathlib import Path

import aiosqlite
from pydantic import ValidationError

from atelier.core.config import QueueConfig
from atelier.core.errors import QueueError
from atelier.core.logging import get_logger
from atelier.core.models import Job
from atelier.queue.base import (
    LEASE_EXPIRED_REASON,
    JobHandle,
    JobQueue,
    JobState,
    JobStatusInfo,
)
from atelier.utils.time import utc_now

_logger = get_logger("queue.sqlite")

SCHEMA_VERSION = 1


class SQLiteJobQueue(JobQueue):
    """Job queue persisted in a SQLite file."""

    def __init__(
        self,
        config: QueueConfig | None = None,
        db_path: str | Path | None = None,
    ) -> None:
        """Initialize the queue.

        Args:
            config: Broker settings. Defaults apply when omitted.
            db_path: Overrides ``config.db_path``.
        """
        super().__init__(config)
        self.db_path = Path(db_path) if db_path else self.config.resolved_db_path()
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.name = self.config.name
        self._initialized = False
        self._init_lock = asyncio.Lock()

    def _now(self) -> float:
        return time.time()

    @asynccontextmanager
    async def _connect(self) -> AsyncIterator[aiosqlite.Connection]:
        async with aiosqlite.connect(self.db_path, timeout=30.0) as db:
            db.row_factory = aiosqlite.Row
            yield db

    async def _ensure_initialized(self) -> None:
        if self._initialized:
            return
        async with self._init_lock:
            if self._initialized:
                return
            async with self._connect() as db:
                await db.execute("""
                    CREATE TABLE IF NOT EXISTS queue_schema_version (
                        version INTEGER PRIMARY KEY,
                        applied_at TEXT NOT NULL
                    )
                """)
                cursor = await db.execute("SELECT MAX(version) FROM queue_schema_version")
                row = await cursor.fetchone()
                current = row[0] if row and row[0] is not None else 0
                if current < 1:
                    await self._migrate_v1(db)
                    _logger.info("queue.schema_migrated", from_version=current, to_version=1)
            self._initialized = True

    async def _migrate_v1(self, db: aiosqlite.Connection) -> None:
        await db.execute("""
            CREATE TABLE IF NOT EXISTS jobs (
                queue_name TEXT NOT NULL,
                job_id TEXT NOT NULL,
                seq INTEGER NOT NULL,
                payload TEXT NOT NULL,
                state TEXT NOT NULL DEFAULT 'waiting',
                attempts_made INTEGER NOT NULL DEFAULT 0,
                available_at REAL NOT NULL,
                lease_token TEXT,
                lease_expires_at REAL,
                failed_reason TEXT,
                created_at REAL NOT NULL,
                finished_at REAL,
                PRIMARY KEY (queue_name, job_id)
            )
        """)
        await db.execute(
            "CREATE INDEX IF NOT EXISTS idx_jobs_ready "
            "ON jobs(queue_name, state, available_at, seq)"
        )
        await db.execute(
            "INSERT OR IGNORE INTO queue_schema_version (version, applied_at) VALUES (?, ?)",
            (SCHEMA_VERSION, utc_now().isoformat()),
        )
        await db.commit()

    def _decode(self, row: aiosqlite.Row) -> Job:
        try:
            return Job.from_payload(json.loads(row["payload"]))
        except (json.JSONDecodeError, ValidationError) as e:
            raise QueueError(f"Job {row['job_id']} has an unreadable payload: {e}") from e

    # ─── Producer side ────────────────────────────────────────────────

    async def enqueue(self, job: Job) -> JobHandle:
        await self._ensure_initialized()
        now = self._now()
        async with self._connect() as db:
            await db.execute("BEGIN IMMEDIATE")
            cursor = await db.execute(
                "SELECT * FROM jobs WHERE queue_name = ? AND job_id = ?",
                (self.name, job.execution_id),
            )
            existing = await cursor.fetchone()
            if existing is not None:
                await db.rollback()
                _logger.info(
                    "queue.duplicate_enqueue",
                    job_id=job.execution_id,
                    state=existing["state"],
                )
                return JobHandle(job.execution_id, self._decode(existing), existing["attempts_made"])
            cursor = await db.execute(
                "SELECT COALESCE(MAX(seq), 0) + 1 FROM jobs WHERE queue_name = ?",
                (self.name,),
            )
            seq_row = await cursor.fetchone()
            await db.execute(
                """
                INSERT INTO jobs (
                    queue_name, job_id, seq, payload, state, available_at, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    self.name,
                    job.execution_id,
                    seq_row[0],
                    json.dumps(job.to_payload()),
                    JobState.WAITING.value,
                    now,
                    now,
                ),
            )
            await db.commit()
        _logger.info("queue.enqueued", job_id=job.execution_id, prompts=job.prompt_count)
        return JobHandle(job.execution_id, job, 0)

    # ─── Consumer side ────────────────────────────────────────────────

    async def _reclaim_expired(self, db: aiosqlite.Connection, now: float) -> list[Job]:
        """Release expired leases inside the caller's transaction.

        Returns jobs that ran out of attempts.
        """
        cursor = await db.execute(
            "SELECT * FROM jobs WHERE queue_name = ? AND state = ? AND lease_expires_at <= ?",
            (self.name, JobState.ACTIVE.value, now),
        )
        exhausted: list[Job] = []
        for row in await cursor.fetchall():
            attempts = row["attempts_made"]
            if attempts >= self.config.max_attempts:
                await db.execute(
                    """
                    UPDATE jobs SET state = ?, failed_reason = ?, finished_at = ?,
                        lease_token = NULL, lease_expires_at = NULL
                    WHERE queue_name = ? AND job_id = ?
                    """,
                    (JobState.FAILED.value, LEASE_EXPIRED_REASON, now, self.name, row["job_id"]),
                )
                exhausted.append(self._decode(row))
            else:
                await db.execute(
                    """
                    UPDATE jobs SET state = ?, failed_reason = ?, available_at = ?,
                        lease_token = NULL, lease_expires_at = NULL
                    WHERE queue_name = ? AND job_id = ?
                    """,
                    (
                        JobState.DELAYED.value,
                        LEASE_EXPIRED_REASON,
                        now + self.config.backoff_for(attempts),
                        self.name,
                        row["job_id"],
                    ),
                )
            _logger.warning("queue.lease_expired", job_id=row["job_id"], attempts_made=attempts)
        return exhausted

    async def _claim(self) -> JobHandle | None:
        await self._ensure_initialized()
        now = self._now()
        handle: JobHandle | None = None
        async with self._connect() as db:
            await db.execute("BEGIN IMMEDIATE")
            try:
                exhausted = await self._reclaim_expired(db, now)
                cursor = await db.execute(
                    """
                    SELECT * FROM jobs
                    WHERE queue_name = ? AND state IN (?, ?) AND available_at <= ?
                    ORDER BY available_at, seq
                    LIMIT 1
                    """,
                    (self.name, JobState.WAITING.value, JobState.DELAYED.value, now),
                )
                row = await cursor.fetchone()
                if row is not None:
                    token = uuid.uuid4().hex
                    attempt = row["attempts_made"] + 1
                    await db.execute(
                        """
                        UPDATE jobs SET state = ?, attempts_made = ?, lease_token = ?,
                            lease_expires_at = ?
                        WHERE queue_name = ? AND job_id = ?
                        """,
                        (
                            JobState.ACTIVE.value,
                            attempt,
                            token,
                            now + self.config.visibility_timeout_seconds,
                            self.name,
                            row["job_id"],
                        ),
                    )
                    handle = JobHandle(row["job_id"], self._decode(row), attempt, token)
                if exhausted:
                    await self._prune(db)
                await db.commit()
            except BaseException:
                await db.rollback()
                raise
        for job in exhausted:
            await self._notify_failed(job, LEASE_EXPIRED_REASON)
        if handle is not None:
            _logger.debug("queue.claimed", job_id=handle.job_id, attempt=handle.attempt)
        return handle

    async def ack(self, handle: JobHandle) -> bool:
        await self._ensure_initialized()
        async with self._connect() as db:
            cursor = await db.execute(
                """
                UPDATE jobs SET state = ?, finished_at = ?, lease_token = NULL,
                    lease_expires_at = NULL
                WHERE queue_name = ? AND job_id = ? AND state = ? AND lease_token = ?
                """,
                (
                    JobState.COMPLETED.value,
                    self._now(),
                    self.name,
                    handle.job_id,
                    JobState.ACTIVE.value,
                    handle.lease_token,
                ),
            )
            if cursor.rowcount == 0:
                await db.rollback()
                _logger.warning("queue.stale_lease", job_id=handle.job_id, attempt=handle.attempt)
                return False
            await self._prune(db)
            await db.commit()
        _logger.info("queue.acked", job_id=handle.job_id, attempt=handle.attempt)
        return True

    async def nack(self, handle: JobHandle, reason: str) -> bool:
        await self._ensure_initialized()
        now = self._now()
        async with self._connect() as db:
            await db.execute("BEGIN IMMEDIATE")
            cursor = await db.execute(
                """
                SELECT * FROM jobs
                WHERE queue_name = ? AND job_id = ? AND state = ? AND lease_token = ?
                """,
                (self.name, handle.job_id, JobState.ACTIVE.value, handle.lease_token),
            )
            row = await cursor.fetchone()
            if row is None:
                await db.rollback()
                _logger.warning("queue.stale_lease", job_id=handle.job_id, attempt=handle.attempt)
                return False
            attempts = row["attempts_made"]
            exhausted = attempts >= self.config.max_attempts
            if exhausted:
                await db.execute(
                    """
                    UPDATE jobs SET state = ?, failed_reason = ?, finished_at = ?,
                        lease_token = NULL, lease_expires_at = NULL
                    WHERE queue_name = ? AND job_id = ?
                    """,
                    (JobState.FAILED.value, reason, now, self.name, handle.job_id),
                )
                await self._prune(db)
            else:
                delay = self.config.backoff_for(attempts)
                await db.execute(
                    """
                    UPDATE jobs SET state = ?, failed_reason = ?, available_at = ?,
                        lease_token = NULL, lease_expires_at = NULL
                    WHERE queue_name = ? AND job_id = ?
                    """,
                    (JobState.DELAYED.value, reason, now + delay, self.name, handle.job_id),
                )
                _logger.info(
                    "queue.retry_scheduled",
                    job_id=handle.job_id,
                    attempt=attempts,
                    delay_seconds=delay,
                    reason=reason,
                )
            await db.commit()
        if exhausted:
            await self._notify_failed(self._decode(row), reason)
        return True

    async def _prune(self, db: aiosqlite.Connection) -> None:
        """Drop terminal jobs beyond the retention limits."""
        for state, keep in (
            (JobState.COMPLETED, self.config.keep_completed),
            (JobState.FAILED, self.config.keep_failed),
        ):
            await db.execute(
                """
                DELETE FROM jobs
                WHERE queue_name = ? AND state = ? AND job_id NOT IN (
                    SELECT job_id FROM jobs
                    WHERE queue_name = ? AND state = ?
                    ORDER BY finished_at DESC, seq DESC
                    LIMIT ?
                )
                """,
                (self.name, state.value, self.name, state.value, keep),
            )

    # ─── Inspection ───────────────────────────────────────────────────

    async def extend(self, handle: JobHandle) -> bool:
        await self._ensure_initialized()
        async with self._connect() as db:
            cursor = await db.execute(
                """
                UPDATE jobs SET lease_expires_at = ?
                WHERE queue_name = ? AND job_id = ? AND state = ? AND lease_token = ?
                """,
                (
                    self._now() + self.config.visibility_timeout_seconds,
                    self.name,
                    handle.job_id,
                    JobState.ACTIVE.value,
                    handle.lease_token,
                ),
            )
            await db.commit()
        if cursor.rowcount == 0:
            _logger.warning("queue.stale_lease", job_id=handle.job_id, attempt=handle.attempt)
            return False
        _logger.debug("queue.lease_extended", job_id=handle.job_id, attempt=handle.attempt)
        return True

    async def get_job_status(self, job_id: str) -> JobStatusInfo | None:
        await self._ensure_initialized()
        async with self._connect() as db:
            cursor = await db.execute(
                "SELECT * FROM jobs WHERE queue_name = ? AND job_id = ?",
                (self.name, job_id),
            )
            row = await cursor.fetchone()
        if row is None:
            return None
        return JobStatusInfo(
            job_id=job_id,
            state=JobState(row["state"]),
            attempts_made=row["attempts_made"],
            max_attempts=self.config.max_attempts,
            failed_reason=row["failed_reason"],
            available_at=row["available_at"],
            finished_at=row["finished_at"],
        )

    async def counts(self) -> dict[JobState, int]:
        await self._ensure_initialized()
        totals = dict.fromkeys(JobState, 0)
        async with self._connect() as db:
            cursor = await db.execute(
                "SELECT state, COUNT(*) AS n FROM jobs WHERE queue_name = ? GROUP BY state",
                (self.name,),
            )
            for row in await cursor.fetchall():
                totals[JobState(row["state"])] = row["n"]
        return totals
