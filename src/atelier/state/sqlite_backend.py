"""SQLite execution store.

Holds the two rows the status-polling layer reads:
- executions: one aggregate per batch
- batch_results: one row per prompt, unique on (execution_id, batch_index)

Every write commits before returning, so a crash leaves each row in its last
persisted state and a redelivered job can resume from there.
"""

from __future__ import annotations

import asyncio
import json
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import datetime
from pathlib import Path
from typing import Any

import aiosqlite

from atelier.core.errors import StateError
from atelier.core.logging import get_logger
from atelier.core.models import (
    BatchResult,
    BatchStatus,
    Execution,
    ExecutionOutput,
    ExecutionStatus,
)
from atelier.state.base import ExecutionStore
from atelier.utils.time import utc_now

_logger = get_logger("state.sqlite")

SCHEMA_VERSION = 1


def _dt_to_str(dt: datetime | None) -> str | None:
    return dt.isoformat() if dt else None


def _str_to_dt(s: str | None) -> datetime | None:
    if not s:
        return None
    try:
        return datetime.fromisoformat(s)
    except ValueError:
        return None


class SQLiteExecutionStore(ExecutionStore):
    """Execution store on a local SQLite database."""

    def __init__(self, db_path: str | Path) -> None:
        """Initialize the store.

        Args:
            db_path: Path to the SQLite database file (created if missing).
        """
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._initialized = False
        self._init_lock = asyncio.Lock()

    @asynccontextmanager
    async def _connect(self) -> AsyncIterator[aiosqlite.Connection]:
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            await db.execute("PRAGMA foreign_keys=ON")
            yield db

    async def _ensure_initialized(self) -> None:
        if self._initialized:
            return
        async with self._init_lock:
            if self._initialized:
                return
            async with self._connect() as db:
                await self._run_migrations(db)
            self._initialized = True

    async def _run_migrations(self, db: aiosqlite.Connection) -> None:
        await db.execute("""
            CREATE TABLE IF NOT EXISTS schema_version (
                version INTEGER PRIMARY KEY,
                applied_at TEXT NOT NULL
            )
        """)
        cursor = await db.execute("SELECT MAX(version) FROM schema_version")
        row = await cursor.fetchone()
        current = row[0] if row and row[0] is not None else 0
        if current < 1:
            await self._migrate_v1(db)
            _logger.info("schema_migrated", from_version=current, to_version=1)

    async def _migrate_v1(self, db: aiosqlite.Connection) -> None:
        await db.execute("""
            CREATE TABLE IF NOT EXISTS executions (
                id TEXT PRIMARY KEY,
                workflow_id TEXT NOT NULL,
                client_id TEXT NOT NULL,
                user_id TEXT,
                status TEXT NOT NULL DEFAULT 'queued',
                progress INTEGER NOT NULL DEFAULT 0,
                error TEXT,
                output_data TEXT,
                duration_seconds INTEGER,
                cancel_requested INTEGER NOT NULL DEFAULT 0,
                created_at TEXT NOT NULL,
                started_at TEXT,
                completed_at TEXT
            )
        """)
        await db.execute("""
            CREATE TABLE IF NOT EXISTS batch_results (
                execution_id TEXT NOT NULL,
                batch_index INTEGER NOT NULL,
                prompt_text TEXT NOT NULL,
                status TEXT NOT NULL DEFAULT 'pending',
                result_url TEXT,
                storage_path TEXT,
                error_message TEXT,
                processing_time_ms INTEGER,
                started_at TEXT,
                completed_at TEXT,
                PRIMARY KEY (execution_id, batch_index),
                FOREIGN KEY (execution_id) REFERENCES executions(id) ON DELETE CASCADE
            )
        """)
        await db.execute(
            "CREATE INDEX IF NOT EXISTS idx_executions_status ON executions(status)"
        )
        await db.execute(
            "CREATE INDEX IF NOT EXISTS idx_executions_created ON executions(created_at)"
        )
        await db.execute(
            "INSERT OR IGNORE INTO schema_version (version, applied_at) VALUES (?, ?)",
            (SCHEMA_VERSION, utc_now().isoformat()),
        )
        await db.commit()

    # ─── Row mapping ──────────────────────────────────────────────────

    @staticmethod
    def _row_to_execution(row: aiosqlite.Row) -> Execution:
        output: ExecutionOutput | None = None
        if row["output_data"]:
            try:
                output = ExecutionOutput.model_validate(json.loads(row["output_data"]))
            except (json.JSONDecodeError, ValueError) as exc:
                _logger.warning("output_data_unreadable", execution_id=row["id"], error=str(exc))
        return Execution(
            id=row["id"],
            workflow_id=row["workflow_id"],
            client_id=row["client_id"],
            user_id=row["user_id"],
            status=ExecutionStatus(row["status"]),
            progress=row["progress"],
            error=row["error"],
            output=output,
            duration_seconds=row["duration_seconds"],
            cancel_requested=bool(row["cancel_requested"]),
            created_at=_str_to_dt(row["created_at"]) or utc_now(),
            started_at=_str_to_dt(row["started_at"]),
            completed_at=_str_to_dt(row["completed_at"]),
        )

    @staticmethod
    def _row_to_result(row: aiosqlite.Row) -> BatchResult:
        return BatchResult(
            execution_id=row["execution_id"],
            batch_index=row["batch_index"],
            prompt_text=row["prompt_text"],
            status=BatchStatus(row["status"]),
            result_url=row["result_url"],
            storage_path=row["storage_path"],
            error_message=row["error_message"],
            processing_time_ms=row["processing_time_ms"],
            started_at=_str_to_dt(row["started_at"]),
            completed_at=_str_to_dt(row["completed_at"]),
        )

    @staticmethod
    def _execution_params(execution: Execution) -> dict[str, Any]:
        return {
            "id": execution.id,
            "workflow_id": execution.workflow_id,
            "client_id": execution.client_id,
            "user_id": execution.user_id,
            "status": execution.status.value,
            "progress": execution.progress,
            "error": execution.error,
            "output_data": execution.output.model_dump_json() if execution.output else None,
            "duration_seconds": execution.duration_seconds,
            "cancel_requested": int(execution.cancel_requested),
            "created_at": _dt_to_str(execution.created_at),
            "started_at": _dt_to_str(execution.started_at),
            "completed_at": _dt_to_str(execution.completed_at),
        }

    # ─── ExecutionStore API ───────────────────────────────────────────

    async def get_execution(self, execution_id: str) -> Execution | None:
        await self._ensure_initialized()
        async with self._connect() as db:
            cursor = await db.execute("SELECT * FROM executions WHERE id = ?", (execution_id,))
            row = await cursor.fetchone()
        return self._row_to_execution(row) if row else None

    async def list_batch_results(self, execution_id: str) -> list[BatchResult]:
        await self._ensure_initialized()
        async with self._connect() as db:
            cursor = await db.execute(
                "SELECT * FROM batch_results WHERE execution_id = ? ORDER BY batch_index",
                (execution_id,),
            )
            rows = await cursor.fetchall()
        return [self._row_to_result(row) for row in rows]

    async def initialize_execution(
        self,
        execution: Execution,
        results: list[BatchResult],
    ) -> None:
        await self._ensure_initialized()
        async with self._connect() as db:
            cursor = await db.execute(
                "SELECT status, "
                "(SELECT COUNT(*) FROM batch_results WHERE execution_id = executions.id) AS n "
                "FROM executions WHERE id = ?",
                (execution.id,),
            )
            existing = await cursor.fetchone()
            if existing is not None and (
                existing["status"] != ExecutionStatus.QUEUED.value or existing["n"] > 0
            ):
                raise StateError(f"Execution {execution.id} is already initialized")

            try:
                await db.execute(
                    """
                    INSERT INTO executions (
                        id, workflow_id, client_id, user_id, status, progress, error,
                        output_data, duration_seconds, cancel_requested, created_at,
                        started_at, completed_at
                    ) VALUES (
                        :id, :workflow_id, :client_id, :user_id, :status, :progress, :error,
                        :output_data, :duration_seconds, :cancel_requested, :created_at,
                        :started_at, :completed_at
                    )
                    ON CONFLICT(id) DO UPDATE SET
                        status = excluded.status,
                        progress = excluded.progress,
                        user_id = COALESCE(excluded.user_id, executions.user_id),
                        started_at = excluded.started_at
                    """,
                    self._execution_params(execution),
                )
                await db.executemany(
                    """
                    INSERT INTO batch_results (
                        execution_id, batch_index, prompt_text, status, result_url,
                        storage_path, error_message, processing_time_ms, started_at,
                        completed_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    [
                        (
                            r.execution_id,
                            r.batch_index,
                            r.prompt_text,
                            r.status.value,
                            r.result_url,
                            r.storage_path,
                            r.error_message,
                            r.processing_time_ms,
                            _dt_to_str(r.started_at),
                            _dt_to_str(r.completed_at),
                        )
                        for r in results
                    ],
                )
                await db.commit()
            except aiosqlite.IntegrityError as e:
                await db.rollback()
                raise StateError(
                    f"Execution {execution.id} could not be initialized: {e}"
                ) from e

        _logger.debug(
            "execution_initialized",
            execution_id=execution.id,
            batch_results=len(results),
        )

    async def save_execution(self, execution: Execution) -> None:
        """Persist an execution that is not yet terminal in the store.

        Raises:
            StateError: If the row is missing or already completed/failed.
        """
        await self._ensure_initialized()
        params = self._execution_params(execution)
        async with self._connect() as db:
            cursor = await db.execute(
                """
                UPDATE executions SET
                    status = :status,
                    progress = :progress,
                    error = :error,
                    output_data = :output_data,
                    duration_seconds = :duration_seconds,
                    cancel_requested = MAX(cancel_requested, :cancel_requested),
                    started_at = :started_at,
                    completed_at = :completed_at
                WHERE id = :id AND status NOT IN ('completed', 'failed')
                """,
                params,
            )
            await db.commit()
            if cursor.rowcount == 0:
                raise await self._rejected_write(db, execution.id)

    async def save_batch_result(self, result: BatchResult) -> None:
        """Persist a batch result while it and its execution are not terminal.

        Raises:
            StateError: If the row is missing, already completed/failed, or
                its execution is terminal.
        """
        await self._ensure_initialized()
        async with self._connect() as db:
            cursor = await db.execute(
                """
                UPDATE batch_results SET
                    status = ?,
                    result_url = ?,
                    storage_path = ?,
                    error_message = ?,
                    processing_time_ms = ?,
                    started_at = ?,
                    completed_at = ?
                WHERE execution_id = ? AND batch_index = ?
                    AND status NOT IN ('completed', 'failed')
                    AND NOT EXISTS (
                        SELECT 1 FROM executions e
                        WHERE e.id = batch_results.execution_id
                            AND e.status IN ('completed', 'failed')
                    )
                """,
                (
                    result.status.value,
                    result.result_url,
                    result.storage_path,
                    result.error_message,
                    result.processing_time_ms,
                    _dt_to_str(result.started_at),
                    _dt_to_str(result.completed_at),
                    result.execution_id,
                    result.batch_index,
                ),
            )
            await db.commit()
            if cursor.rowcount == 0:
                cursor = await db.execute(
                    "SELECT status FROM batch_results WHERE execution_id = ? AND batch_index = ?",
                    (result.execution_id, result.batch_index),
                )
                row = await cursor.fetchone()
                label = f"Batch result {result.execution_id}[{result.batch_index}]"
                if row is None:
                    raise StateError(f"{label} does not exist")
                raise StateError(
                    f"{label} is {row['status']} or belongs to a finished execution; "
                    f"refusing to overwrite it with {result.status.value}"
                )

    @staticmethod
    async def _rejected_write(db: aiosqlite.Connection, execution_id: str) -> StateError:
        cursor = await db.execute("SELECT status FROM executions WHERE id = ?", (execution_id,))
        row = await cursor.fetchone()
        if row is None:
            return StateError(f"Execution {execution_id} does not exist")
        return StateError(f"Execution {execution_id} is already {row['status']}")

    async def request_cancel(self, execution_id: str) -> bool:
        await self._ensure_initialized()
        async with self._connect() as db:
            cursor = await db.execute(
                "UPDATE executions SET cancel_requested = 1 "
                "WHERE id = ? AND status IN (?, ?)",
                (execution_id, ExecutionStatus.QUEUED.value, ExecutionStatus.PROCESSING.value),
            )
            await db.commit()
            updated = cursor.rowcount > 0
        if updated:
            _logger.info("cancel_requested", execution_id=execution_id)
        return updated

    async def list_executions(
        self,
        status: ExecutionStatus | None = None,
        limit: int = 50,
    ) -> list[Execution]:
        await self._ensure_initialized()
        query = "SELECT * FROM executions"
        params: list[Any] = []
        if status is not None:
            query += " WHERE status = ?"
            params.append(status.value)
        query += " ORDER BY created_at DESC LIMIT ?"
        params.append(limit)
        async with self._connect() as db:
            cursor = await db.execute(query, params)
            rows = await cursor.fetchall()
        return [self._row_to_execution(row) for row in rows]
