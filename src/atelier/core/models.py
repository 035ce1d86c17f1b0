"""Job, execution and batch-result models.

The Job is the transient queue payload. Execution and BatchResult are the
durable rows read by the status-polling layer; their status transitions live
here as methods so every store applies the same rules.
"""

from __future__ import annotations

import math
from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from atelier.core.config import FLASH_MODEL
from atelier.core.errors import InvalidTransitionError
from atelier.utils.time import utc_now

# Share of progress reported while prompts run; the rest is finalization.
PROCESSING_PROGRESS_SHARE = 90


class _WireModel(BaseModel):
    """Accepts camelCase wire names and snake_case Python names alike."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ExecutionStatus(str, Enum):
    """Status of a whole batch."""

    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (ExecutionStatus.COMPLETED, ExecutionStatus.FAILED)


class BatchStatus(str, Enum):
    """Status of one prompt within a batch."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (BatchStatus.COMPLETED, BatchStatus.FAILED)


_EXECUTION_TRANSITIONS: dict[ExecutionStatus, frozenset[ExecutionStatus]] = {
    ExecutionStatus.QUEUED: frozenset({ExecutionStatus.PROCESSING, ExecutionStatus.FAILED}),
    ExecutionStatus.PROCESSING: frozenset({ExecutionStatus.COMPLETED, ExecutionStatus.FAILED}),
    ExecutionStatus.COMPLETED: frozenset(),
    ExecutionStatus.FAILED: frozenset(),
}

_BATCH_TRANSITIONS: dict[BatchStatus, frozenset[BatchStatus]] = {
    BatchStatus.PENDING: frozenset({BatchStatus.PROCESSING, BatchStatus.FAILED}),
    BatchStatus.PROCESSING: frozenset({BatchStatus.COMPLETED, BatchStatus.FAILED}),
    BatchStatus.COMPLETED: frozenset(),
    BatchStatus.FAILED: frozenset(),
}


# =============================================================================
# Queue payload
# =============================================================================


class ReferenceImage(_WireModel):
    """Base64 image shared by every prompt of a batch."""

    data: str = Field(min_length=1)
    mime_type: str = Field(min_length=1)


class JobInput(_WireModel):
    """Prompts and shared reference images of a batch."""

    prompts: list[str] = Field(min_length=1)
    reference_images: list[ReferenceImage] = Field(default_factory=list)

    @field_validator("reference_images", mode="before")
    @classmethod
    def _none_is_empty(cls, v: Any) -> Any:
        return [] if v is None else v


class JobConfig(_WireModel):
    """Per-batch generation options."""

    credential_ref: str = Field(min_length=1)
    model: str = FLASH_MODEL
    aspect_ratio: str = "1:1"
    resolution: str | None = "1K"


class Job(_WireModel):
    """One queued batch submission. ``execution_id`` is the de-duplication key."""

    execution_id: str = Field(min_length=1)
    workflow_id: str
    client_id: str
    user_id: str
    input_data: JobInput
    config: JobConfig

    @property
    def prompt_count(self) -> int:
        return len(self.input_data.prompts)

    def to_payload(self) -> dict[str, Any]:
        """JSON-ready wire representation (camelCase)."""
        return self.model_dump(mode="json", by_alias=True)

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> Job:
        return cls.model_validate(payload)


# =============================================================================
# Durable rows
# =============================================================================


class ExecutionOutput(_WireModel):
    """Aggregate counts persisted at finalization."""

    successful: int = 0
    failed: int = 0
    total: int = 0

    @classmethod
    def from_results(cls, results: list[BatchResult]) -> ExecutionOutput:
        successful = sum(1 for r in results if r.status == BatchStatus.COMPLETED)
        failed = sum(1 for r in results if r.status == BatchStatus.FAILED)
        return cls(successful=successful, failed=failed, total=len(results))


class BatchResult(_WireModel):
    """Outcome of one prompt. Moves pending -> processing -> completed|failed."""

    execution_id: str
    batch_index: int = Field(ge=0)
    prompt_text: str
    status: BatchStatus = BatchStatus.PENDING
    result_url: str | None = None
    storage_path: str | None = None
    error_message: str | None = None
    processing_time_ms: int | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None

    def _transition(self, target: BatchStatus) -> None:
        if target not in _BATCH_TRANSITIONS[self.status]:
            raise InvalidTransitionError(
                f"Batch result {self.execution_id}[{self.batch_index}] cannot move "
                f"from {self.status.value} to {target.value}"
            )
        self.status = target

    def mark_processing(self) -> None:
        self._transition(BatchStatus.PROCESSING)
        self.started_at = utc_now()

    def mark_completed(
        self,
        result_url: str,
        storage_path: str | None,
        processing_time_ms: int,
    ) -> None:
        self._transition(BatchStatus.COMPLETED)
        self.result_url = result_url
        self.storage_path = storage_path
        self.processing_time_ms = processing_time_ms
        self.completed_at = utc_now()

    def mark_failed(self, error_message: str, processing_time_ms: int | None = None) -> None:
        self._transition(BatchStatus.FAILED)
        self.error_message = error_message
        self.processing_time_ms = processing_time_ms
        self.completed_at = utc_now()


class Execution(_WireModel):
    """Aggregate record of one batch.

    ``progress`` never decreases while processing and the terminal status is
    written exactly once.
    """

    id: str
    workflow_id: str
    client_id: str
    user_id: str | None = None
    status: ExecutionStatus = ExecutionStatus.QUEUED
    progress: int = Field(default=0, ge=0, le=100)
    started_at: datetime | None = None
    completed_at: datetime | None = None
    error: str | None = None
    output: ExecutionOutput | None = None
    duration_seconds: int | None = None
    cancel_requested: bool = False
    created_at: datetime = Field(default_factory=utc_now)

    @classmethod
    def for_job(cls, job: Job) -> Execution:
        return cls(
            id=job.execution_id,
            workflow_id=job.workflow_id,
            client_id=job.client_id,
            user_id=job.user_id,
        )

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def _transition(self, target: ExecutionStatus) -> None:
        if target not in _EXECUTION_TRANSITIONS[self.status]:
            raise InvalidTransitionError(
                f"Execution {self.id} cannot move from {self.status.value} to {target.value}"
            )
        self.status = target

    def start(self) -> None:
        self._transition(ExecutionStatus.PROCESSING)
        self.progress = 0
        self.started_at = utc_now()

    def record_progress(self, finished: int, total: int) -> int:
        """Advance progress to ``floor(finished / total * 90)``; never moves back."""
        if self.status != ExecutionStatus.PROCESSING:
            raise InvalidTransitionError(
                f"Execution {self.id} is {self.status.value}; progress is frozen"
            )
        if total <= 0:
            return self.progress
        computed = math.floor(finished * PROCESSING_PROGRESS_SHARE / total)
        self.progress = max(self.progress, min(computed, PROCESSING_PROGRESS_SHARE))
        return self.progress

    def finalize(self, results: list[BatchResult], error: str | None = None) -> None:
        """Close the execution from its batch results.

        Completed when at least one prompt succeeded, failed otherwise.
        """
        output = ExecutionOutput.from_results(results)
        target = ExecutionStatus.COMPLETED if output.successful > 0 else ExecutionStatus.FAILED
        self._transition(target)
        self.progress = 100
        self.output = output
        self.completed_at = utc_now()
        if target == ExecutionStatus.FAILED:
            self.error = error or f"All {output.total} prompts failed"
        elif error is not None:
            self.error = error
        if self.started_at is not None:
            self.duration_seconds = int((self.completed_at - self.started_at).total_seconds())

    def fail(self, error: str, results: list[BatchResult] | None = None) -> None:
        """Force the execution to failed, e.g. once the job budget is exhausted."""
        self._transition(ExecutionStatus.FAILED)
        self.error = error
        self.progress = 100
        self.completed_at = utc_now()
        if results is not None:
            self.output = ExecutionOutput.from_results(results)
        if self.started_at is not None:
            self.duration_seconds = int((self.completed_at - self.started_at).total_seconds())
