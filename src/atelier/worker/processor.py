"""Batch processing: one Job in, one finalized Execution out.

Prompts run strictly in ``batch_index`` order. Each item failure is recorded
on its BatchResult and the batch moves on; an authentication failure, a
credential that cannot be resolved, or a cancellation request fails every
remaining pending item with the same cause and stops calling the API.

Every row change is persisted before the next step, so a redelivered job
resumes from the last saved state:
- a terminal Execution makes the delivery a no-op
- items still pending are processed
- items left in ``processing`` by the interrupted delivery are failed
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from atelier.collaborators.credentials import CredentialResolver
from atelier.collaborators.storage import StorageBackend, StoredObject, artifact_key
from atelier.core.config import StorageConfig
from atelier.core.errors import CredentialError, ErrorKind, LeaseLostError, StorageError
from atelier.core.logging import (
    ExecutionContext,
    get_current_context,
    get_logger,
    with_context,
)
from atelier.core.models import (
    BatchResult,
    BatchStatus,
    Execution,
    ExecutionStatus,
    Job,
)
from atelier.generation.client import GenerationClient, GenerationRequest, GenerationResult
from atelier.state.base import ExecutionStore
from atelier.utils.time import elapsed_ms, utc_now

_logger = get_logger("worker.processor")

INTERRUPTED_MESSAGE = "Processing was interrupted before completion"
CANCELLED_MESSAGE = "Execution cancelled"
EXHAUSTED_MESSAGE = "processing could not complete"

# Renews the delivery's lease; returns False once the lease is lost.
Heartbeat = Callable[[], Awaitable[bool]]


@dataclass
class _BatchAbort:
    """Why the remaining pending items are failed without an API call."""

    message: str
    kind: str


class BatchProcessor:
    """Turns a Job into persisted BatchResults and a finalized Execution."""

    def __init__(
        self,
        store: ExecutionStore,
        client: GenerationClient,
        storage: StorageBackend,
        credentials: CredentialResolver,
        storage_config: StorageConfig | None = None,
    ) -> None:
        self.store = store
        self.client = client
        self.storage = storage
        self.credentials = credentials
        self.storage_config = storage_config or StorageConfig()

    def _context(self, job: Job, attempt: int | None) -> ExecutionContext:
        current = get_current_context()
        if current is not None and current.execution_id == job.execution_id:
            return current.with_component("worker")
        return ExecutionContext(
            execution_id=job.execution_id,
            attempt=attempt,
            component="worker",
        )

    async def process(
        self,
        job: Job,
        attempt: int | None = None,
        heartbeat: Heartbeat | None = None,
    ) -> Execution:
        """Process every pending prompt of ``job`` and finalize its Execution.

        ``heartbeat`` is awaited before each pending prompt to keep the
        delivery's lease alive.

        Returns the Execution as persisted. Exceptions (store failures,
        invalid transitions) propagate so the caller can nack the delivery.

        Raises:
            LeaseLostError: If ``heartbeat`` reports the lease was lost. No
                further rows are written by this delivery.
        """
        with with_context(self._context(job, attempt)) as ctx:
            execution, results = await self._prepare(job)
            if execution.is_terminal:
                _logger.info(
                    "execution_already_terminal",
                    status=execution.status.value,
                )
                return execution

            abort: _BatchAbort | None = None
            try:
                api_key = await self.credentials.resolve(job.config.credential_ref)
            except CredentialError as e:
                _logger.error("credential_resolution_failed", error=e.message)
                api_key = ""
                abort = _BatchAbort(e.message, ErrorKind.AUTH.value)

            total = len(results)
            for result in results:
                if result.status != BatchStatus.PENDING:
                    continue

                if heartbeat is not None and not await heartbeat():
                    _logger.warning("lease_lost", next_batch_index=result.batch_index)
                    raise LeaseLostError(
                        f"Lease on {job.execution_id} was lost before batch index "
                        f"{result.batch_index}"
                    )

                if abort is None and await self.store.is_cancel_requested(job.execution_id):
                    _logger.info("execution_cancel_observed", next_batch_index=result.batch_index)
                    abort = _BatchAbort(CANCELLED_MESSAGE, "cancelled")

                if abort is not None:
                    result.mark_failed(abort.message)
                    await self.store.save_batch_result(result)
                else:
                    with with_context(ctx.with_batch(result.batch_index)):
                        kind = await self._process_item(job, api_key, result)
                    if kind is not None and kind.aborts_batch:
                        _logger.error(
                            "batch_aborted",
                            batch_index=result.batch_index,
                            error=result.error_message,
                        )
                        abort = _BatchAbort(result.error_message or "", kind.value)

                execution.record_progress(self._finished(results), total)
                await self.store.save_execution(execution)

            execution.finalize(results, error=abort.message if abort else None)
            await self.store.save_execution(execution)
            _logger.info(
                "execution_finalized",
                status=execution.status.value,
                successful=execution.output.successful if execution.output else 0,
                failed=execution.output.failed if execution.output else 0,
                total=total,
                duration_seconds=execution.duration_seconds,
                aborted=abort.kind if abort else None,
            )
            return execution

    @staticmethod
    def _finished(results: list[BatchResult]) -> int:
        return sum(1 for r in results if r.status.is_terminal)

    async def _prepare(self, job: Job) -> tuple[Execution, list[BatchResult]]:
        """Create, adopt or resume the Execution rows for ``job``."""
        existing = await self.store.get_execution(job.execution_id)
        if existing is not None and existing.is_terminal:
            return existing, []

        results = await self.store.list_batch_results(job.execution_id) if existing else []
        if not results:
            execution = existing or Execution.for_job(job)
            execution.start()
            results = [
                BatchResult(
                    execution_id=job.execution_id,
                    batch_index=index,
                    prompt_text=prompt,
                )
                for index, prompt in enumerate(job.input_data.prompts)
            ]
            await self.store.initialize_execution(execution, results)
            _logger.info(
                "execution_started",
                prompts=len(results),
                reference_images=len(job.input_data.reference_images),
                model=job.config.model,
                adopted=existing is not None,
            )
            return execution, results

        execution = existing
        if execution.status == ExecutionStatus.QUEUED:
            execution.start()
            await self.store.save_execution(execution)

        interrupted = [r for r in results if r.status == BatchStatus.PROCESSING]
        for result in interrupted:
            result.mark_failed(INTERRUPTED_MESSAGE)
            await self.store.save_batch_result(result)
        _logger.info(
            "execution_resumed",
            pending=sum(1 for r in results if r.status == BatchStatus.PENDING),
            interrupted=len(interrupted),
            progress=execution.progress,
        )
        return execution, results

    async def _process_item(
        self,
        job: Job,
        api_key: str,
        result: BatchResult,
    ) -> ErrorKind | None:
        """Generate and store one prompt. Returns the failure kind, if any."""
        started = time.monotonic()
        result.mark_processing()
        await self.store.save_batch_result(result)

        request = GenerationRequest(
            prompt=result.prompt_text,
            model=job.config.model,
            aspect_ratio=job.config.aspect_ratio,
            resolution=job.config.resolution,
            reference_images=job.input_data.reference_images,
        )
        generated = await self.client.generate(api_key, request)
        if not generated.success:
            result.mark_failed(
                generated.message or "Generation failed",
                processing_time_ms=elapsed_ms(started),
            )
            await self.store.save_batch_result(result)
            _logger.warning(
                "prompt_failed",
                error_kind=generated.error_kind.value if generated.error_kind else None,
                error=generated.message,
                attempts=generated.attempts,
            )
            return generated.error_kind

        try:
            stored = await self._upload(job.execution_id, result.batch_index, generated)
        except StorageError as e:
            result.mark_failed(e.message, processing_time_ms=elapsed_ms(started))
            await self.store.save_batch_result(result)
            _logger.error("artifact_upload_failed", error=e.message)
            return ErrorKind.STORAGE

        result.mark_completed(
            result_url=stored.public_url,
            storage_path=stored.key,
            processing_time_ms=elapsed_ms(started),
        )
        await self.store.save_batch_result(result)
        _logger.info(
            "prompt_completed",
            processing_time_ms=result.processing_time_ms,
            storage_path=stored.key,
        )
        return None

    async def _upload(
        self,
        execution_id: str,
        batch_index: int,
        generated: GenerationResult,
    ) -> StoredObject:
        """Upload with a fixed-delay retry budget independent of generation retries."""
        if generated.image_data is None:
            raise StorageError("No image data to upload")
        content_type = generated.mime_type or "image/png"
        key = artifact_key(execution_id, batch_index, content_type, utc_now())
        attempts = self.storage_config.upload_attempts
        timeout = self.storage_config.upload_timeout_seconds
        last_error: StorageError | None = None

        for attempt in range(1, attempts + 1):
            try:
                return await asyncio.wait_for(
                    self.storage.upload(generated.image_data, content_type, key),
                    timeout=timeout,
                )
            except TimeoutError:
                last_error = StorageError(f"Upload timed out after {timeout:g}s")
            except StorageError as e:
                last_error = e
            _logger.warning(
                "artifact_upload_retry",
                upload_attempt=attempt,
                max_attempts=attempts,
                error=last_error.message,
            )
            if attempt < attempts:
                await asyncio.sleep(self.storage_config.retry_delay_seconds)

        raise StorageError(
            f"Upload failed after {attempts} attempts: "
            f"{last_error.message if last_error else 'unknown error'}"
        )

    async def mark_exhausted(self, job: Job, reason: str) -> Execution:
        """Fail a job's Execution once the queue gave up redelivering it.

        When no delivery got as far as creating the BatchResults, one failed
        row per prompt is written so the output counts cover every prompt.
        """
        with with_context(ExecutionContext(execution_id=job.execution_id, component="worker")):
            execution = await self.store.get_execution(job.execution_id)
            if execution is not None and execution.is_terminal:
                return execution

            results = await self.store.list_batch_results(job.execution_id) if execution else []
            if not results:
                execution = execution or Execution.for_job(job)
                results = []
                for index, prompt in enumerate(job.input_data.prompts):
                    result = BatchResult(
                        execution_id=job.execution_id,
                        batch_index=index,
                        prompt_text=prompt,
                    )
                    result.mark_failed(EXHAUSTED_MESSAGE)
                    results.append(result)
                await self.store.initialize_execution(execution, results)
            else:
                for result in results:
                    if not result.status.is_terminal:
                        result.mark_failed(EXHAUSTED_MESSAGE)
                        await self.store.save_batch_result(result)

            execution.fail(EXHAUSTED_MESSAGE, results)
            await self.store.save_execution(execution)
            _logger.error("execution_exhausted", reason=reason, total=len(results))
            return execution
