"""Pytest fixtures for Atelier tests."""

import base64
import logging
from collections.abc import Callable, Generator
from pathlib import Path
from typing import Any

import pytest
import structlog

from atelier.core.config import GenerationConfig, QueueConfig, StorageConfig
from atelier.core.models import Job

PNG_BYTES = b"\x89PNG\r\n\x1a\n" + b"\x00" * 16
PNG_B64 = base64.b64encode(PNG_BYTES).decode()


@pytest.fixture(autouse=True)
def reset_logging_state() -> Generator[None, None, None]:
    """Reset structlog, root handlers and CLI option state around each test."""
    import atelier.cli.helpers as cli_helpers

    cli_helpers.reset_options()
    structlog.reset_defaults()

    root_logger = logging.getLogger()
    original_handlers = root_logger.handlers[:]
    for handler in original_handlers:
        root_logger.removeHandler(handler)

    yield

    cli_helpers.reset_options()
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)
    for handler in original_handlers:
        root_logger.addHandler(handler)


@pytest.fixture
def job_payload() -> dict[str, Any]:
    """A wire-format (camelCase) job with three prompts."""
    return {
        "executionId": "exec-1",
        "workflowId": "wf-1",
        "clientId": "client-1",
        "userId": "user-1",
        "inputData": {
            "prompts": ["a red fox in snow", "a lighthouse at dusk", "a bowl of ramen"],
            "referenceImages": [{"data": PNG_B64, "mimeType": "image/png"}],
        },
        "config": {
            "credentialRef": "GEMINI_KEY",
            "model": "gemini-2.5-flash-image",
            "aspectRatio": "16:9",
            "resolution": "2K",
        },
    }


@pytest.fixture
def make_job(job_payload: dict[str, Any]) -> Callable[..., Job]:
    """Factory for jobs; keyword overrides replace top-level fields or prompts."""

    def _make(
        execution_id: str = "exec-1",
        prompts: list[str] | None = None,
        credential_ref: str = "GEMINI_KEY",
    ) -> Job:
        payload = {**job_payload, "executionId": execution_id}
        payload["inputData"] = {**job_payload["inputData"]}
        if prompts is not None:
            payload["inputData"]["prompts"] = prompts
        payload["config"] = {**job_payload["config"], "credentialRef": credential_ref}
        return Job.from_payload(payload)

    return _make


@pytest.fixture
def fast_generation_config() -> GenerationConfig:
    """Generation policy with no backoff delays."""
    return GenerationConfig(
        retry_delay_ms=0,
        timeout_retry_delay_ms=0,
        timeout_base_ms=5_000,
    )


@pytest.fixture
def fast_storage_config(tmp_path: Path) -> StorageConfig:
    return StorageConfig(
        root=tmp_path / "artifacts",
        public_base_url="https://cdn.example.com/artifacts/",
        retry_delay_seconds=0.0,
        upload_timeout_seconds=5.0,
    )


@pytest.fixture
def fast_queue_config(tmp_path: Path) -> QueueConfig:
    """Queue config with immediate redelivery."""
    return QueueConfig(
        db_path=tmp_path / "queue.db",
        backoff_base_seconds=0.0,
        poll_interval_seconds=0.01,
    )


@pytest.fixture
def image_response_body() -> dict[str, Any]:
    return {
        "candidates": [
            {"content": {"parts": [{"inlineData": {"mimeType": "image/png", "data": PNG_B64}}]}}
        ]
    }
