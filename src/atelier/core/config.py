"""Configuration models for Atelier.

Pydantic v2 models for the queue broker, the generation client, the rate
limiter, artifact storage and the worker pool. Configuration is always passed
explicitly to constructors; nothing reads module-level settings at runtime.

Example:
    config = AtelierConfig.from_yaml(Path("atelier.yaml"))
    queue = SQLiteJobQueue(config.queue)
"""

from __future__ import annotations

from pathlib import Path
from typing import Literal

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from atelier.core.errors import ConfigError

FLASH_MODEL = "gemini-2.5-flash-image"
PRO_MODEL = "gemini-3-pro-image-preview"


class QueueConfig(BaseModel):
    """Durable job broker settings.

    Attempts and backoff apply to whole jobs (redelivery), not to single
    generation calls.
    """

    db_path: Path = Field(
        default=Path("~/.atelier/queue.db"),
        description="SQLite file backing the job queue. Tilde is expanded.",
    )
    name: str = Field(
        default="workflow-execution",
        min_length=1,
        description="Logical queue name; several queues may share one database.",
    )
    max_attempts: int = Field(
        default=3,
        ge=1,
        le=20,
        description="Total deliveries of a job before it is marked failed.",
    )
    backoff_base_seconds: float = Field(
        default=2.0,
        ge=0.0,
        description="Redelivery delay after the first failed attempt; doubles per attempt.",
    )
    visibility_timeout_seconds: float = Field(
        default=1800.0,
        gt=0.0,
        description="Unacknowledged deliveries older than this are treated as "
        "abandoned and become eligible for redelivery (default 30 minutes).",
    )
    keep_completed: int = Field(
        default=100,
        ge=0,
        description="Completed jobs retained for diagnostics.",
    )
    keep_failed: int = Field(
        default=500,
        ge=0,
        description="Failed jobs retained for diagnostics.",
    )
    poll_interval_seconds: float = Field(
        default=1.0,
        gt=0.0,
        description="How often a blocked dequeue re-checks the broker.",
    )

    def backoff_for(self, attempts_made: int) -> float:
        """Redelivery delay after ``attempts_made`` failed deliveries."""
        return self.backoff_base_seconds * (2 ** max(attempts_made - 1, 0))

    def resolved_db_path(self) -> Path:
        return self.db_path.expanduser()


class GenerationConfig(BaseModel):
    """External generation API settings and per-call resilience policy.

    Durations are in milliseconds, matching the upstream API documentation.
    """

    base_url: str = Field(
        default="https://generativelanguage.googleapis.com/v1beta",
        description="API root; requests go to {base_url}/models/{model}:generateContent.",
    )
    default_model: str = Field(default=FLASH_MODEL)
    valid_models: list[str] = Field(
        default_factory=lambda: [FLASH_MODEL, PRO_MODEL],
        min_length=1,
    )
    resolution_models: list[str] = Field(
        default_factory=lambda: [PRO_MODEL],
        description="Models that accept imageSize (resolution) in imageConfig.",
    )
    max_attempts: int = Field(default=3, ge=1, le=10)
    timeout_base_ms: int = Field(
        default=120_000,
        ge=1_000,
        description="Timeout of the first attempt.",
    )
    timeout_step_ms: int = Field(
        default=30_000,
        ge=0,
        description="Extra time granted to each subsequent attempt.",
    )
    retry_delay_ms: int = Field(
        default=2_000,
        ge=0,
        description="Backoff unit for non-timeout failures (multiplied by attempt).",
    )
    timeout_retry_delay_ms: int = Field(
        default=5_000,
        ge=0,
        description="Backoff unit after a timeout (multiplied by attempt).",
    )
    min_prompt_length: int = Field(default=3, ge=1)
    max_reference_images: int = Field(
        default=14,
        ge=0,
        description="Soft limit; extra images are sent but logged as a warning.",
    )
    slow_call_ratio: float = Field(
        default=0.8,
        gt=0.0,
        le=1.0,
        description="Warn when a successful call used more than this share of its timeout.",
    )

    @model_validator(mode="after")
    def _default_model_is_valid(self) -> GenerationConfig:
        if self.default_model not in self.valid_models:
            raise ValueError(
                f"default_model {self.default_model!r} is not in valid_models"
            )
        if self.timeout_retry_delay_ms < self.retry_delay_ms:
            raise ValueError("timeout_retry_delay_ms must be >= retry_delay_ms")
        return self


class RateLimitConfig(BaseModel):
    """Sliding-window request limits per model tier."""

    enabled: bool = True
    window_seconds: float = Field(default=60.0, gt=0.0)
    flash_requests_per_window: int = Field(default=15, ge=1)
    pro_requests_per_window: int = Field(default=10, ge=1)


class StorageConfig(BaseModel):
    """Artifact storage settings for the bundled filesystem backend."""

    root: Path = Field(
        default=Path("~/.atelier/artifacts"),
        description="Directory artifacts are written under.",
    )
    public_base_url: str = Field(
        default="http://localhost:8000/artifacts",
        description="Prefix joined with the object key to form the public URL.",
    )
    upload_attempts: int = Field(
        default=3,
        ge=1,
        le=10,
        description="Upload attempts per artifact, independent of generation retries.",
    )
    retry_delay_seconds: float = Field(default=1.0, ge=0.0)
    upload_timeout_seconds: float = Field(default=60.0, gt=0.0)

    @field_validator("public_base_url")
    @classmethod
    def _strip_trailing_slash(cls, v: str) -> str:
        return v.rstrip("/")


class WorkerConfig(BaseModel):
    """Worker pool settings."""

    pool_size: int = Field(
        default=2,
        ge=1,
        le=32,
        description="Concurrent jobs. Kept small to bound total upstream load.",
    )
    shutdown_timeout_seconds: float = Field(default=300.0, ge=0.0)
    state_db_path: Path = Field(
        default=Path("~/.atelier/state.db"),
        description="SQLite file holding executions and batch results.",
    )

    def resolved_state_db_path(self) -> Path:
        return self.state_db_path.expanduser()


class AtelierConfig(BaseModel):
    """Top-level configuration."""

    queue: QueueConfig = Field(default_factory=QueueConfig)
    generation: GenerationConfig = Field(default_factory=GenerationConfig)
    rate_limit: RateLimitConfig = Field(default_factory=RateLimitConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    worker: WorkerConfig = Field(default_factory=WorkerConfig)
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    log_format: Literal["console", "json"] = "console"
    log_file: Path | None = None

    @classmethod
    def from_yaml(cls, path: Path) -> AtelierConfig:
        """Load configuration from a YAML file.

        Raises:
            ConfigError: If the file cannot be read or fails validation.
        """
        try:
            with open(path) as f:
                data = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            raise ConfigError(f"Cannot read config {path}: {e}") from e
        try:
            return cls.model_validate(data)
        except ValidationError as e:
            raise ConfigError(f"Invalid config {path}: {e}") from e

    @classmethod
    def load(cls, path: Path | None) -> AtelierConfig:
        """Load from ``path`` when given, defaults otherwise."""
        if path is None:
            return cls()
        return cls.from_yaml(path)
