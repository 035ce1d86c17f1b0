"""Shared utilities for Atelier CLI commands.

- Global option state (config path, logging options)
- Config loading with CLI overrides
- Construction of the store, queue and worker components from config
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Literal

import typer
from rich.console import Console

from atelier.collaborators.credentials import EnvCredentialResolver
from atelier.collaborators.storage import LocalStorageBackend
from atelier.core.config import AtelierConfig
from atelier.core.errors import ConfigError
from atelier.core.logging import configure_logging, get_logger
from atelier.generation.client import GenerationClient
from atelier.generation.rate_limiter import ModelRateLimiter
from atelier.queue.sqlite_queue import SQLiteJobQueue
from atelier.state.sqlite_backend import SQLiteExecutionStore
from atelier.worker.pool import WorkerPool
from atelier.worker.processor import BatchProcessor

_logger = get_logger("cli")


class ErrorMessages:
    """User-facing CLI error strings."""

    EXECUTION_NOT_FOUND = "Execution not found"
    JOB_NOT_FOUND = "Job not found in queue"
    CONFIG_LOAD_ERROR = "Error loading config"
    INVALID_JOB = "Invalid job file"


# =============================================================================
# Global option state
# =============================================================================


@dataclass
class CliOptions:
    """Options collected by the app callback, read by every command."""

    config_path: Path | None = None
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] | None = None
    log_format: Literal["json", "console"] | None = None
    log_file: Path | None = None
    logging_configured: bool = False


_options = CliOptions()


def get_options() -> CliOptions:
    return _options


def reset_options() -> None:
    """Reset global option state (for tests)."""
    global _options
    _options = CliOptions()


def load_config(console: Console) -> AtelierConfig:
    """Load the config file named by ``--config`` and apply CLI overrides.

    Raises:
        typer.Exit: If the config cannot be loaded.
    """
    try:
        config = AtelierConfig.load(_options.config_path)
    except ConfigError as e:
        console.print(f"[red]{ErrorMessages.CONFIG_LOAD_ERROR}:[/red] {e}")
        raise typer.Exit(1) from None

    overrides: dict[str, object] = {}
    if _options.log_level:
        overrides["log_level"] = _options.log_level
    if _options.log_format:
        overrides["log_format"] = _options.log_format
    if _options.log_file:
        overrides["log_file"] = _options.log_file
    if overrides:
        config = config.model_copy(update=overrides)
    return config


def configure_cli_logging(config: AtelierConfig, console: Console) -> None:
    """Configure logging once per session from the effective config."""
    if _options.logging_configured:
        return
    try:
        configure_logging(
            level=config.log_level,
            format=config.log_format,
            file_path=config.log_file,
        )
    except ValueError as e:
        console.print(f"[red]Logging configuration error:[/red] {e}")
        raise typer.Exit(1) from None
    _options.logging_configured = True


# =============================================================================
# Component factories
# =============================================================================


def create_store(config: AtelierConfig) -> SQLiteExecutionStore:
    return SQLiteExecutionStore(config.worker.resolved_state_db_path())


def create_queue(config: AtelierConfig) -> SQLiteJobQueue:
    return SQLiteJobQueue(config.queue)


def create_pool(config: AtelierConfig) -> tuple[WorkerPool, GenerationClient]:
    """Wire the worker pool from config.

    Returns the pool and the generation client, which the caller must close.
    """
    store = create_store(config)
    queue = create_queue(config)
    client = GenerationClient(config.generation, rate_limiter=ModelRateLimiter(config.rate_limit))
    processor = BatchProcessor(
        store=store,
        client=client,
        storage=LocalStorageBackend(config.storage),
        credentials=EnvCredentialResolver(),
        storage_config=config.storage,
    )
    _logger.debug(
        "pool_created",
        queue_db=str(queue.db_path),
        state_db=str(store.db_path),
        pool_size=config.worker.pool_size,
    )
    return WorkerPool(queue, processor, config.worker), client
