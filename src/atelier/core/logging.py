"""Structured logging for Atelier.

Built on structlog. Every entry carries the component that emitted it and,
inside a ``with_context()`` block, the execution being processed (execution
id, delivery attempt, batch index, worker slot).

Example usage:
    from atelier.core.logging import ExecutionContext, get_logger, with_context

    configure_logging(level="DEBUG", format="console")
    logger = get_logger("worker")

    ctx = ExecutionContext(execution_id="exec-1", attempt=2)
    with with_context(ctx):
        logger.info("batch_started", prompts=3)
"""

from __future__ import annotations

import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import dataclass, replace
from datetime import UTC, datetime
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Literal

import structlog
from structlog.types import EventDict, Processor, WrappedLogger

# Keys whose values never reach a log sink
SENSITIVE_PATTERNS = frozenset({
    "api_key",
    "apikey",
    "api-key",
    "token",
    "secret",
    "password",
    "credential",
    "authorization",
    "bearer",
})

REDACTED = "[REDACTED]"


@dataclass(frozen=True)
class ExecutionContext:
    """Correlation fields merged into every log entry of an execution.

    Attributes:
        execution_id: Execution (and queue job) identifier.
        attempt: Queue delivery attempt number (1-indexed).
        batch_index: Prompt currently being processed, if any.
        worker_id: Worker slot that owns the delivery.
        component: Component name for the current operation.
    """

    execution_id: str
    attempt: int | None = None
    batch_index: int | None = None
    worker_id: int | None = None
    component: str = "unknown"

    def with_batch(self, batch_index: int) -> ExecutionContext:
        """Return a copy pointing at another prompt of the batch."""
        return replace(self, batch_index=batch_index)

    def with_component(self, component: str) -> ExecutionContext:
        """Return a copy attributed to another component."""
        return replace(self, component=component)

    def to_dict(self) -> dict[str, Any]:
        """Context fields for logging, without unset values."""
        result: dict[str, Any] = {
            "execution_id": self.execution_id,
            "component": self.component,
        }
        if self.attempt is not None:
            result["attempt"] = self.attempt
        if self.batch_index is not None:
            result["batch_index"] = self.batch_index
        if self.worker_id is not None:
            result["worker_id"] = self.worker_id
        return result


_current_context: ContextVar[ExecutionContext | None] = ContextVar(
    "atelier_context", default=None
)


def get_current_context() -> ExecutionContext | None:
    """Return the active ExecutionContext, or None outside a context block."""
    return _current_context.get()


@contextmanager
def with_context(ctx: ExecutionContext) -> Iterator[ExecutionContext]:
    """Make ``ctx`` the active ExecutionContext for the enclosed block.

    The ContextVar keeps concurrent worker tasks isolated from each other.
    """
    token = _current_context.set(ctx)
    try:
        yield ctx
    finally:
        _current_context.reset(token)


def _sanitize_value(key: str, value: Any) -> Any:
    key_lower = key.lower()
    if any(pattern in key_lower for pattern in SENSITIVE_PATTERNS):
        return REDACTED
    return value


def _sanitize_event_dict(
    logger: WrappedLogger,
    method_name: str,
    event_dict: EventDict,
) -> EventDict:
    """Structlog processor that redacts sensitive keys, one level deep."""
    sanitized: EventDict = {}
    for key, value in event_dict.items():
        if isinstance(value, dict):
            sanitized[key] = {k: _sanitize_value(k, v) for k, v in value.items()}
        else:
            sanitized[key] = _sanitize_value(key, value)
    return sanitized


def _add_timestamp(
    logger: WrappedLogger,
    method_name: str,
    event_dict: EventDict,
) -> EventDict:
    event_dict["timestamp"] = datetime.now(UTC).isoformat()
    return event_dict


def _add_context(
    logger: WrappedLogger,
    method_name: str,
    event_dict: EventDict,
) -> EventDict:
    """Structlog processor that merges the active ExecutionContext.

    Explicitly bound keys win over context fields.
    """
    ctx = get_current_context()
    if ctx is not None:
        for key, value in ctx.to_dict().items():
            event_dict.setdefault(key, value)
    return event_dict


class AtelierLogger:
    """Component-bound wrapper around a structlog logger.

    The underlying structlog logger is fetched on every call so loggers
    created at import time still honour a later ``configure_logging()``.
    """

    def __init__(self, component: str, **initial_context: Any) -> None:
        self._component = component
        self._context: dict[str, Any] = {"component": component, **initial_context}

    def _get_logger(self) -> structlog.stdlib.BoundLogger:
        logger: structlog.stdlib.BoundLogger = structlog.get_logger().bind(**self._context)
        return logger

    def bind(self, **context: Any) -> AtelierLogger:
        """Return a new logger with additional bound context."""
        return AtelierLogger(self._component, **{**self._context, **context})

    def debug(self, event: str, **kw: Any) -> None:
        self._get_logger().debug(event, **kw)

    def info(self, event: str, **kw: Any) -> None:
        self._get_logger().info(event, **kw)

    def warning(self, event: str, **kw: Any) -> None:
        self._get_logger().warning(event, **kw)

    def error(self, event: str, **kw: Any) -> None:
        self._get_logger().error(event, **kw)

    def exception(self, event: str, **kw: Any) -> None:
        """Log at error level with the active exception's traceback."""
        self._get_logger().exception(event, **kw)


def _build_processors(renderer: Processor, include_timestamps: bool) -> list[Processor]:
    processors: list[Processor] = [
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_log_level,
        _sanitize_event_dict,
        _add_context,
    ]
    if include_timestamps:
        processors.append(_add_timestamp)
    processors.extend([
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        renderer,
    ])
    return processors


def configure_logging(
    level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO",
    format: Literal["json", "console"] = "console",  # noqa: A002
    file_path: Path | None = None,
    max_file_size_mb: int = 50,
    backup_count: int = 5,
    include_timestamps: bool = True,
) -> None:
    """Configure structured logging once at process start.

    Args:
        level: Minimum log level to capture.
        format: ``console`` for coloured human output on stderr, ``json`` for
            one JSON object per line (stdout, or ``file_path`` when given).
        file_path: Optional rotating log file; always written as JSON.
        max_file_size_mb: Size at which the log file rotates.
        backup_count: Rotated files to keep.
        include_timestamps: Whether to add ISO8601 UTC timestamps.
    """
    log_level = getattr(logging, level.upper())
    handlers: list[logging.Handler] = []

    if file_path is not None:
        file_path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(
            RotatingFileHandler(
                file_path,
                maxBytes=max_file_size_mb * 1024 * 1024,
                backupCount=backup_count,
                encoding="utf-8",
            )
        )
    if format == "console":
        handlers.append(logging.StreamHandler(sys.stderr))
    elif file_path is None:
        handlers.append(logging.StreamHandler(sys.stdout))

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)
    for handler in handlers:
        handler.setLevel(log_level)
        root_logger.addHandler(handler)

    renderer: Processor
    if format == "json" or file_path is not None:
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty())

    structlog.configure(
        processors=_build_processors(renderer, include_timestamps),
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=False,
    )


def get_logger(component: str, **initial_context: Any) -> AtelierLogger:
    """Return a logger bound to ``component``."""
    return AtelierLogger(component, **initial_context)


__all__ = [
    "AtelierLogger",
    "ExecutionContext",
    "SENSITIVE_PATTERNS",
    "configure_logging",
    "get_current_context",
    "get_logger",
    "with_context",
]
