"""Core models, configuration, errors and logging for Atelier."""

from atelier.core.config import AtelierConfig
from atelier.core.models import (
    BatchResult,
    BatchStatus,
    Execution,
    ExecutionOutput,
    ExecutionStatus,
    Job,
    JobConfig,
    JobInput,
    ReferenceImage,
)

__all__ = [
    "AtelierConfig",
    "BatchResult",
    "BatchStatus",
    "Execution",
    "ExecutionOutput",
    "ExecutionStatus",
    "Job",
    "JobConfig",
    "JobInput",
    "ReferenceImage",
]
