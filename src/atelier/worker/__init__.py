"""Worker pool and batch processor."""

from atelier.worker.pool import WorkerPool
from atelier.worker.processor import BatchProcessor

__all__ = ["BatchProcessor", "WorkerPool"]
