"""CLI command implementations."""

from .jobs import cancel, enqueue, queue_status, status
from .worker import worker

__all__ = ["cancel", "enqueue", "queue_status", "status", "worker"]
