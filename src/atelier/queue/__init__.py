"""At-least-once job brokers."""

from atelier.queue.base import JobHandle, JobQueue, JobState, JobStatusInfo
from atelier.queue.memory import InMemoryJobQueue
from atelier.queue.sqlite_queue import SQLiteJobQueue

__all__ = [
    "InMemoryJobQueue",
    "JobHandle",
    "JobQueue",
    "JobState",
    "JobStatusInfo",
    "SQLiteJobQueue",
]
