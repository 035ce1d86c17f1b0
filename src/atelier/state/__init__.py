"""Execution and batch-result stores."""

from atelier.state.base import ExecutionStore
from atelier.state.memory import InMemoryExecutionStore
from atelier.state.sqlite_backend import SQLiteExecutionStore

__all__ = ["ExecutionStore", "InMemoryExecutionStore", "SQLiteExecutionStore"]
