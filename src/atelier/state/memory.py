"""In-memory execution store for testing.

Stores deep copies so callers cannot mutate "persisted" rows without going
through the store, the same way a database would behave.
"""

from atelier.core.errors import StateError
from atelier.core.models import BatchResult, Execution, ExecutionStatus
from atelier.state.base import ExecutionStore


class InMemoryExecutionStore(ExecutionStore):
    """Execution store backed by dicts."""

    def __init__(self) -> None:
        self.executions: dict[str, Execution] = {}
        self.results: dict[str, dict[int, BatchResult]] = {}

    async def get_execution(self, execution_id: str) -> Execution | None:
        execution = self.executions.get(execution_id)
        return execution.model_copy(deep=True) if execution else None

    async def list_batch_results(self, execution_id: str) -> list[BatchResult]:
        rows = self.results.get(execution_id, {})
        return [rows[i].model_copy(deep=True) for i in sorted(rows)]

    async def initialize_execution(
        self,
        execution: Execution,
        results: list[BatchResult],
    ) -> None:
        existing = self.executions.get(execution.id)
        if existing is not None and (
            existing.status != ExecutionStatus.QUEUED or self.results.get(execution.id)
        ):
            raise StateError(f"Execution {execution.id} is already initialized")
        self.executions[execution.id] = execution.model_copy(deep=True)
        self.results[execution.id] = {
            r.batch_index: r.model_copy(deep=True) for r in results
        }

    async def save_execution(self, execution: Execution) -> None:
        existing = self.executions.get(execution.id)
        if existing is None:
            raise StateError(f"Execution {execution.id} does not exist")
        if existing.is_terminal:
            raise StateError(f"Execution {execution.id} is already {existing.status.value}")
        # The cancel flag is owned by request_cancel(), not by the worker's copy
        stored = execution.model_copy(deep=True)
        stored.cancel_requested = existing.cancel_requested or execution.cancel_requested
        self.executions[execution.id] = stored

    async def save_batch_result(self, result: BatchResult) -> None:
        label = f"Batch result {result.execution_id}[{result.batch_index}]"
        rows = self.results.get(result.execution_id)
        if rows is None or result.batch_index not in rows:
            raise StateError(f"{label} does not exist")
        current = rows[result.batch_index]
        if current.status.is_terminal or self.executions[result.execution_id].is_terminal:
            raise StateError(
                f"{label} is {current.status.value} or belongs to a finished execution; "
                f"refusing to overwrite it with {result.status.value}"
            )
        rows[result.batch_index] = result.model_copy(deep=True)

    async def request_cancel(self, execution_id: str) -> bool:
        execution = self.executions.get(execution_id)
        if execution is None or execution.is_terminal:
            return False
        execution.cancel_requested = True
        return True

    async def list_executions(
        self,
        status: ExecutionStatus | None = None,
        limit: int = 50,
    ) -> list[Execution]:
        rows = [
            e for e in self.executions.values()
            if status is None or e.status == status
        ]
        rows.sort(key=lambda e: e.created_at, reverse=True)
        return [e.model_copy(deep=True) for e in rows[:limit]]
