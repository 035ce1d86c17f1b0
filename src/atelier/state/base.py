"""Abstract base for execution stores."""

from abc import ABC, abstractmethod

from atelier.core.models import BatchResult, Execution, ExecutionStatus


class ExecutionStore(ABC):
    """Persistence for Execution aggregates and their BatchResult rows.

    The worker holding a job's lease is the only writer for that execution,
    so implementations do not need row-level locking across workers.
    """

    @abstractmethod
    async def get_execution(self, execution_id: str) -> Execution | None:
        """Load an execution, or None if it does not exist."""
        ...

    @abstractmethod
    async def list_batch_results(self, execution_id: str) -> list[BatchResult]:
        """Load all batch results of an execution ordered by batch_index."""
        ...

    @abstractmethod
    async def initialize_execution(
        self,
        execution: Execution,
        results: list[BatchResult],
    ) -> None:
        """Persist a new execution together with its pending batch results.

        An existing ``queued`` execution without batch results (written by the
        submission layer) is adopted. Anything else already stored under the
        same id is a conflict.

        Raises:
            StateError: If the execution was already initialized.
        """
        ...

    @abstractmethod
    async def save_execution(self, execution: Execution) -> None:
        """Persist the mutable fields of an existing execution.

        A terminal execution is never rewritten, so a delivery that lost its
        lease cannot undo the outcome recorded by its successor.

        Raises:
            StateError: If the execution is missing or already terminal.
        """
        ...

    @abstractmethod
    async def save_batch_result(self, result: BatchResult) -> None:
        """Persist the mutable fields of an existing batch result.

        Raises:
            StateError: If the row is missing, already terminal, or its
                execution is terminal.
        """
        ...

    @abstractmethod
    async def request_cancel(self, execution_id: str) -> bool:
        """Flag a non-terminal execution for cancellation.

        Returns:
            True if the flag was set, False if the execution is missing or
            already terminal.
        """
        ...

    @abstractmethod
    async def list_executions(
        self,
        status: ExecutionStatus | None = None,
        limit: int = 50,
    ) -> list[Execution]:
        """List executions, newest first, optionally filtered by status."""
        ...

    async def is_cancel_requested(self, execution_id: str) -> bool:
        """Whether cancellation was requested for an execution."""
        execution = await self.get_execution(execution_id)
        return execution is not None and execution.cancel_requested
