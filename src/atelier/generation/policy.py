"""Per-call resilience policy for the generation client.

The policy is an explicit state machine over attempts:

    ATTEMPTING(k) --success--> SUCCEEDED
    ATTEMPTING(k) --retryable failure, k < max--> WAITING(k, delay)
    ATTEMPTING(k) --non-retryable failure or k == max--> FAILED
    WAITING(k, delay) --delay elapsed--> ATTEMPTING(k + 1)

Attempt ``k`` is allowed ``timeout_base_ms + timeout_step_ms * (k - 1)``.
After a failed attempt ``a`` the wait is ``timeout_retry_delay_ms * a`` if the
attempt timed out, ``retry_delay_ms * a`` otherwise.

Example usage:
    policy = AttemptPolicy(config)
    state = policy.start()
    while not state.is_final:
        ...  # run one attempt within state.timeout_ms
        state = policy.on_failure(state, error)
        if state.phase is AttemptPhase.WAITING:
            await asyncio.sleep(state.delay_ms / 1000)
            state = policy.next_attempt(state)
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from enum import Enum

from atelier.core.config import GenerationConfig
from atelier.core.errors import ErrorKind, GenerationError, InvalidTransitionError


class AttemptPhase(str, Enum):
    """Where a call is in its attempt lifecycle."""

    ATTEMPTING = "attempting"
    WAITING = "waiting"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


@dataclass(frozen=True)
class AttemptState:
    """Immutable snapshot of one call's progress through its attempts."""

    phase: AttemptPhase
    attempt: int
    timeout_ms: int
    delay_ms: int = 0
    error: GenerationError | None = None

    @property
    def is_final(self) -> bool:
        return self.phase in (AttemptPhase.SUCCEEDED, AttemptPhase.FAILED)


class AttemptPolicy:
    """Drives attempts, timeouts and backoff for one generation call."""

    def __init__(self, config: GenerationConfig | None = None) -> None:
        self.config = config or GenerationConfig()

    @property
    def max_attempts(self) -> int:
        return self.config.max_attempts

    def timeout_ms(self, attempt: int) -> int:
        """Timeout granted to attempt ``attempt`` (1-based)."""
        return self.config.timeout_base_ms + self.config.timeout_step_ms * (attempt - 1)

    def backoff_ms(self, attempt: int, error: GenerationError) -> int:
        """Wait before the attempt following failed attempt ``attempt``."""
        unit = (
            self.config.timeout_retry_delay_ms
            if error.kind is ErrorKind.TIMEOUT
            else self.config.retry_delay_ms
        )
        return unit * attempt

    def start(self) -> AttemptState:
        return AttemptState(AttemptPhase.ATTEMPTING, 1, self.timeout_ms(1))

    def on_success(self, state: AttemptState) -> AttemptState:
        self._require(state, AttemptPhase.ATTEMPTING)
        return replace(state, phase=AttemptPhase.SUCCEEDED, delay_ms=0, error=None)

    def on_failure(self, state: AttemptState, error: GenerationError) -> AttemptState:
        self._require(state, AttemptPhase.ATTEMPTING)
        if not error.retryable or state.attempt >= self.max_attempts:
            return replace(state, phase=AttemptPhase.FAILED, delay_ms=0, error=error)
        return replace(
            state,
            phase=AttemptPhase.WAITING,
            delay_ms=self.backoff_ms(state.attempt, error),
            error=error,
        )

    def next_attempt(self, state: AttemptState) -> AttemptState:
        self._require(state, AttemptPhase.WAITING)
        attempt = state.attempt + 1
        return AttemptState(AttemptPhase.ATTEMPTING, attempt, self.timeout_ms(attempt))

    @staticmethod
    def _require(state: AttemptState, phase: AttemptPhase) -> None:
        if state.phase is not phase:
            raise InvalidTransitionError(
                f"Attempt {state.attempt} is {state.phase.value}, expected {phase.value}"
            )
