"""Exception hierarchy and failure classification for Atelier.

All Atelier exceptions inherit from AtelierError so callers can catch broad
(AtelierError) or narrow (e.g. RateLimitError). Generation failures carry an
``ErrorKind`` and a ``retryable`` flag; the generation policy and the worker
decide what to do from those two fields alone.

| Kind          | Exception              | Retryable | Scope |
|---------------|------------------------|-----------|-------|
| validation    | ValidationError        | No        | item  |
| auth          | AuthError              | No        | batch |
| rate_limit    | RateLimitError         | Yes       | item  |
| server        | ServerError            | Yes       | item  |
| timeout       | GenerationTimeoutError | Yes       | item  |
| network       | NetworkError           | Yes       | item  |
| empty_result  | EmptyResultError       | No        | item  |
| storage       | StorageError           | Yes*      | item  |

*Storage failures are retried by the worker on its own budget.
"""

from __future__ import annotations

from enum import Enum


class ErrorKind(str, Enum):
    """Classification of a failed generation or upload."""

    VALIDATION = "validation"
    AUTH = "auth"
    RATE_LIMIT = "rate_limit"
    SERVER = "server"
    TIMEOUT = "timeout"
    NETWORK = "network"
    EMPTY_RESULT = "empty_result"
    STORAGE = "storage"

    @property
    def aborts_batch(self) -> bool:
        """Whether a failure of this kind must stop the whole batch."""
        return self is ErrorKind.AUTH


class AtelierError(Exception):
    """Base exception for all Atelier errors."""


class GenerationError(AtelierError):
    """A classified failure of one generation or upload attempt.

    Attributes:
        kind: Failure class.
        retryable: Whether another attempt could succeed.
        status_code: HTTP status returned by the upstream API, if any.
    """

    kind: ErrorKind = ErrorKind.SERVER
    retryable: bool = True

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class ValidationError(GenerationError):
    """The input (prompt, request body) was rejected. Never retried."""

    kind = ErrorKind.VALIDATION
    retryable = False


class AuthError(GenerationError):
    """The credential was refused upstream (HTTP 401/403).

    Aborts the whole batch: every remaining prompt would fail the same way.
    """

    kind = ErrorKind.AUTH
    retryable = False


class CredentialError(AuthError):
    """The credential reference could not be resolved or decrypted."""


class RateLimitError(GenerationError):
    """Upstream throttling (HTTP 429)."""

    kind = ErrorKind.RATE_LIMIT


class ServerError(GenerationError):
    """Upstream 5xx failure."""

    kind = ErrorKind.SERVER


class GenerationTimeoutError(GenerationError):
    """The attempt exceeded its (progressive) timeout."""

    kind = ErrorKind.TIMEOUT


class NetworkError(GenerationError):
    """Connection-level failure before any HTTP status was received."""

    kind = ErrorKind.NETWORK


class EmptyResultError(GenerationError):
    """The API answered successfully but returned no usable image."""

    kind = ErrorKind.EMPTY_RESULT
    retryable = False


class StorageError(GenerationError):
    """Artifact upload failed. Retried on the worker's storage budget."""

    kind = ErrorKind.STORAGE


class ConfigError(AtelierError):
    """Configuration could not be loaded or is invalid."""


class QueueError(AtelierError):
    """The job broker failed or was used incorrectly."""


class LeaseLostError(QueueError):
    """The delivery no longer holds its lease; another worker may own the job."""


class StateError(AtelierError):
    """Execution or batch-result state is missing or inconsistent."""


class InvalidTransitionError(StateError):
    """A status change would move a record backwards or out of a terminal state."""


def error_for_status(status_code: int, message: str) -> GenerationError:
    """Map an upstream HTTP status to the matching GenerationError.

    401/403 are credential failures, 429 is throttling, 5xx are server
    failures and every other 4xx is a request the API will never accept.
    """
    if status_code in (401, 403):
        return AuthError(message, status_code=status_code)
    if status_code == 429:
        return RateLimitError(message, status_code=status_code)
    if 400 <= status_code < 500:
        return ValidationError(message, status_code=status_code)
    return ServerError(message, status_code=status_code)


__all__ = [
    "AtelierError",
    "AuthError",
    "ConfigError",
    "CredentialError",
    "EmptyResultError",
    "ErrorKind",
    "GenerationError",
    "GenerationTimeoutError",
    "InvalidTransitionError",
    "LeaseLostError",
    "NetworkError",
    "QueueError",
    "RateLimitError",
    "ServerError",
    "StateError",
    "StorageError",
    "ValidationError",
    "error_for_status",
]
