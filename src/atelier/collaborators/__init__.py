"""External collaborators the worker depends on: artifact storage and credentials."""

from atelier.collaborators.credentials import (
    CredentialResolver,
    EnvCredentialResolver,
    StaticCredentialResolver,
)
from atelier.collaborators.storage import (
    InMemoryStorageBackend,
    LocalStorageBackend,
    StorageBackend,
    StoredObject,
    artifact_key,
)

__all__ = [
    "CredentialResolver",
    "EnvCredentialResolver",
    "InMemoryStorageBackend",
    "LocalStorageBackend",
    "StaticCredentialResolver",
    "StorageBackend",
    "StoredObject",
    "artifact_key",
]
