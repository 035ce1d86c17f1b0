"""Artifact storage backends.

The worker only needs ``upload(data, content_type, key)``; the returned
``StoredObject`` carries the key and the public URL recorded on the batch
result. Upload failures are raised as ``StorageError`` (retryable).
"""

from __future__ import annotations

import asyncio
import mimetypes
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path, PurePosixPath

from atelier.core.config import StorageConfig
from atelier.core.errors import StorageError
from atelier.core.logging import get_logger

_logger = get_logger("storage")


@dataclass(frozen=True)
class StoredObject:
    key: str
    public_url: str
    size: int


def artifact_key(
    execution_id: str,
    batch_index: int,
    content_type: str,
    now: datetime,
) -> str:
    """Object key ``{execution_id}/{batch_index}_{timestamp_ms}{ext}``."""
    ext = mimetypes.guess_extension(content_type) or ".png"
    if ext == ".jpe":
        ext = ".jpg"
    return f"{execution_id}/{batch_index}_{int(now.timestamp() * 1000)}{ext}"


def _validate_key(key: str) -> PurePosixPath:
    path = PurePosixPath(key)
    if not key or path.is_absolute() or ".." in path.parts:
        raise StorageError(f"Invalid object key: {key!r}")
    return path


class StorageBackend(ABC):
    """Destination for generated artifacts."""

    @abstractmethod
    async def upload(self, data: bytes, content_type: str, key: str) -> StoredObject:
        """Store ``data`` under ``key``.

        Raises:
            StorageError: If the object could not be written.
        """
        ...

    async def close(self) -> None:
        """Release backend resources."""


class LocalStorageBackend(StorageBackend):
    """Writes artifacts below a directory served at ``public_base_url``."""

    def __init__(self, config: StorageConfig | None = None) -> None:
        self.config = config or StorageConfig()
        self.root = self.config.root.expanduser()

    def _write(self, target: Path, data: bytes) -> None:
        target.parent.mkdir(parents=True, exist_ok=True)
        # Write-then-rename so readers never see a partial file
        tmp = target.with_name(target.name + ".part")
        tmp.write_bytes(data)
        tmp.replace(target)

    async def upload(self, data: bytes, content_type: str, key: str) -> StoredObject:
        rel = _validate_key(key)
        target = self.root.joinpath(*rel.parts)
        try:
            await asyncio.to_thread(self._write, target, data)
        except OSError as e:
            raise StorageError(f"Failed to write {key}: {e}") from e
        _logger.debug("artifact_stored", key=key, size=len(data), content_type=content_type)
        return StoredObject(
            key=key,
            public_url=f"{self.config.public_base_url}/{rel.as_posix()}",
            size=len(data),
        )


class InMemoryStorageBackend(StorageBackend):
    """Keeps artifacts in a dict. For tests."""

    def __init__(self, public_base_url: str = "memory://artifacts") -> None:
        self.public_base_url = public_base_url.rstrip("/")
        self.objects: dict[str, tuple[bytes, str]] = {}

    async def upload(self, data: bytes, content_type: str, key: str) -> StoredObject:
        _validate_key(key)
        self.objects[key] = (data, content_type)
        return StoredObject(key=key, public_url=f"{self.public_base_url}/{key}", size=len(data))
