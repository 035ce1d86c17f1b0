"""Tests for storage backends and credential resolvers."""

from datetime import UTC, datetime
from pathlib import Path
from unittest.mock import patch

import pytest

from atelier.collaborators.credentials import EnvCredentialResolver, StaticCredentialResolver
from atelier.collaborators.storage import (
    InMemoryStorageBackend,
    LocalStorageBackend,
    artifact_key,
)
from atelier.core.config import StorageConfig
from atelier.core.errors import CredentialError, StorageError


class TestArtifactKey:
    def test_key_layout(self):
        now = datetime(2025, 1, 2, 3, 4, 5, tzinfo=UTC)
        key = artifact_key("exec-1", 4, "image/png", now)
        assert key == f"exec-1/4_{int(now.timestamp() * 1000)}.png"

    def test_jpeg_extension(self):
        key = artifact_key("e", 0, "image/jpeg", datetime.now(UTC))
        assert key.endswith(".jpg")


class TestLocalStorageBackend:
    """Tests for the filesystem backend."""

    async def test_upload_writes_file_and_url(self, tmp_path: Path):
        backend = LocalStorageBackend(
            StorageConfig(root=tmp_path / "art", public_base_url="https://cdn.example.com/a/")
        )
        stored = await backend.upload(b"png-bytes", "image/png", "exec-1/0_1.png")

        assert (tmp_path / "art" / "exec-1" / "0_1.png").read_bytes() == b"png-bytes"
        assert stored.public_url == "https://cdn.example.com/a/exec-1/0_1.png"
        assert stored.key == "exec-1/0_1.png"
        assert stored.size == 9

    @pytest.mark.parametrize("key", ["", "/abs.png", "../escape.png", "a/../../b.png"])
    async def test_rejects_unsafe_keys(self, tmp_path: Path, key):
        backend = LocalStorageBackend(StorageConfig(root=tmp_path))
        with pytest.raises(StorageError):
            await backend.upload(b"x", "image/png", key)

    async def test_os_error_becomes_storage_error(self, tmp_path: Path):
        backend = LocalStorageBackend(StorageConfig(root=tmp_path))
        with patch.object(Path, "write_bytes", side_effect=OSError("disk full")):
            with pytest.raises(StorageError, match="disk full") as exc_info:
                await backend.upload(b"x", "image/png", "e/0.png")
        assert exc_info.value.retryable is True


class TestInMemoryStorageBackend:
    async def test_keeps_objects(self):
        backend = InMemoryStorageBackend("memory://bucket/")
        stored = await backend.upload(b"abc", "image/webp", "e/1.webp")
        assert backend.objects["e/1.webp"] == (b"abc", "image/webp")
        assert stored.public_url == "memory://bucket/e/1.webp"


class TestCredentialResolvers:
    """Tests for credential resolution."""

    async def test_env_resolver(self):
        resolver = EnvCredentialResolver(environ={"GEMINI_KEY": " abc123 "})
        assert await resolver.resolve("GEMINI_KEY") == "abc123"
        assert await resolver.resolve("env:GEMINI_KEY") == "abc123"

    async def test_env_resolver_prefix(self):
        resolver = EnvCredentialResolver(prefix="ATELIER_", environ={"ATELIER_KEY": "x"})
        assert await resolver.resolve("KEY") == "x"

    @pytest.mark.parametrize("ref", ["MISSING", "EMPTY", "not a name", "env:"])
    async def test_env_resolver_failures(self, ref):
        resolver = EnvCredentialResolver(environ={"EMPTY": "  "})
        with pytest.raises(CredentialError) as exc_info:
            await resolver.resolve(ref)
        assert exc_info.value.retryable is False

    async def test_static_resolver(self):
        resolver = StaticCredentialResolver({"client-a": "key-a"})
        assert await resolver.resolve("client-a") == "key-a"
        with pytest.raises(CredentialError):
            await resolver.resolve("client-b")
