"""Tests for configuration models and error classification."""

from pathlib import Path

import pytest
from pydantic import ValidationError

from atelier.core.config import (
    PRO_MODEL,
    AtelierConfig,
    GenerationConfig,
    QueueConfig,
    StorageConfig,
)
from atelier.core.errors import (
    AuthError,
    ConfigError,
    CredentialError,
    EmptyResultError,
    ErrorKind,
    GenerationTimeoutError,
    NetworkError,
    RateLimitError,
    ServerError,
    StorageError,
    ValidationError as InputValidationError,
    error_for_status,
)


class TestQueueConfig:
    """Tests for QueueConfig defaults and backoff."""

    def test_defaults(self):
        config = QueueConfig()
        assert config.max_attempts == 3
        assert config.visibility_timeout_seconds == 1800
        assert config.keep_completed == 100
        assert config.keep_failed == 500

    def test_backoff_doubles(self):
        """Redelivery waits 2s, 4s, 8s..."""
        config = QueueConfig()
        assert [config.backoff_for(n) for n in (1, 2, 3)] == [2.0, 4.0, 8.0]

    def test_db_path_expands_home(self):
        config = QueueConfig(db_path=Path("~/q.db"))
        assert "~" not in str(config.resolved_db_path())


class TestGenerationConfig:
    """Tests for GenerationConfig validation."""

    def test_default_model_must_be_valid(self):
        with pytest.raises(ValidationError):
            GenerationConfig(default_model="imagen-1")

    def test_timeout_delay_not_below_retry_delay(self):
        with pytest.raises(ValidationError):
            GenerationConfig(retry_delay_ms=3000, timeout_retry_delay_ms=1000)

    def test_pro_model_accepts_resolution(self):
        assert PRO_MODEL in GenerationConfig().resolution_models


class TestStorageConfig:
    def test_trailing_slash_stripped(self):
        assert StorageConfig(public_base_url="https://cdn/x/").public_base_url == "https://cdn/x"


class TestAtelierConfigLoading:
    """Tests for YAML loading."""

    def test_from_yaml(self, tmp_path: Path):
        path = tmp_path / "atelier.yaml"
        path.write_text(
            "queue:\n  max_attempts: 5\n"
            "worker:\n  pool_size: 4\n"
            "log_level: DEBUG\n"
        )
        config = AtelierConfig.from_yaml(path)
        assert config.queue.max_attempts == 5
        assert config.worker.pool_size == 4
        assert config.log_level == "DEBUG"
        assert config.generation.max_attempts == 3

    def test_empty_file_gives_defaults(self, tmp_path: Path):
        path = tmp_path / "empty.yaml"
        path.write_text("")
        assert AtelierConfig.from_yaml(path) == AtelierConfig()

    def test_missing_file_raises_config_error(self, tmp_path: Path):
        with pytest.raises(ConfigError, match="Cannot read config"):
            AtelierConfig.from_yaml(tmp_path / "nope.yaml")

    def test_invalid_values_raise_config_error(self, tmp_path: Path):
        path = tmp_path / "bad.yaml"
        path.write_text("worker:\n  pool_size: 0\n")
        with pytest.raises(ConfigError, match="Invalid config"):
            AtelierConfig.from_yaml(path)

    def test_load_without_path(self):
        assert AtelierConfig.load(None) == AtelierConfig()


# =============================================================================
# Error classification
# =============================================================================


class TestErrorClassification:
    """Tests for the generation error taxonomy."""

    @pytest.mark.parametrize(
        ("status", "cls", "retryable"),
        [
            (401, AuthError, False),
            (403, AuthError, False),
            (429, RateLimitError, True),
            (400, InputValidationError, False),
            (404, InputValidationError, False),
            (500, ServerError, True),
            (503, ServerError, True),
        ],
    )
    def test_error_for_status(self, status, cls, retryable):
        error = error_for_status(status, "msg")
        assert type(error) is cls
        assert error.retryable is retryable
        assert error.status_code == status

    @pytest.mark.parametrize(
        ("cls", "kind", "retryable"),
        [
            (GenerationTimeoutError, ErrorKind.TIMEOUT, True),
            (NetworkError, ErrorKind.NETWORK, True),
            (EmptyResultError, ErrorKind.EMPTY_RESULT, False),
            (StorageError, ErrorKind.STORAGE, True),
            (CredentialError, ErrorKind.AUTH, False),
        ],
    )
    def test_kinds(self, cls, kind, retryable):
        error = cls("msg")
        assert error.kind is kind
        assert error.retryable is retryable

    def test_only_auth_aborts_batch(self):
        assert [k for k in ErrorKind if k.aborts_batch] == [ErrorKind.AUTH]
