"""HTTP client for the external image generation API.

``GenerationClient.generate()`` never raises for upstream failures: every
outcome is returned as a ``GenerationResult`` carrying either the decoded
image or the classified error. Retries, progressive timeouts and backoff are
driven by ``AttemptPolicy``.
"""

from __future__ import annotations

import asyncio
import base64
import binascii
import time
from dataclasses import dataclass, field
from typing import Any

import httpx

from atelier.core.config import GenerationConfig
from atelier.core.errors import (
    EmptyResultError,
    ErrorKind,
    GenerationError,
    GenerationTimeoutError,
    NetworkError,
    ValidationError,
    error_for_status,
)
from atelier.core.logging import get_logger
from atelier.core.models import ReferenceImage
from atelier.generation.policy import AttemptPhase, AttemptPolicy
from atelier.generation.rate_limiter import ModelRateLimiter
from atelier.generation.response import extract_image
from atelier.utils.time import elapsed_ms

_logger = get_logger("generation.client")

AUTH_MESSAGE = "Invalid or expired API key"
RATE_LIMIT_MESSAGE = "Rate limit exceeded. Please try again later."
INVALID_REQUEST_MESSAGE = "Invalid request"
SERVER_ERROR_MESSAGE = "Generation API server error. Please try again later."
TIMEOUT_MESSAGE = "Request timeout. The image generation took too long."


@dataclass(frozen=True)
class GenerationRequest:
    """One prompt plus the options shared by its batch."""

    prompt: str
    model: str
    aspect_ratio: str = "1:1"
    resolution: str | None = None
    reference_images: list[ReferenceImage] = field(default_factory=list)


@dataclass(frozen=True)
class GenerationResult:
    """Outcome of one generation call (all attempts included)."""

    success: bool
    processing_time_ms: int
    attempts: int = 0
    image_data: bytes | None = None
    mime_type: str | None = None
    error_kind: ErrorKind | None = None
    message: str | None = None
    status_code: int | None = None

    @classmethod
    def failed(
        cls,
        error: GenerationError,
        processing_time_ms: int,
        attempts: int,
    ) -> GenerationResult:
        return cls(
            success=False,
            processing_time_ms=processing_time_ms,
            attempts=attempts,
            error_kind=error.kind,
            message=error.message,
            status_code=error.status_code,
        )


def _upstream_message(response: httpx.Response) -> str | None:
    try:
        body = response.json()
    except ValueError:
        return None
    error = body.get("error") if isinstance(body, dict) else None
    if isinstance(error, dict) and isinstance(error.get("message"), str):
        return error["message"]
    return None


def classify_response(response: httpx.Response) -> GenerationError:
    """Turn a non-2xx response into a GenerationError with a user-facing message."""
    status = response.status_code
    if status in (401, 403):
        message = AUTH_MESSAGE
    elif status == 429:
        message = RATE_LIMIT_MESSAGE
    elif status >= 500:
        message = SERVER_ERROR_MESSAGE
    else:
        message = _upstream_message(response) or INVALID_REQUEST_MESSAGE
    return error_for_status(status, message)


class GenerationClient:
    """Calls ``{base_url}/models/{model}:generateContent`` with retries."""

    def __init__(
        self,
        config: GenerationConfig | None = None,
        rate_limiter: ModelRateLimiter | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        """Initialize the client.

        Args:
            config: API endpoint and resilience settings.
            rate_limiter: Shared limiter; a slot is taken before every attempt.
            http_client: Pre-built client (tests pass one with a MockTransport).
                Created lazily and owned by this instance when omitted.
        """
        self.config = config or GenerationConfig()
        self.policy = AttemptPolicy(self.config)
        self.rate_limiter = rate_limiter
        self._client = http_client
        self._owns_client = http_client is None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.config.timeout_base_ms / 1000, connect=10.0),
            )
        return self._client

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> GenerationClient:
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.close()

    # ─── Request building ─────────────────────────────────────────────

    def resolve_model(self, model: str | None) -> str:
        if model and model in self.config.valid_models:
            return model
        _logger.warning(
            "unknown_model_fallback",
            requested=model,
            fallback=self.config.default_model,
        )
        return self.config.default_model

    def build_payload(self, request: GenerationRequest, model: str) -> dict[str, Any]:
        parts: list[dict[str, Any]] = [{"text": request.prompt}]
        for image in request.reference_images:
            parts.append({"inline_data": {"mime_type": image.mime_type, "data": image.data}})

        image_config: dict[str, Any] = {"aspectRatio": request.aspect_ratio}
        if request.resolution and model in self.config.resolution_models:
            image_config["imageSize"] = request.resolution

        return {
            "contents": [{"parts": parts}],
            "generationConfig": {
                "responseModalities": ["Image"],
                "imageConfig": image_config,
            },
        }

    def endpoint(self, model: str) -> str:
        return f"{self.config.base_url.rstrip('/')}/models/{model}:generateContent"

    # ─── Calling ──────────────────────────────────────────────────────

    async def _attempt(
        self,
        url: str,
        api_key: str,
        payload: dict[str, Any],
        timeout_seconds: float,
    ) -> tuple[bytes, str]:
        client = self._get_client()
        try:
            response = await asyncio.wait_for(
                client.post(
                    url,
                    json=payload,
                    headers={"x-goog-api-key": api_key, "Content-Type": "application/json"},
                    timeout=timeout_seconds,
                ),
                timeout=timeout_seconds,
            )
        except (TimeoutError, httpx.TimeoutException) as e:
            raise GenerationTimeoutError(TIMEOUT_MESSAGE) from e
        except httpx.TransportError as e:
            raise NetworkError(f"Network error: {e}") from e

        if response.status_code >= 400:
            raise classify_response(response)

        try:
            body = response.json()
        except ValueError as e:
            raise EmptyResultError("Response body is not valid JSON") from e

        image = extract_image(body)
        try:
            data = base64.b64decode(image.data, validate=True)
        except (binascii.Error, ValueError) as e:
            raise EmptyResultError("Image data is not valid base64") from e
        return data, image.mime_type

    async def generate(self, api_key: str, request: GenerationRequest) -> GenerationResult:
        """Generate one image, retrying per the attempt policy."""
        started = time.monotonic()

        if len(request.prompt) < self.config.min_prompt_length:
            error = ValidationError(
                f"Prompt must be at least {self.config.min_prompt_length} characters"
            )
            _logger.warning("prompt_rejected", length=len(request.prompt))
            return GenerationResult.failed(error, elapsed_ms(started), attempts=0)

        model = self.resolve_model(request.model)
        if len(request.reference_images) > self.config.max_reference_images:
            _logger.warning(
                "too_many_reference_images",
                count=len(request.reference_images),
                limit=self.config.max_reference_images,
            )

        url = self.endpoint(model)
        payload = self.build_payload(request, model)
        state = self.policy.start()

        while True:
            if self.rate_limiter is not None:
                await self.rate_limiter.acquire(model)

            attempt_started = time.monotonic()
            _logger.debug(
                "generation_attempt",
                model=model,
                attempt=state.attempt,
                timeout_ms=state.timeout_ms,
            )
            try:
                data, mime_type = await self._attempt(
                    url, api_key, payload, state.timeout_ms / 1000
                )
            except GenerationError as e:
                state = self.policy.on_failure(state, e)
                _logger.warning(
                    "generation_attempt_failed",
                    model=model,
                    attempt=state.attempt,
                    error_kind=e.kind.value,
                    status_code=e.status_code,
                    error=e.message,
                    will_retry=state.phase is AttemptPhase.WAITING,
                )
                if state.phase is AttemptPhase.FAILED:
                    return GenerationResult.failed(e, elapsed_ms(started), state.attempt)
                await asyncio.sleep(state.delay_ms / 1000)
                state = self.policy.next_attempt(state)
                continue

            state = self.policy.on_success(state)
            attempt_ms = elapsed_ms(attempt_started)
            if attempt_ms > state.timeout_ms * self.config.slow_call_ratio:
                _logger.warning(
                    "generation_slow",
                    model=model,
                    attempt=state.attempt,
                    duration_ms=attempt_ms,
                    timeout_ms=state.timeout_ms,
                )
            total_ms = elapsed_ms(started)
            _logger.info(
                "generation_succeeded",
                model=model,
                attempt=state.attempt,
                duration_ms=total_ms,
                bytes=len(data),
            )
            return GenerationResult(
                success=True,
                processing_time_ms=total_ms,
                attempts=state.attempt,
                image_data=data,
                mime_type=mime_type,
            )
