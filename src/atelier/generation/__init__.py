"""Resilient client for the external image generation API."""

from atelier.generation.client import GenerationClient, GenerationRequest, GenerationResult
from atelier.generation.policy import AttemptPhase, AttemptPolicy, AttemptState
from atelier.generation.rate_limiter import ModelRateLimiter, RateLimiterStats
from atelier.generation.response import ExtractedImage, extract_image

__all__ = [
    "AttemptPhase",
    "AttemptPolicy",
    "AttemptState",
    "ExtractedImage",
    "GenerationClient",
    "GenerationRequest",
    "GenerationResult",
    "ModelRateLimiter",
    "RateLimiterStats",
    "extract_image",
]
