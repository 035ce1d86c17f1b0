"""Image extraction from ``generateContent`` responses.

The API has returned both snake_case (``inline_data``/``mime_type``) and
camelCase (``inlineData``/``mimeType``) field names; both are accepted.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from atelier.core.errors import EmptyResultError

DEFAULT_MIME_TYPE = "image/png"

_INLINE_KEYS = ("inline_data", "inlineData")
_MIME_KEYS = ("mime_type", "mimeType")


@dataclass(frozen=True)
class ExtractedImage:
    data: str
    mime_type: str


def _first_present(mapping: dict[str, Any], keys: tuple[str, ...]) -> Any:
    for key in keys:
        value = mapping.get(key)
        if value:
            return value
    return None


def extract_image(payload: Any) -> ExtractedImage:
    """Return the first inline image of the first candidate.

    Raises:
        EmptyResultError: No candidate, no parts, or no part with image data.
    """
    if not isinstance(payload, dict):
        raise EmptyResultError("No candidates in response")
    candidates = payload.get("candidates")
    if not isinstance(candidates, list) or not candidates:
        raise EmptyResultError("No candidates in response")

    content = candidates[0].get("content") if isinstance(candidates[0], dict) else None
    parts = content.get("parts") if isinstance(content, dict) else None
    if not isinstance(parts, list) or not parts:
        raise EmptyResultError("No content parts in response")

    for part in parts:
        if not isinstance(part, dict):
            continue
        inline = _first_present(part, _INLINE_KEYS)
        if not isinstance(inline, dict):
            continue
        data = inline.get("data")
        if data:
            mime_type = _first_present(inline, _MIME_KEYS) or DEFAULT_MIME_TYPE
            return ExtractedImage(data=data, mime_type=mime_type)

    raise EmptyResultError("No image data in response")
