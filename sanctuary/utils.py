"""Shared utility functions used across Sanctuary modules."""
from __future__ import annotations

import json
import re
from typing import Any

_MISSING = object()
_FENCE_RE = re.compile(r"^```(?:json)?\s*(.*?)\s*```$", re.DOTALL)


def json_parse(value: str | None, default: Any = _MISSING) -> Any:
    """Safely parse a JSON string, returning *default* on failure.

    If no default is given, returns ``{}`` on parse error.
    """
    try:
        return json.loads(value or "")
    except (json.JSONDecodeError, TypeError):
        return {} if default is _MISSING else default


def strip_code_fence(text: str) -> str:
    """Remove a surrounding markdown code fence from an LLM reply, if any."""
    text = text.strip()
    m = _FENCE_RE.match(text)
    return m.group(1) if m else text


def chunked(items: list, size: int) -> list[list]:
    """Split *items* into consecutive chunks of at most *size*, preserving order."""
    if size < 1:
        raise ValueError("chunk size must be >= 1")
    return [items[i:i + size] for i in range(0, len(items), size)]
