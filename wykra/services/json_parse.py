"""Lenient JSON extraction from LLM answers."""
from __future__ import annotations

import json
import re
from typing import Any

_OBJECT_RE = re.compile(r"\{[\s\S]*\}")
_ARRAY_RE = re.compile(r"\[[\s\S]*\]")
_FENCE_RE = re.compile(r"^```(?:json)?\s*|\s*```$", re.IGNORECASE)


def strip_code_fence(text: str) -> str:
    return _FENCE_RE.sub("", text.strip())


def safe_json_parse_from_text(text: str | None) -> Any | None:
    """Parse the outermost JSON object (or array) embedded in ``text``.

    Returns ``None`` when nothing parses.
    """
    if not text:
        return None
    cleaned = strip_code_fence(text)
    match = _OBJECT_RE.search(cleaned) or _ARRAY_RE.search(cleaned)
    candidate = match.group(0) if match else cleaned
    try:
        return json.loads(candidate)
    except (json.JSONDecodeError, ValueError):
        return None


def parse_json_object(text: str | None) -> dict[str, Any] | None:
    """Strict parse first, then the first ``{...}`` block. Dicts only."""
    if not text:
        return None
    try:
        parsed = json.loads(strip_code_fence(text))
    except (json.JSONDecodeError, ValueError):
        parsed = safe_json_parse_from_text(text)
    return parsed if isinstance(parsed, dict) else None
