"""Parsing of the intent marker the chat assistant appends to its answers."""
from __future__ import annotations

import json
import re
from dataclasses import dataclass, field

from wykra.models.intents import canonical_intent
from wykra.services.json_parse import parse_json_object

_PATH = r"/(?:instagram|tiktok)/(?:search|analysis|profile)"

_STRICT_RE = re.compile(
    r"\[DETECTED_ENDPOINT:\s*(\{[\s\S]*?\}|" + _PATH + r"|none)\s*\]",
    re.IGNORECASE,
)
_EMBEDDED_RE = re.compile(
    r"\{[\s\S]*\"(?:detectedEndpoint|endpoint)\"\s*:\s*\"(" + _PATH + r"|none)\"[\s\S]*\}",
    re.IGNORECASE,
)
_LEGACY_RE = re.compile(
    r"DETECTED_ENDPOINT:\s*((?:instagram|tiktok)_(?:search|analysis|profile)|" + _PATH + r"|none)\b",
    re.IGNORECASE,
)
_STRIP_RES = (
    re.compile(r"\[DETECTED_ENDPOINT:[\s\S]*?\]", re.IGNORECASE),
    re.compile(r"^[ \t]*DETECTED_ENDPOINT:[^\n]*$", re.IGNORECASE | re.MULTILINE),
)


@dataclass
class IntentMarker:
    """A parsed marker. ``intent`` is None for an explicit ``none``."""

    intent: str | None
    params: dict[str, str] = field(default_factory=dict)


def _params_from(payload: dict) -> dict[str, str]:
    raw = payload.get("params")
    if not isinstance(raw, dict):
        return {}
    return {key: str(value).strip() for key, value in raw.items() if key in ("query", "profile") and value}


def _from_json(blob: str) -> IntentMarker | None:
    try:
        payload = json.loads(blob)
    except (json.JSONDecodeError, ValueError):
        payload = parse_json_object(blob)
    if not isinstance(payload, dict):
        return None
    endpoint = payload.get("endpoint") or payload.get("detectedEndpoint")
    if isinstance(endpoint, str) and endpoint.strip().lower() == "none":
        return IntentMarker(None)
    intent = canonical_intent(endpoint if isinstance(endpoint, str) else None)
    if intent is None:
        return None
    return IntentMarker(intent, _params_from(payload))


def _from_value(value: str) -> IntentMarker | None:
    if value.strip().lower() == "none":
        return IntentMarker(None)
    intent = canonical_intent(value)
    return IntentMarker(intent) if intent else None


def parse_intent_marker(text: str | None) -> IntentMarker | None:
    """Find the intent marker in an assistant answer.

    Tries the bracketed form, then a JSON object carrying ``detectedEndpoint``
    or ``endpoint``, then the old unbracketed ``DETECTED_ENDPOINT: x`` line.
    Returns None when no form matches.
    """
    if not text:
        return None

    match = _STRICT_RE.search(text)
    if match:
        value = match.group(1)
        marker = _from_json(value) if value.startswith("{") else _from_value(value)
        if marker is not None:
            return marker

    match = _EMBEDDED_RE.search(text)
    if match:
        marker = _from_json(match.group(0))
        if marker is None:
            marker = _from_value(match.group(1))
        if marker is not None:
            return marker

    match = _LEGACY_RE.search(text)
    if match:
        return _from_value(match.group(1))
    return None


def strip_intent_markers(text: str | None) -> str:
    if not text:
        return ""
    for pattern in _STRIP_RES:
        text = pattern.sub("", text)
    return text.strip()
