"""Structured search context extracted from a free-text query."""
from __future__ import annotations

import math
import re
from dataclasses import asdict, dataclass, field
from typing import Any, Awaitable, Callable

from loguru import logger

from wykra import llm_client
from wykra.services import error_tracking
from wykra.services.json_parse import safe_json_parse_from_text
from wykra.services.prompt_store import render_prompt

CompleteFn = Callable[..., Awaitable[llm_client.Completion]]

MAX_SEARCH_TERMS = 3

COUNTRY_ALIASES = {
    "portugal": "PT",
    "portuguese republic": "PT",
    "united states": "US",
    "united states of america": "US",
    "usa": "US",
    "america": "US",
    "united kingdom": "GB",
    "uk": "GB",
    "england": "GB",
    "scotland": "GB",
    "wales": "GB",
    "northern ireland": "GB",
    "germany": "DE",
    "deutschland": "DE",
    "france": "FR",
    "spain": "ES",
    "espana": "ES",
    "españa": "ES",
    "italy": "IT",
    "italia": "IT",
    "canada": "CA",
    "australia": "AU",
    "brazil": "BR",
    "brasil": "BR",
    "mexico": "MX",
    "japan": "JP",
    "nippon": "JP",
    "china": "CN",
    "india": "IN",
}


@dataclass
class SearchContext:
    category: str | None = None
    results_count: int | None = None
    location: str | None = None
    followers_range: str | None = None
    country_code: str | None = None
    search_terms: list[str] = field(default_factory=list)

    def to_dict(self, platform: str = "instagram") -> dict[str, Any]:
        data = asdict(self)
        if platform != "tiktok":
            data.pop("country_code")
            data.pop("search_terms")
        return data


def normalize_country_code(value: Any) -> str | None:
    """Two-letter codes pass through upper-cased; common country names are mapped."""
    if not isinstance(value, str) or not value.strip():
        return None
    trimmed = value.strip()
    if re.fullmatch(r"[a-zA-Z]{2}", trimmed):
        return trimmed.upper()
    return COUNTRY_ALIASES.get(trimmed.lower())


def _string_or_none(value: Any) -> str | None:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def _count_or_none(value: Any) -> int | None:
    if isinstance(value, bool) or value is None:
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(number):
        return None
    return int(number)


def _search_terms(value: Any) -> list[str]:
    if not isinstance(value, list):
        return []
    terms = [item.strip() for item in value if isinstance(item, str) and item.strip()]
    return terms[:MAX_SEARCH_TERMS]


def context_from_payload(payload: Any, platform: str) -> SearchContext:
    if not isinstance(payload, dict):
        return SearchContext()
    context = SearchContext(
        category=_string_or_none(payload.get("category")),
        results_count=_count_or_none(payload.get("results_count")),
        location=_string_or_none(payload.get("location")),
        followers_range=_string_or_none(payload.get("followers_range")),
    )
    if platform == "tiktok":
        context.country_code = normalize_country_code(payload.get("country_code")) or normalize_country_code(
            context.location
        )
        context.search_terms = _search_terms(payload.get("search_terms"))
    return context


async def extract_search_context(
    query: str,
    platform: str,
    complete: CompleteFn = llm_client.complete,
) -> tuple[SearchContext, llm_client.Usage]:
    """Ask the LLM for structured search fields.

    A reply that does not parse yields an empty context; the caller's
    category check then fails the task.
    """
    prompt = render_prompt(f"context.{platform}", query=query)
    completion = await complete(prompt, caller=f"{platform}_search_context")
    parsed = safe_json_parse_from_text(completion.text)
    if not isinstance(parsed, dict):
        logger.warning(f"Failed to parse {platform} search context JSON, using empty context")
        error_tracking.capture_exception(
            ValueError("Failed to parse search context JSON"),
            query=query,
            raw_response=completion.text[:2000],
        )
    return context_from_payload(parsed, platform), completion.usage
