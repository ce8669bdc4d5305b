"""Two-stage profile discovery.

Stage 1 asks a search-augmented model for profile URLs it can attribute to a
credible source. When the scraper returns fewer than ``min_profiles`` unique
profiles for those URLs, Stage 2 asks again with a permissive prompt and only
the new URLs are fetched. Profiles are merged by URL, first occurrence wins.
"""
from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Iterable
from urllib.parse import quote

from loguru import logger

from wykra import llm_client
from wykra.normalizer import pick_string
from wykra.pipeline.context import SearchContext
from wykra.pipeline.errors import PreconditionError
from wykra.pipeline.profiles import strip_trailing_punctuation
from wykra.services.prompt_store import render_prompt

SearchFn = Callable[[str], Awaitable[llm_client.Completion]]
FetchProfilesFn = Callable[[list[str]], Awaitable[list[dict[str, Any]]]]

PLATFORM_DOMAINS = {
    "instagram": "instagram.com",
    "tiktok": "tiktok.com",
}
PROFILE_URL_KEYS = ("profile_url", "url", "profileUrl")
MIN_STAGE1_PROFILES = 5
MAX_TIKTOK_SEARCH_URLS = 3

_URL_RE = re.compile(r"https?://[^\s]+")


@dataclass
class DiscoveryResult:
    stage1_prompt: str
    stage1_response: str
    stage1_urls: list[str]
    stage2_prompt: str | None = None
    stage2_response: str | None = None
    stage2_urls: list[str] = field(default_factory=list)
    urls: list[str] = field(default_factory=list)
    profiles: list[dict[str, Any]] = field(default_factory=list)
    stage2_ran: bool = False
    usage: llm_client.Usage = field(default_factory=llm_client.Usage)

    @property
    def last_prompt(self) -> str:
        return self.stage2_prompt if self.stage2_ran and self.stage2_prompt else self.stage1_prompt


def _location_clause(context: SearchContext) -> str:
    return f" from {context.location}" if context.location else ""


def _followers_clause(context: SearchContext) -> str:
    return f" and have at least {context.followers_range} followers" if context.followers_range else ""


def build_stage1_prompt(context: SearchContext) -> str:
    return render_prompt(
        "discovery.instagram_stage1",
        location_clause=_location_clause(context),
        category=context.category or "",
        followers_clause=_followers_clause(context),
    )


def build_stage2_prompt(context: SearchContext) -> str:
    return render_prompt(
        "discovery.instagram_stage2",
        location_clause=_location_clause(context),
        category=context.category or "",
        followers_clause=_followers_clause(context),
    )


def url_key(url: str) -> str:
    """Comparison key for a profile URL: lower-cased, no query, fragment or trailing slash."""
    cleaned = re.split(r"[?#]", url.strip(), maxsplit=1)[0]
    cleaned = re.sub(r"^https?://", "", cleaned, flags=re.IGNORECASE)
    cleaned = re.sub(r"^www\.", "", cleaned, flags=re.IGNORECASE)
    return cleaned.rstrip("/").lower()


def extract_platform_urls(text: str | None, platform: str) -> list[str]:
    """URLs on the platform's domain found in free text, de-duplicated in order."""
    domain = PLATFORM_DOMAINS[platform]
    urls: list[str] = []
    seen: set[str] = set()
    for match in _URL_RE.findall(text or ""):
        url = strip_trailing_punctuation(match)
        if domain not in url.lower():
            continue
        key = url_key(url)
        if key in seen:
            continue
        seen.add(key)
        urls.append(url)
    return urls


def profile_record_key(record: Any, platform: str) -> str | None:
    url = pick_string(record, PROFILE_URL_KEYS)
    if not url or PLATFORM_DOMAINS[platform] not in url.lower():
        return None
    return url_key(url)


def merge_profiles_by_url(batches: Iterable[Iterable[dict[str, Any]]], platform: str) -> list[dict[str, Any]]:
    """Keep the first record seen for each profile URL. Records without a URL are appended as-is."""
    by_url: dict[str, dict[str, Any]] = {}
    unkeyed: list[dict[str, Any]] = []
    for batch in batches:
        for record in batch:
            key = profile_record_key(record, platform)
            if key is None:
                unkeyed.append(record)
            elif key not in by_url:
                by_url[key] = record
    return list(by_url.values()) + unkeyed


def count_unique_profiles(records: Iterable[dict[str, Any]], platform: str) -> int:
    return len({key for key in (profile_record_key(r, platform) for r in records) if key})


async def run_two_stage_discovery(
    *,
    platform: str,
    stage1_prompt: str,
    stage2_prompt: str,
    search: SearchFn,
    fetch_profiles: FetchProfilesFn,
    min_profiles: int = MIN_STAGE1_PROFILES,
) -> DiscoveryResult:
    """Run Stage 1 and, when it comes up short, Stage 2.

    Depends only on the injected ``search`` and ``fetch_profiles`` callables.
    Provider errors propagate unchanged.
    """
    stage1 = await search(stage1_prompt)
    stage1_urls = extract_platform_urls(stage1.text, platform)
    logger.info(f"Stage 1 found {len(stage1_urls)} {platform} URLs")

    stage1_profiles = await fetch_profiles(stage1_urls) if stage1_urls else []
    unique_stage1 = count_unique_profiles(stage1_profiles, platform)

    result = DiscoveryResult(
        stage1_prompt=stage1_prompt,
        stage1_response=stage1.text,
        stage1_urls=stage1_urls,
        usage=stage1.usage,
    )

    batches = [stage1_profiles]
    all_urls = list(stage1_urls)
    if unique_stage1 < min_profiles:
        logger.info(f"Stage 1 returned {unique_stage1} profiles (< {min_profiles}), running Stage 2")
        stage2 = await search(stage2_prompt)
        requested = {url_key(url) for url in stage1_urls}
        stage2_urls = [
            url for url in extract_platform_urls(stage2.text, platform) if url_key(url) not in requested
        ]
        stage2_profiles = await fetch_profiles(stage2_urls) if stage2_urls else []
        batches.append(stage2_profiles)
        all_urls.extend(stage2_urls)

        result.stage2_ran = True
        result.stage2_prompt = stage2_prompt
        result.stage2_response = stage2.text
        result.stage2_urls = stage2_urls
        result.usage = result.usage + stage2.usage
        logger.info(f"Stage 2 added {len(stage2_urls)} new URLs, {len(stage2_profiles)} profiles")

    result.urls = all_urls
    result.profiles = merge_profiles_by_url(batches, platform)
    return result


def tiktok_search_terms(context: SearchContext) -> list[str]:
    if context.search_terms:
        return context.search_terms[:MAX_TIKTOK_SEARCH_URLS]
    base_term = " ".join(part for part in (context.category, context.location) if part).strip()
    if not base_term:
        raise PreconditionError("No search terms could be determined from the query")
    return [base_term]


def build_tiktok_search_urls(terms: list[str]) -> list[str]:
    return [f"https://www.tiktok.com/search?q={quote(term)}" for term in terms[:MAX_TIKTOK_SEARCH_URLS]]
