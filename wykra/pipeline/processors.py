"""Job processors, one per (topic, name) pair consumed by the worker."""
from __future__ import annotations

from typing import Any, Awaitable, Callable

from loguru import logger

from wykra import llm_client
from wykra.config import settings
from wykra.normalizer import normalize_tiktok_handle
from wykra.pipeline.analysis import analyze_profile
from wykra.pipeline.context import extract_search_context
from wykra.pipeline.discovery import (
    build_stage1_prompt,
    build_stage2_prompt,
    build_tiktok_search_urls,
    merge_profiles_by_url,
    run_two_stage_discovery,
    tiktok_search_terms,
)
from wykra.pipeline.errors import PreconditionError
from wykra.pipeline.profiles import instagram_profile_url, normalize_instagram_username, tiktok_profile_url
from wykra.pipeline.scoring import AnalyzedProfile, rank_profiles, score_profiles
from wykra.services import database
from wykra.tools import perplexity
from wykra.tools.brightdata import BrightDataClient, ScraperError

Processor = Callable[[dict[str, Any]], Awaitable[dict[str, Any]]]


def _required(payload: dict[str, Any], key: str) -> str:
    value = payload.get(key)
    if not isinstance(value, str) or not value.strip():
        raise PreconditionError(f"{key.capitalize()} is required")
    return value.strip()


class Processors:
    """Pipelines behind the four task kinds.

    Providers are injected so tests can run every flow without network access.
    """

    def __init__(
        self,
        *,
        complete: Callable[..., Awaitable[llm_client.Completion]] = llm_client.complete,
        search: Callable[[str], Awaitable[llm_client.Completion]] = perplexity.search,
        scraper: BrightDataClient | None = None,
        profile_repository: Any = None,
    ):
        self.complete = complete
        self.search = search
        self.scraper = scraper or BrightDataClient()
        self.profile_repository = profile_repository or database

    def registry(self) -> dict[tuple[str, str], Processor]:
        return {
            ("instagram", "search"): self.instagram_search,
            ("instagram", "profile"): self.instagram_profile,
            ("tiktok", "search"): self.tiktok_search,
            ("tiktok", "profile"): self.tiktok_profile,
        }

    def _persister(self, platform: str, task_id: str) -> Callable[[AnalyzedProfile], Awaitable[Any]]:
        async def persist(profile: AnalyzedProfile) -> Any:
            return await self.profile_repository.insert_search_profile(
                platform=platform,
                task_id=task_id,
                account=profile.facts.account,
                profile_url=profile.facts.profile_url,
                followers=profile.facts.followers,
                is_private=profile.facts.is_private,
                analysis_summary=profile.score.summary,
                analysis_score=profile.score.score,
                relevance=profile.score.relevance,
                raw=profile.raw,
            )

        return persist

    async def instagram_search(self, payload: dict[str, Any]) -> dict[str, Any]:
        task_id = payload["taskId"]
        query = _required(payload, "query")

        context, context_usage = await extract_search_context(query, "instagram", self.complete)
        if not context.category:
            raise PreconditionError("Category is required to perform Instagram search")
        logger.info(f"[{task_id}] Instagram search context: {context.to_dict()}")

        async def fetch_profiles(urls: list[str]) -> list[dict[str, Any]]:
            return await self.scraper.collect_profiles_by_urls(
                settings.brightdata_instagram_dataset, urls, what="Instagram profiles"
            )

        discovery = await run_two_stage_discovery(
            platform="instagram",
            stage1_prompt=build_stage1_prompt(context),
            stage2_prompt=build_stage2_prompt(context),
            search=self.search,
            fetch_profiles=fetch_profiles,
        )
        analyzed = await score_profiles(
            task_id=task_id,
            platform="instagram",
            profiles=discovery.profiles,
            query=query,
            complete=self.complete,
            persist=self._persister("instagram", task_id),
        )
        return {
            "query": query,
            "context": context.to_dict("instagram"),
            "searchPrompt": discovery.last_prompt,
            "stage1Prompt": discovery.stage1_prompt,
            "stage2Prompt": discovery.stage2_prompt,
            "stage1Response": discovery.stage1_response,
            "stage2Response": discovery.stage2_response,
            "instagramUrls": discovery.urls,
            "analyzedProfiles": [profile.to_dict() for profile in analyzed],
            "usage": (context_usage + discovery.usage).to_dict(),
            "model": settings.perplexity_model,
        }

    async def tiktok_search(self, payload: dict[str, Any]) -> dict[str, Any]:
        task_id = payload["taskId"]
        query = _required(payload, "query")

        context, _ = await extract_search_context(query, "tiktok", self.complete)
        if not context.category:
            raise PreconditionError("Category is required to perform TikTok search")

        terms = tiktok_search_terms(context)
        country = context.country_code or "US"
        logger.info(f"[{task_id}] TikTok search terms {terms} in {country}")
        records = await self.scraper.discover_by_search_urls(
            settings.brightdata_tiktok_dataset, build_tiktok_search_urls(terms), country
        )
        profiles = merge_profiles_by_url([records], "tiktok")
        analyzed = await score_profiles(
            task_id=task_id,
            platform="tiktok",
            profiles=profiles,
            query=query,
            complete=self.complete,
            persist=self._persister("tiktok", task_id),
        )
        return {
            "query": query,
            "context": context.to_dict("tiktok"),
            "searchTerms": terms,
            "discoveredCount": len(profiles),
            "analyzedProfiles": [profile.to_dict() for profile in rank_profiles(analyzed)],
        }

    async def instagram_profile(self, payload: dict[str, Any]) -> dict[str, Any]:
        raw_profile = _required(payload, "profile")
        username = normalize_instagram_username(raw_profile)
        if not username:
            raise PreconditionError(f"Invalid Instagram profile: {raw_profile}")

        records = await self.scraper.collect_profiles_by_urls(
            settings.brightdata_instagram_dataset, [instagram_profile_url(username)], what="Instagram profile"
        )
        if not records:
            raise ScraperError(f"No profile data returned for {username}")
        data = records[0]
        analysis = await analyze_profile(data, "instagram", self.complete)
        return {"profile": username, "data": data, "analysis": analysis}

    async def tiktok_profile(self, payload: dict[str, Any]) -> dict[str, Any]:
        raw_profile = _required(payload, "profile")
        handle = normalize_tiktok_handle(raw_profile)
        if not handle:
            raise PreconditionError(f"Invalid TikTok profile: {raw_profile}")

        records = await self.scraper.collect_profiles_by_urls(
            settings.brightdata_tiktok_dataset, [tiktok_profile_url(handle)], what="TikTok profile"
        )
        if not records:
            raise ScraperError(f"No profile data returned for {handle}")
        data = records[0]
        analysis = await analyze_profile(data, "tiktok", self.complete)
        return {"profile": handle, "data": data, "analysis": analysis}
