"""Per-profile LLM scoring with a hard relevance cutoff."""
from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from loguru import logger

from wykra import llm_client
from wykra.config import settings
from wykra.normalizer import pick_image_url, pick_number, pick_string, pick_text
from wykra.pipeline.profiles import profile_url_for
from wykra.services import error_tracking
from wykra.services.json_parse import parse_json_object
from wykra.services.prompt_store import render_prompt

CompleteFn = Callable[..., Awaitable[llm_client.Completion]]

RELEVANCE_THRESHOLD = 70
DEFAULT_SCORE = 3
DEFAULT_RELEVANCE = 100
PRIVATE_SUMMARY = "Profile is private. Cannot analyze private profiles."

ACCOUNT_KEYS = ("account", "username", "unique_id", "account_id", "handle", "user_name", "nickname")
FOLLOWERS_KEYS = ("followers", "followers_count", "follower_count")
PRIVATE_KEYS = ("is_private", "private_account", "isPrivate")
BIO_KEYS = ("biography", "bio", "signature")
PROFILE_URL_KEYS = ("profile_url", "url", "profileUrl")
POSTS_COUNT_KEYS = ("posts_count", "videos_count", "video_count", "media_count")
AVG_ENGAGEMENT_KEYS = ("avg_engagement", "avgEngagement", "engagement_rate")
PROFILE_IMAGE_KEYS = ("profile_image_link", "profile_pic_url", "profile_image", "avatar", "avatar_url")

PLATFORM_LABELS = {"instagram": "Instagram", "tiktok": "TikTok"}


@dataclass
class ProfileFacts:
    account: str
    profile_url: str
    followers: int | None = None
    is_private: bool = False
    biography: str | None = None
    posts_count: int | None = None
    avg_engagement: float | None = None
    profile_image_url: str | None = None


@dataclass
class ProfileScore:
    summary: str
    score: int
    relevance: int | None


@dataclass
class AnalyzedProfile:
    facts: ProfileFacts
    score: ProfileScore
    raw: dict[str, Any]

    @property
    def is_private(self) -> bool:
        return self.facts.is_private

    def to_dict(self) -> dict[str, Any]:
        return {
            "account": self.facts.account,
            "profileUrl": self.facts.profile_url,
            "followers": self.facts.followers,
            "isPrivate": self.facts.is_private,
            "postsCount": self.facts.posts_count,
            "avgEngagement": self.facts.avg_engagement,
            "profileImageUrl": self.facts.profile_image_url,
            "analysis": {
                "summary": self.score.summary,
                "score": self.score.score,
                "relevance": self.score.relevance,
            },
        }


def _as_int(value: float | None) -> int | None:
    return int(value) if value is not None else None


def is_private_record(record: dict[str, Any]) -> bool:
    for key in PRIVATE_KEYS:
        value = record.get(key)
        if isinstance(value, bool):
            return value
        if isinstance(value, str) and value.strip().lower() in ("true", "false"):
            return value.strip().lower() == "true"
    return False


def extract_profile_facts(record: Any, platform: str) -> ProfileFacts | None:
    """Fields the scoring prompt needs. ``None`` when no profile URL can be found or built."""
    if not isinstance(record, dict):
        return None
    account = pick_string(record, ACCOUNT_KEYS)
    profile_url = pick_string(record, PROFILE_URL_KEYS) or (profile_url_for(platform, account) if account else "")
    if not profile_url:
        return None
    return ProfileFacts(
        account=account or "unknown",
        profile_url=profile_url,
        followers=_as_int(pick_number(record, FOLLOWERS_KEYS)),
        is_private=is_private_record(record),
        biography=pick_text(record, BIO_KEYS),
        posts_count=_as_int(pick_number(record, POSTS_COUNT_KEYS)),
        avg_engagement=pick_number(record, AVG_ENGAGEMENT_KEYS),
        profile_image_url=pick_image_url(record, PROFILE_IMAGE_KEYS),
    )


def _numeric(value: Any) -> float | None:
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, str):
        value = value.strip().rstrip("%").strip()
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return number if math.isfinite(number) else None


def clamp_score(value: Any) -> int:
    number = _numeric(value)
    if number is None:
        return DEFAULT_SCORE
    return max(1, min(5, round(number)))


def clamp_relevance(value: Any) -> int:
    number = _numeric(value)
    if number is None:
        return DEFAULT_RELEVANCE
    return max(0, min(100, round(number)))


def fallback_summary(facts: ProfileFacts) -> str:
    followers = facts.followers if facts.followers is not None else "unknown"
    return f"Basic analysis for {facts.account} ({facts.profile_url}). Followers: {followers}."


def parse_score_response(text: str | None, facts: ProfileFacts) -> ProfileScore:
    parsed = parse_json_object(text)
    if parsed is None:
        logger.warning(f"Unparseable scoring response for {facts.profile_url}, using fallback")
        return ProfileScore(summary=fallback_summary(facts), score=DEFAULT_SCORE, relevance=DEFAULT_RELEVANCE)

    summary = parsed.get("summary")
    if not isinstance(summary, str) or not summary.strip():
        summary = fallback_summary(facts)
    relevance = parsed.get("relevance")
    if relevance is None:
        relevance = parsed.get("relevance_percent")
    return ProfileScore(
        summary=summary.strip(),
        score=clamp_score(parsed.get("score")),
        relevance=clamp_relevance(relevance),
    )


def build_scoring_prompt(facts: ProfileFacts, platform: str, query: str) -> str:
    return render_prompt(
        "scoring.profile",
        platform_label=PLATFORM_LABELS.get(platform, platform),
        query=query,
        account=facts.account,
        profile_url=facts.profile_url,
        followers=facts.followers if facts.followers is not None else "unknown",
        is_private="yes" if facts.is_private else "no",
        biography=facts.biography or "N/A",
    )


async def score_profiles(
    *,
    task_id: str,
    platform: str,
    profiles: list[dict[str, Any]],
    query: str,
    complete: CompleteFn = llm_client.complete,
    persist: Callable[[AnalyzedProfile], Awaitable[Any]] | None = None,
) -> list[AnalyzedProfile]:
    """Score profiles one by one and persist each accepted profile as soon as it is scored.

    Private profiles are kept with score 0 and never sent to the model or
    persisted. Profiles below the relevance threshold are dropped. LLM
    transport errors propagate to the caller.
    """
    results: list[AnalyzedProfile] = []
    seen: set[str] = set()
    dropped = 0

    for record in profiles:
        facts = extract_profile_facts(record, platform)
        if facts is None:
            logger.debug(f"[{task_id}] Skipping {platform} record without profile URL")
            continue
        if facts.profile_url in seen:
            continue
        seen.add(facts.profile_url)

        if facts.is_private:
            results.append(
                AnalyzedProfile(
                    facts=facts,
                    score=ProfileScore(summary=PRIVATE_SUMMARY, score=0, relevance=None),
                    raw=record,
                )
            )
            continue

        completion = await complete(
            build_scoring_prompt(facts, platform, query),
            model=settings.scoring_model or None,
            caller=f"{platform}_profile_scoring",
        )
        score = parse_score_response(completion.text, facts)
        if score.relevance is not None and score.relevance < RELEVANCE_THRESHOLD:
            dropped += 1
            logger.info(f"[{task_id}] Dropping {facts.profile_url}: relevance {score.relevance}")
            continue

        analyzed = AnalyzedProfile(facts=facts, score=score, raw=record)
        if persist is not None:
            try:
                await persist(analyzed)
            except Exception as exc:
                logger.error(f"[{task_id}] Failed to persist {facts.profile_url}: {exc}")
                error_tracking.capture_exception(exc, task_id=task_id, profile_url=facts.profile_url)
        results.append(analyzed)

    logger.info(f"[{task_id}] Scored {len(results)} {platform} profiles, dropped {dropped} as irrelevant")
    return results


def rank_profiles(profiles: list[AnalyzedProfile]) -> list[AnalyzedProfile]:
    """Public profiles scoring above 1, best score first, then most followers."""
    kept = [p for p in profiles if not p.is_private and p.score.score > 1]
    return sorted(
        kept,
        key=lambda p: (p.score.score, p.facts.followers if p.facts.followers is not None else -1),
        reverse=True,
    )
