"""Single-profile analysis behind the profile analysis intents."""
from __future__ import annotations

import json
import re
from typing import Any, Awaitable, Callable

from loguru import logger

from wykra import llm_client
from wykra.normalizer import (
    COMMENT_KEYS,
    LIKE_KEYS,
    POST_CAPTION_KEYS,
    POST_SOURCE_KEYS,
    POST_URL_KEYS,
    VIEW_KEYS,
    merge_record_sources,
    pick_number,
    pick_string,
    pick_text,
)
from wykra.pipeline.scoring import (
    AVG_ENGAGEMENT_KEYS,
    BIO_KEYS,
    FOLLOWERS_KEYS,
    PLATFORM_LABELS,
    POSTS_COUNT_KEYS,
    PRIVATE_SUMMARY,
    clamp_score,
    is_private_record,
)
from wykra.services import error_tracking
from wykra.services.json_parse import parse_json_object
from wykra.services.prompt_store import render_prompt

CompleteFn = Callable[..., Awaitable[llm_client.Completion]]

MAX_POSTS_IN_PROMPT = 10
INSTAGRAM_ACCOUNT_KEYS = ("account", "username")
TIKTOK_ACCOUNT_KEYS = ("unique_id", "username", "handle", "user_name", "account_id", "account")

INSUFFICIENT_DATA_SUMMARY = (
    "Insufficient data available for analysis. Profile may be new or have limited activity."
)
MISSING_SUMMARY = "Analysis completed but summary not provided."

_HASHTAG_RE = re.compile(r"#[\w]+")


def _account(record: dict[str, Any], platform: str) -> str | None:
    keys = TIKTOK_ACCOUNT_KEYS if platform == "tiktok" else INSTAGRAM_ACCOUNT_KEYS
    return pick_string(record, keys)


def _post_summaries(record: dict[str, Any]) -> list[dict[str, Any]]:
    posts = merge_record_sources([record.get(key) for key in POST_SOURCE_KEYS])
    summaries = []
    for post in posts[:MAX_POSTS_IN_PROMPT]:
        caption = pick_text(post, POST_CAPTION_KEYS) or ""
        summaries.append(
            {
                "url": pick_string(post, POST_URL_KEYS),
                "caption": caption[:500],
                "likes": pick_number(post, LIKE_KEYS),
                "comments": pick_number(post, COMMENT_KEYS),
                "views": pick_number(post, VIEW_KEYS),
                "hashtags": _HASHTAG_RE.findall(caption),
            }
        )
    return summaries


def _profile_block(record: dict[str, Any], platform: str, account: str, followers: float) -> str:
    lines = [
        f"- Account: {account}",
        f"- Followers: {int(followers)}",
        f"- Posts: {_as_display(pick_number(record, POSTS_COUNT_KEYS))}",
        f"- Average engagement: {_as_display(pick_number(record, AVG_ENGAGEMENT_KEYS))}",
        f"- Bio: {pick_text(record, BIO_KEYS) or 'N/A'}",
        f"- Verified: {bool(record.get('is_verified') or record.get('verified'))}",
        f"- Business account: {bool(record.get('is_business_account'))}",
    ]
    category = pick_string(record, ("category_name", "business_category_name", "category"))
    if category:
        lines.append(f"- Category: {category}")
    external = pick_string(record, ("external_url", "bio_link", "website"))
    if external:
        lines.append(f"- External URL: {external}")
    if platform == "tiktok":
        lines.append(f"- Total likes: {_as_display(pick_number(record, ('likes', 'heart_count', 'likes_count')))}")
    return "\n".join(lines)


def _as_display(value: float | None) -> str:
    if value is None:
        return "N/A"
    return str(int(value)) if float(value).is_integer() else f"{value:.4f}"


def fallback_analysis(account: str, followers: float, posts_count: float | None, avg_engagement: float | None) -> dict[str, Any]:
    posts = int(posts_count or 0)
    engagement = avg_engagement or 0.0
    strong_enough = engagement >= 0.01 and posts >= 10
    return {
        "summary": (
            f"Profile analysis for {account}. {int(followers)} followers, {posts} posts, "
            f"{engagement * 100:.2f}% average engagement rate."
        ),
        "qualityScore": 3 if strong_enough else 2,
        "topic": "Unable to determine from available data",
        "engagementStrength": "moderate" if engagement >= 0.01 else "weak",
        "message": "LLM response parsing failed, using basic analysis.",
    }


def validate_analysis(parsed: dict[str, Any]) -> dict[str, Any]:
    analysis = dict(parsed)
    analysis["qualityScore"] = clamp_score(parsed.get("qualityScore"))
    summary = parsed.get("summary")
    if not isinstance(summary, str) or not summary.strip():
        analysis["summary"] = MISSING_SUMMARY
    return analysis


async def analyze_profile(
    record: dict[str, Any],
    platform: str,
    complete: CompleteFn = llm_client.complete,
) -> dict[str, Any]:
    """Return the analysis dict for one scraped profile.

    Private and data-poor profiles short-circuit with ``qualityScore`` 0.
    A reply that does not parse falls back to a summary built from the raw
    counters. LLM transport errors propagate.
    """
    if is_private_record(record):
        return {
            "summary": PRIVATE_SUMMARY,
            "qualityScore": 0,
            "message": "Profile is private and cannot be analyzed.",
        }

    account = _account(record, platform)
    followers = pick_number(record, FOLLOWERS_KEYS)
    posts_count = pick_number(record, POSTS_COUNT_KEYS)
    insufficient = not account or not followers
    if platform == "instagram" and posts_count == 0:
        insufficient = True
    if insufficient:
        return {
            "summary": INSUFFICIENT_DATA_SUMMARY,
            "qualityScore": 0,
            "message": "Data is not suitable for evaluation.",
        }

    prompt = render_prompt(
        "analysis.profile",
        platform_label=PLATFORM_LABELS.get(platform, platform),
        profile_block=_profile_block(record, platform, account, followers),
        posts_block=json.dumps(_post_summaries(record), ensure_ascii=False, indent=2),
    )
    completion = await complete(prompt, caller=f"{platform}_profile_analysis")

    parsed = parse_json_object(completion.text)
    if parsed is None:
        logger.warning(f"Failed to parse {platform} analysis for {account}, using basic analysis")
        error_tracking.capture_exception(
            ValueError("Failed to parse profile analysis JSON"),
            account=account,
            raw_response=completion.text[:2000],
        )
        return fallback_analysis(account, followers, posts_count, pick_number(record, AVG_ENGAGEMENT_KEYS))
    return validate_analysis(parsed)
