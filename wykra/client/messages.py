"""Recognizing structured assistant messages on the client side.

Task results arrive in chat as text: profile analyses carry a sentinel line
followed by JSON, search results are bare JSON. These helpers turn them back
into typed structures for rendering.
"""
from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from typing import Any, Sequence

from wykra import normalizer

INSTAGRAM_SENTINEL = "[INSTAGRAM_PROFILE_ANALYSIS]"
TIKTOK_SENTINEL = "[TIKTOK_PROFILE_ANALYSIS]"
PROCESSING_PREFIX = "Processing your request"
STOPPING_TEXT = "Stopping..."
NO_ANALYSIS_SUMMARY = "No detailed analysis provided for this profile yet."
DISCOVERED_ONLY_SUMMARY = "Profile discovered in search results (no analysis yet)."
MAX_TITLE_LENGTH = 80

_SENTINEL_RE = re.compile(r"\[(?:INSTAGRAM|TIKTOK)_PROFILE_ANALYSIS\]\n?")
_SEARCH_JSON_RE = re.compile(r"\{[\s\S]*\"(?:analyzedProfiles|instagramUrls)\"[\s\S]*\}")
_PLATFORM_DOMAINS = {"instagram": "instagram.com", "tiktok": "tiktok.com"}

FOLLOWER_KEYS = ("followers", "followers_count", "followersCount", "follower_count", "followerCount")
POSTS_COUNT_KEYS = ("posts_count", "postsCount", "videos_count", "videoCount", "video_count")
AVATAR_KEYS = ("profile_image_link", "profile_pic_url", "profilePicUrl", "avatar", "avatar_url")
NAME_KEYS = ("full_name", "fullName", "nickname", "profile_name", "name")
BIO_KEYS = ("biography", "bio", "signature", "description")


@dataclass
class ProfileCard:
    platform: str
    profile: str
    data: dict[str, Any]
    analysis: dict[str, Any] | None
    display_name: str | None = None
    followers: float | None = None
    posts_count: float | None = None
    avatar_url: str | None = None
    bio: str | None = None
    posts: list[normalizer.PostPreview] = field(default_factory=list)


@dataclass
class SearchProfile:
    profile_url: str
    account: str | None = None
    followers: float | None = None
    posts_count: float | None = None
    avg_engagement: float | None = None
    profile_image_url: str | None = None
    summary: str = NO_ANALYSIS_SUMMARY
    score: float = 0


@dataclass
class SearchResults:
    platform: str
    profiles: list[SearchProfile]
    query: str | None = None
    context: dict[str, Any] | None = None


@dataclass
class SuccessRequest:
    session_id: int
    request_message_id: str
    title: str
    kind: str
    created_at: str | None = None


def detect_platform_from_message(content: str | None, detected_endpoint: str | None = None) -> str | None:
    content = content or ""
    if INSTAGRAM_SENTINEL in content:
        return "instagram"
    if TIKTOK_SENTINEL in content:
        return "tiktok"
    if detected_endpoint:
        if "/instagram/" in detected_endpoint:
            return "instagram"
        if "/tiktok/" in detected_endpoint:
            return "tiktok"
    return None


def is_processing_message(content: str | None) -> bool:
    return isinstance(content, str) and (PROCESSING_PREFIX in content or content == STOPPING_TEXT)


def normalize_history_message(raw: dict[str, Any]) -> dict[str, Any]:
    """Snake-case view of one message from the history endpoint."""
    created_at = raw.get("createdAt", raw.get("created_at"))
    return {
        "id": str(raw.get("id")),
        "role": raw.get("role"),
        "content": raw.get("content") or "",
        "detected_endpoint": raw.get("detectedEndpoint", raw.get("detected_endpoint")) or None,
        "created_at": str(created_at) if created_at is not None else None,
    }


def parse_profile_card(content: str | None, platform: str) -> ProfileCard | None:
    """Parse a ``[..._PROFILE_ANALYSIS]`` message. None when the JSON is unusable."""
    if not content:
        return None
    try:
        parsed = json.loads(_SENTINEL_RE.sub("", content, count=1).strip())
    except (json.JSONDecodeError, ValueError):
        return None
    if not isinstance(parsed, dict) or not parsed.get("profile"):
        return None

    data = parsed.get("data") if isinstance(parsed.get("data"), dict) else {}
    analysis = parsed.get("analysis") if isinstance(parsed.get("analysis"), dict) else None
    profile = str(parsed["profile"])
    return ProfileCard(
        platform=platform,
        profile=profile,
        data=data,
        analysis=analysis,
        display_name=normalizer.pick_text(data, NAME_KEYS),
        followers=normalizer.pick_number(data, FOLLOWER_KEYS) or normalizer.deep_pick_number(data, FOLLOWER_KEYS),
        posts_count=normalizer.pick_number(data, POSTS_COUNT_KEYS),
        avatar_url=normalizer.pick_image_url(data, AVATAR_KEYS),
        bio=normalizer.pick_text(data, BIO_KEYS),
        posts=normalizer.extract_posts(data, profile),
    )


def _load_search_payload(content: str) -> dict[str, Any] | None:
    try:
        parsed = json.loads(content.strip())
    except (json.JSONDecodeError, ValueError):
        match = _SEARCH_JSON_RE.search(content)
        if not match:
            return None
        try:
            parsed = json.loads(match.group(0))
        except (json.JSONDecodeError, ValueError):
            return None
    return parsed if isinstance(parsed, dict) else None


def _search_profile(entry: dict[str, Any]) -> SearchProfile:
    analysis = entry.get("analysis") if isinstance(entry.get("analysis"), dict) else {}
    summary = analysis.get("summary")
    score = normalizer.parse_number(analysis.get("score"))
    image = entry.get("profileImageUrl")
    return SearchProfile(
        profile_url=entry["profileUrl"],
        account=entry.get("account") if isinstance(entry.get("account"), str) else None,
        followers=normalizer.parse_number(entry.get("followers")),
        posts_count=normalizer.parse_number(entry.get("postsCount")),
        avg_engagement=normalizer.parse_number(entry.get("avgEngagement")),
        profile_image_url=image if isinstance(image, str) and image else None,
        summary=summary if isinstance(summary, str) and summary else NO_ANALYSIS_SUMMARY,
        score=score if score is not None else 0,
    )


def parse_search_results(content: str | None, platform: str | None = None) -> SearchResults | None:
    """Detect a search result by its shape rather than by a sentinel.

    Entries of ``analyzedProfiles`` must link to the platform's domain. A
    payload without analyzed profiles falls back to its ``instagramUrls``.
    """
    if not content:
        return None
    payload = _load_search_payload(content)
    if payload is None:
        return None

    platforms: Sequence[str] = (platform,) if platform else ("instagram", "tiktok")
    entries = payload.get("analyzedProfiles")
    for candidate in platforms:
        domain = _PLATFORM_DOMAINS[candidate]
        profiles = [
            _search_profile(entry)
            for entry in entries or []
            if isinstance(entry, dict) and isinstance(entry.get("profileUrl"), str) and domain in entry["profileUrl"]
        ]
        if not profiles and candidate == "instagram":
            profiles = [
                SearchProfile(profile_url=url, summary=DISCOVERED_ONLY_SUMMARY)
                for url in payload.get("instagramUrls") or []
                if isinstance(url, str) and domain in url
            ]
        if profiles:
            context = payload.get("context") if isinstance(payload.get("context"), dict) else None
            return SearchResults(platform=candidate, profiles=profiles, query=payload.get("query"), context=context)
    return None


def _request_title(content: str | None) -> str:
    one_line = re.sub(r"\s+", " ", str(content or "").strip())
    if not one_line:
        return "Request"
    if len(one_line) > MAX_TITLE_LENGTH:
        return f"{one_line[:MAX_TITLE_LENGTH - 3]}..."
    return one_line


def _result_kind(message: dict[str, Any]) -> str | None:
    content = message.get("content") or ""
    search = parse_search_results(content)
    if search is not None:
        return f"{search.platform}_search_results"
    platform = detect_platform_from_message(content, message.get("detected_endpoint"))
    if platform and parse_profile_card(content, platform) is not None:
        return f"{platform}_profile_analysis"
    return None


def extract_success_requests(session_id: int, history: list[dict[str, Any]]) -> list[SuccessRequest]:
    """List the user requests in ``history`` that produced a rendered result.

    Each result is attributed to the closest preceding user message. A request
    answered more than once is listed once.
    """
    requests: list[SuccessRequest] = []
    seen: set[str] = set()
    for index, message in enumerate(history):
        if message.get("role") != "assistant":
            continue
        kind = _result_kind(message)
        if kind is None:
            continue
        request = next((m for m in reversed(history[:index]) if m.get("role") == "user"), None)
        if request is None:
            continue
        request_id = str(request.get("id"))
        if request_id in seen:
            continue
        seen.add(request_id)
        created_at = request.get("created_at")
        requests.append(
            SuccessRequest(
                session_id=session_id,
                request_message_id=request_id,
                title=_request_title(request.get("content")),
                kind=kind,
                created_at=str(created_at) if created_at is not None else None,
            )
        )
    return requests
