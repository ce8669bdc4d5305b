"""Typed field extraction from loosely shaped scraper records.

Upstream records (BrightData datasets, TikTok/Instagram web payloads) change
field names between snake_case, camelCase and nested wrapper objects. The
helpers here look values up by priority-ordered key lists, fall back to a
depth-bounded recursive search, and merge duplicate post records by a derived
key so the result does not depend on which source listed a post first.
"""
from __future__ import annotations

import math
import re
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Iterable, Sequence

MAX_DEEP_SEARCH_DEPTH = 4
MAX_POST_PREVIEWS = 5

_ABBREVIATED_RE = re.compile(r"^(-?\d+(?:\.\d+)?)([kmb])?\+?$", re.IGNORECASE)
_COUNT_WORDS_RE = re.compile(r"\b(views?|likes?|comments?|shares?|followers?)\b", re.IGNORECASE)
_HASHTAG_RE = re.compile(r"#[^\s#]+")
_SUFFIX_MULTIPLIERS = {"k": 1_000, "m": 1_000_000, "b": 1_000_000_000}

TEXT_CONTAINER_KEYS = (
    "text",
    "caption",
    "description",
    "desc",
    "title",
    "subtitle",
    "content",
    "value",
    "name",
    "share_title",
    "shareTitle",
)
IMAGE_CONTAINER_KEYS = (
    "url",
    "src",
    "image_url",
    "imageUrl",
    "cover",
    "cover_url",
    "thumbnail",
    "thumbnail_url",
)
NESTED_ARRAY_KEYS = (
    "items",
    "item_list",
    "itemList",
    "list",
    "data",
    "videos",
    "posts",
    "aweme_list",
    "awemeList",
)
TIMESTAMP_NUMBER_KEYS = (
    "create_time",
    "createTime",
    "create_date",
    "createDate",
    "created_at",
    "createdAt",
    "posted_at",
    "postedAt",
    "publish_time",
    "publishTime",
    "timestamp",
    "taken_at",
)
TIMESTAMP_STRING_KEYS = ("datetime", "date") + TIMESTAMP_NUMBER_KEYS
HASHTAG_SOURCE_KEYS = (
    "hashtags",
    "hashtag_list",
    "hashtagList",
    "tag_list",
    "tagList",
    "tags",
    "text_extra",
    "textExtra",
)
HASHTAG_NAME_KEYS = (
    "hashtag_name",
    "hashtagName",
    "tag_name",
    "tagName",
    "name",
    "text",
    "title",
)

POST_URL_KEYS = (
    "video_url",
    "videoUrl",
    "post_url",
    "postUrl",
    "url",
    "share_url",
    "shareUrl",
    "share_link",
    "shareLink",
    "link",
    "web_url",
    "webUrl",
    "permalink",
    "permalink_url",
    "permalinkUrl",
)
POST_ID_KEYS = (
    "video_id",
    "videoId",
    "id",
    "aweme_id",
    "awemeId",
    "item_id",
    "itemId",
    "post_id",
    "postId",
    "share_id",
    "shareId",
)
POST_CAPTION_KEYS = (
    "caption",
    "caption_text",
    "captionText",
    "post_caption",
    "postCaption",
    "description",
    "desc",
    "text",
    "message",
    "body",
    "title",
    "subtitle",
    "full_text",
    "fullText",
    "video_description",
    "videoDescription",
    "video_desc",
    "videoDesc",
    "share_info",
    "shareInfo",
)
POST_IMAGE_KEYS = (
    "cover",
    "cover_url",
    "coverUrl",
    "cover_image",
    "coverImage",
    "thumbnail",
    "thumbnail_url",
    "thumbnailUrl",
    "image_url",
    "imageUrl",
    "display_url",
    "displayUrl",
    "video_thumbnail",
    "videoThumbnail",
    "dynamic_cover",
    "dynamicCover",
    "origin_cover",
    "originCover",
    "poster",
    "poster_url",
    "posterUrl",
    "preview_image",
    "previewImage",
    "first_frame",
    "firstFrame",
    "photo_url",
    "photoUrl",
    "static_cover",
    "staticCover",
)
VIEW_KEYS = ("views", "view_count", "viewCount", "viewcount", "play_count", "playCount", "playcount", "plays")
LIKE_KEYS = ("likes", "likes_count", "likesCount", "like_count", "likeCount", "digg_count", "diggCount", "diggcount")
COMMENT_KEYS = (
    "comments",
    "comments_count",
    "commentsCount",
    "comment_count",
    "commentCount",
    "commentcount",
    "replies",
    "reply_count",
    "replyCount",
)
SHARE_KEYS = ("shares", "shares_count", "sharesCount", "share_count", "shareCount", "sharecount", "repost_count", "repostCount")
ENGAGEMENT_KEYS = ("engagement_rate_estimated", "engagementRateEstimated", "engagement_rate", "engagementRate")
FOLLOWER_KEYS = (
    "follower_count_at_post_time",
    "followerCountAtPostTime",
    "followers_count",
    "followersCount",
    "follower_count",
    "followerCount",
    "followers",
    "account_followers",
    "accountFollowers",
)
POST_SOURCE_KEYS = (
    "top_videos",
    "top_posts_data",
    "pinned_posts",
    "posts",
    "videos",
    "recent_videos",
    "recent_posts",
    "latest_videos",
    "latest_posts",
    "items",
    "item_list",
    "itemList",
    "aweme_list",
    "awemeList",
)
PROFILE_HANDLE_KEYS = (
    "unique_id",
    "uniqueId",
    "username",
    "handle",
    "user_name",
    "userName",
    "account",
    "account_id",
    "accountId",
)
POST_WRAPPER_KEYS = ("post", "item", "aweme", "data", "post_data", "postData")
MEDIA_WRAPPER_KEYS = ("media", "media_info", "mediaInfo")
VIDEO_WRAPPER_KEYS = ("video", "video_info", "videoInfo")
ENGAGEMENT_WRAPPER_KEYS = ("engagement", "engagement_info", "engagementInfo")
ACCOUNT_WRAPPER_KEYS = ("account", "author", "user", "owner", "profile", "creator")
METRICS_WRAPPER_KEYS = ("metrics_context", "metricsContext", "metrics", "metrics_info", "metricsInfo")
STATS_WRAPPER_KEYS = ("stats", "statistics", "stats_v2", "statsV2", "stats_info", "statsInfo")
SHARE_WRAPPER_KEYS = ("share_info", "shareInfo")


@dataclass
class PostPreview:
    url: str
    caption: str | None = None
    image_url: str | None = None
    timestamp: int | None = None
    engagement_rate: float | None = None
    follower_count_at_post_time: float | None = None
    hashtags: list[str] = field(default_factory=list)
    views: float | None = None
    likes: float | None = None
    comments: float | None = None
    shares: float | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def is_record(value: Any) -> bool:
    return isinstance(value, dict)


def _finite(value: float) -> float | None:
    return value if math.isfinite(value) else None


def parse_abbreviated_number(value: str) -> float | None:
    """Parse "1,234", "12.3k", "1.2M" or "10k+" into a number."""
    normalized = value.replace(",", "").strip()
    if not normalized:
        return None
    try:
        direct = float(normalized)
    except ValueError:
        direct = None
    if direct is not None:
        return _finite(direct)

    match = _ABBREVIATED_RE.match(normalized)
    if not match:
        return None
    base = float(match.group(1))
    suffix = (match.group(2) or "").lower()
    return _finite(base * _SUFFIX_MULTIPLIERS.get(suffix, 1))


def parse_number(value: Any) -> float | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return _finite(float(value))
    if isinstance(value, str):
        normalized = value.strip()
        if not normalized:
            return None
        parsed = parse_abbreviated_number(normalized)
        if parsed is not None:
            return parsed
        stripped = _COUNT_WORDS_RE.sub("", normalized).strip()
        if stripped and stripped != normalized:
            return parse_abbreviated_number(stripped)
    return None


def pick_string(source: Any, keys: Sequence[str]) -> str | None:
    if not is_record(source):
        return None
    for key in keys:
        value = source.get(key)
        if isinstance(value, str) and value.strip():
            return value
    return None


def extract_text(value: Any) -> str | None:
    """Find the first non-blank text in a string, list or text-bearing record."""
    if isinstance(value, str):
        trimmed = value.strip()
        return trimmed or None
    if isinstance(value, list):
        for item in value:
            found = extract_text(item)
            if found:
                return found
        return None
    if is_record(value):
        for key in TEXT_CONTAINER_KEYS:
            found = extract_text(value.get(key))
            if found:
                return found
    return None


def pick_text(source: Any, keys: Sequence[str]) -> str | None:
    if not is_record(source):
        return None
    for key in keys:
        found = extract_text(source.get(key))
        if found:
            return found
    return None


def pick_number(source: Any, keys: Sequence[str]) -> float | None:
    if not is_record(source):
        return None
    for key in keys:
        parsed = parse_number(source.get(key))
        if parsed is not None:
            return parsed
    return None


def _iter_children(value: Any) -> Iterable[Any]:
    if is_record(value):
        return value.values()
    if isinstance(value, list):
        return value
    return ()


def deep_pick_number(value: Any, keys: Sequence[str], depth: int = 0) -> float | None:
    if depth > MAX_DEEP_SEARCH_DEPTH or not value:
        return None
    if is_record(value):
        direct = pick_number(value, keys)
        if direct is not None:
            return direct
    for entry in _iter_children(value):
        found = deep_pick_number(entry, keys, depth + 1)
        if found is not None:
            return found
    return None


def deep_pick_text(value: Any, keys: Sequence[str], depth: int = 0) -> str | None:
    if depth > MAX_DEEP_SEARCH_DEPTH or not value:
        return None
    if is_record(value):
        direct = pick_text(value, keys)
        if direct:
            return direct
    for entry in _iter_children(value):
        found = deep_pick_text(entry, keys, depth + 1)
        if found:
            return found
    return None


def extract_image_url(value: Any) -> str | None:
    if isinstance(value, str) and value.strip():
        return value
    if isinstance(value, list):
        for item in value:
            found = extract_image_url(item)
            if found:
                return found
    if is_record(value):
        for key in IMAGE_CONTAINER_KEYS:
            found = extract_image_url(value.get(key))
            if found:
                return found
    return None


def pick_image_url(source: Any, keys: Sequence[str]) -> str | None:
    if not is_record(source):
        return None
    for key in keys:
        found = extract_image_url(source.get(key))
        if found:
            return found
    return None


def pick_array(source: Any, keys: Sequence[str]) -> list[Any] | None:
    """Return the first list under ``keys``, looking one wrapper deep."""
    if not is_record(source):
        return None
    for key in keys:
        value = source.get(key)
        if isinstance(value, list):
            return value
        if is_record(value):
            nested = pick_array(value, NESTED_ARRAY_KEYS)
            if nested is not None:
                return nested
    return None


def pick_record(source: Any, keys: Sequence[str]) -> dict[str, Any] | None:
    if not is_record(source):
        return None
    for key in keys:
        value = source.get(key)
        if is_record(value):
            return value
    return None


def normalize_timestamp(value: Any) -> int | None:
    """Normalize epoch seconds, epoch milliseconds or a date string to epoch ms."""
    number = parse_number(value)
    if number is not None:
        return int(number if number > 1_000_000_000_000 else number * 1000)
    if isinstance(value, str) and value.strip():
        return _parse_date_string(value.strip())
    return None


def _parse_date_string(value: str) -> int | None:
    candidate = value[:-1] + "+00:00" if value.endswith("Z") else value
    try:
        parsed = datetime.fromisoformat(candidate)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return int(parsed.timestamp() * 1000)


def pick_timestamp(source: Any) -> int | None:
    raw = pick_number(source, TIMESTAMP_NUMBER_KEYS)
    if raw is not None:
        return normalize_timestamp(raw)
    date_string = pick_string(source, TIMESTAMP_STRING_KEYS)
    return _parse_date_string(date_string.strip()) if date_string else None


def deep_pick_timestamp(value: Any) -> int | None:
    raw = deep_pick_number(value, TIMESTAMP_NUMBER_KEYS)
    if raw is not None:
        return normalize_timestamp(raw)
    date_string = deep_pick_text(value, TIMESTAMP_STRING_KEYS)
    return _parse_date_string(date_string) if date_string else None


def _unique(items: Iterable[str]) -> list[str]:
    return list(dict.fromkeys(items))


def normalize_hashtags(value: Any) -> list[str]:
    collected: list[str] = []

    def add_tag(tag: str | None) -> None:
        if tag and tag.strip():
            collected.append(tag.strip())

    if isinstance(value, list):
        for entry in value:
            if isinstance(entry, str):
                add_tag(entry)
            elif is_record(entry):
                add_tag(pick_string(entry, HASHTAG_NAME_KEYS) or extract_text(entry))
    elif isinstance(value, str):
        for tag in re.split(r"[\s,]+", value):
            add_tag(tag)
    elif is_record(value):
        add_tag(pick_string(value, HASHTAG_NAME_KEYS) or extract_text(value))

    return _unique(collected)


def extract_hashtags_from_text(value: str | None) -> list[str]:
    if not value:
        return []
    return [tag.lstrip("#") for tag in _HASHTAG_RE.findall(value)]


def deep_pick_hashtags(value: Any, depth: int = 0) -> list[str]:
    if depth > MAX_DEEP_SEARCH_DEPTH or not value:
        return []
    if is_record(value):
        direct: list[str] = []
        for key in HASHTAG_SOURCE_KEYS:
            direct.extend(normalize_hashtags(value.get(key)))
        if direct:
            return _unique(direct)
    for entry in _iter_children(value):
        found = deep_pick_hashtags(entry, depth + 1)
        if found:
            return found
    return []


def is_empty_value(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return value.strip() == ""
    if isinstance(value, list):
        return all(is_empty_value(entry) for entry in value)
    if is_record(value):
        return len(value) == 0
    return False


def merge_records(base: dict[str, Any], incoming: dict[str, Any]) -> dict[str, Any]:
    """Field-level merge where the first non-empty value wins.

    Nested records are merged recursively. ``base`` is never mutated.
    """
    merged = dict(base)
    for key, value in incoming.items():
        existing = merged.get(key)
        if is_record(existing) and is_record(value):
            merged[key] = merge_records(existing, value)
        elif key not in merged or (is_empty_value(existing) and not is_empty_value(value)):
            merged[key] = value
    return merged


def _format_key_number(value: float) -> str:
    return str(int(value)) if float(value).is_integer() else str(value)


def derive_record_key(
    entry: dict[str, Any],
    url_keys: Sequence[str] = POST_URL_KEYS,
    id_keys: Sequence[str] = POST_ID_KEYS,
) -> str | None:
    direct = pick_string(entry, id_keys) or pick_string(entry, url_keys)
    if direct:
        return direct
    # Numeric ids are common in TikTok payloads.
    for key in id_keys:
        value = entry.get(key)
        if isinstance(value, int) and not isinstance(value, bool):
            return str(value)
    deep_text = deep_pick_text(entry, tuple(id_keys) + tuple(url_keys))
    if deep_text:
        return deep_text
    deep_number = deep_pick_number(entry, id_keys)
    if deep_number is not None:
        return _format_key_number(deep_number)
    return None


def merge_record_sources(
    sources: Iterable[Any],
    url_keys: Sequence[str] = POST_URL_KEYS,
    id_keys: Sequence[str] = POST_ID_KEYS,
) -> list[dict[str, Any]]:
    """Merge records from several arrays by derived key.

    Keyed records are bucketed in first-seen order; records without a key are
    appended afterwards and never merged with each other.
    """
    buckets: dict[str, dict[str, Any]] = {}
    unkeyed: list[dict[str, Any]] = []
    for source in sources:
        if not isinstance(source, list):
            continue
        for entry in source:
            if not is_record(entry):
                continue
            key = derive_record_key(entry, url_keys, id_keys)
            if key is None:
                unkeyed.append(entry)
            elif key in buckets:
                buckets[key] = merge_records(buckets[key], entry)
            else:
                buckets[key] = entry
    return list(buckets.values()) + unkeyed


def normalize_tiktok_handle(value: str | None) -> str | None:
    if not value or not value.strip():
        return None
    without_at = value.strip().lstrip("@")
    match = re.search(r"tiktok\.com/@([^/?#]+)", without_at, re.IGNORECASE)
    if match:
        return match.group(1)
    return without_at or None


def build_tiktok_post_url(handle: str | None, post_id: str | None) -> str | None:
    clean_handle = normalize_tiktok_handle(handle)
    clean_post_id = post_id.strip() if post_id else ""
    if not clean_handle or not clean_post_id:
        return None
    return f"https://www.tiktok.com/@{clean_handle}/video/{clean_post_id}"


def _first_number(*candidates: float | None) -> float | None:
    for candidate in candidates:
        if candidate is not None:
            return candidate
    return None


def _post_record(item: dict[str, Any]) -> dict[str, Any]:
    return pick_record(item, POST_WRAPPER_KEYS) or item


def _wrapper(item: dict[str, Any], post: dict[str, Any], keys: Sequence[str]) -> dict[str, Any] | None:
    return pick_record(item, keys) or pick_record(post, keys)


def _build_preview(item: dict[str, Any], timestamp: int | None, handle: str | None) -> PostPreview | None:
    post = _post_record(item)
    media = _wrapper(item, post, MEDIA_WRAPPER_KEYS)
    video = _wrapper(item, post, VIDEO_WRAPPER_KEYS)
    engagement = _wrapper(item, post, ENGAGEMENT_WRAPPER_KEYS)
    account = _wrapper(item, post, ACCOUNT_WRAPPER_KEYS)
    metrics = _wrapper(item, post, METRICS_WRAPPER_KEYS)
    stats = _wrapper(item, post, STATS_WRAPPER_KEYS)
    share = _wrapper(item, post, SHARE_WRAPPER_KEYS)

    post_url = None
    for source in (item, post, media, video, share):
        post_url = pick_string(source, POST_URL_KEYS)
        if post_url:
            break
    post_id = pick_string(item, POST_ID_KEYS) or pick_string(post, POST_ID_KEYS)
    url = post_url or build_tiktok_post_url(handle, post_id)
    if not url:
        return None

    image_url = None
    for source in (item, post, media, video):
        image_url = pick_image_url(source, POST_IMAGE_KEYS)
        if image_url:
            break

    caption = None
    for source in (item, post, media, video, share):
        caption = pick_text(source, POST_CAPTION_KEYS)
        if caption:
            break
    caption = caption or deep_pick_text(item, POST_CAPTION_KEYS)

    def metric(keys: Sequence[str], *sources: Any) -> float | None:
        return _first_number(*(pick_number(s, keys) for s in sources), deep_pick_number(item, keys))

    hashtags: list[str] = []
    for source in (item, post):
        for key in HASHTAG_SOURCE_KEYS:
            hashtags.extend(normalize_hashtags(source.get(key)))
    if not hashtags:
        hashtags = deep_pick_hashtags(item)
    if not hashtags and caption:
        hashtags = extract_hashtags_from_text(caption)

    return PostPreview(
        url=url,
        caption=caption,
        image_url=image_url,
        timestamp=timestamp,
        engagement_rate=metric(ENGAGEMENT_KEYS, engagement, item, post),
        follower_count_at_post_time=metric(FOLLOWER_KEYS, metrics, item, post, account),
        hashtags=_unique(hashtags),
        views=metric(VIEW_KEYS, item, post, stats, video),
        likes=metric(LIKE_KEYS, engagement, item, post, stats, video),
        comments=metric(COMMENT_KEYS, engagement, item, post, stats, video),
        shares=metric(SHARE_KEYS, item, post, stats, video),
    )


def extract_posts(profile_data: Any, handle: str | None = None) -> list[PostPreview]:
    """Build up to five post previews from every post array of a profile record."""
    if not is_record(profile_data):
        return []

    sources: list[Any] = [profile_data.get(key) for key in POST_SOURCE_KEYS]
    sources.append(pick_array(profile_data, POST_SOURCE_KEYS))
    raw_posts = merge_record_sources(sources)
    if not raw_posts:
        return []

    profile_handle = (
        pick_string(profile_data, PROFILE_HANDLE_KEYS)
        or normalize_tiktok_handle(pick_string(profile_data, ("profile_url", "profileUrl", "url")))
        or normalize_tiktok_handle(handle)
        or handle
    )

    dated = [
        (item, pick_timestamp(_post_record(item)) or pick_timestamp(item) or deep_pick_timestamp(item))
        for item in raw_posts
    ]
    if any(ts is not None for _, ts in dated):
        dated.sort(key=lambda pair: pair[1] or 0, reverse=True)

    previews: list[PostPreview] = []
    seen: set[str] = set()
    for item, timestamp in dated:
        preview = _build_preview(item, timestamp, profile_handle)
        if preview is None or preview.url in seen:
            continue
        seen.add(preview.url)
        previews.append(preview)
        if len(previews) >= MAX_POST_PREVIEWS:
            break
    return previews
