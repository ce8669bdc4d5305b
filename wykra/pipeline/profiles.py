"""Profile handle and URL normalization for both platforms."""
from __future__ import annotations

import re
from urllib.parse import urlparse

from wykra.normalizer import normalize_tiktok_handle

_TRAILING_PUNCTUATION_RE = re.compile(r"[)\]}>,.!?:;\"'`]+$")
_SCHEME_RE = re.compile(r"^https?://", re.IGNORECASE)
_INSTAGRAM_PATH_RE = re.compile(r"instagram\.com/([^/?#\s]+)", re.IGNORECASE)
_USERNAME_TOKEN_RE = re.compile(r"^[a-z0-9._]+", re.IGNORECASE)


def strip_trailing_punctuation(value: str) -> str:
    return _TRAILING_PUNCTUATION_RE.sub("", value)


def normalize_instagram_username(profile_or_url: str | None) -> str:
    """Reduce a URL, ``@user`` or ``user`` input to a bare Instagram username.

    Returns an empty string when nothing usable is left.
    """
    raw = str(profile_or_url or "").strip()
    if not raw:
        return ""
    trimmed = strip_trailing_punctuation(raw)

    if _SCHEME_RE.match(trimmed) or "instagram.com" in trimmed.lower():
        with_scheme = trimmed if _SCHEME_RE.match(trimmed) else f"https://{trimmed.lstrip('/')}"
        parsed = urlparse(with_scheme)
        host = (parsed.hostname or "").lower()
        if host == "instagram.com" or host.endswith(".instagram.com"):
            segments = [s.strip() for s in parsed.path.split("/") if s.strip()]
            if len(segments) >= 2 and segments[0] == "stories":
                return normalize_instagram_username(segments[1])
            if segments:
                return normalize_instagram_username(segments[0])

    match = _INSTAGRAM_PATH_RE.search(trimmed.lstrip("/"))
    if match:
        return normalize_instagram_username(match.group(1))

    candidate = trimmed.lstrip("@")
    candidate = re.split(r"[/?#\s]", candidate)[0]
    candidate = strip_trailing_punctuation(candidate)
    token = _USERNAME_TOKEN_RE.match(candidate)
    return token.group(0) if token else candidate


def instagram_profile_url(profile_or_url: str | None) -> str:
    username = normalize_instagram_username(profile_or_url)
    return f"https://www.instagram.com/{username}/" if username else ""


def tiktok_profile_url(profile_or_url: str | None) -> str:
    trimmed = (profile_or_url or "").strip()
    if _SCHEME_RE.match(trimmed):
        return trimmed
    if trimmed.lower().startswith("www.") or "tiktok.com" in trimmed.lower():
        return f"https://{trimmed.lstrip('/')}"
    handle = normalize_tiktok_handle(trimmed)
    return f"https://www.tiktok.com/@{handle}" if handle else ""


def profile_url_for(platform: str, profile_or_url: str | None) -> str:
    if platform == "tiktok":
        return tiktok_profile_url(profile_or_url)
    return instagram_profile_url(profile_or_url)
