"""The four chat intents and how each maps onto a queued job."""
from __future__ import annotations

from dataclasses import dataclass

INSTAGRAM_SEARCH = "/instagram/search"
INSTAGRAM_ANALYSIS = "/instagram/analysis"
TIKTOK_SEARCH = "/tiktok/search"
TIKTOK_PROFILE = "/tiktok/profile"

INTENTS = (INSTAGRAM_SEARCH, INSTAGRAM_ANALYSIS, TIKTOK_SEARCH, TIKTOK_PROFILE)

INTENT_ALIASES = {
    "/instagram/profile": INSTAGRAM_ANALYSIS,
    "/tiktok/analysis": TIKTOK_PROFILE,
}


@dataclass(frozen=True)
class IntentSpec:
    intent: str
    topic: str
    job_name: str
    param: str
    poll_interval_seconds: float
    poll_ceiling_seconds: float

    @property
    def platform(self) -> str:
        return self.topic

    @property
    def is_search(self) -> bool:
        return self.job_name == "search"


INTENT_SPECS = {
    INSTAGRAM_SEARCH: IntentSpec(INSTAGRAM_SEARCH, "instagram", "search", "query", 5, 20 * 60),
    INSTAGRAM_ANALYSIS: IntentSpec(INSTAGRAM_ANALYSIS, "instagram", "profile", "profile", 5, 10 * 60),
    TIKTOK_SEARCH: IntentSpec(TIKTOK_SEARCH, "tiktok", "search", "query", 10, 30 * 60),
    TIKTOK_PROFILE: IntentSpec(TIKTOK_PROFILE, "tiktok", "profile", "profile", 10, 30 * 60),
}


def canonical_intent(value: str | None) -> str | None:
    """Map a raw endpoint string onto one of INTENTS, or None."""
    if not value:
        return None
    path = value.strip().lower()
    if not path.startswith("/"):
        path = "/" + path.replace("_", "/")
    path = path.rstrip("/")
    path = INTENT_ALIASES.get(path, path)
    return path if path in INTENT_SPECS else None


def spec_for(intent: str) -> IntentSpec:
    return INTENT_SPECS[intent]
