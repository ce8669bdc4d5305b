from __future__ import annotations

import json
from unittest.mock import patch

import pytest

from wykra.llm_client import LLMHTTPError
from wykra.pipeline.scoring import (
    AnalyzedProfile,
    ProfileFacts,
    ProfileScore,
    clamp_relevance,
    clamp_score,
    extract_profile_facts,
    parse_score_response,
    rank_profiles,
    score_profiles,
)

FACTS = ProfileFacts(account="chef_ana", profile_url="https://www.instagram.com/chef_ana/", followers=12000)


def _reply(score=4, relevance=90, summary="Lisbon home cooking.") -> str:
    return json.dumps({"summary": summary, "score": score, "relevance": relevance})


class TestClamping:
    @pytest.mark.parametrize(
        "value, expected",
        [(4, 4), (4.6, 5), ("2", 2), (0, 1), (-3, 1), (9, 5), (None, 3), ("great", 3), (True, 3), (float("nan"), 3)],
    )
    def test_score_always_in_range(self, value, expected):
        assert clamp_score(value) == expected

    @pytest.mark.parametrize(
        "value, expected",
        [(85, 85), ("70%", 70), (150, 100), (-5, 0), (None, 100), ("high", 100), (float("inf"), 100), (False, 100)],
    )
    def test_relevance_always_in_range(self, value, expected):
        assert clamp_relevance(value) == expected


class TestParseScoreResponse:
    def test_strict_json(self):
        score = parse_score_response(_reply(5, 88), FACTS)
        assert score == ProfileScore(summary="Lisbon home cooking.", score=5, relevance=88)

    def test_embedded_object(self):
        text = 'Here you go:\n{"summary": "ok", "score": 2, "relevance_percent": 75}\nThanks'
        score = parse_score_response(text, FACTS)
        assert (score.score, score.relevance) == (2, 75)

    def test_missing_relevance_assumes_relevant(self):
        score = parse_score_response('{"summary": "ok", "score": 4}', FACTS)
        assert score.relevance == 100

    def test_garbage_uses_fallback(self):
        score = parse_score_response("The profile looks great!", FACTS)
        assert score.score == 3
        assert score.relevance == 100
        assert score.summary == "Basic analysis for chef_ana (https://www.instagram.com/chef_ana/). Followers: 12000."

    def test_blank_summary_uses_fallback_text(self):
        unknown = ProfileFacts(account="x", profile_url="https://www.instagram.com/x/")
        score = parse_score_response('{"summary": "  ", "score": 9, "relevance": -1}', unknown)
        assert score.summary.endswith("Followers: unknown.")
        assert (score.score, score.relevance) == (5, 0)


class TestExtractProfileFacts:
    def test_tiktok_record(self):
        facts = extract_profile_facts(
            {
                "nickname": "Chef",
                "unique_id": "chef",
                "followers": "12.5K",
                "private_account": False,
                "signature": "Recipes daily",
                "videos_count": 210,
                "profile_pic_url": "https://img/1.jpg",
            },
            "tiktok",
        )
        assert facts.account == "chef"
        assert facts.profile_url == "https://www.tiktok.com/@chef"
        assert facts.followers == 12500
        assert facts.biography == "Recipes daily"
        assert facts.posts_count == 210
        assert facts.profile_image_url == "https://img/1.jpg"

    def test_record_without_url_or_account(self):
        assert extract_profile_facts({"followers": 10}, "instagram") is None
        assert extract_profile_facts("not a record", "instagram") is None


class TestScoreProfiles:
    @pytest.mark.asyncio
    async def test_relevance_boundary(self, scripted_llm, profile_repo):
        profiles = [
            {"url": "https://www.instagram.com/in/", "account": "in", "followers": 5000},
            {"url": "https://www.instagram.com/out/", "account": "out", "followers": 5000},
        ]
        llm = scripted_llm(default=[_reply(relevance=70), _reply(relevance=69)])

        analyzed = await score_profiles(
            task_id="t-1",
            platform="instagram",
            profiles=profiles,
            query="cooking creators",
            complete=llm,
            persist=_persist_to(profile_repo),
        )

        assert [p.facts.account for p in analyzed] == ["in"]
        assert [row["account"] for row in profile_repo.rows] == ["in"]
        assert profile_repo.rows[0]["relevance"] == 70
        assert "cooking creators" in llm.calls[0]["prompt"]

    @pytest.mark.asyncio
    async def test_private_profile_is_not_scored_or_persisted(self, scripted_llm, profile_repo):
        llm = scripted_llm(default=[])
        analyzed = await score_profiles(
            task_id="t-1",
            platform="instagram",
            profiles=[{"url": "https://www.instagram.com/p/", "account": "p", "is_private": True}],
            query="q",
            complete=llm,
            persist=_persist_to(profile_repo),
        )

        assert llm.calls == []
        assert profile_repo.rows == []
        assert analyzed[0].is_private
        assert analyzed[0].score.score == 0

    @pytest.mark.asyncio
    async def test_each_profile_is_persisted_before_the_next_is_scored(self, scripted_llm, profile_repo):
        profiles = [
            {"url": "https://www.instagram.com/a/", "account": "a"},
            {"url": "https://www.instagram.com/b/", "account": "b"},
        ]
        llm = scripted_llm(default=[_reply(), LLMHTTPError(502, "Bad Gateway")])

        with pytest.raises(LLMHTTPError):
            await score_profiles(
                task_id="t-1",
                platform="instagram",
                profiles=profiles,
                query="q",
                complete=llm,
                persist=_persist_to(profile_repo),
            )

        assert [row["account"] for row in profile_repo.rows] == ["a"]

    @pytest.mark.asyncio
    async def test_persist_failure_is_skipped(self, scripted_llm, profile_repo):
        repo = type(profile_repo)(fail_for={"https://www.instagram.com/a/"})
        llm = scripted_llm(default=[_reply(), _reply()])

        with patch("wykra.pipeline.scoring.error_tracking.capture_exception") as capture:
            analyzed = await score_profiles(
                task_id="t-1",
                platform="instagram",
                profiles=[
                    {"url": "https://www.instagram.com/a/", "account": "a"},
                    {"url": "https://www.instagram.com/b/", "account": "b"},
                ],
                query="q",
                complete=llm,
                persist=_persist_to(repo),
            )

        assert [p.facts.account for p in analyzed] == ["a", "b"]
        assert [row["account"] for row in repo.rows] == ["b"]
        capture.assert_called_once()

    @pytest.mark.asyncio
    async def test_duplicate_urls_are_scored_once(self, scripted_llm):
        llm = scripted_llm(default=[_reply()])
        record = {"url": "https://www.instagram.com/a/", "account": "a"}

        analyzed = await score_profiles(
            task_id="t-1", platform="instagram", profiles=[record, dict(record)], query="q", complete=llm
        )

        assert len(analyzed) == 1
        assert len(llm.calls) == 1


def _persist_to(repo):
    async def persist(profile: AnalyzedProfile):
        return await repo.insert_search_profile(
            platform="instagram",
            task_id="t-1",
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


def _analyzed(account: str, score: int, followers: int | None, private: bool = False) -> AnalyzedProfile:
    return AnalyzedProfile(
        facts=ProfileFacts(
            account=account,
            profile_url=f"https://www.tiktok.com/@{account}",
            followers=followers,
            is_private=private,
        ),
        score=ProfileScore(summary="s", score=score, relevance=90),
        raw={},
    )


class TestRankProfiles:
    def test_sorts_and_filters(self):
        ranked = rank_profiles(
            [
                _analyzed("low", 1, 10_000),
                _analyzed("mid_unknown", 4, None),
                _analyzed("private", 0, 50_000, private=True),
                _analyzed("top", 5, 100),
                _analyzed("mid_big", 4, 20_000),
            ]
        )
        assert [p.facts.account for p in ranked] == ["top", "mid_big", "mid_unknown"]

    def test_to_dict_shape(self):
        data = _analyzed("a", 4, 10).to_dict()
        assert data["profileUrl"] == "https://www.tiktok.com/@a"
        assert data["analysis"] == {"summary": "s", "score": 4, "relevance": 90}
        assert set(data) == {
            "account",
            "profileUrl",
            "followers",
            "isPrivate",
            "postsCount",
            "avgEngagement",
            "profileImageUrl",
            "analysis",
        }
