from __future__ import annotations

import json

import pytest

from wykra.chat.completion import TIMEOUT_MESSAGE, ChatCompletionHandler, format_task_result
from wykra.services.task_store import TaskStore

USER = "user-1"


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


async def _linked_task(chat_repo, task_id: str, endpoint: str) -> dict:
    session = await chat_repo.create_chat_session(USER, "chat")
    message = await chat_repo.create_chat_message(USER, session["id"], "user", "go")
    await chat_repo.create_chat_task(USER, session["id"], message["id"], task_id, endpoint)
    await TaskStore(chat_repo).create(task_id)
    return session


class TestFormatTaskResult:
    def test_profile_analysis_gets_sentinel(self):
        result = json.dumps({"profile": "chef", "data": {}, "analysis": {"summary": "ok", "qualityScore": 4}})
        text = format_task_result("completed", result, None, "/tiktok/profile")
        sentinel, body = text.split("\n", 1)
        assert sentinel == "[TIKTOK_PROFILE_ANALYSIS]"
        assert json.loads(body)["profile"] == "chef"

    def test_instagram_analysis_sentinel(self):
        text = format_task_result("completed", '{"profile": "chef"}', None, "/instagram/analysis")
        assert text.startswith("[INSTAGRAM_PROFILE_ANALYSIS]\n")

    def test_search_is_plain_json(self):
        result = json.dumps({"query": "chefs", "analyzedProfiles": []})
        assert json.loads(format_task_result("completed", result, None, "/instagram/search")) == {
            "query": "chefs",
            "analyzedProfiles": [],
        }

    def test_unknown_intent_uses_results_header(self):
        text = format_task_result("completed", '{"a": 1}', None, None)
        assert text == 'Task completed! Here are the results:\n\n{\n  "a": 1\n}'

    def test_failed(self):
        assert format_task_result("failed", None, "No response from BrightData API", "/tiktok/search") == (
            "Task failed: No response from BrightData API"
        )
        assert format_task_result("failed", None, None, "/tiktok/search") == "Task failed: Unknown error"

    def test_cancelled(self):
        assert format_task_result("failed", None, "Task cancelled by user", "/tiktok/search") == "Search cancelled"
        assert format_task_result("failed", None, "Task cancelled by user", "/tiktok/profile") == "Analyze cancelled"

    def test_timeout(self):
        assert format_task_result("timeout", None, None, "/instagram/search") == TIMEOUT_MESSAGE


class TestChatCompletionHandler:
    @pytest.mark.asyncio
    async def test_posts_result_once_task_completes(self, chat_repo):
        session = await _linked_task(chat_repo, "t-1", "/instagram/analysis")
        store = TaskStore(chat_repo)
        clock = FakeClock()

        async def sleep(seconds):
            await clock.sleep(seconds)
            if len(clock.sleeps) == 1:
                await store.mark_running("t-1")
            elif len(clock.sleeps) == 2:
                await store.mark_completed("t-1", json.dumps({"profile": "chef", "data": {}, "analysis": {}}))

        handler = ChatCompletionHandler(store, chat_repo, sleep=sleep, clock=clock)

        await handler.watch("t-1", USER)

        assert clock.sleeps == [5, 5]
        posted = chat_repo.messages[-1]
        assert posted["role"] == "assistant"
        assert posted["session_id"] == session["id"]
        assert posted["content"].startswith("[INSTAGRAM_PROFILE_ANALYSIS]\n")
        assert chat_repo.link_statuses == [("t-1", "polling"), ("t-1", "completed")]

    @pytest.mark.asyncio
    async def test_failure_is_posted(self, chat_repo):
        await _linked_task(chat_repo, "t-1", "/tiktok/search")
        store = TaskStore(chat_repo)
        await store.mark_running("t-1")
        await store.mark_failed("t-1", "Category is required to perform TikTok search")
        clock = FakeClock()

        await ChatCompletionHandler(store, chat_repo, sleep=clock.sleep, clock=clock).watch("t-1", USER)

        assert chat_repo.messages[-1]["content"] == "Task failed: Category is required to perform TikTok search"
        assert chat_repo.chat_tasks["t-1"]["status"] == "failed"

    @pytest.mark.asyncio
    async def test_gives_up_at_the_ceiling(self, chat_repo):
        await _linked_task(chat_repo, "t-1", "/tiktok/profile")
        clock = FakeClock()
        handler = ChatCompletionHandler(TaskStore(chat_repo), chat_repo, sleep=clock.sleep, clock=clock)

        await handler.watch("t-1", USER)

        assert set(clock.sleeps) == {10}
        assert clock.now == 30 * 60
        assert chat_repo.messages[-1]["content"] == TIMEOUT_MESSAGE
        assert chat_repo.chat_tasks["t-1"]["status"] == "timeout"

    @pytest.mark.asyncio
    async def test_missing_link_is_ignored(self, chat_repo):
        clock = FakeClock()
        handler = ChatCompletionHandler(TaskStore(chat_repo), chat_repo, sleep=clock.sleep, clock=clock)

        await handler.watch("unknown", USER)

        assert chat_repo.messages == []
        assert chat_repo.link_statuses == []

    @pytest.mark.asyncio
    async def test_repository_errors_do_not_escape(self, chat_repo, monkeypatch):
        await _linked_task(chat_repo, "t-1", "/instagram/search")
        store = TaskStore(chat_repo)
        await store.mark_running("t-1")
        await store.mark_completed("t-1", "{}")

        async def broken(*args, **kwargs):
            raise ConnectionError("db down")

        monkeypatch.setattr(chat_repo, "create_chat_message", broken)
        clock = FakeClock()

        await ChatCompletionHandler(store, chat_repo, sleep=clock.sleep, clock=clock).watch("t-1", USER)

        assert chat_repo.link_statuses == [("t-1", "polling")]

    @pytest.mark.asyncio
    async def test_schedule_runs_in_background(self, chat_repo):
        await _linked_task(chat_repo, "t-1", "/instagram/search")
        store = TaskStore(chat_repo)
        await store.mark_running("t-1")
        await store.mark_completed("t-1", '{"analyzedProfiles": []}')
        clock = FakeClock()
        handler = ChatCompletionHandler(store, chat_repo, sleep=clock.sleep, clock=clock)

        await handler.schedule("t-1", USER)
        await handler.close()

        assert json.loads(chat_repo.messages[-1]["content"]) == {"analyzedProfiles": []}
