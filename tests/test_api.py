"""Tests for API routes."""
from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from wykra.api import deps
from wykra.chat.orchestrator import ChatOrchestrator
from wykra.llm_client import LLMRequestError
from wykra.main import app
from wykra.services.dispatcher import TaskDispatcher
from wykra.services.queue import JobQueue
from wykra.services.task_store import TaskStore

HEADERS = {"X-User-Id": "user-1"}


class RecordingHandler:
    def __init__(self) -> None:
        self.scheduled: list[tuple[str, str]] = []

    def schedule(self, task_id: str, user_id: str) -> None:
        self.scheduled.append((task_id, user_id))


class BrokenRedis:
    async def lpush(self, key, value):
        raise ConnectionError("redis down")


class Harness:
    def __init__(self, repo, redis_client, llm) -> None:
        self.repo = repo
        self.redis = redis_client
        self.llm = llm
        self.store = TaskStore(repo)
        self.queue = JobQueue(redis_client, prefix="test")
        self.dispatcher = TaskDispatcher(self.store, self.queue)
        self.handler = RecordingHandler()
        self.orchestrator = ChatOrchestrator(
            self.dispatcher, repo, complete=llm, completion_handler=self.handler
        )
        self.client = TestClient(app)


@pytest.fixture
def api(chat_repo, fake_redis, scripted_llm):
    harness = Harness(chat_repo, fake_redis, scripted_llm())
    app.dependency_overrides[deps.get_task_store] = lambda: harness.store
    app.dependency_overrides[deps.get_redis] = lambda: harness.redis
    app.dependency_overrides[deps.get_dispatcher] = lambda: harness.dispatcher
    app.dependency_overrides[deps.get_orchestrator] = lambda: harness.orchestrator
    yield harness
    app.dependency_overrides.clear()


def test_health(api):
    response = api.client.get("/api/health")
    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "ok"
    assert data["service"] == "wykra"


def test_user_header_is_required(api):
    response = api.client.get("/api/v1/chat/sessions")
    assert response.status_code == 401


class TestChat:
    def test_plain_answer(self, api):
        api.llm.by_caller["chat"] = ["Hi! Ask me about creators.\n[DETECTED_ENDPOINT: none]"]

        response = api.client.post("/api/v1/chat", json={"query": "hello"}, headers=HEADERS)

        assert response.status_code == 200
        data = response.json()
        assert data["response"] == "Hi! Ask me about creators."
        assert isinstance(data["sessionId"], int)
        assert data["taskId"] is None

    def test_intent_starts_a_task(self, api):
        api.llm.by_caller["chat"] = ["On it. [DETECTED_ENDPOINT: /tiktok/profile]"]

        response = api.client.post("/api/v1/chat", json={"query": "analyze @chef_ana"}, headers=HEADERS)

        data = response.json()
        assert response.status_code == 200
        assert data["response"] == ""
        assert data["detectedEndpoint"] == "/tiktok/profile"
        assert api.handler.scheduled == [(data["taskId"], "user-1")]
        assert api.redis.lists["test:queue:tiktok"]
        assert api.repo.rows[data["taskId"]]["status"] == "pending"

    def test_unknown_session_is_rejected(self, api):
        response = api.client.post("/api/v1/chat", json={"query": "hi", "sessionId": 999}, headers=HEADERS)
        assert response.status_code == 404
        assert response.json()["detail"] == "Chat session not found"

    def test_blank_query_is_rejected(self, api):
        response = api.client.post("/api/v1/chat", json={"query": "   "}, headers=HEADERS)
        assert response.status_code == 400

    def test_llm_failure_is_503(self, api):
        api.llm.by_caller["chat"] = [LLMRequestError("boom")]

        response = api.client.post("/api/v1/chat", json={"query": "hello"}, headers=HEADERS)

        assert response.status_code == 503


class TestSessions:
    def test_crud(self, api):
        created = api.client.post("/api/v1/chat/sessions", json={"title": "  cooking  "}, headers=HEADERS)
        assert created.status_code == 200
        session_id = created.json()["id"]
        assert created.json()["title"] == "cooking"

        listed = api.client.get("/api/v1/chat/sessions", headers=HEADERS).json()
        assert [s["id"] for s in listed] == [session_id]

        renamed = api.client.patch(f"/api/v1/chat/sessions/{session_id}", json={"title": " "}, headers=HEADERS)
        assert renamed.json()["title"] is None

        assert api.client.delete(f"/api/v1/chat/sessions/{session_id}", headers=HEADERS).json() == {
            "status": "deleted"
        }
        assert api.client.get("/api/v1/chat/sessions", headers=HEADERS).json() == []

    def test_sessions_are_per_user(self, api):
        created = api.client.post("/api/v1/chat/sessions", json={}, headers=HEADERS).json()

        other = {"X-User-Id": "user-2"}
        assert api.client.get("/api/v1/chat/sessions", headers=other).json() == []
        assert api.client.delete(f"/api/v1/chat/sessions/{created['id']}", headers=other).status_code == 404
        assert api.client.patch(f"/api/v1/chat/sessions/{created['id']}", json={}, headers=other).status_code == 404

    def test_history(self, api):
        empty = api.client.get("/api/v1/chat/history", headers=HEADERS).json()
        assert empty == {"sessionId": None, "messages": []}

        api.llm.by_caller["chat"] = ["Hello!\n[DETECTED_ENDPOINT: none]"]
        session_id = api.client.post("/api/v1/chat", json={"query": "hi"}, headers=HEADERS).json()["sessionId"]

        history = api.client.get("/api/v1/chat/history", params={"sessionId": session_id}, headers=HEADERS).json()

        assert history["sessionId"] == session_id
        assert [(m["role"], m["content"]) for m in history["messages"]] == [("user", "hi"), ("assistant", "Hello!")]
        assert "createdAt" in history["messages"][0]

    def test_history_of_unknown_session(self, api):
        response = api.client.get("/api/v1/chat/history", params={"sessionId": 42}, headers=HEADERS)
        assert response.status_code == 404


class TestTasks:
    @pytest.mark.parametrize(
        "path, body, queue_key",
        [
            ("/api/v1/instagram/search", {"query": "fitness in Poland"}, "test:queue:instagram"),
            ("/api/v1/instagram/profile", {"profile": "chef_ana"}, "test:queue:instagram"),
            ("/api/v1/tiktok/search", {"query": "cooking"}, "test:queue:tiktok"),
            ("/api/v1/tiktok/profile", {"profile": "chef_ana"}, "test:queue:tiktok"),
        ],
    )
    def test_direct_start_and_poll(self, api, path, body, queue_key):
        started = api.client.post(path, json=body)
        assert started.status_code == 200
        task_id = started.json()["taskId"]
        assert len(api.redis.lists[queue_key]) == 1

        status = api.client.get(f"/api/v1/tasks/{task_id}").json()
        assert status["taskId"] == task_id
        assert status["status"] == "pending"
        assert status["result"] is None

    def test_blank_value_is_rejected(self, api):
        response = api.client.post("/api/v1/instagram/search", json={"query": " "})
        assert response.status_code == 400
        assert response.json()["detail"] == "Query is required"

    def test_queue_failure_is_503(self, api):
        broken = TaskDispatcher(api.store, JobQueue(BrokenRedis(), prefix="test"))
        app.dependency_overrides[deps.get_dispatcher] = lambda: broken

        response = api.client.post("/api/v1/tiktok/profile", json={"profile": "chef_ana"})

        assert response.status_code == 503

    def test_unknown_task(self, api):
        assert api.client.get("/api/v1/tasks/nope").status_code == 404
        assert api.client.post("/api/v1/tasks/nope/stop").status_code == 404

    def test_stop_running_task(self, api):
        task_id = api.client.post("/api/v1/tiktok/search", json={"query": "cooking"}).json()["taskId"]

        response = api.client.post(f"/api/v1/tasks/{task_id}/stop")

        assert response.json() == {"taskId": task_id, "stopRequested": True}
        assert any(key.endswith(f":stop:{task_id}") for key in api.redis.values)

    def test_stop_terminal_task_is_a_noop(self, api):
        task_id = api.client.post("/api/v1/tiktok/search", json={"query": "cooking"}).json()["taskId"]
        api.repo.rows[task_id]["status"] = "completed"
        api.repo.rows[task_id]["result"] = "{}"

        response = api.client.post(f"/api/v1/tasks/{task_id}/stop")

        assert response.json() == {"taskId": task_id, "stopRequested": False}
        assert api.redis.values == {}
        assert api.client.get(f"/api/v1/tasks/{task_id}").json()["result"] == "{}"
