from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

import pytest

from wykra.llm_client import Completion, Usage


class FakeRedis:
    """The handful of redis.asyncio commands the queue and stop flags use."""

    def __init__(self) -> None:
        self.lists: dict[str, list[str]] = {}
        self.values: dict[str, str] = {}
        self.expiry: dict[str, int | None] = {}

    async def lpush(self, key: str, value: str) -> int:
        self.lists.setdefault(key, []).insert(0, value)
        return len(self.lists[key])

    async def brpop(self, keys, timeout: int = 0):
        for key in keys:
            items = self.lists.get(key)
            if items:
                return key, items.pop()
        return None

    async def llen(self, key: str) -> int:
        return len(self.lists.get(key, []))

    async def set(self, key: str, value: str, ex: int | None = None) -> bool:
        self.values[key] = value
        self.expiry[key] = ex
        return True

    async def exists(self, key: str) -> int:
        return 1 if key in self.values else 0

    async def delete(self, key: str) -> int:
        return 1 if self.values.pop(key, None) is not None else 0


class FakeTaskRepository:
    """In-memory stand-in for the tasks table functions in services.database."""

    def __init__(self) -> None:
        self.rows: dict[str, dict[str, Any]] = {}
        self.fail_next: int = 0
        self.calls: list[str] = []

    def _maybe_fail(self, op: str) -> None:
        self.calls.append(op)
        if self.fail_next > 0:
            self.fail_next -= 1
            raise ConnectionError(f"{op} failed")

    async def insert_task(self, task_id: str, status: str) -> dict[str, Any]:
        self._maybe_fail("insert")
        row = {
            "task_id": task_id,
            "status": status,
            "result": None,
            "error": None,
            "started_at": None,
            "completed_at": None,
            "created_at": datetime.now(timezone.utc),
        }
        self.rows[task_id] = row
        return dict(row)

    async def get_task(self, task_id: str) -> dict[str, Any] | None:
        self._maybe_fail("get")
        row = self.rows.get(task_id)
        return dict(row) if row else None

    async def update_task(self, task_id, status, allowed_previous, fields):
        self._maybe_fail("update")
        row = self.rows.get(task_id)
        if row is None or row["status"] not in allowed_previous:
            return None
        row.update(fields)
        row["status"] = status
        return dict(row)


@pytest.fixture
def fake_redis() -> FakeRedis:
    return FakeRedis()


@pytest.fixture
def task_repo() -> FakeTaskRepository:
    return FakeTaskRepository()


class ScriptedLLM:
    """Async stand-in for llm_client.complete.

    Replies are looked up by ``caller`` first, then taken from the ``default``
    queue. A reply that is an exception instance is raised.
    """

    def __init__(self, by_caller: dict[str, Any] | None = None, default: list[Any] | None = None) -> None:
        self.by_caller = {key: list(value) if isinstance(value, list) else [value] for key, value in (by_caller or {}).items()}
        self.default = list(default or [])
        self.calls: list[dict[str, Any]] = []

    async def __call__(self, prompt: str | None = None, **kwargs: Any) -> Completion:
        caller = kwargs.get("caller", "llm")
        self.calls.append({"prompt": prompt, **kwargs})
        queue = self.by_caller.get(caller)
        if queue:
            reply = queue[0] if len(queue) == 1 else queue.pop(0)
        elif self.default:
            reply = self.default.pop(0)
        else:
            raise AssertionError(f"No scripted reply for caller {caller}")
        if isinstance(reply, BaseException):
            raise reply
        return Completion(text=reply, usage=Usage(10, 5, 15), model="test-model")

    def callers(self) -> list[str]:
        return [call.get("caller", "llm") for call in self.calls]


class FakeProfileRepository:
    def __init__(self, fail_for: set[str] | None = None) -> None:
        self.rows: list[dict[str, Any]] = []
        self.fail_for = fail_for or set()

    async def insert_search_profile(self, **fields: Any) -> dict[str, Any]:
        if fields["profile_url"] in self.fail_for:
            raise ConnectionError("insert failed")
        self.rows.append(fields)
        return fields


@pytest.fixture
def profile_repo() -> FakeProfileRepository:
    return FakeProfileRepository()


@pytest.fixture
def scripted_llm():
    return ScriptedLLM


class FakeChatRepository(FakeTaskRepository):
    """Tasks plus the chat session, message and task-link tables."""

    def __init__(self) -> None:
        super().__init__()
        self.sessions: dict[int, dict[str, Any]] = {}
        self.messages: list[dict[str, Any]] = []
        self.chat_tasks: dict[str, dict[str, Any]] = {}
        self.link_statuses: list[tuple[str, str]] = []
        self._ids = 0

    def _next_id(self) -> int:
        self._ids += 1
        return self._ids

    async def create_chat_session(self, user_id: str, title: str | None = None) -> dict[str, Any]:
        now = datetime.now(timezone.utc)
        session = {"id": self._next_id(), "user_id": user_id, "title": title, "created_at": now, "updated_at": now}
        self.sessions[session["id"]] = session
        return dict(session)

    async def get_chat_session(self, session_id: int, user_id: str) -> dict[str, Any] | None:
        session = self.sessions.get(session_id)
        return dict(session) if session and session["user_id"] == user_id else None

    async def list_chat_sessions(self, user_id: str) -> list[dict[str, Any]]:
        owned = [s for s in self.sessions.values() if s["user_id"] == user_id]
        return [dict(s) for s in sorted(owned, key=lambda s: (s["updated_at"], s["id"]), reverse=True)]

    async def rename_chat_session(self, session_id: int, user_id: str, title: str | None) -> dict[str, Any] | None:
        session = self.sessions.get(session_id)
        if session is None or session["user_id"] != user_id:
            return None
        session["title"] = title
        return dict(session)

    async def touch_chat_session(self, session_id: int) -> None:
        if session_id in self.sessions:
            self.sessions[session_id]["updated_at"] = datetime.now(timezone.utc)

    async def delete_chat_session(self, session_id: int, user_id: str) -> bool:
        session = self.sessions.get(session_id)
        if session is None or session["user_id"] != user_id:
            return False
        doomed = {m["id"] for m in self.messages if m["session_id"] == session_id}
        for link in self.chat_tasks.values():
            if link["chat_message_id"] in doomed:
                link["chat_message_id"] = None
        self.messages = [m for m in self.messages if m["session_id"] != session_id]
        del self.sessions[session_id]
        return True

    async def create_chat_message(
        self, user_id, session_id, role, content, detected_endpoint=None, client_created_at=None
    ) -> dict[str, Any]:
        message = {
            "id": self._next_id(),
            "user_id": user_id,
            "session_id": session_id,
            "role": role,
            "content": content,
            "detected_endpoint": detected_endpoint,
            "client_created_at": client_created_at,
            "created_at": datetime.now(timezone.utc),
        }
        self.messages.append(message)
        return dict(message)

    async def get_chat_messages(self, user_id, session_id, limit=None) -> list[dict[str, Any]]:
        found = [dict(m) for m in self.messages if m["user_id"] == user_id and m["session_id"] == session_id]
        return found[-limit:] if limit else found

    async def create_chat_task(self, user_id, session_id, chat_message_id, task_id, endpoint, status="pending"):
        link = {
            "id": self._next_id(),
            "user_id": user_id,
            "session_id": session_id,
            "chat_message_id": chat_message_id,
            "task_id": task_id,
            "endpoint": endpoint,
            "status": status,
        }
        self.chat_tasks[task_id] = link
        return dict(link)

    async def get_chat_task(self, task_id: str) -> dict[str, Any] | None:
        link = self.chat_tasks.get(task_id)
        return dict(link) if link else None

    async def update_chat_task_status(self, task_id: str, status: str) -> None:
        self.link_statuses.append((task_id, status))
        if task_id in self.chat_tasks:
            self.chat_tasks[task_id]["status"] = status


@pytest.fixture
def chat_repo() -> FakeChatRepository:
    return FakeChatRepository()
