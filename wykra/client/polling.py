"""Client-side chat state: task polling and reconciliation with server history.

Every async step remembers the session it was started for and drops its
result when the user has moved to another session in the meantime.
"""
from __future__ import annotations

import asyncio
import itertools
import time
from enum import Enum
from typing import Any, Awaitable, Callable

from loguru import logger

from wykra.chat.completion import format_task_result
from wykra.client.api import ApiError, WykraApiClient
from wykra.client.messages import extract_success_requests, is_processing_message
from wykra.models.intents import INTENT_SPECS, canonical_intent

TERMINAL_STATUSES = ("completed", "failed", "cancelled")
STOPPING_TEXT = "Stopping..."
STOP_FAILED_TEXT = "Failed to stop task. Please try again."
DEFAULT_POLL_INTERVAL = 3.0
DEFAULT_POLL_CEILING = 30 * 60.0

PROCESSING_TEXTS = {
    "/instagram/analysis": "Processing your request... This can take up to 5 minutes for Instagram profile analysis.",
    "/tiktok/profile": "Processing your request... This can take up to 10 minutes for TikTok profile analysis.",
}
SEARCH_PROCESSING_TEXT = "Processing your request... This can take up to 20 minutes for search."


def processing_text(intent: str | None) -> str:
    return PROCESSING_TEXTS.get(canonical_intent(intent) or "", SEARCH_PROCESSING_TEXT)


class PollState(str, Enum):
    IDLE = "idle"
    POLLING = "polling"
    RESOLVED = "resolved"
    TIMED_OUT = "timed_out"
    STOPPED = "stopped"


class TaskPoller:
    """Polls one task until it is terminal or the ceiling passes."""

    def __init__(
        self,
        api: WykraApiClient,
        task_id: str,
        *,
        on_terminal: Callable[[dict[str, Any]], Awaitable[None]],
        on_timeout: Callable[[], Awaitable[None]],
        interval: float = DEFAULT_POLL_INTERVAL,
        ceiling: float = DEFAULT_POLL_CEILING,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.api = api
        self.task_id = task_id
        self.interval = interval
        self.ceiling = ceiling
        self.state = PollState.IDLE
        self._on_terminal = on_terminal
        self._on_timeout = on_timeout
        self._sleep = sleep
        self._clock = clock
        self._task: asyncio.Task | None = None

    def start(self) -> asyncio.Task:
        if self._task is None:
            self._task = asyncio.create_task(self.run())
        return self._task

    def cancel(self) -> None:
        if self.state in (PollState.IDLE, PollState.POLLING):
            self.state = PollState.STOPPED
        if self._task is not None and not self._task.done():
            self._task.cancel()

    async def wait(self) -> None:
        if self._task is None:
            return
        try:
            await self._task
        except asyncio.CancelledError:
            pass

    async def run(self) -> None:
        self.state = PollState.POLLING
        deadline = self._clock() + self.ceiling
        while True:
            try:
                task = await self.api.get_task(self.task_id)
            except ApiError as exc:
                logger.warning(f"Failed to poll task {self.task_id}: {exc}")
                task = None
            status = str((task or {}).get("status") or "").strip().lower()
            if status in TERMINAL_STATUSES:
                self.state = PollState.RESOLVED
                await self._on_terminal(task)
                return
            if self._clock() >= deadline:
                self.state = PollState.TIMED_OUT
                await self._on_timeout()
                return
            await self._sleep(self.interval)


class ChatController:
    def __init__(
        self,
        api: WykraApiClient,
        *,
        history_retries: int = 10,
        history_retry_delay: float = 0.75,
        stop_checks: int = 5,
        stop_check_delay: float = 1.0,
        poll_interval: float | None = None,
        poll_ceiling: float | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.api = api
        self.history_retries = history_retries
        self.history_retry_delay = history_retry_delay
        self.stop_checks = stop_checks
        self.stop_check_delay = stop_check_delay
        self.poll_interval = poll_interval
        self.poll_ceiling = poll_ceiling
        self._sleep = sleep
        self._clock = clock

        self.sessions: list[dict[str, Any]] = []
        self.active_session_id: int | None = None
        self.messages: list[dict[str, Any]] = []
        self.success_requests: dict[int, list] = {}
        self.active_task_id: str | None = None
        self.stopping = False
        self.sending = False
        self.poller: TaskPoller | None = None

        self._pending_placeholder_id: int | None = None
        self._skip_next_reload = False
        self._local_ids = itertools.count(1)

    # --- Sessions ---

    async def load_sessions(self) -> list[dict[str, Any]] | None:
        try:
            sessions = await self.api.list_sessions()
        except ApiError as exc:
            logger.warning(f"Failed to load chat sessions: {exc}")
            return None
        if self._pending_placeholder_id is not None:
            # A create is in flight; its placeholder would be dropped from the list.
            return sessions
        self.sessions = sessions
        if self.active_session_id is None and sessions:
            await self._activate(sessions[0]["id"])
        return sessions

    async def create_session(self) -> dict[str, Any] | None:
        placeholder_id = -int(self._clock() * 1000) or -1
        self._pending_placeholder_id = placeholder_id
        self.sessions.insert(0, {"id": placeholder_id, "title": None})
        self._cancel_polling()
        self.messages = []
        await self._activate(placeholder_id)
        try:
            created = await self.api.create_session()
        except ApiError as exc:
            logger.warning(f"Failed to create chat session: {exc}")
            created = None
        self._pending_placeholder_id = None
        if not created or not isinstance(created.get("id"), int):
            self.sessions = [s for s in self.sessions if s["id"] != placeholder_id]
            if self.active_session_id == placeholder_id:
                await self._activate(self.sessions[0]["id"] if self.sessions else None)
            return None
        await self._swap_placeholder(placeholder_id, created)
        return created

    async def select_session(self, session_id: int | None) -> None:
        if session_id == self.active_session_id:
            return
        self._cancel_polling()
        self.messages = []
        await self._activate(session_id)

    async def _activate(self, session_id: int | None) -> None:
        self.active_session_id = session_id
        if self._skip_next_reload:
            self._skip_next_reload = False
            return
        if session_id is not None and session_id > 0:
            await self.load_history(session_id)

    async def _swap_placeholder(self, placeholder_id: int | None, session: dict[str, Any]) -> None:
        """Put the server's session in place of the temporary one, without a reload."""
        real_id = session["id"]
        replaced = False
        for index, existing in enumerate(self.sessions):
            if existing["id"] == placeholder_id:
                self.sessions[index] = {**existing, **session}
                replaced = True
        if not replaced and all(s["id"] != real_id for s in self.sessions):
            self.sessions.insert(0, dict(session))
        if self.active_session_id == placeholder_id:
            self._skip_next_reload = True
            await self._activate(real_id)

    # --- History ---

    async def load_history(self, session_id: int | None = None) -> list[dict[str, Any]] | None:
        """Fetch a session's history and show it if that session is still active.

        The fetched list is returned either way.
        """
        target = session_id if session_id is not None else self.active_session_id
        if not target or target < 0:
            return None
        try:
            history = await self.api.get_history(target)
        except ApiError as exc:
            logger.warning(f"Failed to load chat history: {exc}")
            return None
        self.success_requests[target] = extract_success_requests(target, history)
        if self.active_session_id != target:
            return history
        self.messages = history
        return history

    # --- Sending ---

    async def send(self, query: str) -> dict[str, Any] | None:
        query = (query or "").strip()
        if not query or self.sending or self.active_task_id:
            return None
        launched_for = self.active_session_id
        self.messages.append({"id": f"local-{next(self._local_ids)}", "role": "user", "content": query})
        self.sending = True
        try:
            response = await self.api.chat(query, launched_for)
        except ApiError as exc:
            if self.active_session_id == launched_for:
                self.messages.append(
                    {"id": f"local-{next(self._local_ids)}", "role": "assistant", "content": f"Error: {exc}"}
                )
            return None
        finally:
            self.sending = False

        session_id = response.get("sessionId")
        if session_id != launched_for and (launched_for is None or launched_for < 0):
            await self._swap_placeholder(launched_for, {"id": session_id, "title": query[:50]})
        if self.active_session_id != session_id:
            logger.debug(f"Dropping chat response for inactive session {session_id}")
            return response

        task_id = response.get("taskId")
        if task_id:
            intent = response.get("detectedEndpoint")
            self.messages.append(
                {
                    "id": f"pending-{task_id}",
                    "role": "assistant",
                    "content": processing_text(intent),
                    "detected_endpoint": intent,
                }
            )
            self._start_polling(str(task_id), session_id, intent)
        else:
            await self.load_history(session_id)
        return response

    # --- Task polling ---

    def _start_polling(self, task_id: str, session_id: int, intent: str | None) -> None:
        self._cancel_polling()
        spec = INTENT_SPECS.get(canonical_intent(intent) or "")
        interval = self.poll_interval or (spec.poll_interval_seconds if spec else DEFAULT_POLL_INTERVAL)
        ceiling = self.poll_ceiling or (spec.poll_ceiling_seconds if spec else DEFAULT_POLL_CEILING)
        self.active_task_id = task_id
        self.poller = TaskPoller(
            self.api,
            task_id,
            on_terminal=lambda task: self._on_task_terminal(task, session_id, intent),
            on_timeout=lambda: self._on_task_timeout(task_id),
            interval=interval,
            ceiling=ceiling,
            sleep=self._sleep,
            clock=self._clock,
        )
        self.poller.start()

    def _cancel_polling(self) -> None:
        if self.poller is not None:
            self.poller.cancel()
            self.poller = None
        self.active_task_id = None
        self.stopping = False

    async def _on_task_timeout(self, task_id: str) -> None:
        if self.active_task_id == task_id:
            self.active_task_id = None

    async def _on_task_terminal(self, task: dict[str, Any], session_id: int, intent: str | None) -> None:
        task_id = str(task.get("taskId") or "")
        if self.active_task_id == task_id:
            self.active_task_id = None
            self.stopping = False
        if self.active_session_id != session_id:
            return

        placeholder = self._find_placeholder()
        for attempt in range(self.history_retries):
            history = await self.load_history(session_id)
            if self.active_session_id != session_id:
                return
            if history and history[-1].get("role") == "assistant" and not is_processing_message(
                history[-1].get("content")
            ):
                return
            if attempt < self.history_retries - 1:
                await self._sleep(self.history_retry_delay)

        # The server never posted the result: render it from the task status.
        if placeholder is None:
            return
        if self._find_placeholder() is None:
            self.messages.append(placeholder)
        status = str(task.get("status") or "").lower()
        if status == "cancelled":
            status, error = "failed", "cancelled"
        else:
            error = task.get("error")
        if status == "completed" and not task.get("result"):
            content = "Task completed (no result)."
        else:
            content = format_task_result(status, task.get("result"), error, intent)
        self._set_placeholder(content)

    # --- Stopping ---

    async def stop_active_task(self) -> bool:
        task_id = self.active_task_id
        if not task_id or self.stopping:
            return False
        session_id = self.active_session_id
        self.stopping = True
        self._set_placeholder(STOPPING_TEXT)
        try:
            await self.api.stop_task(task_id)
            for attempt in range(self.stop_checks):
                task = await self.api.get_task(task_id)
                if str(task.get("status") or "").lower() in TERMINAL_STATUSES:
                    return True
                if attempt < self.stop_checks - 1:
                    await self._sleep(self.stop_check_delay)
            logger.warning(f"Task {task_id} still active after stop request")
        except ApiError as exc:
            logger.warning(f"Failed to stop task {task_id}: {exc}")
        finally:
            self.stopping = False
        if self.active_session_id == session_id:
            self._set_placeholder(STOP_FAILED_TEXT)
        return False

    def _find_placeholder(self) -> dict[str, Any] | None:
        for message in reversed(self.messages):
            if message.get("role") == "assistant" and is_processing_message(message.get("content")):
                return message
        return None

    def _set_placeholder(self, content: str) -> None:
        placeholder = self._find_placeholder()
        if placeholder is not None:
            placeholder["content"] = content

    async def close(self) -> None:
        poller = self.poller
        self._cancel_polling()
        if poller is not None:
            await poller.wait()
