"""Server-side follow-up for tasks started from chat.

Once a chat-created task resolves, its outcome is written into the session as
a new assistant message. The client never has to post results back.
"""
from __future__ import annotations

import asyncio
import json
import time
from typing import Any, Awaitable, Callable

from loguru import logger

from wykra.models.intents import INTENT_SPECS, canonical_intent
from wykra.services import error_tracking
from wykra.services.cancellation import is_cancellation_error
from wykra.services.task_store import TaskStatus, TaskStore, TaskStoreError

RESULTS_HEADER = "Task completed! Here are the results:"
TIMEOUT_MESSAGE = "Task is taking longer than expected. You can check the status later using the task ID."
PROFILE_SENTINELS = {
    "instagram": "[INSTAGRAM_PROFILE_ANALYSIS]",
    "tiktok": "[TIKTOK_PROFILE_ANALYSIS]",
}


def _parse_result(result: str | None) -> Any:
    if not result:
        return None
    try:
        return json.loads(result)
    except (json.JSONDecodeError, ValueError):
        return result


def format_task_result(status: str, result: str | None, error: str | None, intent: str | None) -> str:
    """Render a task outcome the way the chat client expects to find it."""
    spec = INTENT_SPECS.get(canonical_intent(intent) or "")

    if status == "timeout":
        return TIMEOUT_MESSAGE

    if status == TaskStatus.FAILED.value:
        if is_cancellation_error(error):
            return "Search cancelled" if spec is None or spec.is_search else "Analyze cancelled"
        return f"Task failed: {error or 'Unknown error'}"

    data = _parse_result(result)
    if spec is not None and not spec.is_search and isinstance(data, dict):
        return f"{PROFILE_SENTINELS[spec.platform]}\n{json.dumps(data, ensure_ascii=False)}"
    if spec is not None and spec.is_search:
        if isinstance(data, (dict, list)):
            return json.dumps(data, ensure_ascii=False)
        return str(data or "")
    if isinstance(data, (dict, list)):
        return f"{RESULTS_HEADER}\n\n{json.dumps(data, ensure_ascii=False, indent=2)}"
    return f"{RESULTS_HEADER}\n\n{data or ''}"


class ChatCompletionHandler:
    """Polls one task per chat link and posts its result as an assistant message."""

    def __init__(
        self,
        store: TaskStore | None = None,
        repository: Any = None,
        *,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        if repository is None:
            from wykra.services import database as repository
        self.store = store or TaskStore(repository)
        self._repo = repository
        self._sleep = sleep
        self._clock = clock
        self._watchers: set[asyncio.Task] = set()

    def schedule(self, task_id: str, user_id: str) -> asyncio.Task:
        watcher = asyncio.create_task(self.watch(task_id, user_id))
        self._watchers.add(watcher)
        watcher.add_done_callback(self._watchers.discard)
        return watcher

    async def close(self) -> None:
        for watcher in list(self._watchers):
            watcher.cancel()
        if self._watchers:
            await asyncio.gather(*self._watchers, return_exceptions=True)

    async def watch(self, task_id: str, user_id: str) -> None:
        """Follow ``task_id`` to a terminal status or the ceiling. Never raises."""
        try:
            await self._watch(task_id, user_id)
        except asyncio.CancelledError:
            logger.info(f"[{task_id}] Chat completion watcher cancelled")
            raise
        except Exception as exc:
            logger.error(f"[{task_id}] Chat completion handler failed: {exc}")
            error_tracking.capture_exception(exc, task_id=task_id, user_id=user_id)

    async def _watch(self, task_id: str, user_id: str) -> None:
        link = await self._repo.get_chat_task(task_id)
        if link is None:
            logger.warning(f"[{task_id}] No chat link found, nothing to follow")
            return
        intent = canonical_intent(link.get("endpoint"))
        spec = INTENT_SPECS.get(intent or "")
        if spec is None:
            logger.warning(f"[{task_id}] Chat link has unknown endpoint {link.get('endpoint')!r}")
            return

        await self._repo.update_chat_task_status(task_id, "polling")
        deadline = self._clock() + spec.poll_ceiling_seconds

        while True:
            try:
                task = await self.store.find_by_task_id(task_id)
            except TaskStoreError as exc:
                logger.warning(f"[{task_id}] Status poll failed: {exc}")
                task = None
            if task is not None and task.status.is_terminal:
                content = format_task_result(task.status.value, task.result, task.error, intent)
                await self._post(link, content, task.status.value)
                return
            if self._clock() >= deadline:
                logger.warning(f"[{task_id}] Gave up after {spec.poll_ceiling_seconds:.0f}s")
                await self._post(link, format_task_result("timeout", None, None, intent), "timeout")
                return
            await self._sleep(spec.poll_interval_seconds)

    async def _post(self, link: dict[str, Any], content: str, status: str) -> None:
        task_id = str(link["task_id"])
        session_id = link.get("session_id")
        if session_id is None:
            logger.warning(f"[{task_id}] Chat link has no session, result not posted")
        else:
            await self._repo.create_chat_message(link["user_id"], session_id, "assistant", content)
            await self._repo.touch_chat_session(session_id)
        await self._repo.update_chat_task_status(task_id, status)
        logger.info(f"[{task_id}] Chat task finished with status {status}")
