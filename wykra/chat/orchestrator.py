"""Chat turn handling: answer, detect an intent, and start the matching task."""
from __future__ import annotations

import asyncio
import re
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from loguru import logger

from wykra import llm_client
from wykra.chat.completion import PROFILE_SENTINELS, RESULTS_HEADER, ChatCompletionHandler
from wykra.chat.markers import parse_intent_marker, strip_intent_markers
from wykra.config import settings
from wykra.llm_client import Completion, LLMError
from wykra.models.intents import canonical_intent, spec_for
from wykra.pipeline.profiles import strip_trailing_punctuation
from wykra.services import error_tracking
from wykra.services.dispatcher import DispatchError, TaskDispatcher
from wykra.services.json_parse import parse_json_object
from wykra.services.prompt_store import render_prompt
from wykra.services.task_store import TaskStoreError

QUERY_CLARIFICATION = (
    "To search for profiles, I need a specific query. Please tell me what keywords, niche, or names "
    'you would like to use for the search (e.g., "fashion in Poland" or "fitness creators").'
)
DISPATCH_FAILED_MESSAGE = "Failed to start the requested task. Please try again."
EMPTY_ANSWER_MESSAGE = "Sorry, I could not come up with an answer. Please try rephrasing your request."
ABBREVIATION_SUFFIX = "\n... [Result abbreviated to preserve context window] ..."
ABBREVIATE_AFTER = 500
SESSION_TITLE_LENGTH = 50

_SKIPPED_HISTORY_PREFIXES = ("Error:", "Processing your request")
_RESULT_MARKERS = (*PROFILE_SENTINELS.values(), RESULTS_HEADER, '"analyzedProfiles"')
_HANDLE_RE = re.compile(r"@([a-zA-Z0-9._-]+)")
_FAST_TRACK_RE = re.compile(r"(?:profile\s+|account\s+|check\s+|analyze\s+)([a-zA-Z0-9._-]+)", re.IGNORECASE)

Complete = Callable[..., Awaitable[Completion]]


class SessionNotFoundError(LookupError):
    def __init__(self, session_id: int | None = None):
        super().__init__("Chat session not found")
        self.session_id = session_id


@dataclass
class ChatReply:
    response: str
    session_id: int
    task_id: str | None = None
    detected_endpoint: str | None = None


def clarification_message(param: str) -> str:
    if param == "query":
        return QUERY_CLARIFICATION
    return f"I need more information to proceed. Please provide the {param} for this request."


def fast_track_profile(query: str) -> str | None:
    """Pull a handle out of ``@user`` / ``analyze user`` style requests without an LLM call.

    An explicit ``@handle`` anywhere in the query beats the keyword forms.
    """
    match = _HANDLE_RE.search(query or "") or _FAST_TRACK_RE.search(query or "")
    if not match:
        return None
    handle = strip_trailing_punctuation(match.group(1))
    return handle if len(handle) > 1 else None


def history_for_prompt(messages: list[dict[str, Any]]) -> list[dict[str, str]]:
    """Turn stored messages into chat-completion messages.

    Error and progress lines are dropped; long task results are cut down.
    """
    prompt_messages = []
    for message in messages:
        content = (message.get("content") or "").strip()
        if not content or content.startswith(_SKIPPED_HISTORY_PREFIXES):
            continue
        if len(content) > ABBREVIATE_AFTER and any(marker in content for marker in _RESULT_MARKERS):
            content = content[:ABBREVIATE_AFTER] + ABBREVIATION_SUFFIX
        role = "assistant" if message.get("role") == "assistant" else "user"
        prompt_messages.append({"role": role, "content": content})
    return prompt_messages


def pending_intent(messages: list[dict[str, Any]]) -> str | None:
    """The intent of a clarification question that is still the latest message."""
    if not messages or messages[-1].get("role") != "assistant":
        return None
    return canonical_intent(messages[-1].get("detected_endpoint"))


class ChatOrchestrator:
    def __init__(
        self,
        dispatcher: TaskDispatcher | None = None,
        repository: Any = None,
        *,
        complete: Complete = llm_client.complete,
        completion_handler: ChatCompletionHandler | None = None,
    ):
        if repository is None:
            from wykra.services import database as repository
        self._repo = repository
        if dispatcher is None:
            from wykra.services.queue import JobQueue
            from wykra.services.task_store import TaskStore

            dispatcher = TaskDispatcher(TaskStore(repository), JobQueue())
        self.dispatcher = dispatcher
        self.complete = complete
        self.completion_handler = completion_handler or ChatCompletionHandler(dispatcher.store, repository)
        self._session_creation: dict[str, asyncio.Future] = {}

    # --- Chat turn ---

    async def chat(self, user_id: str, query: str, session_id: int | None = None) -> ChatReply:
        query = (query or "").strip()
        if not query:
            raise ValueError("Query is required")

        session_id = await self._resolve_session(user_id, session_id, query)
        history = await self._repo.get_chat_messages(user_id, session_id, limit=settings.chat_history_limit)
        user_message = await self._repo.create_chat_message(user_id, session_id, "user", query)
        await self._repo.touch_chat_session(session_id)

        answer = await self.complete(
            messages=[*history_for_prompt(history), {"role": "user", "content": query}],
            system=render_prompt("chat.system_prompt"),
            model=settings.chat_model or None,
            caller="chat",
            temperature=0.3,
        )
        marker = parse_intent_marker(answer.text)
        text = strip_intent_markers(answer.text)

        if marker is not None:
            intent = marker.intent
            params = marker.params
        else:
            intent = pending_intent(history)
            params = {}
            if intent:
                logger.info(f"No marker in answer, resuming pending intent {intent}")

        if intent:
            return await self._start_intent(user_id, session_id, user_message, intent, params, query)

        reply = text or EMPTY_ANSWER_MESSAGE
        await self._save_assistant(user_id, session_id, reply)
        return ChatReply(response=reply, session_id=session_id)

    async def _resolve_session(self, user_id: str, session_id: int | None, query: str) -> int:
        if session_id is not None and session_id > 0:
            session = await self._repo.get_chat_session(session_id, user_id)
            if session is None:
                raise SessionNotFoundError(session_id)
            return session_id
        if session_id is not None and session_id < 0:
            logger.info(f"Placeholder session {session_id} from user {user_id}, creating a real one")
        session = await self._create_session_once(user_id, query[:SESSION_TITLE_LENGTH])
        return session["id"]

    async def _create_session_once(self, user_id: str, title: str | None) -> dict[str, Any]:
        """Concurrent first messages from one user share a single new session."""
        pending = self._session_creation.get(user_id)
        if pending is None:
            pending = asyncio.ensure_future(self._repo.create_chat_session(user_id, title))
            self._session_creation[user_id] = pending

            def _forget(future: asyncio.Future) -> None:
                if self._session_creation.get(user_id) is future:
                    del self._session_creation[user_id]

            pending.add_done_callback(_forget)
        return await asyncio.shield(pending)

    async def _start_intent(
        self,
        user_id: str,
        session_id: int,
        user_message: dict[str, Any],
        intent: str,
        marker_params: dict[str, str],
        query: str,
    ) -> ChatReply:
        spec = spec_for(intent)
        value = (marker_params.get(spec.param) or "").strip() or None
        if not value and spec.param == "profile":
            value = fast_track_profile(query)
        if not value:
            value = await self._extract_param(spec.param, query)

        if not value:
            clarification = clarification_message(spec.param)
            await self._save_assistant(user_id, session_id, clarification, detected_endpoint=intent)
            return ChatReply(response=clarification, session_id=session_id, detected_endpoint=intent)

        try:
            task_id = await self.dispatcher.submit(spec.topic, spec.job_name, {spec.param: value})
        except (DispatchError, TaskStoreError) as exc:
            logger.error(f"Could not start {intent} for user {user_id}: {exc}")
            await self._save_assistant(user_id, session_id, DISPATCH_FAILED_MESSAGE)
            return ChatReply(response=DISPATCH_FAILED_MESSAGE, session_id=session_id)

        logger.info(f"Started task {task_id} for {intent} ({spec.param}={value!r}) in session {session_id}")
        try:
            await self._repo.create_chat_task(user_id, session_id, user_message.get("id"), task_id, intent)
        except Exception as exc:
            logger.error(f"[{task_id}] Could not link task to chat: {exc}")
            error_tracking.capture_exception(exc, task_id=task_id, session_id=session_id)
        else:
            self.completion_handler.schedule(task_id, user_id)
        return ChatReply(response="", session_id=session_id, task_id=task_id, detected_endpoint=intent)

    async def _extract_param(self, param: str, query: str) -> str | None:
        try:
            answer = await self.complete(
                render_prompt(f"chat.extract_{param}", user_query=query),
                caller=f"chat_extract_{param}",
            )
        except LLMError as exc:
            logger.warning(f"Parameter extraction for {param} failed: {exc}")
            return None

        parsed = parse_json_object(answer.text)
        if not parsed or parsed.get("missing"):
            return None
        value = parsed.get(param)
        if not isinstance(value, str):
            return None
        value = value.strip()
        return value or None

    async def _save_assistant(
        self,
        user_id: str,
        session_id: int,
        content: str,
        detected_endpoint: str | None = None,
    ) -> dict[str, Any]:
        message = await self._repo.create_chat_message(
            user_id, session_id, "assistant", content, detected_endpoint=detected_endpoint
        )
        await self._repo.touch_chat_session(session_id)
        return message

    # --- Sessions ---

    async def list_sessions(self, user_id: str) -> list[dict[str, Any]]:
        return await self._repo.list_chat_sessions(user_id)

    async def create_session(self, user_id: str, title: str | None = None) -> dict[str, Any]:
        title = (title or "").strip() or None
        return await self._repo.create_chat_session(user_id, title)

    async def rename_session(self, user_id: str, session_id: int, title: str | None) -> dict[str, Any]:
        title = (title or "").strip() or None
        session = await self._repo.rename_chat_session(session_id, user_id, title)
        if session is None:
            raise SessionNotFoundError(session_id)
        return session

    async def delete_session(self, user_id: str, session_id: int) -> None:
        if not await self._repo.delete_chat_session(session_id, user_id):
            raise SessionNotFoundError(session_id)

    async def get_history(self, user_id: str, session_id: int | None = None) -> tuple[int | None, list[dict[str, Any]]]:
        """Messages of ``session_id``, or of the most recent session when omitted."""
        if session_id is None:
            sessions = await self._repo.list_chat_sessions(user_id)
            if not sessions:
                return None, []
            session_id = sessions[0]["id"]
        elif await self._repo.get_chat_session(session_id, user_id) is None:
            raise SessionNotFoundError(session_id)
        return session_id, await self._repo.get_chat_messages(user_id, session_id)
