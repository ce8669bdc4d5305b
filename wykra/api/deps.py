from __future__ import annotations

from fastapi import Depends, Header, HTTPException
from loguru import logger

from wykra.chat.orchestrator import ChatOrchestrator
from wykra.models.intents import spec_for
from wykra.models.schemas import TaskCreatedResponse
from wykra.services import error_tracking
from wykra.services.dispatcher import DispatchError, TaskDispatcher
from wykra.services.queue import JobQueue
from wykra.services.redis_client import RedisClient
from wykra.services.task_store import TaskStore, TaskStoreError

_orchestrator: ChatOrchestrator | None = None


def get_user_id(x_user_id: str | None = Header(default=None)) -> str:
    """Identity is resolved upstream and forwarded as ``X-User-Id``."""
    user_id = (x_user_id or "").strip()
    if not user_id:
        raise HTTPException(status_code=401, detail="Missing X-User-Id header")
    return user_id


def get_redis():
    return RedisClient.get_instance()


def get_task_store() -> TaskStore:
    return TaskStore()


def get_job_queue(redis_client=Depends(get_redis)) -> JobQueue:
    return JobQueue(redis_client)


def get_dispatcher(
    store: TaskStore = Depends(get_task_store),
    queue: JobQueue = Depends(get_job_queue),
) -> TaskDispatcher:
    return TaskDispatcher(store, queue)


def get_orchestrator() -> ChatOrchestrator:
    """Process-wide orchestrator; it owns the completion watchers."""
    global _orchestrator
    if _orchestrator is None:
        _orchestrator = ChatOrchestrator()
    return _orchestrator


async def close_orchestrator() -> None:
    global _orchestrator
    if _orchestrator is not None:
        await _orchestrator.completion_handler.close()
        _orchestrator = None


async def submit_intent(dispatcher: TaskDispatcher, intent: str, value: str) -> TaskCreatedResponse:
    """Queue the job behind ``intent`` for a direct (non-chat) request."""
    spec = spec_for(intent)
    value = (value or "").strip()
    if not value:
        raise HTTPException(status_code=400, detail=f"{spec.param.capitalize()} is required")
    try:
        task_id = await dispatcher.submit(spec.topic, spec.job_name, {spec.param: value})
    except (DispatchError, TaskStoreError) as exc:
        logger.error(f"Could not start {intent}: {exc}")
        raise HTTPException(status_code=503, detail="Task queue is unavailable") from exc
    logger.info(f"Started task {task_id} for {intent} ({spec.param}={value!r})")
    return TaskCreatedResponse(task_id=task_id)


def report_unavailable(exc: Exception, what: str, **context) -> HTTPException:
    logger.error(f"{what} unavailable: {exc}")
    error_tracking.capture_exception(exc, **context)
    return HTTPException(status_code=503, detail=f"{what} is unavailable")
