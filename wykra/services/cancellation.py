"""Cooperative cancellation of running jobs.

The API process cannot reach a worker's asyncio tasks directly, so a stop
request is a short-lived Redis flag. Workers poll it and cancel the matching
in-process task through the registry.
"""
from __future__ import annotations

import asyncio
import re
from typing import Any

from loguru import logger

from wykra.config import settings

CANCELLED_MESSAGE = "Task cancelled by user"
_CANCELLATION_RE = re.compile(r"aborted|cancelled|canceled", re.IGNORECASE)


class TaskCancelledError(Exception):
    def __init__(self, message: str = CANCELLED_MESSAGE):
        super().__init__(message)


def is_cancellation_error(message: str | None) -> bool:
    return bool(message) and bool(_CANCELLATION_RE.search(message))


def _stop_key(task_id: str) -> str:
    return f"{settings.queue_prefix}:stop:{task_id}"


def _redis(redis_client: Any):
    if redis_client is not None:
        return redis_client
    from wykra.services.redis_client import RedisClient

    return RedisClient.get_instance()


async def request_stop(task_id: str, redis_client: Any = None) -> None:
    await _redis(redis_client).set(_stop_key(task_id), "1", ex=settings.stop_request_ttl_seconds)
    logger.info(f"Stop requested for task {task_id}")


async def is_stop_requested(task_id: str, redis_client: Any = None) -> bool:
    return bool(await _redis(redis_client).exists(_stop_key(task_id)))


async def clear_stop_request(task_id: str, redis_client: Any = None) -> None:
    await _redis(redis_client).delete(_stop_key(task_id))


class CancellationRegistry:
    """In-process map of task id to the asyncio task running it."""

    def __init__(self) -> None:
        self._tasks: dict[str, asyncio.Task] = {}

    def register(self, task_id: str, task: asyncio.Task) -> None:
        self._tasks[task_id] = task

    def cancel(self, task_id: str) -> bool:
        task = self._tasks.get(task_id)
        if task is None or task.done():
            return False
        task.cancel()
        return True

    def cleanup(self, task_id: str, task: asyncio.Task | None = None) -> None:
        """Forget ``task_id``. With ``task``, only if it is still the registered one."""
        if task is not None and self._tasks.get(task_id) is not task:
            return
        self._tasks.pop(task_id, None)

    def __contains__(self, task_id: str) -> bool:
        return task_id in self._tasks

    def __len__(self) -> int:
        return len(self._tasks)
