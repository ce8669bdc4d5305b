"""Create a task row, then hand the job to the worker queue."""
from __future__ import annotations

import uuid
from typing import Any

from loguru import logger

from wykra.services import error_tracking
from wykra.services import logger as log_service
from wykra.services import metrics
from wykra.services.queue import JobQueue
from wykra.services.task_store import TaskStore


class DispatchError(RuntimeError):
    def __init__(self, task_id: str, message: str):
        super().__init__(message)
        self.task_id = task_id


class TaskDispatcher:
    def __init__(self, store: TaskStore, queue: JobQueue):
        self.store = store
        self.queue = queue

    async def submit(self, topic: str, name: str, payload: dict[str, Any]) -> str:
        """Persist a Pending task and enqueue its job. Returns the task id.

        The row is written before the job is visible to workers, so a client
        polling right after this returns never sees an unknown task.
        """
        task_id = str(uuid.uuid4())
        await self.store.create(task_id)
        try:
            await self.queue.enqueue(topic, name, {**payload, "taskId": task_id}, job_id=task_id)
        except Exception as exc:
            logger.error(f"Failed to enqueue {topic}/{name} for task {task_id}: {exc}")
            error_tracking.capture_exception(exc, task_id=task_id, topic=topic, job=name)
            raise DispatchError(task_id, f"Failed to enqueue task {task_id}: {exc}") from exc
        metrics.record_task_created(metrics.task_type(topic, name))
        log_service.log_event("task_dispatched", f"[{task_id}] Queued {topic}/{name}", task_id=task_id, topic=topic, job=name)
        return task_id
