"""Durable task records with one-directional status transitions."""
from __future__ import annotations

import time
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, TypeVar

from loguru import logger

from wykra.services import error_tracking
from wykra.services import logger as log_service
from wykra.services import metrics

T = TypeVar("T")


class TaskStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (TaskStatus.COMPLETED, TaskStatus.FAILED)


# Pending is only ever written by create().
ALLOWED_PREVIOUS: dict[TaskStatus, tuple[TaskStatus, ...]] = {
    TaskStatus.RUNNING: (TaskStatus.PENDING,),
    TaskStatus.COMPLETED: (TaskStatus.RUNNING,),
    TaskStatus.FAILED: (TaskStatus.RUNNING,),
}


class TaskStoreError(RuntimeError):
    """A store call failed twice in a row."""


@dataclass
class Task:
    task_id: str
    status: TaskStatus
    result: str | None = None
    error: str | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    created_at: datetime | None = None

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "Task":
        return cls(
            task_id=str(row["task_id"]),
            status=TaskStatus(row["status"]),
            result=row.get("result"),
            error=row.get("error"),
            started_at=row.get("started_at"),
            completed_at=row.get("completed_at"),
            created_at=row.get("created_at"),
        )

    def to_status_payload(self) -> dict[str, Any]:
        """The read model served to pollers."""
        payload: dict[str, Any] = {"taskId": self.task_id, "status": self.status.value}
        if self.result is not None:
            payload["result"] = self.result
        if self.error is not None:
            payload["error"] = self.error
        if self.started_at is not None:
            payload["startedAt"] = self.started_at.isoformat()
        if self.completed_at is not None:
            payload["completedAt"] = self.completed_at.isoformat()
        return payload


def _now() -> datetime:
    return datetime.now(timezone.utc)


class TaskStore:
    """Task persistence on top of a repository exposing
    ``insert_task``, ``get_task`` and ``update_task`` (see services.database).
    """

    def __init__(self, repository: Any = None):
        if repository is None:
            from wykra.services import database as repository
        self._repo = repository

    async def _call(self, operation: str, func: Callable[[], Awaitable[T]], task_id: str) -> T:
        t0 = time.monotonic()
        try:
            result = await func()
            metrics.record_db_query(operation, "tasks", time.monotonic() - t0)
            return result
        except Exception as first_error:
            metrics.record_db_query(operation, "tasks", time.monotonic() - t0, error_type=first_error.__class__.__name__)
            logger.warning(f"Task store {operation} failed for {task_id}, retrying once: {first_error}")
        t0 = time.monotonic()
        try:
            result = await func()
            metrics.record_db_query(operation, "tasks", time.monotonic() - t0)
            log_service.log_db_operation(operation, "tasks", "success", details=f"task_id={task_id} (retry)")
            return result
        except Exception as exc:
            metrics.record_db_query(operation, "tasks", time.monotonic() - t0, error_type=exc.__class__.__name__)
            log_service.log_db_operation(operation, "tasks", "error", details=f"task_id={task_id}", error=str(exc))
            error_tracking.capture_exception(exc, operation=operation, task_id=task_id)
            raise TaskStoreError(f"Task store {operation} failed for {task_id}: {exc}") from exc

    async def create(self, task_id: str) -> Task:
        row = await self._call(
            "create",
            lambda: self._repo.insert_task(task_id, TaskStatus.PENDING.value),
            task_id,
        )
        log_service.log_task_transition(task_id, None, TaskStatus.PENDING.value)
        return Task.from_row(row)

    async def find_by_task_id(self, task_id: str) -> Task | None:
        row = await self._call("find", lambda: self._repo.get_task(task_id), task_id)
        return Task.from_row(row) if row else None

    async def update(self, task_id: str, status: TaskStatus, **fields: Any) -> Task | None:
        """Guarded status write. Returns None when the transition is not allowed."""
        status = TaskStatus(status)
        allowed = ALLOWED_PREVIOUS.get(status)
        if not allowed:
            raise ValueError(f"Status {status.value} cannot be written by update()")
        row = await self._call(
            "update",
            lambda: self._repo.update_task(task_id, status.value, [s.value for s in allowed], fields),
            task_id,
        )
        if row is None:
            logger.warning(
                f"Rejected transition to {status.value} for task {task_id}: "
                f"task is not in {[s.value for s in allowed]}"
            )
            return None
        log_service.log_task_transition(task_id, "/".join(s.value for s in allowed), status.value)
        return Task.from_row(row)

    async def mark_running(self, task_id: str) -> Task | None:
        return await self.update(task_id, TaskStatus.RUNNING, started_at=_now())

    async def mark_completed(self, task_id: str, result: str) -> Task | None:
        return await self.update(task_id, TaskStatus.COMPLETED, result=result, completed_at=_now())

    async def mark_failed(self, task_id: str, error: str) -> Task | None:
        return await self.update(task_id, TaskStatus.FAILED, error=error, completed_at=_now())
