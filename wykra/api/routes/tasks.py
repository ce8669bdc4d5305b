from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException

from wykra.api.deps import get_redis, get_task_store, report_unavailable
from wykra.models.schemas import StopTaskResponse, TaskStatusResponse
from wykra.services.cancellation import request_stop
from wykra.services.task_store import Task, TaskStore, TaskStoreError

router = APIRouter(prefix="/api/v1/tasks", tags=["tasks"])


async def _load_task(store: TaskStore, task_id: str) -> Task:
    try:
        task = await store.find_by_task_id(task_id)
    except TaskStoreError as exc:
        raise report_unavailable(exc, "Task store", task_id=task_id) from exc
    if task is None:
        raise HTTPException(status_code=404, detail="Task not found")
    return task


@router.get("/{task_id}", response_model=TaskStatusResponse)
async def get_task(task_id: str, store: TaskStore = Depends(get_task_store)):
    """Current status of a task, with its result or error once terminal."""
    task = await _load_task(store, task_id)
    return TaskStatusResponse(
        task_id=task.task_id,
        status=task.status.value,
        result=task.result,
        error=task.error,
        started_at=task.started_at,
        completed_at=task.completed_at,
    )


@router.post("/{task_id}/stop", response_model=StopTaskResponse)
async def stop_task(
    task_id: str,
    store: TaskStore = Depends(get_task_store),
    redis_client=Depends(get_redis),
):
    """Ask the worker running ``task_id`` to cancel it. No-op once terminal."""
    task = await _load_task(store, task_id)
    if task.status.is_terminal:
        return StopTaskResponse(task_id=task_id, stop_requested=False)
    try:
        await request_stop(task_id, redis_client)
    except Exception as exc:
        raise report_unavailable(exc, "Stop signal", task_id=task_id) from exc
    return StopTaskResponse(task_id=task_id, stop_requested=True)
