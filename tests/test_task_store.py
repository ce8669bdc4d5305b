from __future__ import annotations

from unittest.mock import patch

import pytest

from wykra.services.task_store import Task, TaskStatus, TaskStore, TaskStoreError


@pytest.mark.asyncio
async def test_create_then_find_returns_pending(task_repo):
    store = TaskStore(task_repo)
    created = await store.create("t-1")
    found = await store.find_by_task_id("t-1")

    assert created.status is TaskStatus.PENDING
    assert found is not None
    assert found.status is TaskStatus.PENDING
    assert await store.find_by_task_id("missing") is None


@pytest.mark.asyncio
async def test_happy_path_transitions(task_repo):
    store = TaskStore(task_repo)
    await store.create("t-1")

    running = await store.mark_running("t-1")
    done = await store.mark_completed("t-1", '{"ok": true}')

    assert running.status is TaskStatus.RUNNING
    assert running.started_at is not None
    assert done.status is TaskStatus.COMPLETED
    assert done.result == '{"ok": true}'
    assert done.error is None
    assert done.completed_at is not None


@pytest.mark.asyncio
async def test_terminal_task_is_never_mutated_again(task_repo):
    store = TaskStore(task_repo)
    await store.create("t-1")
    await store.mark_running("t-1")
    await store.mark_failed("t-1", "boom")

    assert await store.mark_completed("t-1", "{}") is None
    assert await store.mark_running("t-1") is None
    row = task_repo.rows["t-1"]
    assert row["status"] == "failed"
    assert row["error"] == "boom"
    assert row["result"] is None


@pytest.mark.asyncio
async def test_pending_cannot_jump_to_completed(task_repo):
    store = TaskStore(task_repo)
    await store.create("t-1")

    assert await store.mark_completed("t-1", "{}") is None
    assert task_repo.rows["t-1"]["status"] == "pending"


@pytest.mark.asyncio
async def test_update_refuses_to_write_pending(task_repo):
    store = TaskStore(task_repo)
    with pytest.raises(ValueError):
        await store.update("t-1", TaskStatus.PENDING)


@pytest.mark.asyncio
async def test_store_call_is_retried_once(task_repo):
    store = TaskStore(task_repo)
    task_repo.fail_next = 1

    task = await store.create("t-1")

    assert task.task_id == "t-1"
    assert task_repo.calls == ["insert", "insert"]


@pytest.mark.asyncio
async def test_second_failure_raises_and_reports(task_repo):
    store = TaskStore(task_repo)
    task_repo.fail_next = 2

    with patch("wykra.services.task_store.error_tracking.capture_exception") as capture:
        with pytest.raises(TaskStoreError):
            await store.find_by_task_id("t-1")

    capture.assert_called_once()
    assert task_repo.calls == ["get", "get"]


def test_status_payload_only_includes_present_fields():
    task = Task(task_id="t-1", status=TaskStatus.FAILED, error="nope")
    assert task.to_status_payload() == {"taskId": "t-1", "status": "failed", "error": "nope"}
