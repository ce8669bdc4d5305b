from __future__ import annotations

import json
from unittest.mock import AsyncMock

import pytest

from wykra.services import cancellation
from wykra.services.dispatcher import DispatchError, TaskDispatcher
from wykra.services.queue import Job, JobQueue
from wykra.services.task_store import TaskStore


class TestJobQueue:
    @pytest.mark.asyncio
    async def test_fifo_per_topic(self, fake_redis):
        queue = JobQueue(fake_redis, prefix="test")
        await queue.enqueue("instagram", "search", {"query": "a"}, job_id="1")
        await queue.enqueue("instagram", "search", {"query": "b"}, job_id="2")

        first = await queue.dequeue(["instagram"], timeout=1)
        second = await queue.dequeue(["instagram"], timeout=1)

        assert (first.id, second.id) == ("1", "2")
        assert first.payload == {"query": "a"}
        assert await queue.dequeue(["instagram"], timeout=1) is None

    @pytest.mark.asyncio
    async def test_unknown_topic_rejected(self, fake_redis):
        queue = JobQueue(fake_redis)
        with pytest.raises(ValueError):
            await queue.enqueue("youtube", "search", {}, job_id="1")

    @pytest.mark.asyncio
    async def test_malformed_envelope_is_dropped(self, fake_redis):
        queue = JobQueue(fake_redis, prefix="test")
        fake_redis.lists["test:queue:tiktok"] = ["not json"]

        assert await queue.dequeue(["tiktok"], timeout=1) is None

    def test_job_round_trip_keeps_payload(self):
        job = Job(id="1", topic="tiktok", name="profile", payload={"profile": "x"})
        assert Job.from_json(job.to_json()).payload == {"profile": "x"}


class TestDispatcher:
    @pytest.mark.asyncio
    async def test_task_row_exists_before_job_is_visible(self, fake_redis, task_repo):
        store = TaskStore(task_repo)
        queue = JobQueue(fake_redis, prefix="test")
        seen_status: list[str] = []

        original_lpush = fake_redis.lpush

        async def spying_lpush(key, value):
            job_id = json.loads(value)["id"]
            seen_status.append(task_repo.rows[job_id]["status"])
            return await original_lpush(key, value)

        fake_redis.lpush = spying_lpush
        task_id = await TaskDispatcher(store, queue).submit("instagram", "search", {"query": "q"})

        assert seen_status == ["pending"]
        job = await queue.dequeue(["instagram"], timeout=1)
        assert job.id == task_id
        assert job.payload == {"query": "q", "taskId": task_id}

    @pytest.mark.asyncio
    async def test_enqueue_failure_raises_dispatch_error_and_keeps_row(self, task_repo):
        store = TaskStore(task_repo)
        queue = JobQueue(AsyncMock(), prefix="test")
        queue.redis.lpush.side_effect = ConnectionError("redis down")

        with pytest.raises(DispatchError) as exc_info:
            await TaskDispatcher(store, queue).submit("tiktok", "profile", {"profile": "x"})

        assert task_repo.rows[exc_info.value.task_id]["status"] == "pending"


class TestCancellation:
    @pytest.mark.asyncio
    async def test_stop_flag_round_trip(self, fake_redis):
        assert not await cancellation.is_stop_requested("t-1", fake_redis)
        await cancellation.request_stop("t-1", fake_redis)
        assert await cancellation.is_stop_requested("t-1", fake_redis)
        await cancellation.clear_stop_request("t-1", fake_redis)
        assert not await cancellation.is_stop_requested("t-1", fake_redis)

    def test_cancellation_messages_are_recognised(self):
        assert cancellation.is_cancellation_error("Task cancelled by user")
        assert cancellation.is_cancellation_error("Request ABORTED")
        assert cancellation.is_cancellation_error("canceled")
        assert not cancellation.is_cancellation_error("HTTP 500")
        assert not cancellation.is_cancellation_error(None)
