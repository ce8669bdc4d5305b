"""Queue consumer that runs pipeline jobs with bounded concurrency.

Run with ``python -m wykra.worker``.
"""
from __future__ import annotations

import asyncio
import json
import signal
import time
from typing import Any, Awaitable, Callable, Sequence

from loguru import logger

from wykra.config import settings
from wykra.services import error_tracking, metrics
from wykra.services.cancellation import (
    CancellationRegistry,
    TaskCancelledError,
    clear_stop_request,
    is_stop_requested,
)
from wykra.services.queue import TOPICS, Job, JobQueue
from wykra.services.task_store import TaskStore, TaskStoreError

Processor = Callable[[dict[str, Any]], Awaitable[dict[str, Any]]]


class TaskWorker:
    """Consumes per-topic queues and owns the status writes of every job it takes.

    The loop only dequeues when a slot is free. Each job runs as its own
    asyncio task; a failing job is marked Failed and never takes the loop down.
    """

    def __init__(
        self,
        queue: JobQueue | None = None,
        store: TaskStore | None = None,
        processors: dict[tuple[str, str], Processor] | None = None,
        *,
        concurrency: int | None = None,
        cancellations: CancellationRegistry | None = None,
        redis_client: Any = None,
        topics: Sequence[str] = TOPICS,
        dequeue_timeout: int | None = None,
        cancel_check_interval: float | None = None,
        shutdown_timeout: float = 30.0,
    ):
        self.queue = queue or JobQueue(redis_client)
        self.store = store or TaskStore()
        if processors is None:
            from wykra.pipeline.processors import Processors

            processors = Processors().registry()
        self.processors = processors
        self.concurrency = concurrency or settings.worker_concurrency
        self.cancellations = cancellations or CancellationRegistry()
        self.redis = redis_client
        self.topics = tuple(topics)
        self.dequeue_timeout = dequeue_timeout or settings.worker_dequeue_timeout_seconds
        self.cancel_check_interval = (
            cancel_check_interval if cancel_check_interval is not None else settings.worker_cancel_check_seconds
        )
        self.shutdown_timeout = shutdown_timeout

        self.semaphore: asyncio.Semaphore | None = None
        self._stop_event: asyncio.Event | None = None
        self._consumer_task: asyncio.Task | None = None
        self._job_tasks: set[asyncio.Task] = set()
        self._active_tasks = 0
        self._started = False

    @property
    def active_tasks(self) -> int:
        return self._active_tasks

    async def startup(self) -> None:
        if self._started:
            logger.warning("Worker already started")
            return
        logger.info(f"Starting worker on {list(self.topics)} with concurrency={self.concurrency}")
        self.semaphore = asyncio.Semaphore(self.concurrency)
        self._stop_event = asyncio.Event()
        self._consumer_task = asyncio.create_task(self._consumer_loop())
        self._started = True

    async def shutdown(self) -> None:
        if not self._started:
            return
        logger.info("Shutting down worker...")
        self._stop_event.set()

        if self._consumer_task:
            try:
                await asyncio.wait_for(self._consumer_task, timeout=self.dequeue_timeout + 5)
            except asyncio.TimeoutError:
                logger.warning("Consumer loop did not finish in time, cancelling...")
                self._consumer_task.cancel()
                try:
                    await self._consumer_task
                except asyncio.CancelledError:
                    pass

        if self._job_tasks:
            logger.info(f"Waiting for {len(self._job_tasks)} active jobs to complete...")
            _, pending = await asyncio.wait(set(self._job_tasks), timeout=self.shutdown_timeout)
            if pending:
                logger.warning(f"{len(pending)} jobs still active after {self.shutdown_timeout:.0f}s")

        self._started = False
        logger.info("Worker shutdown complete")

    async def _consumer_loop(self) -> None:
        logger.info("Consumer loop started")
        while not self._stop_event.is_set():
            try:
                if self._active_tasks >= self.concurrency:
                    await asyncio.sleep(0.1)
                    continue

                job = await self.queue.dequeue(self.topics, timeout=self.dequeue_timeout)
                if job is None:
                    await asyncio.sleep(0.1)
                    continue

                await self.semaphore.acquire()
                self._active_tasks += 1
                logger.info(f"Job {job.id} accepted (active={self._active_tasks}/{self.concurrency})")
                task = asyncio.create_task(self._process_with_semaphore(job))
                self._job_tasks.add(task)
                task.add_done_callback(self._job_tasks.discard)
            except Exception as exc:
                logger.error(f"Error in consumer loop: {exc}")
                await asyncio.sleep(1)
        logger.info("Consumer loop stopped")

    async def _process_with_semaphore(self, job: Job) -> None:
        try:
            await self.process_job(job)
        finally:
            self.semaphore.release()
            self._active_tasks -= 1
            logger.info(f"Job {job.id} released slot (active={self._active_tasks}/{self.concurrency})")

    async def process_job(self, job: Job) -> None:
        """Run one job to a terminal status. Never raises."""
        task_id = str(job.payload.get("taskId") or job.id)
        kind = metrics.task_type(job.topic, job.name)
        t0 = time.monotonic()
        try:
            completed = await self._execute(job, task_id, kind)
        except Exception as exc:
            message = str(exc) or exc.__class__.__name__
            if isinstance(exc, TaskCancelledError):
                logger.info(f"[{task_id}] {message}")
            else:
                logger.error(f"[{task_id}] {job.topic}/{job.name} failed: {message}")
                error_tracking.capture_exception(exc, task_id=task_id, topic=job.topic, job=job.name)
            await self._fail(task_id, message)
            metrics.record_task_finished(kind, "failed", time.monotonic() - t0)
        else:
            if completed:
                metrics.record_task_finished(kind, "completed", time.monotonic() - t0)

    async def _execute(self, job: Job, task_id: str, kind: str) -> bool:
        """False when the job was a duplicate and nothing ran."""
        running = await self.store.mark_running(task_id)
        if running is None:
            logger.warning(f"[{task_id}] Task is not pending, skipping duplicate job {job.id}")
            return False
        metrics.record_queue_wait(kind, job.topic, job.enqueued_at)

        processor = self.processors.get((job.topic, job.name))
        if processor is None:
            raise ValueError(f"No processor registered for {job.topic}/{job.name}")

        if await is_stop_requested(task_id, self.redis):
            raise TaskCancelledError()

        result = await self._run_cancellable(task_id, processor, job.payload)
        await self.store.mark_completed(task_id, json.dumps(result, ensure_ascii=False, default=str))
        logger.info(f"[{task_id}] {job.topic}/{job.name} completed")
        return True

    async def _run_cancellable(self, task_id: str, processor: Processor, payload: dict[str, Any]) -> dict[str, Any]:
        stopped = asyncio.Event()
        job_task = asyncio.create_task(processor(payload))
        self.cancellations.register(task_id, job_task)
        watcher = asyncio.create_task(self._watch_stop(task_id, stopped))
        try:
            return await job_task
        except asyncio.CancelledError:
            if stopped.is_set():
                raise TaskCancelledError() from None
            raise
        finally:
            watcher.cancel()
            self.cancellations.cleanup(task_id, job_task)

    async def _watch_stop(self, task_id: str, stopped: asyncio.Event) -> None:
        while True:
            await asyncio.sleep(self.cancel_check_interval)
            try:
                requested = await is_stop_requested(task_id, self.redis)
            except Exception as exc:
                logger.warning(f"[{task_id}] Stop check failed: {exc}")
                continue
            if requested:
                stopped.set()
                self.cancellations.cancel(task_id)
                return

    async def _fail(self, task_id: str, message: str) -> None:
        try:
            await self.store.mark_failed(task_id, message)
        except TaskStoreError as exc:
            logger.error(f"[{task_id}] Could not record failure: {exc}")
        try:
            await clear_stop_request(task_id, self.redis)
        except Exception as exc:
            logger.warning(f"[{task_id}] Could not clear stop flag: {exc}")


async def run_worker() -> None:
    from wykra.services import database
    from wykra.services.redis_client import RedisClient

    error_tracking.init_error_tracking()
    worker = TaskWorker()
    stop = asyncio.Event()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            pass

    await worker.startup()
    try:
        await stop.wait()
    finally:
        await worker.shutdown()
        await database.close_pool()
        await RedisClient.close_instance()


def main() -> None:
    asyncio.run(run_worker())


if __name__ == "__main__":
    main()
