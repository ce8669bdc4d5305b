"""Per-topic job queues on Redis lists."""
from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Sequence

from loguru import logger

from wykra.config import settings
from wykra.services import metrics

TOPICS = ("instagram", "tiktok")


@dataclass
class Job:
    id: str
    topic: str
    name: str
    payload: dict[str, Any] = field(default_factory=dict)
    enqueued_at: str | None = None

    def to_json(self) -> str:
        return json.dumps(
            {
                "id": self.id,
                "topic": self.topic,
                "name": self.name,
                "payload": self.payload,
                "enqueued_at": self.enqueued_at,
            }
        )

    @classmethod
    def from_json(cls, raw: str) -> "Job":
        data = json.loads(raw)
        if not isinstance(data, dict) or not data.get("id") or not data.get("name"):
            raise ValueError("Job envelope must be an object with id and name")
        payload = data.get("payload")
        return cls(
            id=str(data["id"]),
            topic=str(data.get("topic") or ""),
            name=str(data["name"]),
            payload=payload if isinstance(payload, dict) else {},
            enqueued_at=data.get("enqueued_at"),
        )


class JobQueue:
    """LPUSH to enqueue, BRPOP to dequeue: each list is FIFO."""

    def __init__(self, redis_client: Any = None, prefix: str | None = None):
        self._redis = redis_client
        self.prefix = prefix or settings.queue_prefix

    @property
    def redis(self):
        if self._redis is None:
            from wykra.services.redis_client import RedisClient

            self._redis = RedisClient.get_instance()
        return self._redis

    def key_for(self, topic: str) -> str:
        return f"{self.prefix}:queue:{topic}"

    async def enqueue(self, topic: str, name: str, payload: dict[str, Any], job_id: str) -> Job:
        if topic not in TOPICS:
            raise ValueError(f"Unknown queue topic: {topic}")
        job = Job(
            id=job_id,
            topic=topic,
            name=name,
            payload=payload,
            enqueued_at=datetime.now(timezone.utc).isoformat(),
        )
        size = await self.redis.lpush(self.key_for(topic), job.to_json())
        metrics.set_queue_size(topic, size)
        logger.info(f"Enqueued job {job_id} on {self.key_for(topic)} ({name})")
        return job

    async def dequeue(self, topics: Sequence[str] = TOPICS, timeout: int = 5) -> Job | None:
        """Block up to ``timeout`` seconds for the next job on any topic."""
        keys = [self.key_for(topic) for topic in topics]
        item = await self.redis.brpop(keys, timeout=timeout)
        if not item:
            return None
        key, raw = item
        metrics.set_queue_size(key.rsplit(":", 1)[-1], await self.redis.llen(key))
        try:
            return Job.from_json(raw)
        except (ValueError, TypeError) as exc:
            # Malformed envelopes are dropped; there is no task id to fail.
            logger.error(f"Dropping malformed job from {key}: {exc}")
            return None
