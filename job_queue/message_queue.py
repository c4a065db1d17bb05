"""
Notification Queue — Holds rendered jobs until their fire time.

The scheduling core only produces jobs; executing them is the job of an
external worker that calls `pop_due(now)` on its own cadence.

Backends:
  memory — sorted list in process memory (development, tests)
  redis  — a Redis sorted set scored by fire_at (epoch seconds), members
           are the JSON-serialized ScheduledJob

Ordering: jobs come out by fire_at, ties broken by enqueue order.
"""
from __future__ import annotations

import bisect
import itertools
import structlog
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Optional

from models.schemas import ScheduledJob

logger = structlog.get_logger()


def _score(job: ScheduledJob) -> float:
    fire_at = job.fire_at
    if fire_at.tzinfo is None:
        fire_at = fire_at.replace(tzinfo=timezone.utc)
    return fire_at.timestamp()


def _now_ts(now: Optional[datetime]) -> float:
    now = now or datetime.now(timezone.utc)
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    return now.timestamp()


# ──────────────────────────────────────────────────────────────
#  Abstract Interface
# ──────────────────────────────────────────────────────────────

class NotificationQueue(ABC):
    """Abstract scheduled-job queue interface."""

    @abstractmethod
    async def connect(self):
        """Establish connection to the queue backend."""
        ...

    @abstractmethod
    async def close(self):
        """Gracefully shut down."""
        ...

    @abstractmethod
    async def enqueue(self, job: ScheduledJob) -> str:
        """Store a job until its fire time. Returns the job id."""
        ...

    @abstractmethod
    async def queue_length(self) -> int:
        ...

    @abstractmethod
    async def peek(self, count: int = 10) -> list[ScheduledJob]:
        """Earliest jobs, without removing them."""
        ...

    @abstractmethod
    async def pop_due(self, now: Optional[datetime] = None, limit: int = 100) -> list[ScheduledJob]:
        """Remove and return up to `limit` jobs with fire_at <= now."""
        ...


# ──────────────────────────────────────────────────────────────
#  Redis Sorted Set Implementation
# ──────────────────────────────────────────────────────────────

class RedisNotificationQueue(NotificationQueue):
    """
    Production queue backed by a Redis sorted set.
    pop_due claims a job by ZREM, so two workers never both get it.
    """

    def __init__(self, redis_url: str = "redis://localhost:6379", key: str = "notifications:scheduled"):
        self._redis_url = redis_url
        self._key = key
        self._redis = None

    async def connect(self):
        import redis.asyncio as aioredis
        self._redis = aioredis.from_url(
            self._redis_url,
            decode_responses=True,
            max_connections=20,
        )
        await self._redis.ping()
        logger.info("redis_queue_connected", url=self._redis_url, key=self._key)

    async def close(self):
        if self._redis:
            await self._redis.aclose()

    async def enqueue(self, job: ScheduledJob) -> str:
        await self._redis.zadd(self._key, {job.model_dump_json(by_alias=True): _score(job)})
        logger.info("job_enqueued",
                    job_id=job.job_id,
                    rule_id=job.rule_id,
                    fire_at=job.fire_at.isoformat())
        return job.job_id

    async def queue_length(self) -> int:
        return await self._redis.zcard(self._key)

    async def peek(self, count: int = 10) -> list[ScheduledJob]:
        members = await self._redis.zrange(self._key, 0, count - 1)
        return [ScheduledJob.model_validate_json(m) for m in members]

    async def pop_due(self, now: Optional[datetime] = None, limit: int = 100) -> list[ScheduledJob]:
        members = await self._redis.zrangebyscore(self._key, "-inf", _now_ts(now), start=0, num=limit)
        if not members:
            return []

        pipe = self._redis.pipeline()
        for member in members:
            pipe.zrem(self._key, member)
        removed = await pipe.execute()

        jobs = [ScheduledJob.model_validate_json(m) for m, ok in zip(members, removed) if ok]
        logger.info("due_jobs_popped", count=len(jobs))
        return jobs


# ──────────────────────────────────────────────────────────────
#  In-Memory Implementation (Development)
# ──────────────────────────────────────────────────────────────

class InMemoryNotificationQueue(NotificationQueue):
    """
    Development/test queue.
    Single-process only — no persistence.
    """

    def __init__(self):
        self._entries: list[tuple[float, int, ScheduledJob]] = []   # (score, seq, job), kept sorted
        self._seq = itertools.count()

    async def connect(self):
        logger.info("inmemory_queue_connected")

    async def close(self):
        pass

    async def enqueue(self, job: ScheduledJob) -> str:
        bisect.insort(self._entries, (_score(job), next(self._seq), job), key=lambda e: (e[0], e[1]))
        logger.info("job_enqueued",
                    job_id=job.job_id,
                    rule_id=job.rule_id,
                    fire_at=job.fire_at.isoformat())
        return job.job_id

    async def queue_length(self) -> int:
        return len(self._entries)

    async def peek(self, count: int = 10) -> list[ScheduledJob]:
        return [job for _, _, job in self._entries[:count]]

    async def pop_due(self, now: Optional[datetime] = None, limit: int = 100) -> list[ScheduledJob]:
        cutoff = _now_ts(now)
        due = []
        while self._entries and len(due) < limit and self._entries[0][0] <= cutoff:
            due.append(self._entries.pop(0)[2])
        if due:
            logger.info("due_jobs_popped", count=len(due))
        return due

    @property
    def jobs(self) -> list[ScheduledJob]:
        return [job for _, _, job in self._entries]


# ──────────────────────────────────────────────────────────────
#  Factory
# ──────────────────────────────────────────────────────────────

_instance: Optional[NotificationQueue] = None


def create_notification_queue(queue_config: dict[str, Any] = None) -> NotificationQueue:
    """Factory: create the appropriate queue backend."""
    global _instance
    if _instance:
        return _instance

    config = queue_config or {}
    backend = config.get("backend", "memory")

    if backend == "redis":
        _instance = RedisNotificationQueue(
            redis_url=config.get("redis_url") or "redis://localhost:6379",
            key=config.get("key") or "notifications:scheduled",
        )
    else:
        _instance = InMemoryNotificationQueue()

    return _instance


def get_notification_queue() -> NotificationQueue:
    """Return the singleton queue instance."""
    global _instance
    if _instance is None:
        _instance = create_notification_queue()
    return _instance


def reset_notification_queue() -> None:
    """Reset the singleton (for testing)."""
    global _instance
    _instance = None
