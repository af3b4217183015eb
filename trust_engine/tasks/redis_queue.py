"""
Redis Task Queue

Durable at-least-once dispatch of side effects.

Producer: SET {prefix}task:{key} NX EX ttl guards against duplicate
submission, then LPUSH the JSON task onto the queue list.
Worker: BRPOP a task, execute it through the registry, and LPUSH
failures onto a dead-letter list for inspection and replay.
"""

import asyncio
import logging
from typing import Optional

import redis.asyncio as redis

from ..config import settings
from ..metrics import metrics
from .base import SideEffectTask, TaskDispatcher, TaskRegistry

logger = logging.getLogger("trust_engine.tasks")


def create_redis_client() -> redis.Redis:
    """Redis client from settings."""
    return redis.Redis(
        host=settings.redis_host,
        port=settings.redis_port,
        db=settings.redis_db,
        password=settings.redis_password,
        decode_responses=True,
    )


class RedisTaskQueue(TaskDispatcher):
    """Producer side of the durable queue."""

    def __init__(
        self,
        redis_client: redis.Redis,
        queue_name: Optional[str] = None,
        ttl_hours: Optional[int] = None,
    ):
        self.redis = redis_client
        self.prefix = settings.redis_key_prefix
        self.queue_key = f"{self.prefix}{queue_name or settings.task_queue_name}"
        self.ttl_seconds = (ttl_hours or settings.idempotency_ttl_hours) * 3600

    def _guard_key(self, key: str) -> str:
        return f"{self.prefix}task:{key}"

    async def submit(self, task: SideEffectTask) -> bool:
        claimed = await self.redis.set(
            self._guard_key(task.idempotency_key), "1", nx=True, ex=self.ttl_seconds
        )
        if not claimed:
            metrics.side_effects_total.labels(task=task.name, outcome="duplicate").inc()
            return False
        try:
            await self.redis.lpush(self.queue_key, task.model_dump_json())
        except Exception:
            # Release the guard so the caller can resubmit
            await self.redis.delete(self._guard_key(task.idempotency_key))
            raise
        return True


class TaskWorker:
    """Consumer side: pops and executes queued tasks."""

    def __init__(
        self,
        redis_client: redis.Redis,
        registry: TaskRegistry,
        queue_name: Optional[str] = None,
    ):
        self.redis = redis_client
        self.registry = registry
        self.queue_key = f"{settings.redis_key_prefix}{queue_name or settings.task_queue_name}"
        self.dead_letter_key = f"{self.queue_key}:dead"

    async def run_once(self, timeout: int = 1) -> Optional[SideEffectTask]:
        """
        Process at most one task.

        Args:
            timeout: Seconds to block waiting for work

        Returns:
            The task processed, or None when the queue was empty
        """
        item = await self.redis.brpop([self.queue_key], timeout=timeout)
        if item is None:
            return None

        _, raw = item
        task = SideEffectTask.model_validate_json(raw)
        try:
            await self.registry.execute(task)
        except Exception as e:
            logger.error("Side-effect task %s failed, dead-lettered: %s", task.idempotency_key, e)
            await self.redis.lpush(self.dead_letter_key, raw)
        return task

    async def run(self, stop: asyncio.Event) -> None:
        """Process tasks until `stop` is set."""
        logger.info("Task worker consuming %s", self.queue_key)
        while not stop.is_set():
            await self.run_once()
