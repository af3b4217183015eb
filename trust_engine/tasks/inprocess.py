"""
In-Process Dispatcher

Runs side effects as background asyncio tasks in the current event
loop. Keys are deduplicated for IDEMPOTENCY_TTL_HOURS, the same window
the Redis guard uses; work is lost if the process dies, so production
deployments use the Redis queue instead.
"""

import asyncio
import logging
import time
from typing import Callable, Optional

from ..config import settings
from ..metrics import metrics
from .base import SideEffectTask, TaskDispatcher, TaskRegistry

logger = logging.getLogger("trust_engine.tasks")


class InProcessDispatcher(TaskDispatcher):

    def __init__(
        self,
        registry: TaskRegistry,
        ttl_hours: Optional[int] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.registry = registry
        self.ttl_seconds = (ttl_hours if ttl_hours is not None else settings.idempotency_ttl_hours) * 3600
        self._clock = clock
        # idempotency key -> expiry; insertion order is expiry order
        self._seen: dict[str, float] = {}
        self._pending: set[asyncio.Task] = set()

    def _expire_keys(self, now: float) -> None:
        while self._seen:
            key, expires_at = next(iter(self._seen.items()))
            if expires_at > now:
                break
            del self._seen[key]

    async def submit(self, task: SideEffectTask) -> bool:
        # Unknown names are rejected before anything is scheduled
        self.registry.get(task.name)
        now = self._clock()
        self._expire_keys(now)
        if task.idempotency_key in self._seen:
            metrics.side_effects_total.labels(task=task.name, outcome="duplicate").inc()
            return False
        self._seen[task.idempotency_key] = now + self.ttl_seconds

        running = asyncio.create_task(self._run(task), name=task.idempotency_key)
        self._pending.add(running)
        running.add_done_callback(self._pending.discard)
        return True

    async def _run(self, task: SideEffectTask) -> None:
        try:
            await self.registry.execute(task)
        except Exception as e:
            logger.error("Side-effect task %s failed: %s", task.idempotency_key, e)

    @property
    def pending(self) -> int:
        return len(self._pending)

    @property
    def tracked_keys(self) -> int:
        return len(self._seen)

    async def drain(self) -> None:
        """Wait for all scheduled tasks, including ones they schedule."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
