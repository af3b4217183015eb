"""
Side-Effect Tasks

Decision side effects (warning records, platform-pay records,
account restriction, deposit deduction, suspicious-pattern scoring)
are named tasks carrying an idempotency key. They are submitted to a
dispatcher and completed after the Decision has been returned.
"""

import logging
from abc import ABC, abstractmethod
from datetime import datetime, UTC
from typing import Any, Awaitable, Callable, Optional

from pydantic import BaseModel, Field

from ..errors import ValidationError
from ..metrics import metrics

logger = logging.getLogger("trust_engine.tasks")

TaskHandler = Callable[[dict[str, Any]], Awaitable[None]]


def _utc_now() -> datetime:
    return datetime.now(UTC)


def idempotency_key(task_name: str, entity_id: int, related_id: Optional[int] = None) -> str:
    """Key format: {task}:{user_or_entity}:{order_or_claim}."""
    return f"{task_name}:{entity_id}:{related_id if related_id is not None else '-'}"


class SideEffectTask(BaseModel):
    """A unit of deferred work; JSON-serializable so it can be queued."""
    name: str
    idempotency_key: str
    payload: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=_utc_now)


class TaskRegistry:
    """Maps task names to async handlers."""

    def __init__(self):
        self._handlers: dict[str, TaskHandler] = {}

    def register(self, name: str, handler: TaskHandler) -> None:
        self._handlers[name] = handler

    def names(self) -> list[str]:
        return sorted(self._handlers)

    def get(self, name: str) -> TaskHandler:
        try:
            return self._handlers[name]
        except KeyError:
            raise ValidationError(f"unknown side-effect task: {name}") from None

    async def execute(self, task: SideEffectTask) -> None:
        """
        Run the handler registered for a task.

        Failures are counted and re-raised; the dispatcher decides
        whether to log or dead-letter them.
        """
        handler = self.get(task.name)
        try:
            await handler(task.payload)
        except Exception:
            metrics.side_effects_total.labels(task=task.name, outcome="failure").inc()
            raise
        metrics.side_effects_total.labels(task=task.name, outcome="success").inc()


class TaskDispatcher(ABC):
    """Accepts side-effect tasks for asynchronous execution."""

    @abstractmethod
    async def submit(self, task: SideEffectTask) -> bool:
        """
        Queue a task.

        Returns:
            False when the idempotency key was already seen
        """
