# Side-Effect Dispatch Module
from .base import SideEffectTask, TaskDispatcher, TaskHandler, TaskRegistry, idempotency_key
from .inprocess import InProcessDispatcher
from .redis_queue import RedisTaskQueue, TaskWorker, create_redis_client

__all__ = [
    "InProcessDispatcher",
    "RedisTaskQueue",
    "SideEffectTask",
    "TaskDispatcher",
    "TaskHandler",
    "TaskRegistry",
    "TaskWorker",
    "create_redis_client",
    "idempotency_key",
]
