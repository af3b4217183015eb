"""
Trust Engine Service

Wires the store, policy, collaborators and side-effect dispatch into
the engine components. The API layer (out of scope here) owns one
TrustEngine for the process lifetime:

    engine = TrustEngine.from_settings(notifier=..., compensation=...)
    await engine.startup()
    ...
    await engine.shutdown()
"""

import asyncio
import logging
from datetime import datetime
from typing import Callable, Optional

import redis.asyncio as redis

from .collaborators import CompensationExecutor, LoggingNotifier, Notifier
from .config import settings
from .decision import ClaimDecisionEngine
from .detection import AccountLinkage, FraudPatternDetector
from .ledger import PremiumQualification, TrustScoreLedger
from .lookback import LookbackSearch
from .metrics import metrics, setup_metrics
from .policy import TrustPolicy, load_policy
from .safety import FoodSafetyCircuitBreaker, ForeignObjectTracker
from .store import InMemoryLedgerStore, LedgerStore, SqlLedgerStore
from .tasks import (
    InProcessDispatcher,
    RedisTaskQueue,
    TaskDispatcher,
    TaskRegistry,
    TaskWorker,
    create_redis_client,
)
from .utils import get_logger

logger = logging.getLogger("trust_engine.service")


class TrustEngine:
    """All engine components sharing one store, policy and dispatcher."""

    def __init__(
        self,
        store: LedgerStore,
        policy: TrustPolicy,
        dispatcher: Optional[TaskDispatcher] = None,
        registry: Optional[TaskRegistry] = None,
        notifier: Optional[Notifier] = None,
        compensation: Optional[CompensationExecutor] = None,
        clock: Optional[Callable[[], datetime]] = None,
        redis_client: Optional[redis.Redis] = None,
    ):
        self.store = store
        self.policy = policy
        self.notifier = notifier
        self.redis_client = redis_client
        self.registry = registry or TaskRegistry()
        self.dispatcher = dispatcher or InProcessDispatcher(self.registry)

        self.ledger = TrustScoreLedger(store, notifier, policy)
        self.premium = PremiumQualification(store, policy)
        self.lookback = LookbackSearch(store, policy, clock)
        self.linkage = AccountLinkage(store)
        self.fraud = FraudPatternDetector(store, self.ledger, policy, clock, self.linkage)
        self.claims = ClaimDecisionEngine(
            store,
            self.ledger,
            self.dispatcher,
            lookback=self.lookback,
            notifier=notifier,
            compensation=compensation,
            policy=policy,
            clock=clock,
        )
        self.food_safety = FoodSafetyCircuitBreaker(store, self.linkage, notifier, policy, clock)
        self.foreign_object = ForeignObjectTracker(store, notifier, policy, clock)

        self.claims.register_handlers(self.registry)

    @classmethod
    def from_settings(
        cls,
        notifier: Optional[Notifier] = None,
        compensation: Optional[CompensationExecutor] = None,
        store: Optional[LedgerStore] = None,
    ) -> "TrustEngine":
        """
        Build an engine from environment settings.

        Store defaults to PostgreSQL; the dispatcher follows TASK_BACKEND.
        """
        get_logger(level=settings.app_log_level)
        policy = load_policy()
        registry = TaskRegistry()

        redis_client = None
        if settings.task_backend == "redis":
            redis_client = create_redis_client()
            dispatcher: TaskDispatcher = RedisTaskQueue(redis_client)
        else:
            dispatcher = InProcessDispatcher(registry)

        return cls(
            store=store or SqlLedgerStore(),
            policy=policy,
            dispatcher=dispatcher,
            registry=registry,
            notifier=notifier or LoggingNotifier(),
            compensation=compensation,
            redis_client=redis_client,
        )

    @classmethod
    def in_memory(
        cls,
        policy: TrustPolicy,
        notifier: Optional[Notifier] = None,
        compensation: Optional[CompensationExecutor] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> "TrustEngine":
        """Single-process engine over an InMemoryLedgerStore."""
        return cls(
            store=InMemoryLedgerStore(clock),
            policy=policy,
            notifier=notifier,
            compensation=compensation,
            clock=clock,
        )

    async def startup(self) -> None:
        """Open connections and expose metrics."""
        if isinstance(self.store, SqlLedgerStore):
            await self.store.initialize()

        if self.redis_client is not None:
            try:
                await self.redis_client.ping()
            except Exception as e:
                logger.warning("Redis connection failed: %s", e)

        metrics.policy_version_info.labels(version=self.policy.version).set(1)
        if settings.metrics_enabled:
            setup_metrics()
        logger.info(
            "Trust engine started (policy %s, tasks=%s)",
            self.policy.version, type(self.dispatcher).__name__,
        )

    async def shutdown(self) -> None:
        """Finish in-process side effects and release connections."""
        if isinstance(self.dispatcher, InProcessDispatcher):
            await self.dispatcher.drain()
        if self.redis_client is not None:
            await self.redis_client.aclose()
        if isinstance(self.store, SqlLedgerStore):
            await self.store.close()

    def worker(self) -> TaskWorker:
        """Queue consumer for the redis backend, sharing this engine's handlers."""
        if self.redis_client is None:
            raise RuntimeError("worker() requires TASK_BACKEND=redis")
        return TaskWorker(self.redis_client, self.registry)

    async def run_worker(self, stop: asyncio.Event) -> None:
        await self.worker().run(stop)
