"""
Pytest Configuration and Fixtures - Trust Engine

Shared fixtures: fixed clock, in-memory ledger store, recording
collaborators and a wired set of engine components.
"""

from datetime import datetime, timedelta, UTC
from typing import Optional

import pytest

from trust_engine.collaborators import CompensationExecutor, Notifier
from trust_engine.decision import ClaimDecisionEngine
from trust_engine.detection import AccountLinkage, FraudPatternDetector
from trust_engine.ledger import TrustScoreLedger
from trust_engine.lookback import LookbackSearch
from trust_engine.policy import DEFAULT_POLICY
from trust_engine.safety import FoodSafetyCircuitBreaker, ForeignObjectTracker
from trust_engine.schemas import (
    Claim,
    ClaimType,
    DepositDeductionResult,
    EntityType,
    Order,
)
from trust_engine.store import InMemoryLedgerStore
from trust_engine.tasks import InProcessDispatcher, TaskRegistry


NOW = datetime(2024, 6, 1, 12, 0, tzinfo=UTC)


def pytest_configure(config):
    config.addinivalue_line("markers", "unit: unit tests (no infrastructure)")
    config.addinivalue_line("markers", "integration: integration tests (requires PostgreSQL)")


# =============================================================================
# Collaborator fakes
# =============================================================================

class RecordingNotifier(Notifier):
    """Keeps every notification for assertions."""

    def __init__(self):
        self.sent: list[dict] = []

    async def notify(self, entity_type, entity_id, title, content, related_type=None, related_id=None):
        self.sent.append({
            "entity_type": entity_type,
            "entity_id": entity_id,
            "title": title,
            "content": content,
            "related_type": related_type,
            "related_id": related_id,
        })

    def to(self, entity_type: EntityType, entity_id: int) -> list[dict]:
        return [n for n in self.sent if n["entity_type"] == entity_type and n["entity_id"] == entity_id]


class FakeCompensation(CompensationExecutor):
    """Records deductions; optionally fails."""

    def __init__(self, fail: bool = False, balance: int = 10000):
        self.fail = fail
        self.balance = balance
        self.calls: list[tuple] = []

    async def deduct_rider_deposit_and_credit(self, rider_id, user_id, claim_id, amount, claim_type):
        self.calls.append((rider_id, user_id, claim_id, amount, claim_type))
        if self.fail:
            raise RuntimeError("payments unavailable")
        self.balance += amount
        return DepositDeductionResult(
            rider_id=rider_id,
            user_id=user_id,
            claim_id=claim_id,
            amount=amount,
            user_balance=self.balance,
        )


# =============================================================================
# Core fixtures
# =============================================================================

@pytest.fixture
def now() -> datetime:
    return NOW


@pytest.fixture
def clock():
    return lambda: NOW


@pytest.fixture
def policy():
    return DEFAULT_POLICY


@pytest.fixture
def store(clock) -> InMemoryLedgerStore:
    return InMemoryLedgerStore(clock)


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def compensation() -> FakeCompensation:
    return FakeCompensation()


@pytest.fixture
def ledger(store, notifier, policy) -> TrustScoreLedger:
    return TrustScoreLedger(store, notifier, policy)


@pytest.fixture
def lookback(store, policy, clock) -> LookbackSearch:
    return LookbackSearch(store, policy, clock)


@pytest.fixture
def linkage(store) -> AccountLinkage:
    return AccountLinkage(store)


@pytest.fixture
def registry() -> TaskRegistry:
    return TaskRegistry()


@pytest.fixture
def dispatcher(registry) -> InProcessDispatcher:
    return InProcessDispatcher(registry)


@pytest.fixture
def engine(store, ledger, dispatcher, registry, lookback, notifier, compensation, policy, clock):
    engine = ClaimDecisionEngine(
        store,
        ledger,
        dispatcher,
        lookback=lookback,
        notifier=notifier,
        compensation=compensation,
        policy=policy,
        clock=clock,
    )
    engine.register_handlers(registry)
    return engine


@pytest.fixture
def fraud_detector(store, ledger, policy, clock, linkage) -> FraudPatternDetector:
    return FraudPatternDetector(store, ledger, policy, clock, linkage)


@pytest.fixture
def breaker(store, linkage, notifier, policy, clock) -> FoodSafetyCircuitBreaker:
    return FoodSafetyCircuitBreaker(store, linkage, notifier, policy, clock)


@pytest.fixture
def tracker(store, notifier, policy, clock) -> ForeignObjectTracker:
    return ForeignObjectTracker(store, notifier, policy, clock)


# =============================================================================
# Seeding helpers
# =============================================================================

class Seeder:
    """Builds orders and claims against the in-memory store."""

    def __init__(self, store: InMemoryLedgerStore):
        self.store = store
        self._order_ids = iter(range(1000, 100000))

    def customer(self, user_id: int, **fields):
        return self.store.add_profile(EntityType.CUSTOMER, user_id, **fields)

    def merchant(self, merchant_id: int, **fields):
        return self.store.add_profile(EntityType.MERCHANT, merchant_id, **fields)

    def rider(self, rider_id: int, **fields):
        return self.store.add_profile(EntityType.RIDER, rider_id, **fields)

    def order(
        self,
        user_id: int,
        merchant_id: int = 1,
        rider_id: Optional[int] = 7,
        address_id: Optional[int] = None,
        created_at: datetime = NOW - timedelta(days=1),
        order_type: str = "takeout",
        delivery_fee: int = 500,
    ) -> Order:
        return self.store.add_order(
            Order(
                id=next(self._order_ids),
                user_id=user_id,
                merchant_id=merchant_id,
                rider_id=rider_id,
                address_id=address_id,
                order_type=order_type,
                delivery_fee=delivery_fee,
                created_at=created_at,
            )
        )

    def claim(
        self,
        user_id: int,
        claim_type: ClaimType = ClaimType.DAMAGE,
        created_at: datetime = NOW - timedelta(days=1),
        amount: int = 2000,
        order: Optional[Order] = None,
        **order_fields,
    ) -> Claim:
        order = order or self.order(user_id, created_at=created_at, **order_fields)
        return self.store.add_claim(
            Claim(
                order_id=order.id,
                user_id=user_id,
                claim_type=claim_type,
                claim_amount=amount,
                created_at=created_at,
            )
        )


@pytest.fixture
def seed(store) -> Seeder:
    return Seeder(store)

