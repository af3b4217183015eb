"""
Claim Decision Engine Tests

Tests for claim evaluation, behavior tiers, claim recording and the
side effects dispatched after a decision.
"""

import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock

import pytest

from trust_engine.decision import (
    TASK_DEDUCT_DEPOSIT,
    TASK_RECORD_WARNING,
    ClaimDecisionEngine,
)
from trust_engine.errors import StoreError, ValidationError
from trust_engine.schemas import (
    BehaviorStatus,
    ClaimStatus,
    ClaimType,
    CompensationSource,
    DecisionType,
    EntityType,
    LookbackPeriod,
    ReasonCodes,
)

from conftest import NOW, FakeCompensation


def seed_history(seed, user_id, orders, claims):
    """`orders` takeout orders in total, `claims` of them with a claim."""
    for _ in range(orders - claims):
        seed.order(user_id)
    for _ in range(claims):
        seed.claim(user_id, ClaimType.FOREIGN_OBJECT, created_at=NOW - timedelta(days=20))


class TestClaimTypes:
    """Base amount and compensation source per claim type."""

    @pytest.mark.asyncio
    async def test_food_safety_always_manual(self, engine, store, seed):
        """Food safety is held for review regardless of tier or evidence."""
        seed.customer(1)
        store.platform_pay_counts[1] = 5

        decision = await engine.evaluate(1, 10, 5000, 500, ClaimType.FOOD_SAFETY, has_evidence=True)

        assert decision.decision_type == DecisionType.MANUAL
        assert decision.approved is False
        assert decision.amount == 0
        assert decision.needs_review is True
        assert decision.compensation_source == CompensationSource.MERCHANT
        assert decision.reason_code == ReasonCodes.CLAIM_FOOD_SAFETY_REVIEW

    @pytest.mark.asyncio
    async def test_food_safety_manual_even_when_store_fails(self, engine, store):
        store.get_behavior_stats = AsyncMock(side_effect=StoreError("db down"))
        store.list_user_claims = AsyncMock(side_effect=StoreError("db down"))

        decision = await engine.evaluate(1, 10, 5000, 500, "food-safety")

        assert decision.decision_type == DecisionType.MANUAL
        assert decision.approved is False

    @pytest.mark.asyncio
    async def test_timeout_pays_delivery_fee(self, engine):
        """Timeout compensates the delivery fee even when more is claimed."""
        decision = await engine.evaluate(1, 10, 3000, 500, ClaimType.TIMEOUT)

        assert decision.approved is True
        assert decision.amount == 500
        assert decision.compensation_source == CompensationSource.RIDER

    @pytest.mark.asyncio
    async def test_damage_rider_pays_full_amount(self, engine):
        decision = await engine.evaluate(1, 10, 3000, 500, ClaimType.DAMAGE)

        assert decision.amount == 3000
        assert decision.compensation_source == CompensationSource.RIDER

    @pytest.mark.asyncio
    async def test_foreign_object_merchant_pays(self, engine):
        decision = await engine.evaluate(1, 10, 1800, 500, ClaimType.FOREIGN_OBJECT)

        assert decision.decision_type == DecisionType.INSTANT
        assert decision.amount == 1800
        assert decision.compensation_source == CompensationSource.MERCHANT
        assert decision.lookback is None

    @pytest.mark.asyncio
    async def test_unknown_claim_type_rejected(self, engine):
        with pytest.raises(ValidationError):
            await engine.evaluate(1, 10, 1000, 500, "lost-parcel")


class TestBehaviorTiers:
    """Behavior classification and the decision each tier produces."""

    @pytest.mark.asyncio
    async def test_normal_user(self, engine, seed):
        seed_history(seed, 1, orders=10, claims=0)

        behavior = await engine.check_behavior(1)
        decision = await engine.evaluate(1, 10, 1000, 500, ClaimType.FOREIGN_OBJECT)

        assert behavior.status == BehaviorStatus.NORMAL
        assert decision.decision_type == DecisionType.INSTANT
        assert decision.reason_code == ReasonCodes.CLAIM_NORMAL_INSTANT

    @pytest.mark.asyncio
    async def test_few_orders_many_claims_warned(self, engine, seed, store, dispatcher):
        """5 takeout orders with 2 prior claims: this claim makes 3."""
        seed_history(seed, 1, orders=5, claims=2)

        decision = await engine.evaluate(1, 10, 1000, 500, ClaimType.FOREIGN_OBJECT)
        await dispatcher.drain()

        assert decision.behavior_status == BehaviorStatus.WARNED
        assert decision.approved is True
        assert "3 times" in decision.warning_text
        assert store.warning_counts[1] == 1

    @pytest.mark.asyncio
    async def test_behavior_counters_reference_order(self, engine, seed, store, dispatcher):
        seed_history(seed, 1, orders=5, claims=2)
        await engine.evaluate(1, 10, 1000, 500, ClaimType.FOREIGN_OBJECT)
        await dispatcher.drain()
        assert store.last_behavior_orders[1] == 10

        store.platform_pay_counts[2] = 1
        await engine.evaluate(2, 11, 1000, 500, ClaimType.FOREIGN_OBJECT, has_evidence=True)
        await dispatcher.drain()
        assert store.platform_pay_counts[2] == 2
        assert store.last_behavior_orders[2] == 11

    @pytest.mark.asyncio
    async def test_high_ratio_warned(self, engine, seed):
        """8 orders, 5 claims: ratio 0.625 crosses 0.6 despite the order count."""
        seed_history(seed, 1, orders=8, claims=5)

        behavior = await engine.check_behavior(1)

        assert behavior.status == BehaviorStatus.WARNED
        assert behavior.claim_ratio == pytest.approx(0.625)
        assert behavior.should_warn is True

    @pytest.mark.asyncio
    async def test_ratio_below_threshold_is_normal(self, engine, seed):
        seed_history(seed, 1, orders=10, claims=3)

        behavior = await engine.check_behavior(1)

        assert behavior.status == BehaviorStatus.NORMAL

    @pytest.mark.asyncio
    async def test_old_history_outside_horizon_ignored(self, engine, seed):
        for _ in range(3):
            seed.claim(1, created_at=NOW - timedelta(days=120))

        behavior = await engine.check_behavior(1)

        assert behavior.claim_count == 0
        assert behavior.status == BehaviorStatus.NORMAL

    @pytest.mark.asyncio
    async def test_evidence_required_without_evidence(self, engine, store, dispatcher):
        store.warning_counts[1] = 1

        decision = await engine.evaluate(1, 10, 1000, 500, ClaimType.DAMAGE, has_evidence=False)
        await dispatcher.drain()

        assert decision.decision_type == DecisionType.EVIDENCE_REQUIRED
        assert decision.approved is False
        assert decision.amount == 0
        assert decision.needs_evidence is True
        assert store.warning_counts[1] == 1

    @pytest.mark.asyncio
    async def test_evidence_required_with_evidence(self, engine, store):
        store.requires_evidence.add(1)

        decision = await engine.evaluate(1, 10, 1000, 500, ClaimType.DAMAGE, has_evidence=True)

        assert decision.decision_type == DecisionType.INSTANT
        assert decision.approved is True
        assert decision.amount == 1000
        assert decision.behavior_status == BehaviorStatus.EVIDENCE_REQUIRED

    @pytest.mark.asyncio
    async def test_warned_user_escalates_to_platform_pay(self, engine, seed, store, dispatcher):
        """A second warning moves an already-warned user to platform-pay."""
        seed_history(seed, 1, orders=5, claims=2)
        store.warning_counts[1] = 1

        first = await engine.evaluate(1, 10, 1000, 500, ClaimType.FOREIGN_OBJECT, has_evidence=True)
        await dispatcher.drain()
        second = await engine.evaluate(1, 11, 1000, 500, ClaimType.FOREIGN_OBJECT, has_evidence=True)

        assert first.behavior_status == BehaviorStatus.EVIDENCE_REQUIRED
        assert store.warning_counts[1] == 2
        assert second.behavior_status == BehaviorStatus.PLATFORM_PAY

    @pytest.mark.asyncio
    async def test_platform_pay(self, engine, store, dispatcher):
        store.platform_pay_counts[1] = 1

        decision = await engine.evaluate(1, 10, 2000, 500, ClaimType.DAMAGE)
        await dispatcher.drain()

        assert decision.decision_type == DecisionType.PLATFORM_PAY
        assert decision.compensation_source == CompensationSource.PLATFORM
        assert decision.approved is True
        assert decision.amount == 2000
        assert store.platform_pay_counts[1] == 2

    @pytest.mark.asyncio
    async def test_reject_service_restricts_account(self, engine, store, seed, dispatcher, notifier):
        seed.customer(1, trust_score=95)
        store.platform_pay_counts[1] = 2

        decision = await engine.evaluate(1, 10, 2000, 500, ClaimType.FOREIGN_OBJECT)
        await dispatcher.drain()

        profile = await store.get_profile(EntityType.CUSTOMER, 1)
        assert decision.behavior_status == BehaviorStatus.REJECT_SERVICE
        assert decision.decision_type == DecisionType.PLATFORM_PAY
        assert decision.approved is True
        assert profile.trust_score == 69
        assert profile.is_blacklisted is True
        assert any(n["title"] == "Account restricted" for n in notifier.to(EntityType.CUSTOMER, 1))

    @pytest.mark.asyncio
    async def test_reject_service_keeps_lower_score(self, engine, store, seed, dispatcher):
        seed.customer(1, trust_score=40)
        store.platform_pay_counts[1] = 3

        await engine.evaluate(1, 10, 2000, 500, ClaimType.FOREIGN_OBJECT)
        await dispatcher.drain()

        profile = await store.get_profile(EntityType.CUSTOMER, 1)
        assert profile.trust_score == 40


class TestFailOpen:
    """Risk data failures never block compensation."""

    @pytest.mark.asyncio
    async def test_behavior_lookup_failure_degrades(self, engine, store):
        store.get_behavior_stats = AsyncMock(side_effect=StoreError("db down"))

        decision = await engine.evaluate(1, 10, 3000, 500, ClaimType.TIMEOUT)

        assert decision.decision_type == DecisionType.INSTANT
        assert decision.approved is True
        assert decision.amount == 500
        assert decision.degraded is True
        assert decision.behavior_status is None
        assert decision.reason_code == ReasonCodes.CLAIM_DEGRADED_BEHAVIOR_LOOKUP

    @pytest.mark.asyncio
    async def test_behavior_lookup_timeout_degrades(self, store, ledger, dispatcher, policy, clock):
        async def slow_stats(user_id, since):
            await asyncio.sleep(1)

        store.get_behavior_stats = slow_stats
        engine = ClaimDecisionEngine(
            store, ledger, dispatcher, policy=policy, clock=clock, read_timeout=0.01
        )

        decision = await engine.evaluate(1, 10, 1000, 500, ClaimType.FOREIGN_OBJECT)

        assert decision.degraded is True
        assert decision.approved is True

    @pytest.mark.asyncio
    async def test_lookback_failure_ignored(self, engine, store):
        store.list_user_claims = AsyncMock(side_effect=StoreError("replica lag"))

        decision = await engine.evaluate(1, 10, 1000, 500, ClaimType.DAMAGE)

        assert decision.approved is True
        assert decision.lookback is None

    @pytest.mark.asyncio
    async def test_dispatch_failure_does_not_fail_decision(self, store, ledger, policy, clock, seed):
        dispatcher = AsyncMock()
        dispatcher.submit.side_effect = ConnectionError("redis down")
        engine = ClaimDecisionEngine(store, ledger, dispatcher, policy=policy, clock=clock)
        seed_history(seed, 1, orders=5, claims=2)

        decision = await engine.evaluate(1, 10, 1000, 500, ClaimType.FOREIGN_OBJECT)

        assert decision.behavior_status == BehaviorStatus.WARNED
        assert decision.approved is True


class TestIdempotence:

    @pytest.mark.asyncio
    async def test_same_claim_same_decision(self, store, ledger, lookback, policy, clock, seed):
        """Re-evaluating with unchanged data gives the same decision and task keys."""
        dispatcher = AsyncMock()
        dispatcher.submit.return_value = True
        engine = ClaimDecisionEngine(store, ledger, dispatcher, lookback=lookback, policy=policy, clock=clock)
        seed_history(seed, 1, orders=5, claims=2)

        first = await engine.evaluate(1, 10, 1000, 500, ClaimType.DAMAGE)
        second = await engine.evaluate(1, 10, 1000, 500, ClaimType.DAMAGE)

        assert first.model_dump() == second.model_dump()
        keys = [call.args[0].idempotency_key for call in dispatcher.submit.await_args_list]
        assert keys == [f"{TASK_RECORD_WARNING}:1:10", f"{TASK_RECORD_WARNING}:1:10"]

    @pytest.mark.asyncio
    async def test_duplicate_side_effect_runs_once(self, engine, seed, store, dispatcher):
        seed_history(seed, 1, orders=5, claims=2)

        await engine.evaluate(1, 10, 1000, 500, ClaimType.FOREIGN_OBJECT)
        await engine.evaluate(1, 10, 1000, 500, ClaimType.FOREIGN_OBJECT)
        await dispatcher.drain()

        assert store.warning_counts[1] == 1


class TestLookbackAttachment:

    @pytest.mark.asyncio
    async def test_damage_claim_gets_lookback(self, engine, seed):
        for days in (1, 2, 3):
            seed.claim(1, created_at=NOW - timedelta(days=days))

        decision = await engine.evaluate(1, 10, 1000, 500, ClaimType.DAMAGE)

        assert decision.lookback is not None
        assert decision.lookback.claims_found == 3
        assert decision.correlation.is_suspicious is True
        assert decision.correlation.time_concentrated is True

    @pytest.mark.asyncio
    async def test_timeout_claim_has_no_lookback(self, engine, seed):
        seed.claim(1, created_at=NOW - timedelta(days=1))

        decision = await engine.evaluate(1, 10, 1000, 500, ClaimType.TIMEOUT)

        assert decision.lookback is None
        assert decision.correlation is None


class TestRecordClaim:
    """Claim persistence and post-decision side effects."""

    @pytest.mark.asyncio
    async def test_approved_rider_claim_deducts_deposit(
        self, engine, seed, store, dispatcher, compensation, notifier
    ):
        seed.customer(1, trust_score=92)
        order = seed.order(1, rider_id=7)

        decision = await engine.evaluate(1, order.id, 3000, 500, ClaimType.TIMEOUT)
        claim = await engine.record_claim(1, order.id, ClaimType.TIMEOUT, 3000, decision)
        await dispatcher.drain()

        assert claim.status == ClaimStatus.AUTO_APPROVED
        assert claim.approved_amount == 500
        assert claim.trust_score_snapshot == 92
        assert claim.approval_type == "instant"
        assert compensation.calls == [(7, 1, claim.id, 500, ClaimType.TIMEOUT)]
        assert notifier.to(EntityType.RIDER, 7)
        refund = notifier.to(EntityType.CUSTOMER, 1)
        assert refund and "10500" in refund[0]["content"]

    @pytest.mark.asyncio
    async def test_snapshot_defaults_without_profile(self, engine, seed):
        order = seed.order(1)
        decision = await engine.evaluate(1, order.id, 1000, 500, ClaimType.FOREIGN_OBJECT)

        claim = await engine.record_claim(1, order.id, "foreign-object", 1000, decision)

        assert claim.trust_score_snapshot == 100

    @pytest.mark.asyncio
    async def test_merchant_paid_claim_no_deduction(self, engine, seed, dispatcher, compensation):
        order = seed.order(1)
        decision = await engine.evaluate(1, order.id, 1000, 500, ClaimType.FOREIGN_OBJECT)

        await engine.record_claim(1, order.id, ClaimType.FOREIGN_OBJECT, 1000, decision)
        await dispatcher.drain()

        assert compensation.calls == []

    @pytest.mark.asyncio
    async def test_non_takeout_order_no_deduction(self, engine, seed, dispatcher, compensation):
        order = seed.order(1, order_type="dine-in")
        decision = await engine.evaluate(1, order.id, 1000, 500, ClaimType.DAMAGE)

        await engine.record_claim(1, order.id, ClaimType.DAMAGE, 1000, decision)
        await dispatcher.drain()

        assert compensation.calls == []

    @pytest.mark.asyncio
    async def test_evidence_required_claim_pending(self, engine, seed, store, dispatcher, compensation):
        order = seed.order(1)
        store.warning_counts[1] = 1
        decision = await engine.evaluate(1, order.id, 1000, 500, ClaimType.DAMAGE)

        claim = await engine.record_claim(1, order.id, ClaimType.DAMAGE, 1000, decision)
        await dispatcher.drain()

        assert claim.status == ClaimStatus.PENDING
        assert claim.approved_amount is None
        assert compensation.calls == []

    @pytest.mark.asyncio
    async def test_food_safety_claim_manual_review(self, engine, seed):
        order = seed.order(1)
        decision = await engine.evaluate(1, order.id, 5000, 500, ClaimType.FOOD_SAFETY)

        claim = await engine.record_claim(1, order.id, ClaimType.FOOD_SAFETY, 5000, decision)

        assert claim.status == ClaimStatus.MANUAL_REVIEW
        assert claim.lookback is not None
        assert claim.lookback["period"] == LookbackPeriod.YEAR_1.value

    @pytest.mark.asyncio
    async def test_failed_deduction_is_logged_not_raised(
        self, store, ledger, registry, dispatcher, notifier, policy, clock, seed, caplog
    ):
        compensation = FakeCompensation(fail=True)
        engine = ClaimDecisionEngine(
            store, ledger, dispatcher, notifier=notifier,
            compensation=compensation, policy=policy, clock=clock,
        )
        engine.register_handlers(registry)
        order = seed.order(1, rider_id=7)
        decision = await engine.evaluate(1, order.id, 2000, 500, ClaimType.DAMAGE)

        await engine.record_claim(1, order.id, ClaimType.DAMAGE, 2000, decision)
        await dispatcher.drain()

        assert len(compensation.calls) == 1
        assert notifier.to(EntityType.RIDER, 7) == []
        assert "reconcile manually" in caplog.text

    @pytest.mark.asyncio
    async def test_suspicious_history_penalised(self, engine, seed, store, dispatcher):
        """3 recent damage claims: frequent claiming costs 30 points."""
        seed.customer(1)
        for days in (1, 2, 3):
            seed.claim(1, created_at=NOW - timedelta(days=days))
        order = seed.order(1)

        decision = await engine.evaluate(1, order.id, 1000, 500, ClaimType.DAMAGE)
        claim = await engine.record_claim(1, order.id, ClaimType.DAMAGE, 1000, decision)
        await dispatcher.drain()

        profile = await store.get_profile(EntityType.CUSTOMER, 1)
        changes = await store.list_score_changes(
            EntityType.CUSTOMER, 1, reason_type=ReasonCodes.SCORE_SUSPICIOUS_PATTERN
        )
        assert profile.trust_score == 70
        assert len(changes) == 1
        assert changes[0].related_id == claim.id

    @pytest.mark.asyncio
    async def test_deduction_task_key(self, store, ledger, policy, clock, seed):
        dispatcher = AsyncMock()
        engine = ClaimDecisionEngine(store, ledger, dispatcher, policy=policy, clock=clock)
        order = seed.order(1, rider_id=7)
        decision = await engine.evaluate(1, order.id, 1000, 500, ClaimType.TIMEOUT)

        claim = await engine.record_claim(1, order.id, ClaimType.TIMEOUT, 1000, decision)

        task = dispatcher.submit.await_args_list[-1].args[0]
        assert task.name == TASK_DEDUCT_DEPOSIT
        assert task.idempotency_key == f"{TASK_DEDUCT_DEPOSIT}:1:{claim.id}"
        assert task.payload["amount"] == 500


class TestRiderDamageHistory:

    @pytest.mark.asyncio
    async def test_three_damage_claims_penalise_rider(self, engine, seed, store, notifier):
        seed.rider(7)
        for user_id in (1, 2, 3):
            seed.claim(user_id, ClaimType.DAMAGE, created_at=NOW - timedelta(days=2), rider_id=7)

        change = await engine.check_rider_damage_history(7)

        profile = await store.get_profile(EntityType.RIDER, 7)
        assert change is not None
        assert change.delta == -15
        assert profile.trust_score == 85
        assert profile.is_suspended is False
        assert notifier.to(EntityType.RIDER, 7)

    @pytest.mark.asyncio
    async def test_below_threshold_no_penalty(self, engine, seed, store):
        seed.rider(7)
        seed.claim(1, ClaimType.DAMAGE, rider_id=7)
        seed.claim(2, ClaimType.TIMEOUT, rider_id=7)
        seed.claim(3, ClaimType.DAMAGE, created_at=NOW - timedelta(days=10), rider_id=7)

        assert await engine.check_rider_damage_history(7) is None
        assert (await store.get_profile(EntityType.RIDER, 7)).trust_score == 100
