"""
In-Memory Ledger Store

Process-local LedgerStore for tests, local development and
single-process deployments. Score changes for one entity serialize on
a per-entity asyncio.Lock, which gives the same no-lost-update
guarantee as SELECT ... FOR UPDATE in the SQL store.
"""

import asyncio
import itertools
from collections import defaultdict
from datetime import datetime, UTC
from typing import Callable, Optional

from ..errors import NotFoundError
from ..schemas import (
    BehaviorStats,
    Claim,
    ClaimType,
    EntityProfile,
    EntityType,
    FoodSafetyReport,
    FraudPattern,
    Order,
    Reservation,
    TrustScoreChange,
)
from .base import LedgerStore, ScoreCompute

MERCHANT_PAID_CLAIMS = (ClaimType.FOREIGN_OBJECT, ClaimType.FOOD_SAFETY)
RIDER_PAID_CLAIMS = (ClaimType.DAMAGE, ClaimType.TIMEOUT)


def _utc_now() -> datetime:
    return datetime.now(UTC)


def _newest_first(claims: list[Claim]) -> list[Claim]:
    return sorted(claims, key=lambda c: (c.created_at, c.id or 0), reverse=True)


class InMemoryLedgerStore(LedgerStore):
    """Dict-backed LedgerStore with seeding helpers."""

    def __init__(self, clock: Optional[Callable[[], datetime]] = None):
        self._clock = clock or _utc_now
        self._ids = itertools.count(1)

        self.profiles: dict[tuple[EntityType, int], EntityProfile] = {}
        self.orders: dict[int, Order] = {}
        self.claims: dict[int, Claim] = {}
        self.devices: dict[int, set[str]] = defaultdict(set)
        self.patterns: dict[int, FraudPattern] = {}
        self.score_changes: list[TrustScoreChange] = []
        self.food_safety_reports: list[FoodSafetyReport] = []
        self.reservations: dict[int, Reservation] = {}

        self.warning_counts: dict[int, int] = defaultdict(int)
        self.platform_pay_counts: dict[int, int] = defaultdict(int)
        self.requires_evidence: set[int] = set()
        self.last_behavior_orders: dict[int, Optional[int]] = {}
        self.premium_history: list[tuple[int, int, str]] = []

        self._locks: dict[tuple[EntityType, int], asyncio.Lock] = defaultdict(asyncio.Lock)

    # =========================================================================
    # Seeding helpers
    # =========================================================================

    def add_profile(self, entity_type: EntityType, entity_id: int, **fields) -> EntityProfile:
        profile = EntityProfile(entity_type=entity_type, entity_id=entity_id, **fields)
        self.profiles[(entity_type, entity_id)] = profile
        return profile

    def add_order(self, order: Order) -> Order:
        self.orders[order.id] = order
        return order

    def add_claim(self, claim: Claim) -> Claim:
        if claim.id is None:
            claim = claim.model_copy(update={"id": next(self._ids)})
        self.claims[claim.id] = claim
        return claim

    def add_device(self, user_id: int, device_fingerprint: str) -> None:
        self.devices[user_id].add(device_fingerprint)

    def add_reservation(self, reservation: Reservation) -> Reservation:
        self.reservations[reservation.id] = reservation
        return reservation

    def _merchant_of(self, claim: Claim) -> Optional[int]:
        order = self.orders.get(claim.order_id)
        return order.merchant_id if order else None

    def _rider_of(self, claim: Claim) -> Optional[int]:
        order = self.orders.get(claim.order_id)
        return order.rider_id if order else None

    # =========================================================================
    # Claims & Behavior
    # =========================================================================

    async def get_behavior_stats(self, user_id: int, since: datetime) -> BehaviorStats:
        orders = [
            o for o in self.orders.values()
            if o.user_id == user_id and o.order_type == "takeout" and o.created_at >= since
        ]
        claims = [c for c in self.claims.values() if c.user_id == user_id and c.created_at >= since]
        return BehaviorStats(
            takeout_orders_90d=len(orders),
            claims_90d=len(claims),
            warning_count=self.warning_counts[user_id],
            platform_pay_count=self.platform_pay_counts[user_id],
            requires_evidence=user_id in self.requires_evidence,
        )

    async def list_user_claims(self, user_id, since, until=None):
        return _newest_first([
            c for c in self.claims.values()
            if c.user_id == user_id and c.created_at >= since and (until is None or c.created_at <= until)
        ])

    async def list_merchant_claims(self, merchant_id, since, until=None, claim_type=None):
        return _newest_first([
            c for c in self.claims.values()
            if self._merchant_of(c) == merchant_id
            and c.created_at >= since
            and (until is None or c.created_at <= until)
            and (claim_type is None or c.claim_type == claim_type)
        ])

    async def list_rider_claims(self, rider_id, since, claim_type=None):
        return _newest_first([
            c for c in self.claims.values()
            if self._rider_of(c) == rider_id
            and c.created_at >= since
            and (claim_type is None or c.claim_type == claim_type)
        ])

    async def list_claims_by_users(self, user_ids, since):
        wanted = set(user_ids)
        return _newest_first([
            c for c in self.claims.values() if c.user_id in wanted and c.created_at >= since
        ])

    async def get_claim(self, claim_id: int) -> Claim:
        try:
            return self.claims[claim_id]
        except KeyError:
            raise NotFoundError(f"claim {claim_id} not found") from None

    async def create_claim(self, claim: Claim) -> Claim:
        return self.add_claim(claim)

    async def record_warning(self, user_id, order_id=None):
        self.warning_counts[user_id] += 1
        self.requires_evidence.add(user_id)
        self.last_behavior_orders[user_id] = order_id

    async def increment_platform_pay(self, user_id, order_id=None):
        self.platform_pay_counts[user_id] += 1
        self.last_behavior_orders[user_id] = order_id

    # =========================================================================
    # Orders, Devices & Addresses
    # =========================================================================

    async def get_order(self, order_id: int) -> Order:
        try:
            return self.orders[order_id]
        except KeyError:
            raise NotFoundError(f"order {order_id} not found") from None

    async def get_orders(self, order_ids):
        return [self.orders[i] for i in dict.fromkeys(order_ids) if i in self.orders]

    async def list_user_recent_orders(self, user_id, limit):
        orders = [o for o in self.orders.values() if o.user_id == user_id]
        orders.sort(key=lambda o: (o.created_at, o.id), reverse=True)
        return orders[:limit]

    async def get_users_by_device(self, device_fingerprint):
        return sorted(uid for uid, fps in self.devices.items() if device_fingerprint in fps)

    async def get_users_by_address(self, address_id):
        return sorted({o.user_id for o in self.orders.values() if o.address_id == address_id})

    async def get_devices_by_user(self, user_id):
        return sorted(self.devices.get(user_id, ()))

    # =========================================================================
    # Fraud Patterns
    # =========================================================================

    async def create_fraud_pattern(self, pattern: FraudPattern) -> FraudPattern:
        stored = pattern.model_copy(update={"id": next(self._ids)})
        self.patterns[stored.id] = stored
        return stored

    async def get_fraud_pattern(self, pattern_id: int) -> FraudPattern:
        try:
            return self.patterns[pattern_id]
        except KeyError:
            raise NotFoundError(f"fraud pattern {pattern_id} not found") from None

    async def get_fraud_patterns_by_users(self, user_ids):
        wanted = set(user_ids)
        return [p for p in self.patterns.values() if wanted & set(p.related_user_ids)]

    async def confirm_fraud_pattern(self, pattern_id, action_taken):
        pattern = await self.get_fraud_pattern(pattern_id)
        confirmed = pattern.model_copy(update={"is_confirmed": True, "action_taken": action_taken})
        self.patterns[pattern_id] = confirmed
        return confirmed

    def _sum_by(self, claim_ids, claim_types, party_of) -> dict[int, int]:
        totals: dict[int, int] = defaultdict(int)
        for claim_id in dict.fromkeys(claim_ids):
            claim = self.claims.get(claim_id)
            if claim is None or claim.claim_type not in claim_types:
                continue
            party = party_of(claim)
            if party is None:
                continue
            amount = claim.approved_amount if claim.approved_amount is not None else claim.claim_amount
            totals[party] += amount
        return dict(totals)

    async def sum_claim_amounts_by_merchant(self, claim_ids):
        return self._sum_by(claim_ids, MERCHANT_PAID_CLAIMS, self._merchant_of)

    async def sum_claim_amounts_by_rider(self, claim_ids):
        return self._sum_by(claim_ids, RIDER_PAID_CLAIMS, self._rider_of)

    # =========================================================================
    # Profiles & Trust Scores
    # =========================================================================

    async def get_profile(self, entity_type: EntityType, entity_id: int) -> EntityProfile:
        try:
            return self.profiles[(entity_type, entity_id)]
        except KeyError:
            raise NotFoundError(f"{entity_type.value} {entity_id} not found") from None

    async def apply_score_change(
        self,
        entity_type,
        entity_id,
        compute: ScoreCompute,
        reason_type,
        reason_description="",
        related_type=None,
        related_id=None,
        requested_delta=None,
        is_auto=True,
    ) -> TrustScoreChange:
        async with self._locks[(entity_type, entity_id)]:
            profile = await self.get_profile(entity_type, entity_id)
            old_score = profile.trust_score
            new_score = compute(old_score)
            # Build both records before mutating so a validation error leaves neither written
            change = TrustScoreChange(
                id=next(self._ids),
                entity_type=entity_type,
                entity_id=entity_id,
                old_score=old_score,
                new_score=new_score,
                delta=new_score - old_score,
                requested_delta=requested_delta,
                reason_type=reason_type,
                reason_description=reason_description,
                related_type=related_type,
                related_id=related_id,
                is_auto=is_auto,
                created_at=self._clock(),
            )
            updated = profile.model_copy(update={"trust_score": new_score})
            self.profiles[(entity_type, entity_id)] = updated
            self.score_changes.append(change)
            return change

    async def list_score_changes(self, entity_type, entity_id, reason_type=None):
        return [
            c for c in self.score_changes
            if c.entity_type == entity_type
            and c.entity_id == entity_id
            and (reason_type is None or c.reason_type == reason_type)
        ]

    def _update_profile(self, entity_type: EntityType, entity_id: int, **fields) -> None:
        key = (entity_type, entity_id)
        if key not in self.profiles:
            raise NotFoundError(f"{entity_type.value} {entity_id} not found")
        self.profiles[key] = self.profiles[key].model_copy(update=fields)

    async def blacklist_user(self, user_id, reason):
        self._update_profile(EntityType.CUSTOMER, user_id, is_blacklisted=True, restriction_reason=reason)

    async def suspend_merchant(self, merchant_id, reason, until=None):
        self._update_profile(
            EntityType.MERCHANT,
            merchant_id,
            is_suspended=True,
            suspended_until=until,
            restriction_reason=reason,
        )

    async def lift_restriction(self, entity_type, entity_id):
        self._update_profile(
            entity_type,
            entity_id,
            is_blacklisted=False,
            is_suspended=False,
            suspended_until=None,
            restriction_reason=None,
        )

    async def adjust_premium_score(self, rider_id, delta, reason):
        profile = await self.get_profile(EntityType.RIDER, rider_id)
        new_value = profile.premium_score + delta
        self._update_profile(EntityType.RIDER, rider_id, premium_score=new_value)
        self.premium_history.append((rider_id, delta, reason))
        return new_value

    # =========================================================================
    # Food Safety & Reservations
    # =========================================================================

    async def create_food_safety_report(self, report):
        stored = report.model_copy(update={"id": next(self._ids)})
        self.food_safety_reports.append(stored)
        return stored

    async def list_food_safety_reports(self, merchant_id, since):
        return [
            r for r in self.food_safety_reports
            if r.merchant_id == merchant_id and r.created_at >= since
        ]

    async def list_future_reservations(self, merchant_id, now):
        return sorted(
            (
                r for r in self.reservations.values()
                if r.merchant_id == merchant_id and r.status == "confirmed" and r.reservation_at > now
            ),
            key=lambda r: r.reservation_at,
        )

    async def cancel_future_reservations(self, merchant_id, reason, now):
        cancelled = 0
        for reservation in await self.list_future_reservations(merchant_id, now):
            self.reservations[reservation.id] = reservation.model_copy(
                update={"status": "cancelled", "cancel_reason": reason}
            )
            cancelled += 1
        return cancelled
