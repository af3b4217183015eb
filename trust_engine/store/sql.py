"""
PostgreSQL Ledger Store

LedgerStore backed by PostgreSQL through SQLAlchemy's async engine
(asyncpg driver) using raw SQL. Schema: migrations/001_trust_engine.sql.

Every public call runs in its own transaction. Score changes lock the
profile row with SELECT ... FOR UPDATE and write the score and the
history row in that same transaction. SQLAlchemy errors surface as
StoreError.
"""

import json
import logging
import time
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, AsyncIterator, Optional

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from ..config import settings
from ..errors import NotFoundError, StoreError
from ..metrics import metrics
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

logger = logging.getLogger("trust_engine.store")

CLAIM_COLUMNS = """
    c.id, c.order_id, c.user_id, c.claim_type, c.claim_amount, c.description,
    c.evidence_urls, c.evidence_provided, c.created_at, c.status, c.approval_type,
    c.approved_amount, c.auto_approval_reason, c.trust_score_snapshot, c.lookback
"""

PROFILE_COLUMNS = """
    entity_type, entity_id, trust_score, total_orders, is_blacklisted,
    is_suspended, suspended_until, restriction_reason, premium_score
"""

PATTERN_COLUMNS = """
    id, pattern_type, related_user_ids, related_order_ids, related_claim_ids,
    device_fingerprints, address_ids, match_count, description, is_confirmed,
    action_taken, detected_at
"""

CHANGE_COLUMNS = """
    id, entity_type, entity_id, old_score, new_score, delta, requested_delta,
    reason_type, reason_description, related_type, related_id, is_auto, created_at
"""

ORDER_COLUMNS = """
    id, user_id, merchant_id, rider_id, address_id, order_type, delivery_fee, created_at
"""


def _json_value(value: Any) -> Any:
    """jsonb may arrive as text when queried through text()."""
    if isinstance(value, str):
        return json.loads(value)
    return value


def _claim(row) -> Claim:
    data = dict(row._mapping)
    data["evidence_urls"] = list(data.get("evidence_urls") or [])
    data["lookback"] = _json_value(data.get("lookback"))
    return Claim(**data)


def _pattern(row) -> FraudPattern:
    data = dict(row._mapping)
    for key in ("related_user_ids", "related_order_ids", "related_claim_ids", "device_fingerprints", "address_ids"):
        data[key] = list(data.get(key) or [])
    data["description"] = data.get("description") or ""
    return FraudPattern(**data)


class SqlLedgerStore(LedgerStore):
    """LedgerStore implementation on PostgreSQL."""

    def __init__(self, database_url: Optional[str] = None):
        """
        Initialize the store.

        Args:
            database_url: PostgreSQL URL (defaults to settings.postgres_url)
        """
        self.database_url = database_url or settings.postgres_url
        self.engine = None
        self.session_factory: Optional[async_sessionmaker[AsyncSession]] = None

    async def initialize(self) -> None:
        """Create the connection pool."""
        self.engine = create_async_engine(
            self.database_url,
            echo=settings.app_debug,
            pool_size=5,
            max_overflow=10,
            pool_pre_ping=True,
        )
        self.session_factory = async_sessionmaker(
            bind=self.engine,
            class_=AsyncSession,
            expire_on_commit=False,
        )

    async def close(self) -> None:
        """Close database connections."""
        if self.engine:
            await self.engine.dispose()

    async def health_check(self) -> bool:
        """Check database connectivity."""
        async with self._session() as session:
            result = await session.execute(text("SELECT 1"))
            return result.scalar() == 1

    @asynccontextmanager
    async def _session(self) -> AsyncIterator[AsyncSession]:
        """One transaction per call; commit on success, rollback on error."""
        if not self.session_factory:
            raise StoreError("Database not initialized")

        started_at = time.perf_counter()
        try:
            async with self.session_factory.begin() as session:
                yield session
        except SQLAlchemyError as e:
            metrics.errors_total.labels(error_type="StoreError").inc()
            raise StoreError(str(e)) from e
        finally:
            metrics.store_latency.observe((time.perf_counter() - started_at) * 1000)

    # =========================================================================
    # Claims & Behavior
    # =========================================================================

    async def get_behavior_stats(self, user_id: int, since: datetime) -> BehaviorStats:
        async with self._session() as session:
            result = await session.execute(
                text("""
                    SELECT
                        (SELECT COUNT(*) FROM orders
                          WHERE user_id = :user_id AND order_type = 'takeout'
                            AND created_at >= :since) AS takeout_orders_90d,
                        (SELECT COUNT(*) FROM claims
                          WHERE user_id = :user_id AND created_at >= :since) AS claims_90d,
                        COALESCE(b.warning_count, 0) AS warning_count,
                        COALESCE(b.platform_pay_count, 0) AS platform_pay_count,
                        COALESCE(b.requires_evidence, FALSE) AS requires_evidence
                    FROM (SELECT 1) AS one
                    LEFT JOIN claim_behavior b ON b.user_id = :user_id
                """),
                {"user_id": user_id, "since": since},
            )
            return BehaviorStats(**dict(result.one()._mapping))

    async def list_user_claims(self, user_id, since, until=None):
        async with self._session() as session:
            result = await session.execute(
                text(f"""
                    SELECT {CLAIM_COLUMNS} FROM claims c
                    WHERE c.user_id = :user_id AND c.created_at >= :since
                      AND (CAST(:until AS timestamptz) IS NULL OR c.created_at <= :until)
                    ORDER BY c.created_at DESC, c.id DESC
                """),
                {"user_id": user_id, "since": since, "until": until},
            )
            return [_claim(row) for row in result]

    async def list_merchant_claims(self, merchant_id, since, until=None, claim_type=None):
        async with self._session() as session:
            result = await session.execute(
                text(f"""
                    SELECT {CLAIM_COLUMNS} FROM claims c
                    JOIN orders o ON o.id = c.order_id
                    WHERE o.merchant_id = :merchant_id AND c.created_at >= :since
                      AND (CAST(:until AS timestamptz) IS NULL OR c.created_at <= :until)
                      AND (CAST(:claim_type AS text) IS NULL OR c.claim_type = :claim_type)
                    ORDER BY c.created_at DESC, c.id DESC
                """),
                {
                    "merchant_id": merchant_id,
                    "since": since,
                    "until": until,
                    "claim_type": claim_type.value if claim_type else None,
                },
            )
            return [_claim(row) for row in result]

    async def list_rider_claims(self, rider_id, since, claim_type=None):
        async with self._session() as session:
            result = await session.execute(
                text(f"""
                    SELECT {CLAIM_COLUMNS} FROM claims c
                    JOIN orders o ON o.id = c.order_id
                    WHERE o.rider_id = :rider_id AND c.created_at >= :since
                      AND (CAST(:claim_type AS text) IS NULL OR c.claim_type = :claim_type)
                    ORDER BY c.created_at DESC, c.id DESC
                """),
                {
                    "rider_id": rider_id,
                    "since": since,
                    "claim_type": claim_type.value if claim_type else None,
                },
            )
            return [_claim(row) for row in result]

    async def list_claims_by_users(self, user_ids, since):
        if not user_ids:
            return []
        async with self._session() as session:
            result = await session.execute(
                text(f"""
                    SELECT {CLAIM_COLUMNS} FROM claims c
                    WHERE c.user_id = ANY(:user_ids) AND c.created_at >= :since
                    ORDER BY c.created_at DESC, c.id DESC
                """),
                {"user_ids": list(user_ids), "since": since},
            )
            return [_claim(row) for row in result]

    async def get_claim(self, claim_id: int) -> Claim:
        async with self._session() as session:
            result = await session.execute(
                text(f"SELECT {CLAIM_COLUMNS} FROM claims c WHERE c.id = :id"),
                {"id": claim_id},
            )
            row = result.first()
        if row is None:
            raise NotFoundError(f"claim {claim_id} not found")
        return _claim(row)

    async def create_claim(self, claim: Claim) -> Claim:
        params = claim.model_dump(mode="json", exclude={"id"})
        params["created_at"] = claim.created_at
        params["lookback"] = json.dumps(claim.lookback) if claim.lookback is not None else None
        async with self._session() as session:
            result = await session.execute(
                text("""
                    INSERT INTO claims (
                        order_id, user_id, claim_type, claim_amount, description,
                        evidence_urls, evidence_provided, created_at, status,
                        approval_type, approved_amount, auto_approval_reason,
                        trust_score_snapshot, lookback
                    ) VALUES (
                        :order_id, :user_id, :claim_type, :claim_amount, :description,
                        :evidence_urls, :evidence_provided, :created_at, :status,
                        :approval_type, :approved_amount, :auto_approval_reason,
                        :trust_score_snapshot, CAST(:lookback AS jsonb)
                    )
                    RETURNING id
                """),
                params,
            )
            claim_id = result.scalar_one()
        return claim.model_copy(update={"id": claim_id})

    async def record_warning(self, user_id, order_id=None):
        async with self._session() as session:
            await session.execute(
                text("""
                    INSERT INTO claim_behavior (user_id, warning_count, requires_evidence, last_order_id, updated_at)
                    VALUES (:user_id, 1, TRUE, :order_id, NOW())
                    ON CONFLICT (user_id) DO UPDATE SET
                        warning_count = claim_behavior.warning_count + 1,
                        requires_evidence = TRUE,
                        last_order_id = EXCLUDED.last_order_id,
                        updated_at = NOW()
                """),
                {"user_id": user_id, "order_id": order_id},
            )

    async def increment_platform_pay(self, user_id, order_id=None):
        async with self._session() as session:
            await session.execute(
                text("""
                    INSERT INTO claim_behavior (user_id, platform_pay_count, last_order_id, updated_at)
                    VALUES (:user_id, 1, :order_id, NOW())
                    ON CONFLICT (user_id) DO UPDATE SET
                        platform_pay_count = claim_behavior.platform_pay_count + 1,
                        last_order_id = EXCLUDED.last_order_id,
                        updated_at = NOW()
                """),
                {"user_id": user_id, "order_id": order_id},
            )

    # =========================================================================
    # Orders, Devices & Addresses
    # =========================================================================

    async def get_order(self, order_id: int) -> Order:
        async with self._session() as session:
            result = await session.execute(
                text(f"SELECT {ORDER_COLUMNS} FROM orders WHERE id = :id"),
                {"id": order_id},
            )
            row = result.first()
        if row is None:
            raise NotFoundError(f"order {order_id} not found")
        return Order(**row._mapping)

    async def get_orders(self, order_ids):
        if not order_ids:
            return []
        async with self._session() as session:
            result = await session.execute(
                text(f"SELECT {ORDER_COLUMNS} FROM orders WHERE id = ANY(:ids) ORDER BY id"),
                {"ids": list(order_ids)},
            )
            return [Order(**row._mapping) for row in result]

    async def list_user_recent_orders(self, user_id, limit):
        async with self._session() as session:
            result = await session.execute(
                text(f"""
                    SELECT {ORDER_COLUMNS} FROM orders
                    WHERE user_id = :user_id
                    ORDER BY created_at DESC, id DESC
                    LIMIT :limit
                """),
                {"user_id": user_id, "limit": limit},
            )
            return [Order(**row._mapping) for row in result]

    async def get_users_by_device(self, device_fingerprint):
        async with self._session() as session:
            result = await session.execute(
                text("""
                    SELECT DISTINCT user_id FROM user_devices
                    WHERE device_fingerprint = :fp ORDER BY user_id
                """),
                {"fp": device_fingerprint},
            )
            return list(result.scalars())

    async def get_users_by_address(self, address_id):
        async with self._session() as session:
            result = await session.execute(
                text("""
                    SELECT DISTINCT user_id FROM orders
                    WHERE address_id = :address_id ORDER BY user_id
                """),
                {"address_id": address_id},
            )
            return list(result.scalars())

    async def get_devices_by_user(self, user_id):
        async with self._session() as session:
            result = await session.execute(
                text("""
                    SELECT device_fingerprint FROM user_devices
                    WHERE user_id = :user_id ORDER BY device_fingerprint
                """),
                {"user_id": user_id},
            )
            return list(result.scalars())

    # =========================================================================
    # Fraud Patterns
    # =========================================================================

    async def create_fraud_pattern(self, pattern: FraudPattern) -> FraudPattern:
        params = pattern.model_dump(exclude={"id"})
        params["pattern_type"] = pattern.pattern_type.value
        async with self._session() as session:
            result = await session.execute(
                text("""
                    INSERT INTO fraud_patterns (
                        pattern_type, related_user_ids, related_order_ids, related_claim_ids,
                        device_fingerprints, address_ids, match_count, description,
                        is_confirmed, action_taken, detected_at
                    ) VALUES (
                        :pattern_type, :related_user_ids, :related_order_ids, :related_claim_ids,
                        :device_fingerprints, :address_ids, :match_count, :description,
                        :is_confirmed, :action_taken, :detected_at
                    )
                    RETURNING id
                """),
                params,
            )
            pattern_id = result.scalar_one()
        return pattern.model_copy(update={"id": pattern_id})

    async def get_fraud_pattern(self, pattern_id: int) -> FraudPattern:
        async with self._session() as session:
            result = await session.execute(
                text(f"SELECT {PATTERN_COLUMNS} FROM fraud_patterns WHERE id = :id"),
                {"id": pattern_id},
            )
            row = result.first()
        if row is None:
            raise NotFoundError(f"fraud pattern {pattern_id} not found")
        return _pattern(row)

    async def get_fraud_patterns_by_users(self, user_ids):
        if not user_ids:
            return []
        async with self._session() as session:
            result = await session.execute(
                text(f"""
                    SELECT {PATTERN_COLUMNS} FROM fraud_patterns
                    WHERE related_user_ids && CAST(:user_ids AS bigint[])
                    ORDER BY detected_at DESC
                """),
                {"user_ids": list(user_ids)},
            )
            return [_pattern(row) for row in result]

    async def confirm_fraud_pattern(self, pattern_id, action_taken):
        async with self._session() as session:
            result = await session.execute(
                text(f"""
                    UPDATE fraud_patterns
                    SET is_confirmed = TRUE, action_taken = :action_taken
                    WHERE id = :id
                    RETURNING {PATTERN_COLUMNS}
                """),
                {"id": pattern_id, "action_taken": action_taken},
            )
            row = result.first()
        if row is None:
            raise NotFoundError(f"fraud pattern {pattern_id} not found")
        return _pattern(row)

    async def _sum_claims(self, claim_ids: list[int], party_column: str, claim_types: tuple[str, ...]) -> dict[int, int]:
        if not claim_ids:
            return {}
        async with self._session() as session:
            result = await session.execute(
                text(f"""
                    SELECT o.{party_column} AS party_id,
                           SUM(COALESCE(c.approved_amount, c.claim_amount)) AS total_loss
                    FROM claims c
                    JOIN orders o ON o.id = c.order_id
                    WHERE c.id = ANY(:claim_ids)
                      AND c.claim_type = ANY(:claim_types)
                      AND o.{party_column} IS NOT NULL
                    GROUP BY o.{party_column}
                """),
                {"claim_ids": list(claim_ids), "claim_types": list(claim_types)},
            )
            return {row.party_id: int(row.total_loss) for row in result}

    async def sum_claim_amounts_by_merchant(self, claim_ids):
        return await self._sum_claims(
            claim_ids, "merchant_id", (ClaimType.FOREIGN_OBJECT.value, ClaimType.FOOD_SAFETY.value)
        )

    async def sum_claim_amounts_by_rider(self, claim_ids):
        return await self._sum_claims(
            claim_ids, "rider_id", (ClaimType.DAMAGE.value, ClaimType.TIMEOUT.value)
        )

    # =========================================================================
    # Profiles & Trust Scores
    # =========================================================================

    async def get_profile(self, entity_type: EntityType, entity_id: int) -> EntityProfile:
        async with self._session() as session:
            result = await session.execute(
                text(f"""
                    SELECT {PROFILE_COLUMNS} FROM entity_profiles
                    WHERE entity_type = :entity_type AND entity_id = :entity_id
                """),
                {"entity_type": entity_type.value, "entity_id": entity_id},
            )
            row = result.first()
        if row is None:
            raise NotFoundError(f"{entity_type.value} {entity_id} not found")
        return EntityProfile(**row._mapping)

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
        key = {"entity_type": entity_type.value, "entity_id": entity_id}
        async with self._session() as session:
            result = await session.execute(
                text("""
                    SELECT trust_score FROM entity_profiles
                    WHERE entity_type = :entity_type AND entity_id = :entity_id
                    FOR UPDATE
                """),
                key,
            )
            old_score = result.scalar_one_or_none()
            if old_score is None:
                raise NotFoundError(f"{entity_type.value} {entity_id} not found")

            new_score = compute(old_score)
            await session.execute(
                text("""
                    UPDATE entity_profiles SET trust_score = :score, updated_at = NOW()
                    WHERE entity_type = :entity_type AND entity_id = :entity_id
                """),
                {**key, "score": new_score},
            )
            result = await session.execute(
                text(f"""
                    INSERT INTO trust_score_changes (
                        entity_type, entity_id, old_score, new_score, delta, requested_delta,
                        reason_type, reason_description, related_type, related_id, is_auto
                    ) VALUES (
                        :entity_type, :entity_id, :old_score, :new_score, :delta, :requested_delta,
                        :reason_type, :reason_description, :related_type, :related_id, :is_auto
                    )
                    RETURNING {CHANGE_COLUMNS}
                """),
                {
                    **key,
                    "old_score": old_score,
                    "new_score": new_score,
                    "delta": new_score - old_score,
                    "requested_delta": requested_delta,
                    "reason_type": reason_type,
                    "reason_description": reason_description,
                    "related_type": related_type,
                    "related_id": related_id,
                    "is_auto": is_auto,
                },
            )
            return TrustScoreChange(**result.one()._mapping)

    async def list_score_changes(self, entity_type, entity_id, reason_type=None):
        async with self._session() as session:
            result = await session.execute(
                text(f"""
                    SELECT {CHANGE_COLUMNS} FROM trust_score_changes
                    WHERE entity_type = :entity_type AND entity_id = :entity_id
                      AND (CAST(:reason_type AS text) IS NULL OR reason_type = :reason_type)
                    ORDER BY created_at, id
                """),
                {"entity_type": entity_type.value, "entity_id": entity_id, "reason_type": reason_type},
            )
            return [TrustScoreChange(**row._mapping) for row in result]

    async def _update_restriction(self, entity_type: EntityType, entity_id: int, assignments: str, params: dict) -> None:
        async with self._session() as session:
            result = await session.execute(
                text(f"""
                    UPDATE entity_profiles SET {assignments}, updated_at = NOW()
                    WHERE entity_type = :entity_type AND entity_id = :entity_id
                """),
                {"entity_type": entity_type.value, "entity_id": entity_id, **params},
            )
            if result.rowcount == 0:
                raise NotFoundError(f"{entity_type.value} {entity_id} not found")

    async def blacklist_user(self, user_id, reason):
        await self._update_restriction(
            EntityType.CUSTOMER,
            user_id,
            "is_blacklisted = TRUE, restriction_reason = :reason",
            {"reason": reason},
        )

    async def suspend_merchant(self, merchant_id, reason, until=None):
        await self._update_restriction(
            EntityType.MERCHANT,
            merchant_id,
            "is_suspended = TRUE, suspended_until = :until, restriction_reason = :reason",
            {"reason": reason, "until": until},
        )

    async def lift_restriction(self, entity_type, entity_id):
        await self._update_restriction(
            entity_type,
            entity_id,
            "is_blacklisted = FALSE, is_suspended = FALSE, suspended_until = NULL, restriction_reason = NULL",
            {},
        )

    async def adjust_premium_score(self, rider_id, delta, reason):
        async with self._session() as session:
            result = await session.execute(
                text("""
                    UPDATE entity_profiles
                    SET premium_score = premium_score + :delta, updated_at = NOW()
                    WHERE entity_type = 'rider' AND entity_id = :rider_id
                    RETURNING premium_score
                """),
                {"rider_id": rider_id, "delta": delta},
            )
            new_value = result.scalar_one_or_none()
            if new_value is None:
                raise NotFoundError(f"rider {rider_id} not found")
            await session.execute(
                text("""
                    INSERT INTO premium_score_changes (rider_id, delta, new_value, reason)
                    VALUES (:rider_id, :delta, :new_value, :reason)
                """),
                {"rider_id": rider_id, "delta": delta, "new_value": new_value, "reason": reason},
            )
            return new_value

    # =========================================================================
    # Food Safety & Reservations
    # =========================================================================

    async def create_food_safety_report(self, report):
        async with self._session() as session:
            result = await session.execute(
                text("""
                    INSERT INTO food_safety_reports (user_id, merchant_id, claim_id, created_at)
                    VALUES (:user_id, :merchant_id, :claim_id, :created_at)
                    RETURNING id
                """),
                report.model_dump(exclude={"id"}),
            )
            report_id = result.scalar_one()
        return report.model_copy(update={"id": report_id})

    async def list_food_safety_reports(self, merchant_id, since):
        async with self._session() as session:
            result = await session.execute(
                text("""
                    SELECT id, user_id, merchant_id, claim_id, created_at
                    FROM food_safety_reports
                    WHERE merchant_id = :merchant_id AND created_at >= :since
                    ORDER BY created_at DESC
                """),
                {"merchant_id": merchant_id, "since": since},
            )
            return [FoodSafetyReport(**row._mapping) for row in result]

    async def list_future_reservations(self, merchant_id, now):
        async with self._session() as session:
            result = await session.execute(
                text("""
                    SELECT id, user_id, merchant_id, reservation_at, deposit_amount,
                           prepaid_amount, status, cancel_reason
                    FROM reservations
                    WHERE merchant_id = :merchant_id AND status = 'confirmed'
                      AND reservation_at > :now
                    ORDER BY reservation_at
                """),
                {"merchant_id": merchant_id, "now": now},
            )
            return [Reservation(**row._mapping) for row in result]

    async def cancel_future_reservations(self, merchant_id, reason, now):
        async with self._session() as session:
            result = await session.execute(
                text("""
                    UPDATE reservations
                    SET status = 'cancelled', cancel_reason = :reason
                    WHERE merchant_id = :merchant_id AND status = 'confirmed'
                      AND reservation_at > :now
                """),
                {"merchant_id": merchant_id, "reason": reason, "now": now},
            )
            return result.rowcount
