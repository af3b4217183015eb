"""
Ledger Store Contract

Everything the engine reads from or writes to persistent storage goes
through this interface. Every call is treated as an independent I/O
round trip that can fail with StoreError.

Score mutations are a single store-level atomic operation
(apply_score_change): read-for-update, compute, write score and append
history together. Callers never write a score and its history row as
two separate calls.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Callable, Optional

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

# Receives the locked current score, returns the requested new score
ScoreCompute = Callable[[int], int]


class LedgerStore(ABC):
    """Abstract Ledger Store consumed by every engine component."""

    # =========================================================================
    # Claims & Behavior
    # =========================================================================

    @abstractmethod
    async def get_behavior_stats(self, user_id: int, since: datetime) -> BehaviorStats:
        """Orders/claims since `since` plus warning and platform-pay counters."""

    @abstractmethod
    async def list_user_claims(
        self,
        user_id: int,
        since: datetime,
        until: Optional[datetime] = None,
    ) -> list[Claim]:
        """Claims filed by a user in [since, until], newest first."""

    @abstractmethod
    async def list_merchant_claims(
        self,
        merchant_id: int,
        since: datetime,
        until: Optional[datetime] = None,
        claim_type: Optional[ClaimType] = None,
    ) -> list[Claim]:
        """Claims against a merchant's orders, newest first."""

    @abstractmethod
    async def list_rider_claims(
        self,
        rider_id: int,
        since: datetime,
        claim_type: Optional[ClaimType] = None,
    ) -> list[Claim]:
        """Claims against orders delivered by a rider, newest first."""

    @abstractmethod
    async def list_claims_by_users(self, user_ids: list[int], since: datetime) -> list[Claim]:
        """Claims filed by any of `user_ids` since `since`."""

    @abstractmethod
    async def get_claim(self, claim_id: int) -> Claim:
        """Raises NotFoundError when missing."""

    @abstractmethod
    async def create_claim(self, claim: Claim) -> Claim:
        """Persist a claim and return it with its id."""

    @abstractmethod
    async def record_warning(self, user_id: int, order_id: Optional[int] = None) -> None:
        """Record a claim warning; the user must provide evidence from now on."""

    @abstractmethod
    async def increment_platform_pay(self, user_id: int, order_id: Optional[int] = None) -> None:
        """Record a platform-paid claim for the user."""

    # =========================================================================
    # Orders, Devices & Addresses
    # =========================================================================

    @abstractmethod
    async def get_order(self, order_id: int) -> Order:
        """Raises NotFoundError when missing."""

    @abstractmethod
    async def get_orders(self, order_ids: list[int]) -> list[Order]:
        """Batch lookup; unknown ids are omitted."""

    @abstractmethod
    async def list_user_recent_orders(self, user_id: int, limit: int) -> list[Order]:
        """Most recent orders of a user, newest first."""

    @abstractmethod
    async def get_users_by_device(self, device_fingerprint: str) -> list[int]:
        """Distinct users seen on a device."""

    @abstractmethod
    async def get_users_by_address(self, address_id: int) -> list[int]:
        """Distinct users who ordered to an address."""

    @abstractmethod
    async def get_devices_by_user(self, user_id: int) -> list[str]:
        """Device fingerprints a user has been seen on."""

    # =========================================================================
    # Fraud Patterns
    # =========================================================================

    @abstractmethod
    async def create_fraud_pattern(self, pattern: FraudPattern) -> FraudPattern:
        """Persist a pattern and return it with its id."""

    @abstractmethod
    async def get_fraud_pattern(self, pattern_id: int) -> FraudPattern:
        """Raises NotFoundError when missing."""

    @abstractmethod
    async def get_fraud_patterns_by_users(self, user_ids: list[int]) -> list[FraudPattern]:
        """Patterns that relate any of `user_ids`."""

    @abstractmethod
    async def confirm_fraud_pattern(self, pattern_id: int, action_taken: str) -> FraudPattern:
        """Mark a pattern confirmed and record the action summary."""

    @abstractmethod
    async def sum_claim_amounts_by_merchant(self, claim_ids: list[int]) -> dict[int, int]:
        """Merchant-compensated amounts per merchant over the given claims."""

    @abstractmethod
    async def sum_claim_amounts_by_rider(self, claim_ids: list[int]) -> dict[int, int]:
        """Rider-compensated amounts per rider over the given claims."""

    # =========================================================================
    # Profiles & Trust Scores
    # =========================================================================

    @abstractmethod
    async def get_profile(self, entity_type: EntityType, entity_id: int) -> EntityProfile:
        """Raises NotFoundError when missing."""

    @abstractmethod
    async def apply_score_change(
        self,
        entity_type: EntityType,
        entity_id: int,
        compute: ScoreCompute,
        reason_type: str,
        reason_description: str = "",
        related_type: Optional[str] = None,
        related_id: Optional[int] = None,
        requested_delta: Optional[int] = None,
        is_auto: bool = True,
    ) -> TrustScoreChange:
        """
        Atomically mutate a score and append its history row.

        The current score is read under a row lock (or equivalent),
        `compute` derives the new score, and the score write plus the
        TrustScoreChange append commit together or not at all.
        Concurrent calls for the same entity serialize.

        Args:
            entity_type: Profile kind
            entity_id: Profile id
            compute: Maps the locked old score to the new (clamped) score
            reason_type: Machine-readable reason
            reason_description: Human-readable reason
            related_type: Optional related record kind
            related_id: Optional related record id
            requested_delta: Delta asked for before clamping (audit only)
            is_auto: Applied by the engine rather than an operator

        Returns:
            The appended TrustScoreChange
        """

    @abstractmethod
    async def list_score_changes(
        self,
        entity_type: EntityType,
        entity_id: int,
        reason_type: Optional[str] = None,
    ) -> list[TrustScoreChange]:
        """Score history, oldest first."""

    @abstractmethod
    async def blacklist_user(self, user_id: int, reason: str) -> None:
        """Block a customer from ordering."""

    @abstractmethod
    async def suspend_merchant(
        self,
        merchant_id: int,
        reason: str,
        until: Optional[datetime] = None,
    ) -> None:
        """Suspend merchant operations, optionally until a point in time."""

    @abstractmethod
    async def lift_restriction(self, entity_type: EntityType, entity_id: int) -> None:
        """Clear blacklist/suspension flags."""

    @abstractmethod
    async def adjust_premium_score(self, rider_id: int, delta: int, reason: str) -> int:
        """Apply an uncapped delta to a rider's premium counter; returns the new value."""

    # =========================================================================
    # Food Safety & Reservations
    # =========================================================================

    @abstractmethod
    async def create_food_safety_report(self, report: FoodSafetyReport) -> FoodSafetyReport:
        """Persist a report."""

    @abstractmethod
    async def list_food_safety_reports(self, merchant_id: int, since: datetime) -> list[FoodSafetyReport]:
        """Reports against a merchant since `since`."""

    @abstractmethod
    async def list_future_reservations(self, merchant_id: int, now: datetime) -> list[Reservation]:
        """Active reservations after `now`."""

    @abstractmethod
    async def cancel_future_reservations(self, merchant_id: int, reason: str, now: datetime) -> int:
        """Cancel every active reservation after `now`; returns the count."""
