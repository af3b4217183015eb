"""
Entity Schemas

Profiles and ledger records for every entity the engine scores.

Entity types follow the claim flow:
- Customer: files claims, may be warned, platform-paid or blacklisted
- Merchant: compensates foreign-object/food-safety claims, may be suspended
- Rider: compensates damage/timeout claims from a held deposit,
  gated by a separate premium-order qualification counter
"""

from datetime import datetime, UTC
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


def _utc_now() -> datetime:
    """Return current UTC time (timezone-aware)."""
    return datetime.now(UTC)


SCORE_MIN = 0
SCORE_MAX = 100


class EntityType(str, Enum):
    """Entities that carry a trust score."""
    CUSTOMER = "customer"
    MERCHANT = "merchant"
    RIDER = "rider"


class EntityProfile(BaseModel):
    """
    Trust profile embedded in each entity.

    Everyone starts at 100; only behavior lowers the score.
    """
    entity_type: EntityType
    entity_id: int

    trust_score: int = Field(
        default=SCORE_MAX,
        ge=SCORE_MIN,
        le=SCORE_MAX,
        description="Bounded trust score, clamped on every write",
    )
    total_orders: int = Field(
        default=0,
        ge=0,
        description="Lifetime completed orders (customers)",
    )

    # Restrictions
    is_blacklisted: bool = Field(
        default=False,
        description="Customer may no longer place orders",
    )
    is_suspended: bool = Field(
        default=False,
        description="Merchant business operations suspended",
    )
    suspended_until: Optional[datetime] = Field(
        default=None,
        description="End of a timed suspension (circuit breaker)",
    )
    restriction_reason: Optional[str] = None

    # Riders only: uncapped premium-order qualification counter
    premium_score: int = Field(
        default=0,
        description="Premium-order qualification counter (may be negative)",
    )

    @property
    def is_restricted(self) -> bool:
        return self.is_blacklisted or self.is_suspended


class BehaviorStats(BaseModel):
    """Claim behavior aggregates over the trailing 90 days."""
    takeout_orders_90d: int = Field(default=0, ge=0)
    claims_90d: int = Field(default=0, ge=0)
    warning_count: int = Field(default=0, ge=0)
    platform_pay_count: int = Field(default=0, ge=0)
    requires_evidence: bool = False


class TrustScoreChange(BaseModel):
    """
    Append-only audit entry for a single score mutation.

    Immutable once written; the score on the profile and this
    record are always produced by the same store operation.
    """
    id: Optional[int] = None
    entity_type: EntityType
    entity_id: int
    old_score: int = Field(..., ge=SCORE_MIN, le=SCORE_MAX)
    new_score: int = Field(..., ge=SCORE_MIN, le=SCORE_MAX)
    delta: int = Field(
        ...,
        description="Applied change (new_score - old_score) after clamping",
    )
    requested_delta: Optional[int] = Field(
        default=None,
        description="Change requested by the caller before clamping",
    )
    reason_type: str
    reason_description: str = ""
    related_type: Optional[str] = None
    related_id: Optional[int] = None
    is_auto: bool = True
    created_at: datetime = Field(default_factory=_utc_now)

    model_config = {"frozen": True}


class PatternType(str, Enum):
    """Cross-account fraud signals."""
    DEVICE_REUSE = "device-reuse"
    ADDRESS_CLUSTER = "address-cluster"
    COORDINATED_CLAIMS = "coordinated-claims"


class FraudPattern(BaseModel):
    """
    Persisted record of a detected cross-account signal.

    is_confirmed is a one-way transition: confirming blacklists and
    penalises every related user and is never reversed here.
    """
    id: Optional[int] = None
    pattern_type: PatternType
    related_user_ids: list[int] = Field(default_factory=list)
    related_order_ids: list[int] = Field(default_factory=list)
    related_claim_ids: list[int] = Field(default_factory=list)
    device_fingerprints: list[str] = Field(default_factory=list)
    address_ids: list[int] = Field(default_factory=list)
    match_count: int = Field(default=0, ge=0)
    description: str = ""
    is_confirmed: bool = False
    action_taken: Optional[str] = None
    detected_at: datetime = Field(default_factory=_utc_now)
