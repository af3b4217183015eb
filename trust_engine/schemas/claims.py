"""
Claim Schemas

Claims, the orders they are filed against, and the records the
food-safety breaker cascades into (reports, reservations).
All amounts are integer minor currency units.
"""

from datetime import datetime, UTC
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field


def _utc_now() -> datetime:
    """Return current UTC time (timezone-aware)."""
    return datetime.now(UTC)


class ClaimType(str, Enum):
    """
    Claim categories and who pays by default:
    - FOREIGN_OBJECT: merchant, full amount
    - FOOD_SAFETY: merchant, always manual review
    - DAMAGE: rider deposit, full amount
    - TIMEOUT: rider deposit, delivery fee only
    """
    FOREIGN_OBJECT = "foreign-object"
    FOOD_SAFETY = "food-safety"
    DAMAGE = "damage"
    TIMEOUT = "timeout"


class ClaimStatus(str, Enum):
    PENDING = "pending"
    AUTO_APPROVED = "auto-approved"
    MANUAL_REVIEW = "manual-review"
    APPROVED = "approved"
    REJECTED = "rejected"


class Claim(BaseModel):
    """
    A dispute tied to one order and one filing user.

    Immutable once created except for the status/approval fields
    written when the decision is recorded.
    """
    id: Optional[int] = None
    order_id: int
    user_id: int
    claim_type: ClaimType
    claim_amount: int = Field(..., ge=0)
    description: str = ""
    evidence_urls: list[str] = Field(default_factory=list)
    evidence_provided: bool = False
    created_at: datetime = Field(default_factory=_utc_now)

    # Written by the decision engine
    status: ClaimStatus = ClaimStatus.PENDING
    approval_type: Optional[str] = None
    approved_amount: Optional[int] = None
    auto_approval_reason: Optional[str] = None
    trust_score_snapshot: Optional[int] = None
    lookback: Optional[dict[str, Any]] = Field(
        default=None,
        description="Serialized lookback result used for the decision",
    )


class Order(BaseModel):
    """Order parties needed by the engine (merchant, rider, address)."""
    id: int
    user_id: int
    merchant_id: int
    rider_id: Optional[int] = None
    address_id: Optional[int] = None
    order_type: str = "takeout"
    delivery_fee: int = Field(default=0, ge=0)
    created_at: datetime = Field(default_factory=_utc_now)


class FoodSafetyReport(BaseModel):
    id: Optional[int] = None
    user_id: int
    merchant_id: int
    claim_id: Optional[int] = None
    created_at: datetime = Field(default_factory=_utc_now)


class Reservation(BaseModel):
    """A future table reservation, cancelled when a merchant is circuit-broken."""
    id: int
    user_id: int
    merchant_id: int
    reservation_at: datetime
    deposit_amount: int = Field(default=0, ge=0)
    prepaid_amount: int = Field(default=0, ge=0)
    status: str = "confirmed"
    cancel_reason: Optional[str] = None

    @property
    def refund_amount(self) -> int:
        return self.deposit_amount + self.prepaid_amount


class DepositDeductionResult(BaseModel):
    """Outcome of the atomic rider-deposit deduction and claimant credit."""
    rider_id: int
    user_id: int
    claim_id: int
    amount: int
    user_balance: int = 0
