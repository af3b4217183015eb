"""
Decision Schemas

Defines the decision types, behavior tiers and result structures
produced by the claim engine, the food-safety breaker and the
foreign-object tracker.

Behavior tiers escalate in this order:
NORMAL < WARNED < EVIDENCE_REQUIRED < PLATFORM_PAY < REJECT_SERVICE
"""

from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field

from .lookback import CorrelationResult, LookbackResult


class DecisionType(str, Enum):
    """
    How a claim was decided.

    - INSTANT: compensated immediately
    - AUTO: approved by history check
    - MANUAL: held for a human (food safety)
    - EVIDENCE_REQUIRED: withheld until evidence is resubmitted
    - PLATFORM_PAY: compensated by the platform, merchant/rider held harmless
    """
    INSTANT = "instant"
    AUTO = "auto"
    MANUAL = "manual"
    EVIDENCE_REQUIRED = "evidence-required"
    PLATFORM_PAY = "platform-pay"


class BehaviorStatus(str, Enum):
    """Claimant risk tier, recomputed on every evaluation."""
    NORMAL = "normal"
    WARNED = "warned"
    EVIDENCE_REQUIRED = "evidence-required"
    PLATFORM_PAY = "platform-pay"
    REJECT_SERVICE = "reject-service"


class CompensationSource(str, Enum):
    """Whose funds cover a claim."""
    MERCHANT = "merchant"
    RIDER = "rider"
    PLATFORM = "platform"


class BehaviorResult(BaseModel):
    """Classification of a user's claim history over the 3-month horizon."""
    status: BehaviorStatus = BehaviorStatus.NORMAL
    recent_months: int = 3
    takeout_orders: int = Field(default=0, ge=0)
    claim_count: int = Field(default=0, ge=0)
    claim_ratio: float = Field(default=0.0, ge=0.0)
    warning_count: int = Field(default=0, ge=0)
    platform_pay_count: int = Field(default=0, ge=0)
    should_warn: bool = Field(
        default=False,
        description="A warning must be recorded for this evaluation",
    )
    message: str = ""


class Decision(BaseModel):
    """
    The engine's verdict for one claim evaluation.

    Value object; consumed by the caller to create or update the
    claim record and trigger compensation.
    """
    decision_type: DecisionType
    approved: bool
    amount: int = Field(default=0, ge=0)
    reason: str = ""
    reason_code: str = ""
    compensation_source: CompensationSource
    behavior_status: Optional[BehaviorStatus] = None
    needs_evidence: bool = False
    needs_review: bool = False
    review_message: str = ""
    warning_text: str = ""
    degraded: bool = Field(
        default=False,
        description="Risk data was unavailable and the engine failed open",
    )
    lookback: Optional[LookbackResult] = None
    correlation: Optional[CorrelationResult] = None


class FoodSafetyCheckResult(BaseModel):
    """Outcome of evaluating a food-safety report against a merchant."""
    should_circuit_break: bool = False
    is_malicious: bool = False
    reason_code: str
    message: str = ""
    duration_hours: int = Field(default=0, ge=0)


class ForeignObjectResult(BaseModel):
    """Advisory foreign-object status for a merchant."""
    merchant_id: int
    window_days: int
    foreign_object_count: int = Field(default=0, ge=0)
    should_notify: bool = False
    message: str = ""


# =============================================================================
# Reason Codes (Constants)
# =============================================================================

class ReasonCodes:
    """
    Standard reason codes for engine outcomes.

    Format: {AREA}_{DETAIL}
    """
    # Claim decisions
    CLAIM_FOOD_SAFETY_REVIEW = "CLAIM_FOOD_SAFETY_REVIEW"
    CLAIM_NORMAL_INSTANT = "CLAIM_NORMAL_INSTANT"
    CLAIM_FIRST_WARNING = "CLAIM_FIRST_WARNING"
    CLAIM_EVIDENCE_MISSING = "CLAIM_EVIDENCE_MISSING"
    CLAIM_EVIDENCE_PROVIDED = "CLAIM_EVIDENCE_PROVIDED"
    CLAIM_PLATFORM_PAY = "CLAIM_PLATFORM_PAY"
    CLAIM_REJECT_SERVICE = "CLAIM_REJECT_SERVICE"
    CLAIM_DEGRADED_BEHAVIOR_LOOKUP = "CLAIM_DEGRADED_BEHAVIOR_LOOKUP"

    # Food safety breaker
    FOOD_SAFETY_HIGH_TRUST_EVIDENCE = "high-trust-user-report-with-evidence"
    FOOD_SAFETY_INSUFFICIENT_REPORTS = "insufficient-reports"
    FOOD_SAFETY_MALICIOUS = "malicious-coordinated-reports"
    FOOD_SAFETY_REPORT_THRESHOLD = "3-food-safety-reports-in-1h"

    # Trust score reason types
    SCORE_REJECT_SERVICE = "reject-service"
    SCORE_SUSPICIOUS_PATTERN = "suspicious-claim-pattern"
    SCORE_CONFIRMED_FRAUD = "confirmed-fraud-pattern"
    SCORE_RIDER_DAMAGE = "damage-3-times-in-7d"
    SCORE_RECOVERY_GRANTED = "recovery-granted"
