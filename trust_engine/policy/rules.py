"""
Trust Policy Configuration

Every threshold, window and score delta used by the engine, grouped
by component. Policies can be loaded from YAML so deployments tune
them without code changes, and tests inject their own instance
instead of patching module constants.
"""

import hashlib
from typing import Optional

from pydantic import BaseModel, Field, model_validator

from ..schemas import LinkageKind, PatternType


class ScoreThresholds(BaseModel):
    """Bounds of the 0-100 trust score and the consequence tiers."""
    minimum: int = Field(default=0, description="Lowest possible score")
    maximum: int = Field(default=100, description="Highest possible score")
    initial: int = Field(default=100, description="Score every entity starts with")
    reject_service: int = Field(
        default=70,
        description="Below this a customer is blacklisted / a merchant suspended",
    )
    warning: int = Field(
        default=85,
        description="Below this (and above reject_service) a customer is warned",
    )


class BehaviorRules(BaseModel):
    """Claimant behavior tiers over the 3-month horizon."""
    horizon_months: int = 3
    warning_order_count: int = Field(
        default=5,
        description="Warn when a user with at most this many orders...",
    )
    warning_claim_count: int = Field(
        default=3,
        description="...reaches this many claims including the current one",
    )
    warning_ratio: float = Field(
        default=0.6,
        ge=0.0,
        le=1.0,
        description="Claim/order ratio that also triggers a warning",
    )
    platform_pay_warning_count: int = Field(
        default=2,
        description="Warnings after which claims are platform-paid",
    )
    reject_service_platform_pays: int = Field(
        default=2,
        description="Platform-paid claims after which service is rejected",
    )


class LookbackRules(BaseModel):
    """Expanding-window search and correlation analysis."""
    window_days: list[int] = Field(default_factory=lambda: [30, 90, 365])
    target_orders: int = 5
    time_concentration_hours: int = 72
    time_concentration_min_claims: int = 3
    same_party_share: float = Field(default=0.8, ge=0.0, le=1.0)
    high_frequency_days: int = 7
    high_frequency_claims: int = 3

    @model_validator(mode="after")
    def _validate_windows(self) -> "LookbackRules":
        if len(self.window_days) != 3 or sorted(self.window_days) != self.window_days:
            raise ValueError("window_days must be three ascending windows")
        return self


class FraudRules(BaseModel):
    """Cross-account detectors and auto-confirmation."""
    min_users: int = 3
    min_claims: int = 3
    window_days: int = 7
    block_users: int = 5
    block_claims: int = 10
    coordinated_window_hours: int = 1
    coordinated_min_co_claims: int = 2
    recent_order_sample: int = Field(
        default=5,
        description="Recent orders per user inspected for shared addresses",
    )
    new_account_min_users: int = Field(
        default=3,
        description="Claimants needed before \"all first-order accounts\" counts as linkage",
    )
    confirmed_pattern_types: Optional[list[PatternType]] = Field(
        default=None,
        description="Confirmed pattern types that link claimants (None = any)",
    )
    auto_confirm_match_count: int = 2
    auto_confirm_claim_count: int = 5
    confirmed_penalty: int = -100
    linkage_checks: list[LinkageKind] = Field(
        default_factory=lambda: [
            LinkageKind.CONFIRMED_PATTERN,
            LinkageKind.SHARED_DEVICE,
            LinkageKind.SHARED_ADDRESS,
            LinkageKind.NEW_ACCOUNTS,
        ],
        description="Linkage checks (in order) proving claimants coordinate",
    )


class FoodSafetyRules(BaseModel):
    """Report-triggered merchant circuit breaker."""
    high_trust_score: int = Field(
        default=90,
        description="Reporters at or above this score trip the breaker alone",
    )
    report_threshold: int = 3
    window_hours: int = 1
    immediate_break_hours: int = 24
    threshold_break_hours: int = 48
    recent_order_sample: int = 1
    new_account_min_users: int = 2
    confirmed_pattern_types: Optional[list[PatternType]] = Field(
        default_factory=lambda: [PatternType.DEVICE_REUSE, PatternType.ADDRESS_CLUSTER],
    )
    linkage_checks: list[LinkageKind] = Field(
        default_factory=lambda: [
            LinkageKind.NEW_ACCOUNTS,
            LinkageKind.CONFIRMED_PATTERN,
            LinkageKind.SHARED_ADDRESS,
        ],
        description="Linkage checks (in order) marking reports as malicious",
    )


class ForeignObjectRules(BaseModel):
    window_days: int = 7
    notify_threshold: int = 3


class PenaltyRules(BaseModel):
    """Score deltas applied by the engine (customers unless stated)."""
    suspicious_heavy: int = -50
    suspicious_medium: int = -30
    suspicious_light: int = -15
    suspicious_heavy_claims: int = 5
    suspicious_medium_claims: int = 3
    rider_damage: int = -15
    rider_damage_count: int = 3
    rider_damage_window_days: int = 7


class RecoveryRules(BaseModel):
    max_attempts: int = Field(
        default=1,
        description="Reinstatements allowed; a second offense is permanent",
    )
    recovery_score: int = Field(
        default=80,
        description="Score restored on reinstatement (reject_service + 10)",
    )


class PremiumRules(BaseModel):
    """Rider premium-order qualification counter (uncapped)."""
    normal_order: int = 1
    premium_order: int = -3
    timeout: int = -5
    damage: int = -10
    qualification_floor: int = 0


class TrustPolicy(BaseModel):
    """
    Complete trust policy.

    Loaded from YAML and injected into every component.
    """
    version: str = Field(
        default="1.0.0",
        description="Policy version for audit trail",
    )
    description: Optional[str] = None

    scores: ScoreThresholds = Field(default_factory=ScoreThresholds)
    behavior: BehaviorRules = Field(default_factory=BehaviorRules)
    lookback: LookbackRules = Field(default_factory=LookbackRules)
    fraud: FraudRules = Field(default_factory=FraudRules)
    food_safety: FoodSafetyRules = Field(default_factory=FoodSafetyRules)
    foreign_object: ForeignObjectRules = Field(default_factory=ForeignObjectRules)
    penalties: PenaltyRules = Field(default_factory=PenaltyRules)
    recovery: RecoveryRules = Field(default_factory=RecoveryRules)
    premium: PremiumRules = Field(default_factory=PremiumRules)

    @model_validator(mode="after")
    def _validate_tiers(self) -> "TrustPolicy":
        s = self.scores
        if not s.minimum <= s.reject_service <= s.warning <= s.maximum:
            raise ValueError("score tiers must satisfy minimum <= reject_service <= warning <= maximum")
        if not s.minimum <= s.initial <= s.maximum:
            raise ValueError("initial score must lie within [minimum, maximum]")
        return self

    def clamp(self, score: int) -> int:
        """Clamp a score into [minimum, maximum]."""
        return max(self.scores.minimum, min(self.scores.maximum, score))

    def fingerprint(self) -> str:
        """Short hash of the policy for audit."""
        return hashlib.sha256(self.model_dump_json().encode()).hexdigest()[:16]


# Default policy (fallback when no YAML is configured or it fails to load)
DEFAULT_POLICY = TrustPolicy(
    version="1.0.0",
    description="Default trust & risk policy",
)
