# Data schemas for the trust engine
from .claims import (
    Claim,
    ClaimStatus,
    ClaimType,
    DepositDeductionResult,
    FoodSafetyReport,
    Order,
    Reservation,
)
from .entities import (
    SCORE_MAX,
    SCORE_MIN,
    BehaviorStats,
    EntityProfile,
    EntityType,
    FraudPattern,
    PatternType,
    TrustScoreChange,
)
from .lookback import CorrelationResult, LookbackPeriod, LookbackResult
from .decisions import (
    BehaviorResult,
    BehaviorStatus,
    CompensationSource,
    Decision,
    DecisionType,
    FoodSafetyCheckResult,
    ForeignObjectResult,
    ReasonCodes,
)
from .fraud import FraudDetectionResult, LinkageKind, LinkageResult

__all__ = [
    # Claims
    "Claim",
    "ClaimStatus",
    "ClaimType",
    "DepositDeductionResult",
    "FoodSafetyReport",
    "Order",
    "Reservation",
    # Entities
    "SCORE_MAX",
    "SCORE_MIN",
    "BehaviorStats",
    "EntityProfile",
    "EntityType",
    "FraudPattern",
    "PatternType",
    "TrustScoreChange",
    # Lookback
    "CorrelationResult",
    "LookbackPeriod",
    "LookbackResult",
    # Decisions
    "BehaviorResult",
    "BehaviorStatus",
    "CompensationSource",
    "Decision",
    "DecisionType",
    "FoodSafetyCheckResult",
    "ForeignObjectResult",
    "ReasonCodes",
    # Fraud
    "FraudDetectionResult",
    "LinkageKind",
    "LinkageResult",
]
