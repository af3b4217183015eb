# Policy Module
from .loader import load_policy
from .rules import (
    DEFAULT_POLICY,
    BehaviorRules,
    FoodSafetyRules,
    ForeignObjectRules,
    FraudRules,
    LookbackRules,
    PenaltyRules,
    PremiumRules,
    RecoveryRules,
    ScoreThresholds,
    TrustPolicy,
)

__all__ = [
    "DEFAULT_POLICY",
    "BehaviorRules",
    "FoodSafetyRules",
    "ForeignObjectRules",
    "FraudRules",
    "LookbackRules",
    "PenaltyRules",
    "PremiumRules",
    "RecoveryRules",
    "ScoreThresholds",
    "TrustPolicy",
    "load_policy",
]
