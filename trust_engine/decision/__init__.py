# Claim Decision Module
from .engine import (
    TASK_DEDUCT_DEPOSIT,
    TASK_RECORD_PLATFORM_PAY,
    TASK_RECORD_WARNING,
    TASK_RESTRICT_ACCOUNT,
    TASK_SUSPICIOUS_PATTERN,
    ClaimDecisionEngine,
    parse_claim_type,
)

__all__ = [
    "ClaimDecisionEngine",
    "TASK_DEDUCT_DEPOSIT",
    "TASK_RECORD_PLATFORM_PAY",
    "TASK_RECORD_WARNING",
    "TASK_RESTRICT_ACCOUNT",
    "TASK_SUSPICIOUS_PATTERN",
    "parse_claim_type",
]
