"""
Fraud Detection Schemas

Results of the cross-account detectors and of the shared
account-linkage check they (and the food-safety breaker) rely on.
"""

from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field

from .entities import PatternType


class FraudDetectionResult(BaseModel):
    """
    Result from one fraud detector.

    confidence is the number of matches (users + claims) behind the hit.
    """
    is_fraud: bool = False
    pattern_type: Optional[PatternType] = None
    confidence: int = Field(default=0, ge=0)
    related_user_ids: list[int] = Field(default_factory=list)
    related_claim_ids: list[int] = Field(default_factory=list)
    description: str = ""
    should_block: bool = False
    merchant_suspect: bool = Field(
        default=False,
        description="Independent users complained about one merchant",
    )
    suspect_merchant_id: Optional[int] = None
    pattern_id: Optional[int] = Field(
        default=None,
        description="Persisted FraudPattern id when a pattern was recorded",
    )


class LinkageKind(str, Enum):
    """Ways a group of accounts can be tied together."""
    CONFIRMED_PATTERN = "confirmed-pattern"
    SHARED_DEVICE = "shared-device"
    SHARED_ADDRESS = "shared-address"
    NEW_ACCOUNTS = "new-accounts"


class LinkageResult(BaseModel):
    linked: bool = False
    kind: Optional[LinkageKind] = None
    detail: str = ""
