"""
Lookback Schemas

Transient results of the expanding-window history search and the
correlation analysis run over the claims it found.
"""

from enum import Enum

from pydantic import BaseModel, Field

from .claims import Claim


class LookbackPeriod(str, Enum):
    """Windows searched in order until enough orders are found."""
    DAYS_30 = "30d"
    DAYS_90 = "90d"
    YEAR_1 = "1y"


class LookbackResult(BaseModel):
    """Claims history found in the narrowest sufficient window."""
    period: LookbackPeriod = LookbackPeriod.DAYS_30
    orders_checked: int = Field(default=0, ge=0)
    orders: list[int] = Field(default_factory=list)
    claims_found: int = Field(default=0, ge=0)
    claims: list[Claim] = Field(default_factory=list)
    merchants: list[int] = Field(default_factory=list)
    riders: list[int] = Field(default_factory=list)


class CorrelationResult(BaseModel):
    """
    Pattern flags over a claim set.

    is_suspicious is the logical OR of the individual flags.
    """
    is_suspicious: bool = False
    time_concentrated: bool = False
    same_merchant: bool = False
    same_rider: bool = False
    high_frequency: bool = False
    details: str = ""
