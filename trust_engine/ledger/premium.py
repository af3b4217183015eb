"""
Rider Premium-Order Qualification

An uncapped counter, separate from the trust score, that gates
eligibility for high-value orders. It has no suspension semantics.
"""

import logging
from enum import Enum

from ..policy import DEFAULT_POLICY, TrustPolicy
from ..schemas import EntityType
from ..store import LedgerStore

logger = logging.getLogger("trust_engine.ledger")


class PremiumEvent(str, Enum):
    NORMAL_ORDER = "normal-order"
    PREMIUM_ORDER = "premium-order"
    TIMEOUT = "timeout"
    DAMAGE = "damage"


class PremiumQualification:
    """Tracks the rider premium-order counter."""

    def __init__(self, store: LedgerStore, policy: TrustPolicy = DEFAULT_POLICY):
        self.store = store
        self.policy = policy

    def delta_for(self, event: PremiumEvent) -> int:
        rules = self.policy.premium
        return {
            PremiumEvent.NORMAL_ORDER: rules.normal_order,
            PremiumEvent.PREMIUM_ORDER: rules.premium_order,
            PremiumEvent.TIMEOUT: rules.timeout,
            PremiumEvent.DAMAGE: rules.damage,
        }[PremiumEvent(event)]

    async def record(self, rider_id: int, event: PremiumEvent) -> int:
        """Apply the event's delta and return the new counter value."""
        event = PremiumEvent(event)
        new_value = await self.store.adjust_premium_score(rider_id, self.delta_for(event), event.value)
        logger.debug("rider %s premium counter -> %d (%s)", rider_id, new_value, event.value)
        return new_value

    async def is_qualified(self, rider_id: int) -> bool:
        profile = await self.store.get_profile(EntityType.RIDER, rider_id)
        return profile.premium_score >= self.policy.premium.qualification_floor
