"""
Lookback Search

Expanding-window claim history search: 30 days, then 90 days, then
1 year, stopping at the first window that covers `target` orders.
Active users are evaluated on a short window; inactive accounts still
get a bounded one-year look.

Correlation analysis flags claim sets that are concentrated in time,
on one merchant or rider, or recent and frequent.
"""

import logging
from collections import Counter
from datetime import datetime, timedelta, UTC
from typing import Callable, Optional

from ..policy import DEFAULT_POLICY, TrustPolicy
from ..schemas import Claim, CorrelationResult, LookbackPeriod, LookbackResult
from ..store import LedgerStore

logger = logging.getLogger("trust_engine.lookback")

PERIODS = (LookbackPeriod.DAYS_30, LookbackPeriod.DAYS_90, LookbackPeriod.YEAR_1)


def _utc_now() -> datetime:
    return datetime.now(UTC)


class LookbackSearch:
    """Claim history search and correlation over a user's claims."""

    def __init__(
        self,
        store: LedgerStore,
        policy: TrustPolicy = DEFAULT_POLICY,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.store = store
        self.policy = policy
        self.clock = clock or _utc_now

    async def search(self, user_id: int, target: Optional[int] = None) -> LookbackResult:
        """
        Search successively wider windows until `target` orders are covered.

        Args:
            user_id: Claimant
            target: Orders wanted (defaults to policy lookback.target_orders)

        Returns:
            Result of the narrowest sufficient window, or of the 1-year
            window when none suffices
        """
        target = target if target is not None else self.policy.lookback.target_orders
        now = self.clock()

        result = LookbackResult()
        for period, days in zip(PERIODS, self.policy.lookback.window_days):
            result = await self._search_window(user_id, now - timedelta(days=days), target)
            result.period = period
            if result.orders_checked >= target:
                break
        return result

    async def _search_window(self, user_id: int, since: datetime, target: int) -> LookbackResult:
        claims = await self.store.list_user_claims(user_id, since)

        # Distinct orders in claim order, capped to the target
        order_ids = list(dict.fromkeys(c.order_id for c in claims))[:target]

        merchants: list[int] = []
        riders: list[int] = []
        if order_ids:
            try:
                orders = await self.store.get_orders(order_ids)
            except Exception as e:
                # Window result stands without party resolution
                logger.warning("Merchant/rider lookup failed for user %s: %s", user_id, e)
            else:
                merchants = list(dict.fromkeys(o.merchant_id for o in orders))
                riders = list(dict.fromkeys(o.rider_id for o in orders if o.rider_id is not None))

        return LookbackResult(
            orders_checked=len(order_ids),
            orders=order_ids,
            claims_found=len(claims),
            claims=claims,
            merchants=merchants,
            riders=riders,
        )

    async def correlate(self, claims: list[Claim]) -> CorrelationResult:
        """
        Flag suspicious structure in a claim set.

        - time_concentrated: at least N claims, oldest to newest within the window
        - same_merchant / same_rider: one party behind >= share of the orders
        - high_frequency: at least N claims in the recent window

        Args:
            claims: Claims to analyze (typically LookbackResult.claims)

        Returns:
            CorrelationResult; is_suspicious is the OR of all flags
        """
        if not claims:
            return CorrelationResult(details="no claims")

        rules = self.policy.lookback
        result = CorrelationResult()
        patterns: list[str] = []

        if len(claims) >= rules.time_concentration_min_claims:
            times = [c.created_at for c in claims]
            if max(times) - min(times) <= timedelta(hours=rules.time_concentration_hours):
                result.time_concentrated = True
                patterns.append(f"{len(claims)} claims within {rules.time_concentration_hours}h")

        try:
            orders = await self.store.get_orders(list(dict.fromkeys(c.order_id for c in claims)))
        except Exception as e:
            logger.warning("Order lookup failed during correlation: %s", e)
            orders = []

        if orders:
            total = len(orders)
            merchant_id, count = Counter(o.merchant_id for o in orders).most_common(1)[0]
            if count / total >= rules.same_party_share:
                result.same_merchant = True
                patterns.append(f"merchant {merchant_id} on {count * 100 // total}% of orders")

            rider_counts = Counter(o.rider_id for o in orders if o.rider_id is not None)
            if rider_counts:
                rider_id, count = rider_counts.most_common(1)[0]
                if count / total >= rules.same_party_share:
                    result.same_rider = True
                    patterns.append(f"rider {rider_id} on {count * 100 // total}% of orders")

        recent_since = self.clock() - timedelta(days=rules.high_frequency_days)
        recent = sum(1 for c in claims if c.created_at >= recent_since)
        if recent >= rules.high_frequency_claims:
            result.high_frequency = True
            patterns.append(f"{recent} claims in {rules.high_frequency_days}d")

        result.is_suspicious = (
            result.time_concentrated
            or result.same_merchant
            or result.same_rider
            or result.high_frequency
        )
        result.details = " + ".join(patterns) if patterns else "claims spread across time and parties"
        return result

    async def recent_claim_count(self, user_id: int, days: int) -> int:
        """Claims filed by a user in the trailing `days`."""
        since = self.clock() - timedelta(days=days)
        return len(await self.store.list_user_claims(user_id, since))
