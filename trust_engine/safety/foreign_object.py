"""
Foreign-Object Tracker

Advisory count of foreign-object claims per merchant. Foreign-object
claims are always compensated instantly, so the tracker never
suspends or deducts; it only prompts hygiene remediation.
"""

import logging
from datetime import datetime, timedelta, UTC
from typing import Callable, Optional

from ..collaborators import Notifier, safe_notify
from ..policy import DEFAULT_POLICY, TrustPolicy
from ..schemas import ClaimType, EntityType, ForeignObjectResult
from ..store import LedgerStore

logger = logging.getLogger("trust_engine.safety")


def _utc_now() -> datetime:
    return datetime.now(UTC)


class ForeignObjectTracker:

    def __init__(
        self,
        store: LedgerStore,
        notifier: Optional[Notifier] = None,
        policy: TrustPolicy = DEFAULT_POLICY,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.store = store
        self.notifier = notifier
        self.policy = policy
        self.clock = clock or _utc_now

    async def check_status(self, merchant_id: int) -> ForeignObjectResult:
        rules = self.policy.foreign_object
        since = self.clock() - timedelta(days=rules.window_days)
        claims = await self.store.list_merchant_claims(
            merchant_id, since, claim_type=ClaimType.FOREIGN_OBJECT
        )

        result = ForeignObjectResult(
            merchant_id=merchant_id,
            window_days=rules.window_days,
            foreign_object_count=len(claims),
        )
        if len(claims) >= rules.notify_threshold:
            result.should_notify = True
            result.message = (
                f"{len(claims)} foreign-object claims in the last {rules.window_days} days. "
                "Please review kitchen hygiene and packaging."
            )
        return result

    async def check_and_notify(self, merchant_id: int) -> ForeignObjectResult:
        """Check status and send the hygiene notice when the threshold is reached."""
        result = await self.check_status(merchant_id)
        if result.should_notify:
            logger.info("Merchant %s: %d foreign-object claims", merchant_id, result.foreign_object_count)
            await safe_notify(
                self.notifier, EntityType.MERCHANT, merchant_id,
                "Foreign-object reminder", result.message, "merchant", merchant_id,
            )
        return result
