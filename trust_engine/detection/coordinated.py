"""
Coordinated Claims Detection

Looks for several claims against the same merchant within a short
window around a new claim. Enough distinct claimants is not enough on
its own: the claimants must also be linked (see AccountLinkage).

Unlinked simultaneous complaints from independent users indict the
merchant, not the users: the result is merchant_suspect, never fraud.
"""

import logging
from datetime import datetime, timedelta
from typing import Callable, Optional

from ..metrics import metrics
from ..policy import DEFAULT_POLICY, TrustPolicy
from ..schemas import FraudDetectionResult, PatternType
from ..store import LedgerStore
from .detector import BaseFraudDetector
from .linkage import AccountLinkage
from .patterns import PatternRecorder

logger = logging.getLogger("trust_engine.detection")


class CoordinatedClaimsDetector(BaseFraudDetector):
    pattern_type = PatternType.COORDINATED_CLAIMS

    def __init__(
        self,
        store: LedgerStore,
        recorder: PatternRecorder,
        linkage: AccountLinkage,
        policy: TrustPolicy = DEFAULT_POLICY,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        super().__init__(store, recorder, policy, clock)
        self.linkage = linkage

    async def detect(self, key) -> FraudDetectionResult:
        """
        Check a claim for coordination.

        Args:
            key: Claim id

        Returns:
            Fraud result, merchant-suspect result, or negative
        """
        rules = self.policy.fraud
        claim = await self.store.get_claim(int(key))
        order = await self.store.get_order(claim.order_id)
        merchant_id = order.merchant_id

        window = timedelta(hours=rules.coordinated_window_hours)
        in_window = await self.store.list_merchant_claims(
            merchant_id,
            claim.created_at - window,
            claim.created_at + window,
        )
        others = [c for c in in_window if c.id != claim.id]
        if len(others) < rules.coordinated_min_co_claims:
            return self.negative()

        user_ids = list(dict.fromkeys([claim.user_id] + [c.user_id for c in others]))
        if len(user_ids) < rules.min_users:
            return self.negative(confidence=len(user_ids))

        linkage = await self.linkage.check(
            user_ids,
            rules.linkage_checks,
            recent_order_sample=rules.recent_order_sample,
            new_account_min_users=rules.new_account_min_users,
            confirmed_pattern_types=rules.confirmed_pattern_types,
        )

        if not linkage.linked:
            metrics.merchant_suspects_total.inc()
            logger.warning(
                "%d independent users complained about merchant %s within %dh",
                len(user_ids), merchant_id, rules.coordinated_window_hours,
            )
            return FraudDetectionResult(
                is_fraud=False,
                pattern_type=self.pattern_type,
                description=(
                    f"{len(user_ids)} independent users complained about merchant {merchant_id} "
                    f"within {rules.coordinated_window_hours}h; investigate the merchant"
                ),
                related_user_ids=user_ids,
                merchant_suspect=True,
                suspect_merchant_id=merchant_id,
            )

        related = [claim] + others
        claim_ids = [c.id for c in related]
        order_ids = list(dict.fromkeys(c.order_id for c in related))
        orders = await self.store.get_orders(order_ids)
        address_ids = list(dict.fromkeys(o.address_id for o in orders if o.address_id is not None))

        description = (
            f"{len(user_ids)} linked users ({linkage.detail}) filed {len(claim_ids)} claims "
            f"against merchant {merchant_id} within {rules.coordinated_window_hours}h"
        )
        pattern = await self.recorder.record(
            self.pattern_type,
            user_ids,
            order_ids,
            claim_ids,
            match_count=len(claim_ids),
            description=description,
            address_ids=address_ids,
        )

        return FraudDetectionResult(
            is_fraud=True,
            pattern_type=self.pattern_type,
            confidence=len(user_ids) + len(claim_ids),
            related_user_ids=user_ids,
            related_claim_ids=claim_ids,
            description=description,
            should_block=self.should_block(len(user_ids), len(claim_ids)),
            pattern_id=pattern.id,
        )
