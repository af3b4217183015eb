"""
Fraud Pattern Recording & Confirmation

Every detected pattern is persisted. A pattern is auto-confirmed when
it has enough independent matches or enough related claims.
Confirmation is one-way and immediately:
1. Blacklists every related user
2. Deducts the confirmed-fraud penalty from each via the ledger
3. Sums merchant/rider exposure across the related claims
4. Writes an action summary onto the pattern

Per-user punishment runs in independent transactions; a failure on one
user is logged and does not undo the others.
"""

import logging
from datetime import datetime, UTC
from typing import Callable, Optional

from ..errors import StoreError
from ..ledger import TrustScoreLedger
from ..metrics import metrics
from ..policy import DEFAULT_POLICY, TrustPolicy
from ..schemas import EntityType, FraudPattern, PatternType, ReasonCodes
from ..store import LedgerStore

logger = logging.getLogger("trust_engine.detection")


def _utc_now() -> datetime:
    return datetime.now(UTC)


class PatternRecorder:
    """Persists patterns and carries out confirmation."""

    def __init__(
        self,
        store: LedgerStore,
        ledger: TrustScoreLedger,
        policy: TrustPolicy = DEFAULT_POLICY,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.store = store
        self.ledger = ledger
        self.policy = policy
        self.clock = clock or _utc_now

    def should_confirm(self, match_count: int, claim_count: int) -> bool:
        rules = self.policy.fraud
        return (
            match_count >= rules.auto_confirm_match_count
            or claim_count >= rules.auto_confirm_claim_count
        )

    async def record(
        self,
        pattern_type: PatternType,
        user_ids: list[int],
        order_ids: list[int],
        claim_ids: list[int],
        match_count: int,
        description: str,
        device_fingerprints: Optional[list[str]] = None,
        address_ids: Optional[list[int]] = None,
    ) -> FraudPattern:
        """
        Persist a detected pattern, confirming it when thresholds are met.

        Returns:
            The stored pattern (confirmed when auto-confirmation applied)
        """
        pattern = await self.store.create_fraud_pattern(
            FraudPattern(
                pattern_type=pattern_type,
                related_user_ids=list(dict.fromkeys(user_ids)),
                related_order_ids=list(dict.fromkeys(order_ids)),
                related_claim_ids=list(dict.fromkeys(claim_ids)),
                device_fingerprints=device_fingerprints or [],
                address_ids=address_ids or [],
                match_count=match_count,
                description=description,
                detected_at=self.clock(),
            )
        )
        logger.info("Recorded %s pattern %s: %s", pattern_type.value, pattern.id, description)

        if self.should_confirm(match_count, len(pattern.related_claim_ids)):
            pattern = await self.confirm(pattern.id)

        metrics.fraud_patterns_total.labels(
            pattern_type=pattern_type.value,
            confirmed=str(pattern.is_confirmed).lower(),
        ).inc()
        return pattern

    async def confirm(self, pattern_id: int) -> FraudPattern:
        """
        Confirm a pattern and punish the accounts behind it.

        Confirming an already-confirmed pattern is a no-op.
        """
        pattern = await self.store.get_fraud_pattern(pattern_id)
        if pattern.is_confirmed:
            return pattern

        reason = f"Confirmed fraud ring member (pattern {pattern_id})"
        punished = 0
        for user_id in pattern.related_user_ids:
            try:
                await self.store.blacklist_user(user_id, reason)
                await self.ledger.adjust(
                    EntityType.CUSTOMER,
                    user_id,
                    self.policy.fraud.confirmed_penalty,
                    ReasonCodes.SCORE_CONFIRMED_FRAUD,
                    reason,
                    related_type="fraud-pattern",
                    related_id=pattern_id,
                )
                punished += 1
            except Exception as e:
                logger.error("Punishing user %s for pattern %s failed: %s", user_id, pattern_id, e)
                metrics.errors_total.labels(error_type="FraudPunishmentFailed").inc()

        merchant_refund = await self._total_exposure(self.store.sum_claim_amounts_by_merchant, pattern)
        rider_refund = await self._total_exposure(self.store.sum_claim_amounts_by_rider, pattern)
        action = f"block_users;merchant_refund:{merchant_refund};rider_refund:{rider_refund}"

        confirmed = await self.store.confirm_fraud_pattern(pattern_id, action)
        logger.warning(
            "Pattern %s confirmed: %d/%d users punished (%s)",
            pattern_id, punished, len(pattern.related_user_ids), action,
        )
        return confirmed

    async def _total_exposure(self, sum_by_party, pattern: FraudPattern) -> int:
        try:
            losses = await sum_by_party(pattern.related_claim_ids)
        except StoreError as e:
            logger.warning("Exposure lookup failed for pattern %s: %s", pattern.id, e)
            return 0
        return sum(losses.values())
