"""
Food-Safety Circuit Breaker

Suspends a merchant when food-safety reports are credible:

1. A high-trust reporter with evidence trips a 24h breaker alone
2. Fewer than 3 reports in the trailing hour: record only
3. 3+ reports with a repeat reporter or from linked accounts: malicious,
   no breaker
4. 3+ independent reports: 48h breaker

Tripping the breaker also cancels the merchant's future reservations
and tells each affected customer about their refund.
"""

import logging
from collections import Counter
from datetime import datetime, timedelta, UTC
from typing import Callable, Optional, Sequence

from ..collaborators import Notifier, safe_notify
from ..detection import AccountLinkage
from ..errors import NotFoundError, StoreError
from ..metrics import metrics
from ..policy import DEFAULT_POLICY, TrustPolicy
from ..schemas import EntityType, FoodSafetyCheckResult, FoodSafetyReport, ReasonCodes
from ..store import LedgerStore

logger = logging.getLogger("trust_engine.safety")


def _utc_now() -> datetime:
    return datetime.now(UTC)


class FoodSafetyCircuitBreaker:
    """Evaluates food-safety reports and trips the merchant breaker."""

    def __init__(
        self,
        store: LedgerStore,
        linkage: Optional[AccountLinkage] = None,
        notifier: Optional[Notifier] = None,
        policy: TrustPolicy = DEFAULT_POLICY,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.store = store
        self.linkage = linkage or AccountLinkage(store)
        self.notifier = notifier
        self.policy = policy
        self.clock = clock or _utc_now

    async def evaluate(
        self,
        user_id: int,
        merchant_id: int,
        evidence: Sequence[str] = (),
    ) -> FoodSafetyCheckResult:
        """
        Decide whether a report should trip the breaker.

        The current report is not yet stored; it is counted on top of
        the reports already in the window.

        Args:
            user_id: Reporter
            merchant_id: Merchant reported
            evidence: Evidence URLs attached to the report

        Returns:
            FoodSafetyCheckResult with the breaker duration when tripping
        """
        rules = self.policy.food_safety

        try:
            reporter = await self.store.get_profile(EntityType.CUSTOMER, user_id)
        except NotFoundError:
            reporter = None
        if reporter is not None and reporter.trust_score >= rules.high_trust_score and evidence:
            return FoodSafetyCheckResult(
                should_circuit_break=True,
                reason_code=ReasonCodes.FOOD_SAFETY_HIGH_TRUST_EVIDENCE,
                message="High-trust reporter with evidence, immediate circuit break",
                duration_hours=rules.immediate_break_hours,
            )

        since = self.clock() - timedelta(hours=rules.window_hours)
        reports = await self.store.list_food_safety_reports(merchant_id, since)
        if len(reports) + 1 < rules.report_threshold:
            return FoodSafetyCheckResult(
                reason_code=ReasonCodes.FOOD_SAFETY_INSUFFICIENT_REPORTS,
                message="Below the circuit-break threshold, report recorded only",
            )

        reporter_counts = Counter([user_id, *(r.user_id for r in reports)])
        repeat_reporters = sorted(uid for uid, n in reporter_counts.items() if n > 1)
        if repeat_reporters:
            return self._malicious(merchant_id, f"repeat reports from user(s) {repeat_reporters}")

        linkage = await self.linkage.check(
            list(reporter_counts),
            rules.linkage_checks,
            recent_order_sample=rules.recent_order_sample,
            new_account_min_users=rules.new_account_min_users,
            confirmed_pattern_types=rules.confirmed_pattern_types,
        )
        if linkage.linked:
            return self._malicious(merchant_id, linkage.detail)

        return FoodSafetyCheckResult(
            should_circuit_break=True,
            reason_code=ReasonCodes.FOOD_SAFETY_REPORT_THRESHOLD,
            message=(
                f"{len(reports) + 1} independent food-safety reports in "
                f"{rules.window_hours}h, circuit break"
            ),
            duration_hours=rules.threshold_break_hours,
        )

    def _malicious(self, merchant_id: int, detail: str) -> FoodSafetyCheckResult:
        logger.warning("Malicious food-safety reports against merchant %s (%s)", merchant_id, detail)
        return FoodSafetyCheckResult(
            is_malicious=True,
            reason_code=ReasonCodes.FOOD_SAFETY_MALICIOUS,
            message=f"Coordinated reports detected ({detail}), no circuit break",
        )

    async def trip(self, merchant_id: int, reason: str, duration_hours: int) -> int:
        """
        Suspend a merchant and cancel its future reservations.

        Returns:
            Number of reservations cancelled
        """
        now = self.clock()
        await self.store.suspend_merchant(
            merchant_id, reason, until=now + timedelta(hours=duration_hours)
        )
        logger.warning("Merchant %s circuit-broken for %dh: %s", merchant_id, duration_hours, reason)

        await safe_notify(
            self.notifier, EntityType.MERCHANT, merchant_id,
            "Food-safety circuit break",
            f"Your store has been suspended for {duration_hours} hours over food-safety reports. "
            "Please remediate immediately.",
            "merchant", merchant_id,
        )

        try:
            reservations = await self.store.list_future_reservations(merchant_id, now)
        except StoreError as e:
            logger.error("Could not list reservations for merchant %s: %s", merchant_id, e)
            reservations = []

        try:
            cancelled = await self.store.cancel_future_reservations(
                merchant_id, f"Merchant circuit break: {reason}", now
            )
        except StoreError as e:
            logger.error("Could not cancel reservations for merchant %s: %s", merchant_id, e)
            return 0

        # Customers hear about refunds only once the cancellation is stored
        for reservation in reservations:
            if reservation.refund_amount <= 0:
                continue
            await safe_notify(
                self.notifier, EntityType.CUSTOMER, reservation.user_id,
                "Reservation cancelled",
                f"Your reservation on {reservation.reservation_at:%Y-%m-%d} was cancelled by the "
                f"merchant; {reservation.refund_amount} will be refunded to the original payment method.",
                "reservation", reservation.id,
            )
        return cancelled

    async def handle_report(
        self,
        user_id: int,
        merchant_id: int,
        evidence: Sequence[str] = (),
        claim_id: Optional[int] = None,
    ) -> FoodSafetyCheckResult:
        """Evaluate a report, record it, and trip the breaker when warranted."""
        result = await self.evaluate(user_id, merchant_id, evidence)

        await self.store.create_food_safety_report(
            FoodSafetyReport(
                user_id=user_id,
                merchant_id=merchant_id,
                claim_id=claim_id,
                created_at=self.clock(),
            )
        )

        metrics.circuit_breaks_total.labels(reason_code=result.reason_code).inc()
        if result.should_circuit_break:
            await self.trip(merchant_id, result.message, result.duration_hours)
        return result
