"""
Claim Decision Engine

Decides how a claim is compensated by blending the claim type with
the claimant's behavior tier.

Claim type sets the base amount and who pays:
- foreign-object: full amount, merchant
- food-safety: always manual review, never auto-decided
- damage: full amount, rider deposit
- timeout: delivery fee only, rider deposit

Behavior tier then decides approval and may move the cost to the
platform. Policy is "always compensate, then restrict": only the
evidence-required tier (without evidence) withholds payment.

Bookkeeping (warnings, platform-pay records, restriction, deposit
deduction, suspicious-pattern scoring) is dispatched as side-effect
tasks and completes after the Decision is returned.
"""

import asyncio
import logging
from datetime import datetime, timedelta, UTC
from typing import Any, Callable, Optional, Union

from ..collaborators import CompensationExecutor, Notifier, safe_notify
from ..config import settings
from ..errors import StoreError, ValidationError
from ..ledger import TrustScoreLedger
from ..lookback import LookbackSearch
from ..metrics import metrics
from ..policy import DEFAULT_POLICY, TrustPolicy
from ..schemas import (
    BehaviorResult,
    BehaviorStatus,
    Claim,
    ClaimStatus,
    ClaimType,
    CompensationSource,
    Decision,
    DecisionType,
    EntityType,
    ReasonCodes,
    TrustScoreChange,
)
from ..store import LedgerStore
from ..tasks import SideEffectTask, TaskDispatcher, TaskRegistry, idempotency_key

logger = logging.getLogger("trust_engine.decision")

# Side-effect task names
TASK_RECORD_WARNING = "record_warning"
TASK_RECORD_PLATFORM_PAY = "record_platform_pay"
TASK_RESTRICT_ACCOUNT = "restrict_account"
TASK_DEDUCT_DEPOSIT = "deduct_deposit"
TASK_SUSPICIOUS_PATTERN = "score_suspicious_pattern"

# Claim types whose history is looked back on and pattern-scored
LOOKBACK_CLAIM_TYPES = (ClaimType.DAMAGE, ClaimType.FOOD_SAFETY)

APPROVED_DECISIONS = (DecisionType.INSTANT, DecisionType.AUTO, DecisionType.PLATFORM_PAY)


def _utc_now() -> datetime:
    return datetime.now(UTC)


def parse_claim_type(value: Union[ClaimType, str]) -> ClaimType:
    try:
        return ClaimType(value)
    except ValueError:
        raise ValidationError(f"unknown claim type: {value!r}") from None


class ClaimDecisionEngine:
    """
    Evaluates claims and records them.

    Usage:
        engine = ClaimDecisionEngine(store, ledger, dispatcher)
        engine.register_handlers(registry)
        decision = await engine.evaluate(user_id, order_id, 3000, 500, "damage", False)
        claim = await engine.record_claim(user_id, order_id, "damage", 3000, decision)
    """

    def __init__(
        self,
        store: LedgerStore,
        ledger: TrustScoreLedger,
        dispatcher: TaskDispatcher,
        lookback: Optional[LookbackSearch] = None,
        notifier: Optional[Notifier] = None,
        compensation: Optional[CompensationExecutor] = None,
        policy: TrustPolicy = DEFAULT_POLICY,
        clock: Optional[Callable[[], datetime]] = None,
        read_timeout: Optional[float] = None,
    ):
        self.store = store
        self.ledger = ledger
        self.dispatcher = dispatcher
        self.policy = policy
        self.clock = clock or _utc_now
        self.lookback = lookback or LookbackSearch(store, policy, self.clock)
        self.notifier = notifier
        self.compensation = compensation
        self.read_timeout = read_timeout or settings.read_timeout_seconds

    def register_handlers(self, registry: TaskRegistry) -> None:
        """Register this engine's side-effect handlers."""
        registry.register(TASK_RECORD_WARNING, self._handle_record_warning)
        registry.register(TASK_RECORD_PLATFORM_PAY, self._handle_record_platform_pay)
        registry.register(TASK_RESTRICT_ACCOUNT, self._handle_restrict_account)
        registry.register(TASK_DEDUCT_DEPOSIT, self._handle_deduct_deposit)
        registry.register(TASK_SUSPICIOUS_PATTERN, self._handle_suspicious_pattern)

    # =========================================================================
    # Evaluation
    # =========================================================================

    async def evaluate(
        self,
        user_id: int,
        order_id: int,
        claim_amount: int,
        delivery_fee: int,
        claim_type: Union[ClaimType, str],
        has_evidence: bool = False,
    ) -> Decision:
        """
        Decide how a claim is compensated.

        Args:
            user_id: Claimant
            order_id: Order the claim is filed against
            claim_amount: Amount claimed (minor units)
            delivery_fee: Order delivery fee (timeout compensation)
            claim_type: foreign-object, food-safety, damage or timeout
            has_evidence: Evidence photos were submitted

        Returns:
            Decision for the caller to record and execute
        """
        claim_type = parse_claim_type(claim_type)

        if claim_type == ClaimType.FOOD_SAFETY:
            decision = Decision(
                decision_type=DecisionType.MANUAL,
                approved=False,
                amount=0,
                reason="Food-safety claims require manual review",
                reason_code=ReasonCodes.CLAIM_FOOD_SAFETY_REVIEW,
                compensation_source=CompensationSource.MERCHANT,
                needs_review=True,
                review_message="Food-safety claim: full refund; medical costs negotiated separately",
            )
            await self._attach_lookback(decision, user_id)
            return self._finish(decision)

        amount, source = self._base_compensation(claim_type, claim_amount, delivery_fee)

        try:
            behavior = await asyncio.wait_for(self.check_behavior(user_id), self.read_timeout)
        except (StoreError, asyncio.TimeoutError) as e:
            logger.warning("Behavior lookup failed for user %s, failing open: %r", user_id, e)
            metrics.degraded_decisions_total.inc()
            decision = Decision(
                decision_type=DecisionType.INSTANT,
                approved=True,
                amount=amount,
                reason="Behavior check unavailable; degraded to instant approval",
                reason_code=ReasonCodes.CLAIM_DEGRADED_BEHAVIOR_LOOKUP,
                compensation_source=source,
                degraded=True,
            )
            return self._finish(decision)

        decision = self._apply_behavior(behavior, amount, source, has_evidence)

        if decision.approved:
            await self._dispatch_behavior_effects(behavior, user_id, order_id)

        if claim_type in LOOKBACK_CLAIM_TYPES:
            await self._attach_lookback(decision, user_id)
        return self._finish(decision)

    def _base_compensation(
        self,
        claim_type: ClaimType,
        claim_amount: int,
        delivery_fee: int,
    ) -> tuple[int, CompensationSource]:
        if claim_type == ClaimType.TIMEOUT:
            return delivery_fee, CompensationSource.RIDER
        if claim_type == ClaimType.DAMAGE:
            return claim_amount, CompensationSource.RIDER
        return claim_amount, CompensationSource.MERCHANT

    def _apply_behavior(
        self,
        behavior: BehaviorResult,
        amount: int,
        source: CompensationSource,
        has_evidence: bool,
    ) -> Decision:
        status = behavior.status
        decision = Decision(
            decision_type=DecisionType.INSTANT,
            approved=True,
            amount=amount,
            compensation_source=source,
            behavior_status=status,
        )

        if status == BehaviorStatus.NORMAL:
            decision.reason = "Normal user, instant compensation"
            decision.reason_code = ReasonCodes.CLAIM_NORMAL_INSTANT

        elif status == BehaviorStatus.WARNED:
            decision.reason = "First warning, compensated instantly"
            decision.reason_code = ReasonCodes.CLAIM_FIRST_WARNING
            decision.warning_text = (
                f"You have claimed {behavior.claim_count + 1} times on {behavior.takeout_orders} "
                f"orders in the last {behavior.recent_months} months. "
                "Future claims require evidence photos."
            )

        elif status == BehaviorStatus.EVIDENCE_REQUIRED:
            if has_evidence:
                decision.reason = "Evidence provided, compensated instantly"
                decision.reason_code = ReasonCodes.CLAIM_EVIDENCE_PROVIDED
            else:
                decision.decision_type = DecisionType.EVIDENCE_REQUIRED
                decision.approved = False
                decision.amount = 0
                decision.needs_evidence = True
                decision.reason = "Evidence required"
                decision.reason_code = ReasonCodes.CLAIM_EVIDENCE_MISSING
                decision.warning_text = "You have been warned. Please resubmit the claim with evidence photos."

        elif status == BehaviorStatus.PLATFORM_PAY:
            decision.decision_type = DecisionType.PLATFORM_PAY
            decision.compensation_source = CompensationSource.PLATFORM
            decision.reason = "Problem claimant, compensated by the platform"
            decision.reason_code = ReasonCodes.CLAIM_PLATFORM_PAY
            decision.warning_text = (
                f"Your claim behavior is abnormal ({behavior.claim_count + 1} claims on "
                f"{behavior.takeout_orders} orders). This claim is paid by the platform; "
                "continued abuse will end service."
            )

        elif status == BehaviorStatus.REJECT_SERVICE:
            decision.decision_type = DecisionType.PLATFORM_PAY
            decision.compensation_source = CompensationSource.PLATFORM
            decision.reason = "Service rejected, compensated by the platform"
            decision.reason_code = ReasonCodes.CLAIM_REJECT_SERVICE
            decision.warning_text = (
                "Your account has been restricted for abnormal claim behavior. "
                "This claim is paid by the platform."
            )

        return decision

    async def _dispatch_behavior_effects(self, behavior: BehaviorResult, user_id: int, order_id: int) -> None:
        payload = {"user_id": user_id, "order_id": order_id}
        if behavior.should_warn:
            await self._submit(TASK_RECORD_WARNING, user_id, order_id, payload)
        if behavior.status == BehaviorStatus.PLATFORM_PAY:
            await self._submit(TASK_RECORD_PLATFORM_PAY, user_id, order_id, payload)
        elif behavior.status == BehaviorStatus.REJECT_SERVICE:
            await self._submit(TASK_RESTRICT_ACCOUNT, user_id, order_id, payload)

    async def _attach_lookback(self, decision: Decision, user_id: int) -> None:
        try:
            result = await asyncio.wait_for(self.lookback.search(user_id), self.read_timeout)
            correlation = await asyncio.wait_for(self.lookback.correlate(result.claims), self.read_timeout)
        except (StoreError, asyncio.TimeoutError) as e:
            logger.warning("Lookback failed for user %s: %r", user_id, e)
            return
        decision.lookback = result
        decision.correlation = correlation

    def _finish(self, decision: Decision) -> Decision:
        metrics.decisions_total.labels(decision_type=decision.decision_type.value).inc()
        return decision

    # =========================================================================
    # Behavior Classification
    # =========================================================================

    async def check_behavior(self, user_id: int) -> BehaviorResult:
        """
        Classify a claimant over the behavior horizon.

        Tiers, highest first:
        1. reject-service: platform-paid claims reached the limit
        2. platform-pay: any platform-paid claim, or repeated warnings
        3. evidence-required: already warned
        4. warned: few orders with many claims, or a high claim ratio
        5. normal
        """
        rules = self.policy.behavior
        since = self.clock() - timedelta(days=30 * rules.horizon_months)
        stats = await self.store.get_behavior_stats(user_id, since)

        result = BehaviorResult(
            recent_months=rules.horizon_months,
            takeout_orders=stats.takeout_orders_90d,
            claim_count=stats.claims_90d,
            claim_ratio=stats.claims_90d / stats.takeout_orders_90d if stats.takeout_orders_90d else 0.0,
            warning_count=stats.warning_count,
            platform_pay_count=stats.platform_pay_count,
        )

        # The current claim is not yet recorded, hence +1
        claims_with_current = result.claim_count + 1
        trips_warning = claims_with_current >= rules.warning_claim_count and (
            result.takeout_orders <= rules.warning_order_count
            or result.claim_ratio >= rules.warning_ratio
        )

        if stats.platform_pay_count >= rules.reject_service_platform_pays:
            result.status = BehaviorStatus.REJECT_SERVICE
            result.message = f"{stats.platform_pay_count} platform-paid claims, service rejected"
        elif stats.platform_pay_count > 0 or stats.warning_count >= rules.platform_pay_warning_count:
            result.status = BehaviorStatus.PLATFORM_PAY
            result.message = "Repeated abnormal claims, platform pays"
        elif stats.warning_count > 0 or stats.requires_evidence:
            result.status = BehaviorStatus.EVIDENCE_REQUIRED
            # Tripping the trigger again escalates toward platform-pay
            result.should_warn = trips_warning
            result.message = "Already warned, evidence required"
        elif trips_warning:
            result.status = BehaviorStatus.WARNED
            result.should_warn = True
            result.message = (
                f"{claims_with_current} claims on {result.takeout_orders} orders "
                f"({result.claim_ratio:.0%}), warning triggered"
            )
        else:
            result.status = BehaviorStatus.NORMAL
            result.message = "Normal user"

        return result

    # =========================================================================
    # Claim Recording
    # =========================================================================

    async def record_claim(
        self,
        user_id: int,
        order_id: int,
        claim_type: Union[ClaimType, str],
        claim_amount: int,
        decision: Decision,
        description: str = "",
        evidence_urls: Optional[list[str]] = None,
    ) -> Claim:
        """
        Persist a claim with the outcome of its decision.

        Dispatches the rider-deposit deduction for approved rider-paid
        takeout claims, and suspicious-pattern scoring for damage and
        food-safety claims with a suspicious history.

        Returns:
            The stored claim
        """
        claim_type = parse_claim_type(claim_type)

        if decision.decision_type in APPROVED_DECISIONS:
            status = ClaimStatus.AUTO_APPROVED
        elif decision.decision_type == DecisionType.MANUAL:
            status = ClaimStatus.MANUAL_REVIEW
        else:
            status = ClaimStatus.PENDING

        try:
            profile = await self.store.get_profile(EntityType.CUSTOMER, user_id)
            snapshot = profile.trust_score
        except StoreError as e:
            logger.warning("Trust snapshot unavailable for user %s: %s", user_id, e)
            snapshot = self.policy.scores.maximum

        claim = await self.store.create_claim(
            Claim(
                order_id=order_id,
                user_id=user_id,
                claim_type=claim_type,
                claim_amount=claim_amount,
                description=description,
                evidence_urls=evidence_urls or [],
                evidence_provided=bool(evidence_urls),
                created_at=self.clock(),
                status=status,
                approval_type=decision.decision_type.value,
                approved_amount=decision.amount if status == ClaimStatus.AUTO_APPROVED else None,
                auto_approval_reason=decision.reason,
                trust_score_snapshot=snapshot,
                lookback=decision.lookback.model_dump(mode="json") if decision.lookback else None,
            )
        )

        if (
            decision.approved
            and decision.compensation_source == CompensationSource.RIDER
            and decision.amount > 0
        ):
            await self._dispatch_deposit_deduction(claim, decision.amount)

        if (
            claim_type in LOOKBACK_CLAIM_TYPES
            and decision.correlation is not None
            and decision.correlation.is_suspicious
        ):
            await self._submit(
                TASK_SUSPICIOUS_PATTERN,
                user_id,
                claim.id,
                {
                    "user_id": user_id,
                    "claim_id": claim.id,
                    "claim_type": claim_type.value,
                    "claims_found": decision.lookback.claims_found if decision.lookback else 0,
                    "period": decision.lookback.period.value if decision.lookback else "",
                },
            )

        return claim

    async def _dispatch_deposit_deduction(self, claim: Claim, amount: int) -> None:
        try:
            order = await self.store.get_order(claim.order_id)
        except StoreError as e:
            logger.error("Deposit deduction skipped for claim %s, order lookup failed: %s", claim.id, e)
            return
        if order.order_type != "takeout" or order.rider_id is None:
            return

        await self._submit(
            TASK_DEDUCT_DEPOSIT,
            claim.user_id,
            claim.id,
            {
                "rider_id": order.rider_id,
                "user_id": claim.user_id,
                "claim_id": claim.id,
                "amount": amount,
                "claim_type": claim.claim_type.value,
            },
        )

    async def _submit(self, name: str, entity_id: int, related_id: int, payload: dict[str, Any]) -> None:
        task = SideEffectTask(
            name=name,
            idempotency_key=idempotency_key(name, entity_id, related_id),
            payload=payload,
        )
        try:
            await self.dispatcher.submit(task)
        except Exception as e:
            # Never fail the decision over bookkeeping
            logger.error("Could not dispatch %s: %s", task.idempotency_key, e)
            metrics.errors_total.labels(error_type="DispatchFailed").inc()

    # =========================================================================
    # Rider Damage History
    # =========================================================================

    async def check_rider_damage_history(self, rider_id: int) -> Optional[TrustScoreChange]:
        """
        Penalise a rider with repeated damage claims in the trailing window.

        Returns:
            The score change when the rider was penalised, else None
        """
        rules = self.policy.penalties
        since = self.clock() - timedelta(days=rules.rider_damage_window_days)
        claims = await self.store.list_rider_claims(rider_id, since, claim_type=ClaimType.DAMAGE)
        if len(claims) < rules.rider_damage_count:
            return None

        change = await self.ledger.adjust(
            EntityType.RIDER,
            rider_id,
            rules.rider_damage,
            ReasonCodes.SCORE_RIDER_DAMAGE,
            f"{len(claims)} damage claims in {rules.rider_damage_window_days}d",
        )
        await safe_notify(
            self.notifier, EntityType.RIDER, rider_id,
            "Damage claim warning",
            f"{len(claims)} damage claims in the last {rules.rider_damage_window_days} days; "
            f"trust score {rules.rider_damage:+d}. Please deliver with care.",
            "rider", rider_id,
        )
        return change

    # =========================================================================
    # Side-Effect Handlers
    # =========================================================================

    async def _handle_record_warning(self, payload: dict[str, Any]) -> None:
        await self.store.record_warning(payload["user_id"], payload.get("order_id"))

    async def _handle_record_platform_pay(self, payload: dict[str, Any]) -> None:
        await self.store.increment_platform_pay(payload["user_id"], payload.get("order_id"))

    async def _handle_restrict_account(self, payload: dict[str, Any]) -> None:
        await self.ledger.restrict(
            payload["user_id"],
            ReasonCodes.SCORE_REJECT_SERVICE,
            "Abnormal claim behavior, service rejected",
            related_type="order",
            related_id=payload.get("order_id"),
        )

    async def _handle_deduct_deposit(self, payload: dict[str, Any]) -> None:
        if self.compensation is None:
            logger.error("No compensation executor; claim %s needs manual reconciliation", payload["claim_id"])
            return

        rider_id = payload["rider_id"]
        user_id = payload["user_id"]
        claim_id = payload["claim_id"]
        amount = payload["amount"]
        claim_type = ClaimType(payload["claim_type"])
        try:
            result = await self.compensation.deduct_rider_deposit_and_credit(
                rider_id, user_id, claim_id, amount, claim_type
            )
        except Exception as e:
            logger.error(
                "Deposit deduction failed, reconcile manually: rider=%s user=%s claim=%s amount=%s: %s",
                rider_id, user_id, claim_id, amount, e,
            )
            metrics.errors_total.labels(error_type="DepositDeductionFailed").inc()
            raise

        await safe_notify(
            self.notifier, EntityType.RIDER, rider_id,
            "Deposit deduction",
            f"{amount} was deducted from your deposit for a {claim_type.value} claim (claim {claim_id}).",
            "claim", claim_id,
        )
        await safe_notify(
            self.notifier, EntityType.CUSTOMER, user_id,
            "Claim refund received",
            f"Your {claim_type.value} claim was settled; {amount} was credited to your balance "
            f"(balance: {result.user_balance}).",
            "claim", claim_id,
        )

    async def _handle_suspicious_pattern(self, payload: dict[str, Any]) -> None:
        rules = self.policy.penalties
        claims_found = payload.get("claims_found", 0)
        period = payload.get("period", "")

        if claims_found >= rules.suspicious_heavy_claims:
            delta = rules.suspicious_heavy
            message = f"{claims_found} claims in {period}: flagged as high-risk claiming, trust score {delta:+d}."
        elif claims_found >= rules.suspicious_medium_claims:
            delta = rules.suspicious_medium
            message = f"{claims_found} claims in {period}: frequent claiming, trust score {delta:+d}."
        else:
            delta = rules.suspicious_light
            message = f"Suspicious claim pattern detected, trust score {delta:+d}."

        user_id = payload["user_id"]
        claim_id = payload["claim_id"]
        await self.ledger.adjust(
            EntityType.CUSTOMER,
            user_id,
            delta,
            ReasonCodes.SCORE_SUSPICIOUS_PATTERN,
            f"Abnormal {payload.get('claim_type')} claim pattern (claim {claim_id})",
            related_type="claim",
            related_id=claim_id,
        )
        await safe_notify(
            self.notifier, EntityType.CUSTOMER, user_id,
            "Trust score changed", message, "claim", claim_id,
        )
