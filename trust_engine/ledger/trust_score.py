"""
Trust Score Ledger

Bounded [0, 100] score mutation with an append-only change history
and threshold-triggered consequences:

- Customer: below reject_service -> blacklist + notification;
  below warning -> warning notification only
- Merchant: below reject_service -> suspension with a recovery path
- Rider: no score-based restriction (see PremiumQualification)

Score and history are written by one atomic store operation, so the
profile score always equals the new_score of its latest change row.
"""

import logging
from typing import Optional, Union

from ..collaborators import Notifier, safe_notify
from ..errors import NotFoundError, RecoveryExhaustedError, ScoreAdjustmentError, StoreError, ValidationError
from ..metrics import metrics
from ..policy import DEFAULT_POLICY, TrustPolicy
from ..schemas import EntityType, ReasonCodes, TrustScoreChange
from ..store import LedgerStore, ScoreCompute

logger = logging.getLogger("trust_engine.ledger")

RECOVERABLE_ENTITIES = (EntityType.CUSTOMER, EntityType.MERCHANT)


def parse_entity_type(value: Union[EntityType, str]) -> EntityType:
    """Coerce and validate an entity type."""
    try:
        return EntityType(value)
    except ValueError:
        raise ValidationError(f"unknown entity type: {value!r}") from None


class TrustScoreLedger:
    """Applies score deltas and their threshold consequences."""

    def __init__(
        self,
        store: LedgerStore,
        notifier: Optional[Notifier] = None,
        policy: TrustPolicy = DEFAULT_POLICY,
    ):
        self.store = store
        self.notifier = notifier
        self.policy = policy

    async def adjust(
        self,
        entity_type: Union[EntityType, str],
        entity_id: int,
        delta: int,
        reason_type: str,
        reason_description: str = "",
        related_type: Optional[str] = None,
        related_id: Optional[int] = None,
    ) -> TrustScoreChange:
        """
        Apply a score delta, clamped to [minimum, maximum].

        Store errors propagate: a failed adjustment must never be
        reported as applied.

        Args:
            entity_type: customer, merchant or rider
            entity_id: Entity id
            delta: Requested change (negative lowers the score)
            reason_type: Machine-readable reason
            reason_description: Human-readable reason
            related_type: Optional related record kind (claim, fraud-pattern, ...)
            related_id: Optional related record id

        Returns:
            The recorded TrustScoreChange
        """
        entity_type = parse_entity_type(entity_type)
        change = await self._apply(
            entity_type,
            entity_id,
            lambda old: self.policy.clamp(old + delta),
            reason_type,
            reason_description,
            related_type,
            related_id,
            requested_delta=delta,
        )
        await self.check_thresholds(entity_type, entity_id, change.new_score)
        return change

    async def restrict(
        self,
        user_id: int,
        reason_type: str = ReasonCodes.SCORE_REJECT_SERVICE,
        reason_description: str = "",
        related_type: Optional[str] = None,
        related_id: Optional[int] = None,
    ) -> TrustScoreChange:
        """
        Force a customer's score below the reject-service threshold.

        Scores already below it are left unchanged (a zero-delta row is
        still recorded for the audit trail). The blacklist follows from
        the threshold check.
        """
        ceiling = self.policy.scores.reject_service - 1
        change = await self._apply(
            EntityType.CUSTOMER,
            user_id,
            lambda old: self.policy.clamp(min(old, ceiling)),
            reason_type,
            reason_description or "Abnormal claim behavior, service rejected",
            related_type,
            related_id,
        )
        await self.check_thresholds(EntityType.CUSTOMER, user_id, change.new_score)
        return change

    async def _apply(
        self,
        entity_type: EntityType,
        entity_id: int,
        compute: ScoreCompute,
        reason_type: str,
        reason_description: str,
        related_type: Optional[str],
        related_id: Optional[int],
        requested_delta: Optional[int] = None,
    ) -> TrustScoreChange:
        try:
            change = await self.store.apply_score_change(
                entity_type,
                entity_id,
                compute,
                reason_type=reason_type,
                reason_description=reason_description,
                related_type=related_type,
                related_id=related_id,
                requested_delta=requested_delta,
            )
        except NotFoundError:
            raise
        except StoreError as e:
            raise ScoreAdjustmentError(
                f"{entity_type.value} {entity_id} score change not applied: {e}"
            ) from e
        metrics.score_adjustments_total.labels(entity_type=entity_type.value).inc()
        logger.info(
            "%s %s score %d -> %d (%s)",
            entity_type.value, entity_id, change.old_score, change.new_score, reason_type,
        )
        return change

    # =========================================================================
    # Threshold Consequences
    # =========================================================================

    async def check_thresholds(self, entity_type: EntityType, entity_id: int, new_score: int) -> None:
        """Apply the entity-specific consequence for a freshly written score."""
        scores = self.policy.scores

        if entity_type == EntityType.CUSTOMER:
            if new_score < scores.reject_service:
                profile = await self.store.get_profile(entity_type, entity_id)
                if profile.is_blacklisted:
                    return
                await self.store.blacklist_user(
                    entity_id,
                    f"Trust score fell to {new_score} (below {scores.reject_service})",
                )
                metrics.restrictions_total.labels(entity_type=entity_type.value).inc()
                await safe_notify(
                    self.notifier, entity_type, entity_id,
                    "Account restricted",
                    f"Your trust score fell to {new_score}; ordering has been restricted.",
                    "trust-score", entity_id,
                )
            elif new_score < scores.warning:
                await safe_notify(
                    self.notifier, entity_type, entity_id,
                    "Trust score warning",
                    f"Your trust score fell to {new_score}. Further violations may restrict your account.",
                    "trust-score", entity_id,
                )

        elif entity_type == EntityType.MERCHANT:
            if new_score < scores.reject_service:
                profile = await self.store.get_profile(entity_type, entity_id)
                if profile.is_suspended:
                    return
                await self.store.suspend_merchant(
                    entity_id,
                    f"Trust score fell to {new_score} (below {scores.reject_service}); "
                    "recovery can be requested online",
                )
                metrics.restrictions_total.labels(entity_type=entity_type.value).inc()
                await safe_notify(
                    self.notifier, entity_type, entity_id,
                    "Store suspended",
                    f"Your trust score fell to {new_score} and your store has been suspended. "
                    "You may submit a recovery request with an improvement commitment.",
                    "trust-score", entity_id,
                )

        # Riders: no score-based restriction

    # =========================================================================
    # Recovery
    # =========================================================================

    async def request_recovery(
        self,
        entity_type: Union[EntityType, str],
        entity_id: int,
        commitment: str = "",
    ) -> TrustScoreChange:
        """
        Reinstate a restricted customer or merchant.

        Allowed max_attempts times over the entity's lifetime; after
        that the restriction is permanent.

        Raises:
            ValidationError: Entity type cannot recover, or is not restricted
            RecoveryExhaustedError: Reinstatement already used
        """
        entity_type = parse_entity_type(entity_type)
        if entity_type not in RECOVERABLE_ENTITIES:
            raise ValidationError(f"{entity_type.value} accounts have no recovery path")

        profile = await self.store.get_profile(entity_type, entity_id)
        if not profile.is_restricted:
            raise ValidationError(f"{entity_type.value} {entity_id} is not restricted")

        granted = await self.store.list_score_changes(
            entity_type, entity_id, reason_type=ReasonCodes.SCORE_RECOVERY_GRANTED
        )
        max_attempts = self.policy.recovery.max_attempts
        if len(granted) >= max_attempts:
            logger.warning(
                "Recovery refused for %s %s: %d of %d used",
                entity_type.value, entity_id, len(granted), max_attempts,
            )
            raise RecoveryExhaustedError(
                f"recovery already used ({max_attempts} allowed); restriction is permanent"
            )

        attempt = len(granted) + 1
        recovery_score = self.policy.recovery.recovery_score
        change = await self._apply(
            entity_type,
            entity_id,
            lambda old: self.policy.clamp(recovery_score),
            ReasonCodes.SCORE_RECOVERY_GRANTED,
            f"Recovery granted (attempt {attempt}); commitment: {commitment}",
            "recovery",
            None,
        )
        await self.store.lift_restriction(entity_type, entity_id)

        await safe_notify(
            self.notifier, entity_type, entity_id,
            "Recovery approved",
            f"Your trust score was restored to {change.new_score}. This was recovery "
            f"{attempt} of {max_attempts}; a further violation is permanent.",
            "recovery", entity_id,
        )
        return change
