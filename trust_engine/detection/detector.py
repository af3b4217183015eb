"""
Fraud Detector Base

Each detector looks for one cross-account signal and returns a
FraudDetectionResult. Positive hits are persisted through the
PatternRecorder, which may auto-confirm them.
"""

from abc import ABC, abstractmethod
from datetime import datetime, UTC
from typing import Callable, Optional, Union

from ..policy import DEFAULT_POLICY, TrustPolicy
from ..schemas import FraudDetectionResult, PatternType
from ..store import LedgerStore
from .patterns import PatternRecorder


def _utc_now() -> datetime:
    return datetime.now(UTC)


class BaseFraudDetector(ABC):
    """
    Base class for cross-account fraud detectors.

    - DeviceReuseDetector: many accounts on one device
    - AddressClusterDetector: many accounts on one delivery address
    - CoordinatedClaimsDetector: simultaneous claims against one merchant
    """

    pattern_type: PatternType

    def __init__(
        self,
        store: LedgerStore,
        recorder: PatternRecorder,
        policy: TrustPolicy = DEFAULT_POLICY,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.store = store
        self.recorder = recorder
        self.policy = policy
        self.clock = clock or _utc_now

    def negative(self, confidence: int = 0) -> FraudDetectionResult:
        return FraudDetectionResult(pattern_type=self.pattern_type, confidence=confidence)

    def should_block(self, user_count: int, claim_count: int) -> bool:
        rules = self.policy.fraud
        return user_count >= rules.block_users or claim_count >= rules.block_claims

    @abstractmethod
    async def detect(self, key: Union[str, int]) -> FraudDetectionResult:
        """
        Run detection for one signal key.

        Args:
            key: Device fingerprint, address id or claim id

        Returns:
            FraudDetectionResult
        """
        pass
