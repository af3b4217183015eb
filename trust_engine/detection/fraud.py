"""
Fraud Pattern Detector

Entry point for cross-account fraud detection. Runs independently of
claim decisions: triggered by a new claim (check_user, coordinated
check) or by an explicit batch scan.
"""

import asyncio
import logging
from datetime import datetime
from typing import Callable, Iterable, Optional

from ..ledger import TrustScoreLedger
from ..policy import DEFAULT_POLICY, TrustPolicy
from ..schemas import FraudDetectionResult, FraudPattern
from ..store import LedgerStore
from .coordinated import CoordinatedClaimsDetector
from .linkage import AccountLinkage
from .patterns import PatternRecorder
from .shared_signal import AddressClusterDetector, DeviceReuseDetector

logger = logging.getLogger("trust_engine.detection")


class FraudPatternDetector:
    """
    Orchestrates the three detectors and pattern confirmation.

    Usage:
        detector = FraudPatternDetector(store, ledger)
        result = await detector.detect_coordinated_claims(claim_id)
    """

    def __init__(
        self,
        store: LedgerStore,
        ledger: TrustScoreLedger,
        policy: TrustPolicy = DEFAULT_POLICY,
        clock: Optional[Callable[[], datetime]] = None,
        linkage: Optional[AccountLinkage] = None,
    ):
        self.store = store
        self.policy = policy
        self.linkage = linkage or AccountLinkage(store)
        self.recorder = PatternRecorder(store, ledger, policy, clock)

        self.device_reuse = DeviceReuseDetector(store, self.recorder, policy, clock)
        self.address_cluster = AddressClusterDetector(store, self.recorder, policy, clock)
        self.coordinated = CoordinatedClaimsDetector(store, self.recorder, self.linkage, policy, clock)

    async def detect_device_reuse(self, device_fingerprint: str) -> FraudDetectionResult:
        return await self.device_reuse.detect(device_fingerprint)

    async def detect_address_cluster(self, address_id: int) -> FraudDetectionResult:
        return await self.address_cluster.detect(address_id)

    async def detect_coordinated_claims(self, claim_id: int) -> FraudDetectionResult:
        return await self.coordinated.detect(claim_id)

    async def confirm(self, pattern_id: int) -> FraudPattern:
        """Confirm a pattern manually (same consequences as auto-confirmation)."""
        return await self.recorder.confirm(pattern_id)

    async def check_user(
        self,
        user_id: int,
        device_fingerprint: Optional[str] = None,
        address_id: Optional[int] = None,
    ) -> FraudDetectionResult:
        """
        Combined check run when a user submits a claim.

        Device reuse first, then address cluster; the first positive
        wins. A detector error counts as a negative.
        """
        checks = []
        if device_fingerprint:
            checks.append((self.device_reuse, device_fingerprint))
        if address_id:
            checks.append((self.address_cluster, address_id))

        for detector, key in checks:
            try:
                result = await detector.detect(key)
            except Exception as e:
                logger.warning(
                    "%s failed for user %s: %s", detector.__class__.__name__, user_id, e
                )
                continue
            if result.is_fraud:
                return result

        return FraudDetectionResult()

    async def scan(
        self,
        device_fingerprints: Iterable[str] = (),
        address_ids: Iterable[int] = (),
        claim_ids: Iterable[int] = (),
    ) -> list[FraudDetectionResult]:
        """
        Batch scan over many signals.

        Items that fail are logged and skipped; the batch continues.

        Returns:
            Results that flagged fraud or a suspect merchant
        """
        jobs = (
            [(self.device_reuse, fp) for fp in device_fingerprints]
            + [(self.address_cluster, a) for a in address_ids]
            + [(self.coordinated, c) for c in claim_ids]
        )

        results = await asyncio.gather(
            *(detector.detect(key) for detector, key in jobs),
            return_exceptions=True,
        )

        flagged: list[FraudDetectionResult] = []
        for (detector, key), result in zip(jobs, results):
            if isinstance(result, Exception):
                logger.warning("Scan of %s %r skipped: %s", detector.__class__.__name__, key, result)
                continue
            if result.is_fraud or result.merchant_suspect:
                flagged.append(result)
        return flagged
