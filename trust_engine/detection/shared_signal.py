"""
Shared-Signal Detection

Detects many accounts converging on one identifier:
1. Device reuse: one device fingerprint used by several accounts
2. Address cluster: one delivery address used by several accounts

Both fire when at least min_users accounts share the identifier AND
those accounts filed at least min_claims claims in the trailing
window. confidence = users + claims.
"""

from abc import abstractmethod
from datetime import timedelta
from typing import Union

from ..schemas import FraudDetectionResult, PatternType
from .detector import BaseFraudDetector


class SharedSignalDetector(BaseFraudDetector):
    """Common flow for device and address detectors."""

    @abstractmethod
    async def users_for(self, key: Union[str, int]) -> list[int]:
        """Accounts sharing the identifier."""

    @abstractmethod
    def describe(self, key: Union[str, int], user_count: int, claim_count: int) -> str:
        pass

    def pattern_signals(self, key: Union[str, int]) -> dict:
        return {}

    async def detect(self, key: Union[str, int]) -> FraudDetectionResult:
        if not key:
            return self.negative()

        rules = self.policy.fraud
        user_ids = list(dict.fromkeys(await self.users_for(key)))
        if len(user_ids) < rules.min_users:
            return self.negative()

        since = self.clock() - timedelta(days=rules.window_days)
        claims = await self.store.list_claims_by_users(user_ids, since)
        if len(claims) < rules.min_claims:
            return self.negative()

        claim_ids = [c.id for c in claims]
        description = self.describe(key, len(user_ids), len(claims))
        pattern = await self.recorder.record(
            self.pattern_type,
            user_ids,
            [c.order_id for c in claims],
            claim_ids,
            match_count=len(claims),
            description=description,
            **self.pattern_signals(key),
        )

        return FraudDetectionResult(
            is_fraud=True,
            pattern_type=self.pattern_type,
            confidence=len(user_ids) + len(claims),
            related_user_ids=user_ids,
            related_claim_ids=claim_ids,
            description=description,
            should_block=self.should_block(len(user_ids), len(claims)),
            pattern_id=pattern.id,
        )


class DeviceReuseDetector(SharedSignalDetector):
    pattern_type = PatternType.DEVICE_REUSE

    async def users_for(self, key):
        return await self.store.get_users_by_device(str(key))

    def describe(self, key, user_count, claim_count):
        return (
            f"Device {key} used by {user_count} accounts with {claim_count} claims "
            f"in {self.policy.fraud.window_days}d"
        )

    def pattern_signals(self, key):
        return {"device_fingerprints": [str(key)]}


class AddressClusterDetector(SharedSignalDetector):
    pattern_type = PatternType.ADDRESS_CLUSTER

    async def users_for(self, key):
        return await self.store.get_users_by_address(int(key))

    def describe(self, key, user_count, claim_count):
        return (
            f"Address {key} used by {user_count} accounts with {claim_count} claims "
            f"in {self.policy.fraud.window_days}d"
        )

    def pattern_signals(self, key):
        return {"address_ids": [int(key)]}
