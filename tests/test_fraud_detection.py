"""
Fraud Detection Tests

Tests for shared-signal detectors, coordinated claims, pattern
confirmation and the account-linkage primitive.
"""

from datetime import timedelta
from unittest.mock import AsyncMock

import pytest

from trust_engine.detection import PatternRecorder
from trust_engine.errors import StoreError
from trust_engine.policy import FraudRules, TrustPolicy
from trust_engine.schemas import (
    ClaimType,
    EntityType,
    FraudPattern,
    LinkageKind,
    PatternType,
    ReasonCodes,
)

from conftest import NOW


def device_ring(seed, store, users=(1, 2, 3), fingerprint="fp-ring", claims_per_user=1):
    for uid in users:
        seed.customer(uid)
        store.add_device(uid, fingerprint)
        for i in range(claims_per_user):
            seed.claim(uid, ClaimType.DAMAGE, created_at=NOW - timedelta(days=1, hours=i))


class TestDeviceReuse:

    @pytest.mark.asyncio
    async def test_shared_device_confirms_and_blacklists(self, fraud_detector, seed, store):
        """3 users on one device with 3 claims: confirmed ring, all blacklisted."""
        device_ring(seed, store)

        result = await fraud_detector.detect_device_reuse("fp-ring")

        assert result.is_fraud is True
        assert result.pattern_type == PatternType.DEVICE_REUSE
        assert result.confidence == 6
        assert sorted(result.related_user_ids) == [1, 2, 3]
        assert result.should_block is False

        pattern = await store.get_fraud_pattern(result.pattern_id)
        assert pattern.is_confirmed is True
        assert pattern.match_count == 3
        assert pattern.device_fingerprints == ["fp-ring"]
        assert pattern.action_taken == "block_users;merchant_refund:0;rider_refund:6000"

        for uid in (1, 2, 3):
            profile = await store.get_profile(EntityType.CUSTOMER, uid)
            assert profile.is_blacklisted is True
            assert profile.trust_score == 0

    @pytest.mark.asyncio
    async def test_two_users_not_enough(self, fraud_detector, seed, store):
        device_ring(seed, store, users=(1, 2), claims_per_user=3)

        result = await fraud_detector.detect_device_reuse("fp-ring")

        assert result.is_fraud is False
        assert store.patterns == {}

    @pytest.mark.asyncio
    async def test_too_few_recent_claims(self, fraud_detector, seed, store):
        device_ring(seed, store, users=(1, 2, 3), claims_per_user=0)
        seed.claim(1, created_at=NOW - timedelta(days=1))
        seed.claim(2, created_at=NOW - timedelta(days=1))
        seed.claim(3, created_at=NOW - timedelta(days=30))

        result = await fraud_detector.detect_device_reuse("fp-ring")

        assert result.is_fraud is False

    @pytest.mark.asyncio
    async def test_empty_fingerprint(self, fraud_detector):
        result = await fraud_detector.detect_device_reuse("")

        assert result.is_fraud is False

    @pytest.mark.asyncio
    async def test_large_ring_should_block(self, fraud_detector, seed, store):
        device_ring(seed, store, users=(1, 2, 3, 4, 5), claims_per_user=2)

        result = await fraud_detector.detect_device_reuse("fp-ring")

        assert result.should_block is True


class TestAddressCluster:

    @pytest.mark.asyncio
    async def test_shared_address(self, fraud_detector, seed, store):
        for uid in (1, 2, 3):
            seed.customer(uid)
            seed.claim(uid, ClaimType.FOREIGN_OBJECT, address_id=55, amount=1500)

        result = await fraud_detector.detect_address_cluster(55)

        pattern = await store.get_fraud_pattern(result.pattern_id)
        assert result.is_fraud is True
        assert result.pattern_type == PatternType.ADDRESS_CLUSTER
        assert pattern.address_ids == [55]
        assert pattern.action_taken == "block_users;merchant_refund:4500;rider_refund:0"


class TestCoordinatedClaims:

    def _claims_against_merchant(self, seed, users, merchant_id=9, minutes=(50, 30, 10)):
        claims = []
        for uid, m in zip(users, minutes):
            claims.append(
                seed.claim(
                    uid,
                    ClaimType.FOREIGN_OBJECT,
                    created_at=NOW - timedelta(minutes=m),
                    merchant_id=merchant_id,
                    address_id=100 + uid,
                )
            )
        return claims

    @pytest.mark.asyncio
    async def test_independent_claimants_indict_merchant(self, fraud_detector, seed, store):
        """3 unlinked users with order history: merchant suspect, not fraud."""
        for uid in (1, 2, 3):
            seed.customer(uid, total_orders=12)
        claims = self._claims_against_merchant(seed, (1, 2, 3))

        result = await fraud_detector.detect_coordinated_claims(claims[-1].id)

        assert result.is_fraud is False
        assert result.merchant_suspect is True
        assert result.suspect_merchant_id == 9
        assert store.patterns == {}

    @pytest.mark.asyncio
    async def test_linked_claimants_are_fraud(self, fraud_detector, seed, store):
        for uid in (1, 2, 3):
            seed.customer(uid, total_orders=12)
            store.add_device(uid, "fp-shared")
        claims = self._claims_against_merchant(seed, (1, 2, 3))

        result = await fraud_detector.detect_coordinated_claims(claims[0].id)

        pattern = await store.get_fraud_pattern(result.pattern_id)
        assert result.is_fraud is True
        assert result.pattern_type == PatternType.COORDINATED_CLAIMS
        assert pattern.is_confirmed is True
        assert sorted(pattern.address_ids) == [101, 102, 103]
        assert "shared device" in result.description

    @pytest.mark.asyncio
    async def test_new_accounts_are_linked(self, fraud_detector, seed):
        for uid in (1, 2, 3):
            seed.customer(uid, total_orders=1)
        claims = self._claims_against_merchant(seed, (1, 2, 3))

        result = await fraud_detector.detect_coordinated_claims(claims[0].id)

        assert result.is_fraud is True

    @pytest.mark.asyncio
    async def test_claims_outside_window_ignored(self, fraud_detector, seed):
        for uid in (1, 2, 3):
            seed.customer(uid, total_orders=12)
        claims = self._claims_against_merchant(seed, (1, 2, 3), minutes=(300, 200, 10))

        result = await fraud_detector.detect_coordinated_claims(claims[-1].id)

        assert result.is_fraud is False
        assert result.merchant_suspect is False

    @pytest.mark.asyncio
    async def test_same_user_repeated_is_not_a_group(self, fraud_detector, seed):
        seed.customer(1, total_orders=12)
        claims = self._claims_against_merchant(seed, (1, 1, 1))

        result = await fraud_detector.detect_coordinated_claims(claims[0].id)

        assert result.is_fraud is False
        assert result.merchant_suspect is False
        assert result.confidence == 1


class TestPatternConfirmation:

    @pytest.mark.asyncio
    async def test_partial_failure_keeps_other_users(self, fraud_detector, seed, store, caplog):
        """A user without a profile is logged and skipped."""
        for uid in (1, 3):
            seed.customer(uid)
        pattern = await store.create_fraud_pattern(
            FraudPattern(pattern_type=PatternType.DEVICE_REUSE, related_user_ids=[1, 2, 3])
        )

        confirmed = await fraud_detector.confirm(pattern.id)

        assert confirmed.is_confirmed is True
        assert (await store.get_profile(EntityType.CUSTOMER, 1)).is_blacklisted is True
        assert (await store.get_profile(EntityType.CUSTOMER, 3)).is_blacklisted is True
        assert "Punishing user 2" in caplog.text

    @pytest.mark.asyncio
    async def test_confirm_is_idempotent(self, fraud_detector, seed, store):
        seed.customer(1)
        pattern = await store.create_fraud_pattern(
            FraudPattern(pattern_type=PatternType.ADDRESS_CLUSTER, related_user_ids=[1])
        )

        await fraud_detector.confirm(pattern.id)
        await fraud_detector.confirm(pattern.id)

        changes = await store.list_score_changes(
            EntityType.CUSTOMER, 1, reason_type=ReasonCodes.SCORE_CONFIRMED_FRAUD
        )
        assert len(changes) == 1

    @pytest.mark.asyncio
    async def test_below_thresholds_stays_unconfirmed(self, seed, store, ledger, clock):
        policy = TrustPolicy(fraud=FraudRules(auto_confirm_match_count=10, auto_confirm_claim_count=10))
        recorder = PatternRecorder(store, ledger, policy, clock)

        pattern = await recorder.record(
            PatternType.DEVICE_REUSE, [1, 2, 3], [11, 12, 13], [21, 22, 23], 3, "ring"
        )

        assert pattern.is_confirmed is False


class TestCombinedChecks:

    @pytest.mark.asyncio
    async def test_check_user_falls_back_to_address(self, fraud_detector, seed, store):
        for uid in (1, 2, 3):
            seed.customer(uid)
            seed.claim(uid, address_id=55)
        store.get_users_by_device = AsyncMock(side_effect=StoreError("device index down"))

        result = await fraud_detector.check_user(1, device_fingerprint="fp-x", address_id=55)

        assert result.is_fraud is True
        assert result.pattern_type == PatternType.ADDRESS_CLUSTER

    @pytest.mark.asyncio
    async def test_check_user_clean(self, fraud_detector, seed):
        seed.customer(1)

        result = await fraud_detector.check_user(1, device_fingerprint="fp-solo")

        assert result.is_fraud is False

    @pytest.mark.asyncio
    async def test_scan_skips_failing_items(self, fraud_detector, seed, store):
        device_ring(seed, store)
        real_lookup = store.get_users_by_device

        async def flaky_lookup(fingerprint):
            if fingerprint == "fp-broken":
                raise StoreError("timeout")
            return await real_lookup(fingerprint)

        store.get_users_by_device = flaky_lookup

        results = await fraud_detector.scan(device_fingerprints=["fp-broken", "fp-ring", "fp-none"])

        assert len(results) == 1
        assert results[0].pattern_type == PatternType.DEVICE_REUSE


class TestAccountLinkage:

    @pytest.mark.asyncio
    async def test_single_user_never_linked(self, linkage):
        result = await linkage.check([1, 1], list(LinkageKind))

        assert result.linked is False

    @pytest.mark.asyncio
    async def test_same_user_twice_at_address_not_shared(self, linkage, seed):
        seed.order(1, address_id=55)
        seed.order(1, address_id=55)
        seed.order(2, address_id=56)

        result = await linkage.check([1, 2], [LinkageKind.SHARED_ADDRESS])

        assert result.linked is False

    @pytest.mark.asyncio
    async def test_check_order_decides_kind(self, linkage, seed, store):
        for uid in (1, 2, 3):
            seed.customer(uid, total_orders=1)
            store.add_device(uid, "fp-shared")

        by_device = await linkage.check([1, 2, 3], [LinkageKind.SHARED_DEVICE, LinkageKind.NEW_ACCOUNTS])
        by_age = await linkage.check([1, 2, 3], [LinkageKind.NEW_ACCOUNTS, LinkageKind.SHARED_DEVICE])

        assert by_device.kind == LinkageKind.SHARED_DEVICE
        assert by_age.kind == LinkageKind.NEW_ACCOUNTS

    @pytest.mark.asyncio
    async def test_unknown_profiles_not_new_accounts(self, linkage):
        result = await linkage.check([1, 2, 3], [LinkageKind.NEW_ACCOUNTS])

        assert result.linked is False

    @pytest.mark.asyncio
    async def test_confirmed_pattern_type_filter(self, linkage, store):
        pattern = await store.create_fraud_pattern(
            FraudPattern(pattern_type=PatternType.COORDINATED_CLAIMS, related_user_ids=[1, 9])
        )
        await store.confirm_fraud_pattern(pattern.id, "block_users")

        any_type = await linkage.check([1, 2], [LinkageKind.CONFIRMED_PATTERN])
        filtered = await linkage.check(
            [1, 2], [LinkageKind.CONFIRMED_PATTERN],
            confirmed_pattern_types=[PatternType.DEVICE_REUSE],
        )

        assert any_type.linked is True
        assert filtered.linked is False
