"""
Foreign-Object Tracker Tests
"""

from datetime import timedelta

import pytest

from trust_engine.schemas import ClaimType, EntityType

from conftest import NOW

MERCHANT = 9


def foreign_object_claims(seed, days_ago):
    for i, d in enumerate(days_ago):
        seed.claim(100 + i, ClaimType.FOREIGN_OBJECT, created_at=NOW - timedelta(days=d), merchant_id=MERCHANT)


class TestForeignObjectTracker:

    @pytest.mark.asyncio
    async def test_below_threshold(self, tracker, seed):
        foreign_object_claims(seed, [1, 2])

        result = await tracker.check_status(MERCHANT)

        assert result.foreign_object_count == 2
        assert result.should_notify is False

    @pytest.mark.asyncio
    async def test_threshold_reached(self, tracker, seed):
        foreign_object_claims(seed, [1, 2, 6])

        result = await tracker.check_status(MERCHANT)

        assert result.foreign_object_count == 3
        assert result.should_notify is True
        assert result.window_days == 7

    @pytest.mark.asyncio
    async def test_window_and_type_filter(self, tracker, seed):
        foreign_object_claims(seed, [1, 2, 9])
        seed.claim(5, ClaimType.DAMAGE, merchant_id=MERCHANT)
        seed.claim(6, ClaimType.FOREIGN_OBJECT, merchant_id=MERCHANT + 1)

        result = await tracker.check_status(MERCHANT)

        assert result.foreign_object_count == 2

    @pytest.mark.asyncio
    async def test_advisory_only(self, tracker, seed, store, notifier):
        """Notifies the merchant; never suspends or deducts."""
        seed.merchant(MERCHANT)
        foreign_object_claims(seed, [1, 2, 3, 4])

        result = await tracker.check_and_notify(MERCHANT)

        merchant = await store.get_profile(EntityType.MERCHANT, MERCHANT)
        assert result.should_notify is True
        assert merchant.trust_score == 100
        assert merchant.is_suspended is False
        assert store.score_changes == []
        assert len(notifier.to(EntityType.MERCHANT, MERCHANT)) == 1

    @pytest.mark.asyncio
    async def test_no_notification_below_threshold(self, tracker, seed, notifier):
        foreign_object_claims(seed, [1])

        await tracker.check_and_notify(MERCHANT)

        assert notifier.sent == []
