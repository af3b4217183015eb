"""
Account Linkage

Decides whether a group of accounts is tied together. A group of
complaints (coordinated claims, food-safety reports) is only treated
as abuse when the accounts behind it are linked; unlinked accounts are
treated as independent witnesses.

Available checks:
- CONFIRMED_PATTERN: a member already belongs to a confirmed fraud pattern
- SHARED_DEVICE: two members were seen on the same device
- SHARED_ADDRESS: two members ordered to the same address recently
- NEW_ACCOUNTS: every member is on their first order

Each call site chooses which checks run and in what order.
"""

import logging
from collections import defaultdict
from typing import Optional, Sequence

from ..errors import StoreError
from ..schemas import EntityType, LinkageKind, LinkageResult, PatternType
from ..store import LedgerStore

logger = logging.getLogger("trust_engine.detection")


class AccountLinkage:
    """Shared linkage primitive for the fraud detector and the food-safety breaker."""

    def __init__(self, store: LedgerStore):
        self.store = store

    async def check(
        self,
        user_ids: Sequence[int],
        checks: Sequence[LinkageKind],
        recent_order_sample: int = 5,
        new_account_min_users: int = 3,
        confirmed_pattern_types: Optional[Sequence[PatternType]] = None,
    ) -> LinkageResult:
        """
        Run the configured checks in order; the first hit wins.

        Args:
            user_ids: Accounts to test (duplicates ignored)
            checks: Checks to run, in precedence order
            recent_order_sample: Recent orders per user inspected for addresses
            new_account_min_users: Group size needed for the new-accounts check
            confirmed_pattern_types: Pattern types that count (None = any)

        Returns:
            LinkageResult naming the first check that linked the group
        """
        users = list(dict.fromkeys(user_ids))
        if len(users) < 2:
            return LinkageResult()

        for kind in checks:
            kind = LinkageKind(kind)
            if kind == LinkageKind.CONFIRMED_PATTERN:
                result = await self._confirmed_pattern(users, confirmed_pattern_types)
            elif kind == LinkageKind.SHARED_DEVICE:
                result = await self._shared_device(users)
            elif kind == LinkageKind.SHARED_ADDRESS:
                result = await self._shared_address(users, recent_order_sample)
            else:
                result = await self._new_accounts(users, new_account_min_users)
            if result.linked:
                return result
        return LinkageResult()

    async def _confirmed_pattern(
        self,
        users: list[int],
        pattern_types: Optional[Sequence[PatternType]],
    ) -> LinkageResult:
        try:
            patterns = await self.store.get_fraud_patterns_by_users(users)
        except StoreError as e:
            logger.warning("Fraud pattern lookup failed during linkage check: %s", e)
            return LinkageResult()

        allowed = set(pattern_types) if pattern_types is not None else None
        for pattern in patterns:
            if pattern.is_confirmed and (allowed is None or pattern.pattern_type in allowed):
                return LinkageResult(
                    linked=True,
                    kind=LinkageKind.CONFIRMED_PATTERN,
                    detail=f"confirmed {pattern.pattern_type.value} pattern {pattern.id}",
                )
        return LinkageResult()

    async def _shared_device(self, users: list[int]) -> LinkageResult:
        device_users: dict[str, set[int]] = defaultdict(set)
        for uid in users:
            try:
                devices = await self.store.get_devices_by_user(uid)
            except StoreError as e:
                logger.warning("Device lookup failed for user %s: %s", uid, e)
                continue
            for device in devices:
                device_users[device].add(uid)

        for device, members in device_users.items():
            if len(members) >= 2:
                return LinkageResult(
                    linked=True,
                    kind=LinkageKind.SHARED_DEVICE,
                    detail=f"shared device {device[:8]}",
                )
        return LinkageResult()

    async def _shared_address(self, users: list[int], sample: int) -> LinkageResult:
        address_users: dict[int, set[int]] = defaultdict(set)
        for uid in users:
            try:
                orders = await self.store.list_user_recent_orders(uid, sample)
            except StoreError as e:
                logger.warning("Recent order lookup failed for user %s: %s", uid, e)
                continue
            for order in orders:
                if order.address_id is not None:
                    address_users[order.address_id].add(uid)

        for address_id, members in address_users.items():
            if len(members) >= 2:
                return LinkageResult(
                    linked=True,
                    kind=LinkageKind.SHARED_ADDRESS,
                    detail=f"shared address {address_id}",
                )
        return LinkageResult()

    async def _new_accounts(self, users: list[int], min_users: int) -> LinkageResult:
        if len(users) < min_users:
            return LinkageResult()

        checked = 0
        for uid in users:
            try:
                profile = await self.store.get_profile(EntityType.CUSTOMER, uid)
            except StoreError as e:
                # Unknown profiles neither prove nor disprove the pattern
                logger.warning("Profile lookup failed for user %s: %s", uid, e)
                continue
            if profile.total_orders > 1:
                return LinkageResult()
            checked += 1

        if checked == 0:
            return LinkageResult()
        return LinkageResult(
            linked=True,
            kind=LinkageKind.NEW_ACCOUNTS,
            detail=f"{len(users)} accounts all on their first order",
        )
