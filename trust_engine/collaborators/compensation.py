"""
Compensation Execution Collaborator

Moving money is owned by the payments side. The engine asks for one
atomic operation: deduct the rider's held deposit and credit the
claimant. Failures are logged for manual reconciliation by the
caller, never retried synchronously.
"""

from abc import ABC, abstractmethod

from ..schemas import ClaimType, DepositDeductionResult


class CompensationExecutor(ABC):

    @abstractmethod
    async def deduct_rider_deposit_and_credit(
        self,
        rider_id: int,
        user_id: int,
        claim_id: int,
        amount: int,
        claim_type: ClaimType,
    ) -> DepositDeductionResult:
        """
        Atomically deduct `amount` from the rider deposit and credit the user.

        Args:
            rider_id: Rider whose deposit covers the claim
            user_id: Claimant receiving the refund
            claim_id: Claim being compensated
            amount: Amount in minor currency units
            claim_type: Claim category (for the ledger memo)

        Returns:
            DepositDeductionResult with the claimant's new balance
        """
