"""
Error taxonomy for the trust engine.

- StoreError: a Ledger Store read or write failed (network/DB round trip)
- NotFoundError: the requested record does not exist
- ValidationError: malformed input (unknown entity/claim type), never retried
- ScoreAdjustmentError: a score mutation could not be applied (a StoreError)
- RecoveryExhaustedError: reinstatement already used, restriction is permanent
"""


class TrustEngineError(Exception):
    """Base class for all trust engine errors."""


class StoreError(TrustEngineError):
    """Ledger Store operation failed."""


class NotFoundError(StoreError):
    """Requested record does not exist in the Ledger Store."""


class ValidationError(TrustEngineError, ValueError):
    """Input rejected before any store interaction."""


class ScoreAdjustmentError(StoreError):
    """Score and history could not be written together."""


class RecoveryExhaustedError(TrustEngineError):
    """Entity already used its reinstatement; restriction is permanent."""
