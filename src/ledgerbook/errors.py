"""Exception hierarchy raised by the ledger core.

Validation, authorization and overpayment errors are raised before any
mutation is staged, so callers never have anything to roll back. Lock and
sequence errors carry enough information for the caller to retry.
"""

from __future__ import annotations

from decimal import Decimal
from typing import Optional


class LedgerError(Exception):
    """Base class for every error surfaced by the ledger core."""

    retryable = False


class ValidationError(LedgerError):
    """Raised when a request is malformed; ``field`` names the offending input."""

    def __init__(self, message: str, *, field: Optional[str] = None) -> None:
        super().__init__(message)
        self.field = field


class MissingReferenceError(LedgerError):
    """Raised when a referenced party, item, or transaction is unknown."""


class InsufficientAuthorizationError(LedgerError):
    """Raised when a record belongs to a different tenant than the caller."""


class SequenceConflictError(LedgerError):
    """Raised when a unique document number could not be issued."""


class OverpaymentError(LedgerError):
    """Raised when a payment exceeds the outstanding balance it targets."""

    def __init__(self, requested: Decimal, outstanding: Decimal) -> None:
        super().__init__(
            f"Payment of {requested} exceeds outstanding balance of {outstanding}"
        )
        self.requested = requested
        self.outstanding = outstanding


class LockTimeoutError(LedgerError):
    """Raised when a lock could not be acquired within the configured timeout."""

    retryable = True


class ConsistencyError(LedgerError):
    """Raised when storage could not apply a unit of work as a whole."""

    def __init__(self, message: str = "Internal consistency failure; no changes were applied") -> None:
        super().__init__(message)


__all__ = [
    "LedgerError",
    "ValidationError",
    "MissingReferenceError",
    "InsufficientAuthorizationError",
    "SequenceConflictError",
    "OverpaymentError",
    "LockTimeoutError",
    "ConsistencyError",
]
