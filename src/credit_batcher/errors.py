"""
Error taxonomy for the Credit Batcher.

Ledger errors abort the operation that raised them. Item validation and
provider errors are captured per item by the orchestrator and never abort a
batch. A settlement error is only ever attached to a batch summary.
"""

from enum import Enum
from typing import Optional


class BatcherError(Exception):
    """Base class for all Credit Batcher errors."""
    pass


# ---------------------------------------------------------------------------
# Ledger
# ---------------------------------------------------------------------------

class LedgerError(BatcherError):
    """Raised when a ledger operation cannot be completed."""
    pass


class AccountNotFoundError(LedgerError):
    """Raised when an account does not exist."""

    def __init__(self, account_id: str):
        super().__init__(f"Account {account_id} not found")
        self.account_id = account_id


class InvalidAmountError(LedgerError, ValueError):
    """Raised when a credit amount is not a positive integer."""

    def __init__(self, amount: int):
        super().__init__(f"Credit amount must be positive, got {amount}")
        self.amount = amount


class InsufficientCreditsError(LedgerError):
    """Raised when an account cannot cover a deduction or a batch."""

    def __init__(self, required: int, available: int, message: Optional[str] = None):
        super().__init__(
            message or f"Insufficient credits. Required: {required}, Available: {available}"
        )
        self.required = required
        self.available = available

    @property
    def deficit(self) -> int:
        """Credits missing to cover the requirement."""
        return max(self.required - self.available, 0)

    def to_dict(self) -> dict:
        return {
            "required": self.required,
            "available": self.available,
            "deficit": self.deficit,
        }


class LedgerImmutabilityError(LedgerError):
    """Raised when code attempts to modify or delete a written ledger entry."""
    pass


# ---------------------------------------------------------------------------
# Per-item errors
# ---------------------------------------------------------------------------

class ItemValidationError(BatcherError):
    """Raised when a work item fails media type or size checks."""

    kind = "validation"


class ProviderErrorKind(str, Enum):
    """Normalized classes of provider failure."""
    AUTH = "auth"
    RATE_LIMIT = "rate_limit"
    CONTENT_REJECTED = "content_rejected"
    TIMEOUT = "timeout"
    UNKNOWN = "unknown"


class ProviderError(BatcherError):
    """Base class for normalized provider failures."""

    kind: ProviderErrorKind = ProviderErrorKind.UNKNOWN

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class AuthError(ProviderError):
    """Provider rejected the credentials."""
    kind = ProviderErrorKind.AUTH


class RateLimitError(ProviderError):
    """Provider rate limit or quota exceeded."""
    kind = ProviderErrorKind.RATE_LIMIT


class ContentRejectedError(ProviderError):
    """Provider refused the content (safety filter, unsupported input)."""
    kind = ProviderErrorKind.CONTENT_REJECTED


class ProviderTimeoutError(ProviderError):
    """Provider call exceeded the configured timeout."""
    kind = ProviderErrorKind.TIMEOUT


class UnknownProviderError(ProviderError):
    """Any provider failure that fits no other class."""
    kind = ProviderErrorKind.UNKNOWN


# ---------------------------------------------------------------------------
# Batch level
# ---------------------------------------------------------------------------

class SettlementError(BatcherError):
    """
    The aggregate deduction failed after items were processed.

    Attached to the batch summary; the computed results are still returned
    and the account was not charged.
    """

    def __init__(self, amount_due: int, cause: Exception):
        super().__init__(f"Settlement of {amount_due} credit(s) failed: {cause}")
        self.amount_due = amount_due
        self.cause = cause

    def to_dict(self) -> dict:
        return {
            "amount_due": self.amount_due,
            "cause": type(self.cause).__name__,
            "message": str(self.cause),
        }


class BatchInProgressError(BatcherError):
    """Raised when a batch is submitted while another is running."""
    pass


class BatchSizeError(BatcherError):
    """Raised when a batch holds more items than allowed."""

    def __init__(self, size: int, max_size: int):
        super().__init__(f"Batch of {size} items exceeds the maximum of {max_size}")
        self.size = size
        self.max_size = max_size
