"""
Ledger value objects.

Plain, immutable views of accounts and ledger entries as returned by the
ledger. The database records they are read from live in
``credit_batcher.ledger.database``.
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional


class LedgerEntryKind(str, Enum):
    """Reason for a balance change."""
    CONSUMPTION = "consumption"           # Credits spent on processed items
    ADMIN_ADJUSTMENT = "admin_adjustment" # Manual credit grant or correction
    REFUND = "refund"                     # Credits returned to the account


@dataclass(frozen=True)
class Account:
    """An account and its spendable balance."""

    account_id: str
    balance: int
    created_at: datetime
    updated_at: datetime

    def to_dict(self) -> dict:
        return {
            "account_id": self.account_id,
            "balance": self.balance,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }


@dataclass(frozen=True)
class LedgerEntry:
    """One append-only balance change."""

    entry_id: str
    account_id: str
    amount: int
    kind: LedgerEntryKind
    description: str
    created_at: datetime

    def to_dict(self) -> dict:
        return {
            "entry_id": self.entry_id,
            "account_id": self.account_id,
            "amount": self.amount,
            "kind": self.kind.value,
            "description": self.description,
            "created_at": self.created_at.isoformat(),
        }


@dataclass(frozen=True)
class TransactionResult:
    """Result of a successful deduct or add."""

    new_balance: int
    transaction_id: str


@dataclass(frozen=True)
class BalanceValidation:
    """Outcome of an affordability check."""

    is_valid: bool
    available: int
    required: int
    deficit: Optional[int] = None

    @classmethod
    def check(cls, available: int, required: int) -> "BalanceValidation":
        is_valid = available >= required
        return cls(
            is_valid=is_valid,
            available=available,
            required=required,
            deficit=None if is_valid else required - available,
        )
