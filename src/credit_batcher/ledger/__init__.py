"""
Balance Ledger.

Account balances, their append-only history and the short-lived read
cache in front of them.
"""

from credit_batcher.ledger.cache import BalanceCache
from credit_batcher.ledger.database import Database, init_database
from credit_batcher.ledger.entry import (
    Account,
    BalanceValidation,
    LedgerEntry,
    LedgerEntryKind,
    TransactionResult,
)
from credit_batcher.ledger.ledger import BalanceLedger

__all__ = [
    "BalanceCache",
    "Database",
    "init_database",
    "Account",
    "BalanceValidation",
    "LedgerEntry",
    "LedgerEntryKind",
    "TransactionResult",
    "BalanceLedger",
]
