"""
Credit Batcher

A credit-metered batch processor. Batches of files are checked against an
account's balance, classified by an external provider in bounded
concurrency windows, and charged only for the items that succeeded.
"""

__version__ = "0.1.0"

from credit_batcher.core.item import ItemResult, ItemStatus, WorkItem
from credit_batcher.core.job import BatchOutcome, BatchSummary, JobState
from credit_batcher.core.orchestrator import BatchOrchestrator
from credit_batcher.ledger.ledger import BalanceLedger

__all__ = [
    "BatchOrchestrator",
    "BalanceLedger",
    "WorkItem",
    "ItemStatus",
    "ItemResult",
    "BatchOutcome",
    "BatchSummary",
    "JobState",
]
