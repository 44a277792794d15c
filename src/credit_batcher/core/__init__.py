"""
Core batch components.

This module contains the work item and batch models, the result
aggregator and the batch orchestrator.
"""

from credit_batcher.core.item import ItemResult, ItemStatus, WorkItem, build_items
from credit_batcher.core.job import (
    BatchJob,
    BatchOutcome,
    BatchProgress,
    BatchSummary,
    JobState,
)
from credit_batcher.core.aggregator import ResultAggregator
from credit_batcher.core.orchestrator import BatchOrchestrator

__all__ = [
    "WorkItem",
    "ItemStatus",
    "ItemResult",
    "build_items",
    "BatchJob",
    "BatchOutcome",
    "BatchProgress",
    "BatchSummary",
    "JobState",
    "ResultAggregator",
    "BatchOrchestrator",
]
