"""
Batch job model.

Represents one submitted batch for the duration of a single run, along with
the progress events and summary it produces.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import List, Optional

from credit_batcher.errors import SettlementError
from credit_batcher.core.item import ItemResult, ItemStatus, WorkItem


class JobState(str, Enum):
    """State of a batch run."""
    IDLE = "idle"                 # Not started
    RUNNING = "running"           # Windows being processed
    COMPLETED = "completed"       # All windows processed
    STOPPED = "stopped"           # Stop observed at a window boundary
    FAILED = "failed"             # Rejected before running


@dataclass
class BatchJob:
    """
    A batch of work items and its run-time bookkeeping.

    Attributes:
        items: Submitted items, in submission order
        concurrency_limit: Items processed concurrently per window
        per_item_cost: Credits charged per successful item
        results: One slot per item, None until the item is processed
        stop_requested: Set by a stop request, observed between windows
    """

    items: List[WorkItem]
    concurrency_limit: int
    per_item_cost: int
    job_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    state: JobState = JobState.IDLE
    stop_requested: bool = False
    results: List[Optional[ItemResult]] = field(default_factory=list)
    success_count: int = 0
    failure_count: int = 0
    created_at: datetime = field(default_factory=datetime.utcnow)
    updated_at: datetime = field(default_factory=datetime.utcnow)

    def __post_init__(self):
        if not self.results:
            self.results = [None] * len(self.items)

    @property
    def total(self) -> int:
        return len(self.items)

    @property
    def required_credits(self) -> int:
        """Credits needed if every item succeeds."""
        return self.total * self.per_item_cost

    @property
    def processed_count(self) -> int:
        return self.success_count + self.failure_count

    def windows(self) -> List[List[WorkItem]]:
        """Split items into consecutive windows of ``concurrency_limit``."""
        return [
            self.items[start:start + self.concurrency_limit]
            for start in range(0, self.total, self.concurrency_limit)
        ]

    def pending_items(self) -> List[WorkItem]:
        return [i for i in self.items if i.status == ItemStatus.PENDING]

    def mark(self, state: JobState) -> None:
        self.state = state
        self.updated_at = datetime.utcnow()

    def __repr__(self) -> str:
        return f"BatchJob(id={self.job_id[:8]}..., state={self.state.value}, size={self.total})"


@dataclass
class BatchProgress:
    """Progress snapshot emitted after each window."""

    processed_count: int
    total_count: int
    success_count: int
    failure_count: int
    percentage: float
    estimated_time_remaining: float

    @classmethod
    def compute(
        cls,
        processed: int,
        total: int,
        successes: int,
        failures: int,
        elapsed: float,
    ) -> "BatchProgress":
        """Build a snapshot, extrapolating remaining time from the average so far."""
        percentage = (processed / total * 100.0) if total else 100.0
        remaining = (elapsed / processed) * (total - processed) if processed else 0.0
        return cls(
            processed_count=processed,
            total_count=total,
            success_count=successes,
            failure_count=failures,
            percentage=round(percentage, 2),
            estimated_time_remaining=remaining,
        )

    def to_dict(self) -> dict:
        return {
            "processed_count": self.processed_count,
            "total_count": self.total_count,
            "success_count": self.success_count,
            "failure_count": self.failure_count,
            "percentage": self.percentage,
            "estimated_time_remaining": self.estimated_time_remaining,
        }


@dataclass
class BatchSummary:
    """
    Final summary of a batch run.

    ``failed`` counts processed items that failed; items never started
    because of a stop are neither successful nor failed.
    """

    total: int
    successful: int
    failed: int
    credits_used: int
    remaining_balance: int
    stopped_early: bool
    state: JobState = JobState.COMPLETED
    transaction_id: Optional[str] = None
    settlement_error: Optional[SettlementError] = None

    @property
    def settled(self) -> bool:
        return self.settlement_error is None

    @property
    def message(self) -> str:
        """Human readable outcome line."""
        processed = self.successful + self.failed
        text = (
            f"{self.failed} of {processed} items failed; "
            f"charged {self.credits_used} credit(s) for {self.successful} success(es)"
        )
        if self.stopped_early:
            text += f"; stopped after {processed} of {self.total} items"
        if self.settlement_error is not None:
            text += f"; settlement failed, {self.settlement_error.amount_due} credit(s) not charged"
        return text

    def to_dict(self) -> dict:
        return {
            "total": self.total,
            "successful": self.successful,
            "failed": self.failed,
            "credits_used": self.credits_used,
            "remaining_balance": self.remaining_balance,
            "stopped_early": self.stopped_early,
            "state": self.state.value,
            "transaction_id": self.transaction_id,
            "settlement_error": (
                self.settlement_error.to_dict() if self.settlement_error else None
            ),
            "message": self.message,
        }


@dataclass
class BatchOutcome:
    """Results in input order plus the summary."""

    results: List[Optional[ItemResult]]
    summary: BatchSummary

    def to_dict(self) -> dict:
        return {
            "results": [r.to_dict() if r else None for r in self.results],
            "summary": self.summary.to_dict(),
        }
