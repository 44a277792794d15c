"""
Result Aggregator - keeps item results in input order.
"""

from typing import List, Optional

import structlog

from credit_batcher.errors import SettlementError
from credit_batcher.core.item import ItemResult
from credit_batcher.core.job import BatchSummary, JobState

logger = structlog.get_logger(__name__)


class ResultAggregator:
    """
    Collects item results into slots indexed by the original item position.

    Completion order within a window does not matter: a result for item
    ``i`` always lands in ``results[i]``.
    """

    def __init__(self, total: int):
        self.total = total
        self._results: List[Optional[ItemResult]] = [None] * total
        self.success_count = 0
        self.failure_count = 0

    def record(self, result: ItemResult) -> None:
        """
        Store a result in its slot.

        Raises:
            IndexError: If the index is outside the batch
            ValueError: If the slot was already filled
        """
        if not 0 <= result.index < self.total:
            raise IndexError(f"Result index {result.index} outside batch of {self.total}")
        if self._results[result.index] is not None:
            raise ValueError(f"Result for index {result.index} already recorded")

        self._results[result.index] = result
        if result.success:
            self.success_count += 1
        else:
            self.failure_count += 1

        logger.debug(
            "result_recorded",
            index=result.index,
            success=result.success,
            error_kind=result.error_kind,
        )

    @property
    def results(self) -> List[Optional[ItemResult]]:
        return list(self._results)

    @property
    def processed_count(self) -> int:
        return self.success_count + self.failure_count

    def summarize(
        self,
        credits_used: int,
        remaining_balance: int,
        stopped_early: bool,
        transaction_id: Optional[str] = None,
        settlement_error: Optional[SettlementError] = None,
    ) -> BatchSummary:
        """Produce the final summary for the batch."""
        return BatchSummary(
            total=self.total,
            successful=self.success_count,
            failed=self.failure_count,
            credits_used=credits_used,
            remaining_balance=remaining_balance,
            stopped_early=stopped_early,
            state=JobState.STOPPED if stopped_early else JobState.COMPLETED,
            transaction_id=transaction_id,
            settlement_error=settlement_error,
        )
