"""
Batch Orchestrator.

Checks that an account can afford a batch, runs its items through the
worker in fixed-size concurrency windows and settles one aggregate
deduction for the items that succeeded.
"""

import asyncio
import inspect
import time
from typing import Any, AsyncIterator, Callable, List, Optional, Sequence, Union

import structlog

from credit_batcher.config import BatcherConfig, get_config
from credit_batcher.core.aggregator import ResultAggregator
from credit_batcher.errors import (
    BatcherError,
    BatchInProgressError,
    BatchSizeError,
    InsufficientCreditsError,
    ItemValidationError,
    LedgerError,
    ProviderError,
    SettlementError,
)
from credit_batcher.core.item import ItemResult, WorkItem
from credit_batcher.core.job import BatchJob, BatchOutcome, BatchProgress, JobState
from credit_batcher.ledger.entry import LedgerEntryKind
from credit_batcher.ledger.ledger import BalanceLedger
from credit_batcher.worker.interface import WorkerInterface
from credit_batcher.worker.invoker import WorkerInvoker

logger = structlog.get_logger(__name__)

ProgressCallback = Callable[[BatchProgress], Any]


class BatchOrchestrator:
    """
    Runs credit-metered batches for one account.

    Usage:
        ```python
        orchestrator = BatchOrchestrator(ledger, worker, account_id="acct-1")
        outcome = await orchestrator.run(items, per_item_cost=3)
        print(outcome.summary.to_dict())
        ```

    ``stop()`` may be called from any task while a run is in progress; it is
    observed before the next window starts.
    """

    def __init__(
        self,
        ledger: BalanceLedger,
        worker: Union[WorkerInterface, WorkerInvoker],
        account_id: str,
        config: Optional[BatcherConfig] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Initialize the orchestrator.

        Args:
            ledger: Ledger holding the account's balance
            worker: Worker adapter, or an invoker already wrapping one
            account_id: Account charged for every batch
            config: Batcher configuration
            clock: Monotonic clock used for time estimates
        """
        self.config = config or get_config()
        self.ledger = ledger
        self.account_id = account_id
        if isinstance(worker, WorkerInvoker):
            self.invoker = worker
        else:
            self.invoker = WorkerInvoker(worker, config=self.config)
        self._clock = clock
        self._job: Optional[BatchJob] = None

    # State

    @property
    def job(self) -> Optional[BatchJob]:
        """The current or most recent batch."""
        return self._job

    @property
    def state(self) -> JobState:
        return self._job.state if self._job else JobState.IDLE

    @property
    def is_processing(self) -> bool:
        return self._job is not None and self._job.state in (JobState.IDLE, JobState.RUNNING)

    def stop(self) -> None:
        """Request that no further windows are started."""
        if self._job is None or self._job.state not in (JobState.IDLE, JobState.RUNNING):
            logger.debug("stop_ignored", state=self.state.value)
            return
        self._job.stop_requested = True
        logger.info("batch_stop_requested", job_id=self._job.job_id[:8] + "...")

    # Running

    async def run(
        self,
        items: Sequence[WorkItem],
        per_item_cost: Optional[int] = None,
        concurrency_limit: Optional[int] = None,
        on_progress: Optional[ProgressCallback] = None,
        on_start: Optional[Callable[[BatchJob, int], Any]] = None,
    ) -> BatchOutcome:
        """
        Process a batch and settle its cost.

        Args:
            items: Work items, ``items[i].index == i``
            per_item_cost: Credits per successful item (config default)
            concurrency_limit: Window size (config default)
            on_progress: Called with a BatchProgress after each window
            on_start: Called with the job and available balance once the
                pre-check has passed

        Returns:
            Results in input order and the batch summary

        Raises:
            BatchInProgressError: If a batch is already running
            BatchSizeError: If the batch exceeds the maximum size
            InsufficientCreditsError: If the account cannot afford the batch
        """
        if self.is_processing:
            raise BatchInProgressError("Processing is already in progress")

        job = self._create_job(items, per_item_cost, concurrency_limit)
        self._job = job

        available = await self._pre_check(job)

        job.mark(JobState.RUNNING)
        logger.info(
            "batch_started",
            job_id=job.job_id[:8] + "...",
            account_id=self.account_id,
            size=job.total,
            per_item_cost=job.per_item_cost,
            concurrency_limit=job.concurrency_limit,
        )

        try:
            if on_start is not None:
                await _maybe_await(on_start(job, available))
            aggregator = ResultAggregator(job.total)
            stopped = await self._run_windows(job, aggregator, on_progress)
            outcome = await self._settle(job, aggregator, stopped, available)
        except BaseException:
            job.mark(JobState.FAILED)
            logger.error("batch_aborted", job_id=job.job_id[:8] + "...")
            raise

        job.mark(outcome.summary.state)
        logger.info(
            "batch_completed",
            job_id=job.job_id[:8] + "...",
            state=job.state.value,
            successful=outcome.summary.successful,
            failed=outcome.summary.failed,
            credits_used=outcome.summary.credits_used,
        )
        return outcome

    def _create_job(
        self,
        items: Sequence[WorkItem],
        per_item_cost: Optional[int],
        concurrency_limit: Optional[int],
    ) -> BatchJob:
        cost = self.config.per_item_cost if per_item_cost is None else per_item_cost
        limit = self.config.concurrency_limit if concurrency_limit is None else concurrency_limit

        if cost < 0:
            raise ValueError(f"per_item_cost must not be negative, got {cost}")
        if limit < 1:
            raise ValueError(f"concurrency_limit must be at least 1, got {limit}")
        if len(items) > self.config.max_batch_size:
            raise BatchSizeError(len(items), self.config.max_batch_size)
        for position, item in enumerate(items):
            if item.index != position:
                raise ValueError(f"Item at position {position} has index {item.index}")

        return BatchJob(items=list(items), concurrency_limit=limit, per_item_cost=cost)

    async def _pre_check(self, job: BatchJob) -> int:
        """Reject the batch before any worker call if it cannot be afforded."""
        try:
            validation = await self.ledger.validate(self.account_id, job.required_credits)
        except LedgerError:
            job.mark(JobState.FAILED)
            raise

        if not validation.is_valid:
            job.mark(JobState.FAILED)
            logger.warning(
                "batch_rejected",
                job_id=job.job_id[:8] + "...",
                account_id=self.account_id,
                required=validation.required,
                available=validation.available,
            )
            raise InsufficientCreditsError(validation.required, validation.available)

        return validation.available

    async def _run_windows(
        self,
        job: BatchJob,
        aggregator: ResultAggregator,
        on_progress: Optional[ProgressCallback],
    ) -> bool:
        """Process windows in order. Returns True if a stop was observed."""
        started_at = self._clock()
        windows = job.windows()

        for number, window in enumerate(windows, start=1):
            if job.stop_requested:
                logger.info(
                    "batch_stopped",
                    job_id=job.job_id[:8] + "...",
                    processed=aggregator.processed_count,
                    remaining=len(job.pending_items()),
                )
                return True

            logger.debug(
                "window_started",
                job_id=job.job_id[:8] + "...",
                window=number,
                of=len(windows),
                size=len(window),
            )

            results = await asyncio.gather(*(self._process_item(item) for item in window))
            for result in results:
                aggregator.record(result)

            job.results = aggregator.results
            job.success_count = aggregator.success_count
            job.failure_count = aggregator.failure_count

            progress = BatchProgress.compute(
                processed=aggregator.processed_count,
                total=job.total,
                successes=aggregator.success_count,
                failures=aggregator.failure_count,
                elapsed=self._clock() - started_at,
            )
            logger.info(
                "window_completed",
                job_id=job.job_id[:8] + "...",
                window=number,
                processed=progress.processed_count,
                total=progress.total_count,
                percentage=progress.percentage,
            )
            if on_progress is not None:
                await _maybe_await(on_progress(progress))

        return False

    async def _process_item(self, item: WorkItem) -> ItemResult:
        """Validate and classify one item. Failures become the item's result."""
        try:
            self._validate_item(item)
            item.mark_processing()
            output = await self.invoker.invoke(item)
        except (ItemValidationError, ProviderError) as e:
            item.mark_failed()
            logger.info(
                "item_failed",
                index=item.index,
                item=item.label,
                kind=getattr(e.kind, "value", e.kind),
                error=str(e),
            )
            return ItemResult.failed(item, e)

        item.mark_completed()
        return ItemResult.succeeded(item, output)

    def _validate_item(self, item: WorkItem) -> None:
        allowed: List[str] = self.config.allowed_media_types
        if item.media_type not in allowed:
            raise ItemValidationError(
                f"Invalid file type: {item.media_type}. Allowed types: {', '.join(allowed)}"
            )

        max_size = self.config.max_item_size_bytes
        if item.size > max_size:
            raise ItemValidationError(
                f"File size too large: {item.size / 1024 / 1024:.2f}MB. "
                f"Maximum allowed: {max_size / 1024 / 1024:.2f}MB"
            )
        if item.size == 0:
            raise ItemValidationError(f"File {item.label} is empty")

    async def _settle(
        self,
        job: BatchJob,
        aggregator: ResultAggregator,
        stopped: bool,
        available: int,
    ) -> BatchOutcome:
        """Issue the single aggregate deduction and build the summary."""
        amount_due = aggregator.success_count * job.per_item_cost
        credits_used = 0
        transaction_id = None
        settlement_error = None

        if amount_due > 0:
            try:
                transaction = await self.ledger.deduct(
                    self.account_id,
                    amount_due,
                    description=(
                        f"Batch {job.job_id[:8]}: {aggregator.success_count} of "
                        f"{job.total} item(s) processed"
                    ),
                    kind=LedgerEntryKind.CONSUMPTION,
                )
                credits_used = amount_due
                transaction_id = transaction.transaction_id
                remaining = transaction.new_balance
            except LedgerError as e:
                settlement_error = SettlementError(amount_due, e)
                logger.error(
                    "settlement_failed",
                    job_id=job.job_id[:8] + "...",
                    account_id=self.account_id,
                    amount_due=amount_due,
                    error=str(e),
                )
                remaining = await self._current_balance(available)
        else:
            remaining = await self._current_balance(available)

        summary = aggregator.summarize(
            credits_used=credits_used,
            remaining_balance=remaining,
            stopped_early=stopped,
            transaction_id=transaction_id,
            settlement_error=settlement_error,
        )
        return BatchOutcome(results=aggregator.results, summary=summary)

    async def _current_balance(self, fallback: int) -> int:
        try:
            return await self.ledger.get_balance(self.account_id, force_refresh=True)
        except LedgerError as e:
            logger.warning("balance_unavailable", account_id=self.account_id, error=str(e))
            return fallback

    # Streaming

    async def stream(
        self,
        items: Sequence[WorkItem],
        per_item_cost: Optional[int] = None,
        concurrency_limit: Optional[int] = None,
    ) -> AsyncIterator[dict]:
        """
        Run a batch, yielding progress events as they happen.

        Yields dicts with a ``type`` of ``started``, ``progress``, ``stopped``,
        ``complete`` or ``error``. Closing the iterator early requests a stop
        and waits for the in-flight window and settlement.
        """
        queue: asyncio.Queue = asyncio.Queue()

        async def on_start(job: BatchJob, available: int) -> None:
            await queue.put({
                "type": "started",
                "job_id": job.job_id,
                "total": job.total,
                "required_credits": job.required_credits,
                "remaining_credits": available,
            })

        async def on_progress(progress: BatchProgress) -> None:
            await queue.put({"type": "progress", **progress.to_dict()})

        task = asyncio.create_task(self.run(
            items,
            per_item_cost=per_item_cost,
            concurrency_limit=concurrency_limit,
            on_progress=on_progress,
            on_start=on_start,
        ))

        try:
            while True:
                getter = asyncio.ensure_future(queue.get())
                done, _ = await asyncio.wait({getter, task}, return_when=asyncio.FIRST_COMPLETED)
                if getter in done:
                    yield getter.result()
                    continue
                getter.cancel()
                break

            while not queue.empty():
                yield queue.get_nowait()

            try:
                outcome = task.result()
            except InsufficientCreditsError as e:
                yield {
                    "type": "error",
                    "error": "insufficient_credits",
                    "message": str(e),
                    **e.to_dict(),
                }
                return
            except BatcherError as e:
                yield {
                    "type": "error",
                    "error": type(e).__name__,
                    "message": str(e),
                }
                return

            summary = outcome.summary
            if summary.stopped_early:
                yield {
                    "type": "stopped",
                    "message": "Processing stopped on request",
                    "remaining_credits": summary.remaining_balance,
                }
            yield {
                "type": "complete",
                "summary": summary.to_dict(),
                "results": [r.to_dict() if r else None for r in outcome.results],
            }
        finally:
            if not task.done():
                self.stop()
                await asyncio.wait({task})
                if not task.cancelled() and task.exception() is not None:
                    logger.error("stream_run_failed", error=str(task.exception()))


async def _maybe_await(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value
