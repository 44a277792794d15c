"""
Test suite for the batch orchestrator.

Covers the pre-run affordability check, windowed processing, per-item
failure isolation, cooperative stop and the single aggregate settlement.
"""

import asyncio
from unittest.mock import AsyncMock, patch

import pytest

from credit_batcher.core.item import ItemStatus
from credit_batcher.core.job import JobState
from credit_batcher.core.orchestrator import BatchOrchestrator
from credit_batcher.errors import (
    AccountNotFoundError,
    BatchInProgressError,
    BatchSizeError,
    ContentRejectedError,
    InsufficientCreditsError,
    ItemValidationError,
    LedgerError,
    ProviderTimeoutError,
    RateLimitError,
    SettlementError,
)
from credit_batcher.ledger.entry import LedgerEntryKind
from credit_batcher.ledger.ledger import BalanceLedger
from credit_batcher.worker.invoker import WorkerInvoker

from conftest import FakeClock, MockWorker, make_items


def make_orchestrator(ledger, worker, test_config, account_id="acct-1", clock=None):
    kwargs = {"config": test_config}
    if clock is not None:
        kwargs["clock"] = clock
    return BatchOrchestrator(ledger, worker, account_id, **kwargs)


async def consumption_entries(ledger, account_id="acct-1"):
    history = await ledger.get_history(account_id)
    return [e for e in history if e.kind == LedgerEntryKind.CONSUMPTION]


# ============================================================================
# Reference Scenarios
# ============================================================================

class TestBatchScenarios:
    """End-to-end batch runs against a real ledger."""

    @pytest.mark.asyncio
    async def test_all_items_succeed(self, ledger, funded_account, mock_worker, test_config):
        """Test a fully successful batch is charged once for every item."""
        orchestrator = make_orchestrator(ledger, mock_worker, test_config)

        outcome = await orchestrator.run(make_items(10), per_item_cost=3)

        summary = outcome.summary
        assert summary.successful == 10
        assert summary.failed == 0
        assert summary.stopped_early is False
        assert summary.credits_used == 30
        assert summary.remaining_balance == 970
        assert summary.state == JobState.COMPLETED
        assert summary.settled is True

        assert await ledger.get_balance(funded_account, force_refresh=True) == 970
        entries = await consumption_entries(ledger)
        assert len(entries) == 1
        assert entries[0].amount == -30
        assert entries[0].entry_id == summary.transaction_id
        assert await ledger.verify_balance(funded_account) is True

    @pytest.mark.asyncio
    async def test_insufficient_credits_rejects_before_processing(
        self, ledger, mock_worker, test_config
    ):
        """Test an unaffordable batch is rejected with no worker calls."""
        await ledger.open_account("acct-1", initial_balance=10)
        orchestrator = make_orchestrator(ledger, mock_worker, test_config)

        with pytest.raises(InsufficientCreditsError) as exc_info:
            await orchestrator.run(make_items(5), per_item_cost=3)

        assert exc_info.value.required == 15
        assert exc_info.value.available == 10
        assert mock_worker.calls == []
        assert orchestrator.state == JobState.FAILED
        assert orchestrator.is_processing is False
        assert await ledger.get_balance("acct-1", force_refresh=True) == 10
        assert await consumption_entries(ledger) == []

    @pytest.mark.asyncio
    async def test_charged_only_for_successes(self, ledger, funded_account, mock_worker, test_config):
        """Test items failing validation are not charged."""
        orchestrator = make_orchestrator(ledger, mock_worker, test_config)

        outcome = await orchestrator.run(make_items(10, invalid=(1, 4, 8)), per_item_cost=3)

        assert outcome.summary.successful == 7
        assert outcome.summary.failed == 3
        assert outcome.summary.credits_used == 21
        assert outcome.summary.remaining_balance == 979

        for index in (1, 4, 8):
            result = outcome.results[index]
            assert result.success is False
            assert isinstance(result.error, ItemValidationError)
            assert result.error_kind == "validation"
        assert len(mock_worker.calls) == 7
        assert "file-1.png" not in mock_worker.calls

    @pytest.mark.asyncio
    async def test_stop_after_first_window(self, ledger, funded_account, mock_worker, test_config):
        """Test a stop requested during window 1 leaves later items untouched."""
        orchestrator = make_orchestrator(ledger, mock_worker, test_config)
        items = make_items(10, invalid=(2,))

        def on_progress(progress):
            orchestrator.stop()

        outcome = await orchestrator.run(
            items,
            per_item_cost=3,
            concurrency_limit=5,
            on_progress=on_progress,
        )

        summary = outcome.summary
        assert summary.stopped_early is True
        assert summary.state == JobState.STOPPED
        assert summary.successful == 4
        assert summary.failed == 1
        assert summary.credits_used == 12
        assert summary.remaining_balance == 988

        assert [r is not None for r in outcome.results] == [True] * 5 + [False] * 5
        assert all(item.status == ItemStatus.PENDING for item in items[5:])
        assert len(mock_worker.calls) == 4
        assert orchestrator.state == JobState.STOPPED


# ============================================================================
# Windows and Ordering
# ============================================================================

class TestWindowing:
    """Tests for concurrency windows and result ordering."""

    @pytest.mark.asyncio
    async def test_results_keep_input_order(self, ledger, funded_account, test_config):
        """Test results are indexed by input position, not completion order."""
        delays = {f"file-{i}.png": 0.05 - i * 0.01 for i in range(5)}
        worker = MockWorker(delays=delays)
        orchestrator = make_orchestrator(ledger, worker, test_config)

        outcome = await orchestrator.run(make_items(5), concurrency_limit=5)

        assert worker.completed == [f"file-{i}.png" for i in reversed(range(5))]
        assert [r.index for r in outcome.results] == list(range(5))
        assert [r.filename for r in outcome.results] == [f"file-{i}.png" for i in range(5)]

    @pytest.mark.asyncio
    async def test_concurrency_bounded_by_window(self, ledger, funded_account, test_config):
        """Test no more than concurrency_limit calls are in flight."""
        worker = MockWorker(delays={f"file-{i}.png": 0.01 for i in range(10)})
        orchestrator = make_orchestrator(ledger, worker, test_config)

        await orchestrator.run(make_items(10), concurrency_limit=3)

        assert worker.max_in_flight == 3

    @pytest.mark.asyncio
    async def test_windows_run_in_sequence(self, ledger, funded_account, test_config):
        """Test a window starts only after the previous one has finished."""
        worker = MockWorker(delays={"file-0.png": 0.05})
        seen_at_call = {}

        async def snapshot(filename):
            seen_at_call[filename] = list(worker.completed)

        worker.on_call = snapshot
        orchestrator = make_orchestrator(ledger, worker, test_config)

        await orchestrator.run(make_items(4), concurrency_limit=2)

        # file-0 is slow but still has to finish before window 2 starts
        assert "file-0.png" not in seen_at_call["file-1.png"]
        assert "file-0.png" in seen_at_call["file-2.png"]
        assert "file-1.png" in seen_at_call["file-3.png"]

    @pytest.mark.asyncio
    async def test_progress_events(self, ledger, funded_account, test_config):
        """Test one progress event per window with time estimates."""
        clock = FakeClock()
        worker = MockWorker(clock=clock, tick=1.0)
        orchestrator = make_orchestrator(ledger, worker, test_config, clock=clock)
        events = []

        await orchestrator.run(
            make_items(10, invalid=(9,)),
            concurrency_limit=4,
            on_progress=events.append,
        )

        assert [e.processed_count for e in events] == [4, 8, 10]
        assert [e.percentage for e in events] == [40.0, 80.0, 100.0]
        assert events[-1].success_count == 9
        assert events[-1].failure_count == 1
        # Four calls tick the clock per full window
        assert events[0].estimated_time_remaining == pytest.approx(6.0)
        assert events[1].estimated_time_remaining == pytest.approx(2.0)
        assert events[2].estimated_time_remaining == 0

    @pytest.mark.asyncio
    async def test_async_progress_callback(self, ledger, funded_account, mock_worker, test_config):
        """Test coroutine callbacks are awaited."""
        orchestrator = make_orchestrator(ledger, mock_worker, test_config)
        seen = []

        async def on_progress(progress):
            seen.append(progress.processed_count)

        await orchestrator.run(make_items(6), concurrency_limit=3, on_progress=on_progress)

        assert seen == [3, 6]


# ============================================================================
# Per-Item Failures
# ============================================================================

class TestItemFailures:
    """Tests that item failures are captured and never abort the batch."""

    @pytest.mark.asyncio
    async def test_provider_failures_are_classified(self, ledger, funded_account, test_config):
        """Test provider failures land in the failing item's slot."""
        worker = MockWorker(failures={
            "file-1.png": Exception("429 Too Many Requests"),
            "file-2.png": ContentRejectedError("Blocked by safety filter"),
            "file-3.png": RuntimeError("something odd"),
        })
        orchestrator = make_orchestrator(ledger, worker, test_config)

        outcome = await orchestrator.run(make_items(5), per_item_cost=2)

        kinds = [r.error_kind for r in outcome.results]
        assert kinds == [None, "rate_limit", "content_rejected", "unknown", None]
        assert isinstance(outcome.results[1].error, RateLimitError)
        assert outcome.summary.successful == 2
        assert outcome.summary.credits_used == 4

    @pytest.mark.asyncio
    async def test_worker_timeout(self, ledger, funded_account, test_config):
        """Test a hung call fails only its own item."""
        worker = MockWorker(delays={"file-0.png": 5.0})
        invoker = WorkerInvoker(worker, timeout_seconds=0.05, config=test_config)
        orchestrator = make_orchestrator(ledger, invoker, test_config)

        outcome = await orchestrator.run(make_items(3))

        assert isinstance(outcome.results[0].error, ProviderTimeoutError)
        assert outcome.results[0].error_kind == "timeout"
        assert "file-0.png" in worker.cancelled
        assert outcome.summary.successful == 2
        assert outcome.summary.credits_used == 2

    @pytest.mark.asyncio
    async def test_oversized_and_empty_items(self, ledger, funded_account, mock_worker, test_config):
        """Test size checks reject oversized and empty payloads."""
        items = make_items(3)
        items[0].payload = b"x" * (test_config.max_item_size_bytes + 1)
        items[1].payload = b""
        orchestrator = make_orchestrator(ledger, mock_worker, test_config)

        outcome = await orchestrator.run(items)

        assert "File size too large" in outcome.results[0].error_message
        assert "is empty" in outcome.results[1].error_message
        assert outcome.results[2].success is True
        assert mock_worker.calls == ["file-2.png"]

    @pytest.mark.asyncio
    async def test_all_items_fail_skips_settlement(self, ledger, funded_account, mock_worker, test_config):
        """Test a batch with no successes writes no ledger entry."""
        orchestrator = make_orchestrator(ledger, mock_worker, test_config)

        outcome = await orchestrator.run(make_items(3, invalid=(0, 1, 2)), per_item_cost=5)

        assert outcome.summary.successful == 0
        assert outcome.summary.credits_used == 0
        assert outcome.summary.transaction_id is None
        assert outcome.summary.remaining_balance == 1000
        assert await consumption_entries(ledger) == []


# ============================================================================
# Settlement
# ============================================================================

class TestSettlement:
    """Tests for the aggregate deduction after processing."""

    @pytest.mark.asyncio
    async def test_settlement_failure_is_reported(self, ledger, database, test_config):
        """Test a failed deduction keeps the results and reports the amount due."""
        await ledger.open_account("acct-1", initial_balance=30)
        other = BalanceLedger(database, config=test_config)
        worker = MockWorker()

        async def drain(filename):
            if filename == "file-0.png":
                await other.deduct("acct-1", 25, "Spent elsewhere")

        worker.on_call = drain
        orchestrator = make_orchestrator(ledger, worker, test_config)

        outcome = await orchestrator.run(make_items(3), per_item_cost=10)

        summary = outcome.summary
        assert summary.successful == 3
        assert summary.credits_used == 0
        assert summary.remaining_balance == 5
        assert summary.transaction_id is None
        assert summary.settled is False
        assert isinstance(summary.settlement_error, SettlementError)
        assert summary.settlement_error.amount_due == 30
        assert isinstance(summary.settlement_error.cause, InsufficientCreditsError)
        assert "settlement failed" in summary.message
        assert all(r.success for r in outcome.results)

        entries = await consumption_entries(ledger)
        assert [e.description for e in entries] == ["Spent elsewhere"]

    @pytest.mark.asyncio
    async def test_settlement_store_failure(self, ledger, funded_account, mock_worker, test_config):
        """Test a store failure during settlement falls back to the current balance."""
        orchestrator = make_orchestrator(ledger, mock_worker, test_config)
        failing = AsyncMock(side_effect=LedgerError("Credit transaction failed: disk I/O error"))

        with patch.object(ledger, "deduct", failing):
            outcome = await orchestrator.run(make_items(2), per_item_cost=4)

        failing.assert_awaited_once()
        assert failing.await_args.args == ("acct-1", 8)
        assert outcome.summary.settlement_error.amount_due == 8
        assert outcome.summary.remaining_balance == 1000
        assert outcome.summary.state == JobState.COMPLETED
        assert orchestrator.is_processing is False

    @pytest.mark.asyncio
    async def test_zero_cost_batch(self, ledger, funded_account, mock_worker, test_config):
        """Test a free batch runs without touching the ledger."""
        orchestrator = make_orchestrator(ledger, mock_worker, test_config)

        outcome = await orchestrator.run(make_items(4), per_item_cost=0)

        assert outcome.summary.successful == 4
        assert outcome.summary.credits_used == 0
        assert await consumption_entries(ledger) == []

    @pytest.mark.asyncio
    async def test_empty_batch(self, ledger, funded_account, mock_worker, test_config):
        """Test an empty batch completes immediately."""
        orchestrator = make_orchestrator(ledger, mock_worker, test_config)

        outcome = await orchestrator.run([])

        assert outcome.results == []
        assert outcome.summary.total == 0
        assert outcome.summary.state == JobState.COMPLETED
        assert outcome.summary.remaining_balance == 1000


# ============================================================================
# Submission Checks
# ============================================================================

class TestSubmission:
    """Tests for batch submission rules."""

    @pytest.mark.asyncio
    async def test_batch_too_large(self, ledger, funded_account, mock_worker, test_config):
        """Test batches over the maximum size are refused."""
        orchestrator = make_orchestrator(ledger, mock_worker, test_config)

        with pytest.raises(BatchSizeError) as exc_info:
            await orchestrator.run(make_items(test_config.max_batch_size + 1))

        assert exc_info.value.max_size == test_config.max_batch_size
        assert mock_worker.calls == []

    @pytest.mark.asyncio
    async def test_invalid_parameters(self, ledger, funded_account, mock_worker, test_config):
        """Test negative costs, zero windows and misnumbered items are refused."""
        orchestrator = make_orchestrator(ledger, mock_worker, test_config)

        with pytest.raises(ValueError):
            await orchestrator.run(make_items(2), per_item_cost=-1)
        with pytest.raises(ValueError):
            await orchestrator.run(make_items(2), concurrency_limit=0)

        items = make_items(2)
        items[1].index = 5
        with pytest.raises(ValueError):
            await orchestrator.run(items)

    @pytest.mark.asyncio
    async def test_unknown_account(self, ledger, mock_worker, test_config):
        """Test a batch for a missing account fails before processing."""
        orchestrator = make_orchestrator(ledger, mock_worker, test_config, account_id="ghost")

        with pytest.raises(AccountNotFoundError):
            await orchestrator.run(make_items(2))

        assert orchestrator.state == JobState.FAILED
        assert mock_worker.calls == []

    @pytest.mark.asyncio
    async def test_concurrent_run_rejected(self, ledger, funded_account, test_config):
        """Test a second run while one is in progress is refused."""
        worker = MockWorker()
        worker.gate = asyncio.Event()
        orchestrator = make_orchestrator(ledger, worker, test_config)

        first = asyncio.create_task(orchestrator.run(make_items(2)))
        await worker.entered.wait()
        assert orchestrator.is_processing is True

        with pytest.raises(BatchInProgressError):
            await orchestrator.run(make_items(2))

        worker.gate.set()
        outcome = await first
        assert outcome.summary.successful == 2

        # A new batch may start once the previous one has finished
        worker.gate = None
        outcome = await orchestrator.run(make_items(1))
        assert outcome.summary.successful == 1

    @pytest.mark.asyncio
    async def test_stop_from_another_task(self, ledger, funded_account, test_config):
        """Test stop() called while a window is in flight ends the run after it."""
        worker = MockWorker()
        worker.gate = asyncio.Event()
        orchestrator = make_orchestrator(ledger, worker, test_config)

        task = asyncio.create_task(orchestrator.run(make_items(6), concurrency_limit=2))
        await worker.entered.wait()
        orchestrator.stop()
        worker.gate.set()
        outcome = await task

        assert outcome.summary.stopped_early is True
        assert outcome.summary.successful == 2
        assert outcome.summary.credits_used == 2
        assert len(worker.calls) == 2

    @pytest.mark.asyncio
    async def test_stop_when_idle_is_ignored(self, ledger, funded_account, mock_worker, test_config):
        """Test stop() outside a run has no effect on the next run."""
        orchestrator = make_orchestrator(ledger, mock_worker, test_config)
        orchestrator.stop()

        outcome = await orchestrator.run(make_items(3))

        assert outcome.summary.stopped_early is False
        assert outcome.summary.successful == 3


# ============================================================================
# Streaming
# ============================================================================

class TestStream:
    """Tests for the event stream."""

    @pytest.mark.asyncio
    async def test_event_sequence(self, ledger, funded_account, mock_worker, test_config):
        """Test started, progress and complete events in order."""
        orchestrator = make_orchestrator(ledger, mock_worker, test_config)

        events = [e async for e in orchestrator.stream(make_items(4), per_item_cost=2, concurrency_limit=2)]

        assert [e["type"] for e in events] == ["started", "progress", "progress", "complete"]
        assert events[0]["required_credits"] == 8
        assert events[0]["remaining_credits"] == 1000
        assert events[2]["percentage"] == 100.0
        complete = events[-1]
        assert complete["summary"]["credits_used"] == 8
        assert complete["summary"]["remaining_balance"] == 992
        assert [r["index"] for r in complete["results"]] == [0, 1, 2, 3]

    @pytest.mark.asyncio
    async def test_insufficient_credits_event(self, ledger, mock_worker, test_config):
        """Test a rejected batch yields a single error event."""
        await ledger.open_account("acct-1", initial_balance=10)
        orchestrator = make_orchestrator(ledger, mock_worker, test_config)

        events = [e async for e in orchestrator.stream(make_items(5), per_item_cost=3)]

        assert len(events) == 1
        assert events[0]["type"] == "error"
        assert events[0]["error"] == "insufficient_credits"
        assert events[0]["required"] == 15
        assert events[0]["available"] == 10
        assert events[0]["deficit"] == 5

    @pytest.mark.asyncio
    async def test_stopped_event(self, ledger, funded_account, mock_worker, test_config):
        """Test a stop during streaming yields a stopped event before completion."""
        mock_worker.gate = asyncio.Event()
        orchestrator = make_orchestrator(ledger, mock_worker, test_config)
        types = []

        async for event in orchestrator.stream(make_items(6), concurrency_limit=2):
            types.append(event["type"])
            if event["type"] == "started":
                orchestrator.stop()
                mock_worker.gate.set()

        assert types == ["started", "progress", "stopped", "complete"]
        assert len(mock_worker.calls) == 2
        assert orchestrator.state == JobState.STOPPED

    @pytest.mark.asyncio
    async def test_closing_stream_stops_run(self, ledger, funded_account, mock_worker, test_config):
        """Test abandoning the stream stops the run and still settles."""
        mock_worker.gate = asyncio.Event()
        orchestrator = make_orchestrator(ledger, mock_worker, test_config)

        stream = orchestrator.stream(make_items(6), concurrency_limit=2)
        async for event in stream:
            if event["type"] == "started":
                mock_worker.gate.set()
                break
        await stream.aclose()

        assert orchestrator.state == JobState.STOPPED
        assert orchestrator.job.success_count == 2
        assert await ledger.get_balance(funded_account, force_refresh=True) == 998
