"""
Pytest configuration and shared fixtures for the test suite.
"""

import asyncio
from typing import Any, Dict, Iterable, List, Optional

import pytest
import pytest_asyncio

from credit_batcher.config import BatcherConfig
from credit_batcher.core.item import WorkItem, build_items
from credit_batcher.ledger.cache import BalanceCache
from credit_batcher.ledger.database import Database
from credit_batcher.ledger.ledger import BalanceLedger
from credit_batcher.worker.interface import WorkerInterface


# ============================================================================
# Configuration Fixtures
# ============================================================================

@pytest.fixture
def test_config(tmp_path) -> BatcherConfig:
    """Create a test configuration backed by a temporary SQLite file."""
    return BatcherConfig(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'ledger.db'}",
        balance_cache_ttl_seconds=5.0,
        max_batch_size=10,
        concurrency_limit=5,
        per_item_cost=1,
        max_item_size_bytes=1024,
        worker_timeout_seconds=1.0,
        provider_base_url="https://classifier.test",
        provider_api_key="test-key",
        log_level="DEBUG",
    )


# ============================================================================
# Clock
# ============================================================================

class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


# ============================================================================
# Ledger Fixtures
# ============================================================================

@pytest_asyncio.fixture
async def database(test_config):
    """Connected database with empty ledger tables."""
    db = Database(test_config)
    await db.connect()
    yield db
    await db.disconnect()


@pytest.fixture
def ledger(database, test_config, clock) -> BalanceLedger:
    """Ledger whose cache runs on the fake clock."""
    cache = BalanceCache(ttl_seconds=test_config.balance_cache_ttl_seconds, clock=clock)
    return BalanceLedger(database, cache=cache, config=test_config)


@pytest_asyncio.fixture
async def funded_account(ledger) -> str:
    """Account opened with 1000 credits."""
    await ledger.open_account("acct-1", initial_balance=1000)
    return "acct-1"


# ============================================================================
# Test Data Generators
# ============================================================================

def make_items(
    count: int,
    invalid: Iterable[int] = (),
    media_type: str = "image/png",
) -> List[WorkItem]:
    """Create ``count`` small PNG items; indexes in ``invalid`` get a text type."""
    invalid = set(invalid)
    return build_items(
        (
            f"image-bytes-{i}".encode(),
            "text/plain" if i in invalid else media_type,
            f"file-{i}.png",
        )
        for i in range(count)
    )


# ============================================================================
# Mock Worker
# ============================================================================

class MockWorker(WorkerInterface):
    """Mock classifier for testing."""

    name = "mock"

    def __init__(
        self,
        failures: Optional[Dict[str, Exception]] = None,
        delays: Optional[Dict[str, float]] = None,
        clock: Optional[FakeClock] = None,
        tick: float = 0.0,
    ):
        self.failures = failures or {}
        self.delays = delays or {}
        self.clock = clock
        self.tick = tick
        self.calls: List[str] = []
        self.completed: List[str] = []
        self.cancelled: List[str] = []
        self.in_flight = 0
        self.max_in_flight = 0
        self.gate: Optional[asyncio.Event] = None
        self.entered = asyncio.Event()
        self.on_call = None

    async def invoke(
        self,
        payload: bytes,
        media_type: str,
        options: Optional[dict] = None,
    ) -> Any:
        filename = (options or {}).get("filename")
        self.calls.append(filename)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        self.entered.set()
        try:
            if self.on_call is not None:
                await self.on_call(filename)
            if self.gate is not None:
                await self.gate.wait()
            delay = self.delays.get(filename, 0)
            if delay:
                await asyncio.sleep(delay)
            else:
                await asyncio.sleep(0)
            if self.clock is not None and self.tick:
                self.clock.advance(self.tick)
            if filename in self.failures:
                raise self.failures[filename]
            self.completed.append(filename)
            return {"description": f"description of {filename}", "source": self.name}
        except asyncio.CancelledError:
            self.cancelled.append(filename)
            raise
        finally:
            self.in_flight -= 1


@pytest.fixture
def mock_worker() -> MockWorker:
    """Create a mock worker."""
    return MockWorker()
