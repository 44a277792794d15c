"""
Short-lived balance cache.

One entry per account holding the last balance read or written and the
moment it was stored. The clock is injected so tests can move time.
"""

import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional


@dataclass
class CachedBalance:
    value: int
    stored_at: float


class BalanceCache:
    """
    Per-account read-through cache with a fixed TTL.

    Writes through the ledger call ``set`` with the freshly written balance,
    so a cached value is never older than the last local mutation.
    """

    def __init__(
        self,
        ttl_seconds: float = 5.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: Dict[str, CachedBalance] = {}

    def get(self, account_id: str) -> Optional[int]:
        """Return the cached balance if it is still fresh."""
        entry = self._entries.get(account_id)
        if entry is None:
            return None
        if self._clock() - entry.stored_at >= self.ttl_seconds:
            return None
        return entry.value

    def set(self, account_id: str, value: int) -> None:
        self._entries[account_id] = CachedBalance(value=value, stored_at=self._clock())

    def invalidate(self, account_id: Optional[str] = None) -> None:
        """Drop one account's entry, or every entry when no id is given."""
        if account_id is None:
            self._entries.clear()
        else:
            self._entries.pop(account_id, None)

    def __contains__(self, account_id: str) -> bool:
        return self.get(account_id) is not None
