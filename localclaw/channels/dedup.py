"""
Recent IDs
==========

A bounded, insertion-ordered set of message ids, optionally carrying a
value per id and an expiry.

Used three ways by the channel sessions:

    processed = RecentIds(max_size=1000)           # redelivery dedup
    self_sent = RecentIds(ttl=300)                 # echo suppression, consumed once
    outbound = RecentIds(ttl=300)                  # id -> text for retry requests

When an add pushes the set past max_size, the oldest entries are evicted
(half of max_size by default) in one go, so eviction cost is paid rarely.
"""

import time
from collections import OrderedDict
from typing import Any, Callable

DEFAULT_MAX_SIZE = 1000
DEFAULT_EVICT_FRACTION = 0.5


class RecentIds:
    """
    Bounded id set with optional values and time-to-live.

    Example:
        ids = RecentIds(max_size=4)
        ids.add("a")
        "a" in ids           # True
        ids.consume("a")     # True, and "a" is gone
        ids.consume("a")     # False
    """

    def __init__(
        self,
        max_size: int = DEFAULT_MAX_SIZE,
        ttl: float | None = None,
        evict_fraction: float = DEFAULT_EVICT_FRACTION,
        clock: Callable[[], float] = time.monotonic
    ):
        """
        Args:
            max_size: Entries kept before eviction kicks in
            ttl: Seconds an entry stays valid; None for no expiry
            evict_fraction: Share of max_size dropped (oldest first) on overflow
            clock: Time source, injectable for tests
        """
        if max_size < 1:
            raise ValueError("max_size must be at least 1")
        if not 0 < evict_fraction <= 1:
            raise ValueError("evict_fraction must be in (0, 1]")

        self.max_size = max_size
        self.ttl = ttl
        self.evict_fraction = evict_fraction
        self._clock = clock
        self._entries: OrderedDict[str, tuple[Any, float | None]] = OrderedDict()

    def _expired(self, expires_at: float | None) -> bool:
        return expires_at is not None and self._clock() >= expires_at

    def add(self, item_id: str, value: Any = None) -> None:
        """Record an id (moving it to the newest position if present)."""
        expires_at = self._clock() + self.ttl if self.ttl is not None else None
        self._entries.pop(item_id, None)
        self._entries[item_id] = (value, expires_at)

        if len(self._entries) > self.max_size:
            self._evict()

    def _evict(self) -> None:
        count = max(1, int(self.max_size * self.evict_fraction))
        for _ in range(min(count, len(self._entries))):
            self._entries.popitem(last=False)

    def __contains__(self, item_id: object) -> bool:
        entry = self._entries.get(item_id)  # type: ignore[arg-type]
        if entry is None:
            return False
        if self._expired(entry[1]):
            del self._entries[item_id]  # type: ignore[arg-type]
            return False
        return True

    def get(self, item_id: str, default: Any = None) -> Any:
        """Value stored for an id, or default when absent or expired."""
        if item_id not in self:
            return default
        return self._entries[item_id][0]

    def consume(self, item_id: str) -> bool:
        """Remove an id, returning True if it was present and still valid."""
        if item_id not in self:
            return False
        del self._entries[item_id]
        return True

    def discard(self, item_id: str) -> None:
        self._entries.pop(item_id, None)

    def purge_expired(self) -> int:
        """Drop expired entries now. Returns how many were dropped."""
        expired = [k for k, (_, exp) in self._entries.items() if self._expired(exp)]
        for key in expired:
            del self._entries[key]
        return len(expired)

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)
