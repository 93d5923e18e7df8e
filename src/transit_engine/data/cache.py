"""Bounded TTL cache keyed by operation and parameters."""

import asyncio
import json
import logging
import time
import weakref
from collections import OrderedDict
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any

logger = logging.getLogger(__name__)

DEFAULT_MAX_ENTRIES = 100


class TTLClass(str, Enum):
    """Cache categories, each with its own time-to-live."""

    STOPS = "stops"
    ROUTES = "routes"
    SCHEDULES = "schedules"
    REALTIME = "realtime"
    ALERTS = "alerts"
    STATIC_FRESHNESS = "static_freshness"


TTL_SECONDS: dict[TTLClass, float] = {
    TTLClass.STOPS: 24 * 60 * 60,
    TTLClass.ROUTES: 24 * 60 * 60,
    TTLClass.SCHEDULES: 60 * 60,
    TTLClass.REALTIME: 30,
    TTLClass.ALERTS: 5 * 60,
    TTLClass.STATIC_FRESHNESS: 7 * 24 * 60 * 60,
}


def make_key(operation: str, **params: Any) -> str:
    """Build a deterministic cache key from an operation name and its parameters.

    Parameter order never affects the key. Values that are not JSON-native
    (pydantic models, enums, datetimes) are serialized through ``str`` or
    ``model_dump``.
    """

    def _default(value: Any) -> Any:
        if hasattr(value, "model_dump"):
            return value.model_dump(mode="json")
        return str(value)

    return f"{operation}:{json.dumps(params, sort_keys=True, default=_default)}"


@dataclass
class CacheEntry:
    value: Any
    written_at: float
    ttl_class: TTLClass

    def expired(self, now: float) -> bool:
        return now - self.written_at >= TTL_SECONDS[self.ttl_class]


class TTLCache:
    """Key/value cache with per-category TTL and FIFO eviction.

    Expiry is checked lazily on read. Once more than ``max_entries`` values
    are stored, the oldest written entry is dropped.
    """

    def __init__(
        self,
        max_entries: int = DEFAULT_MAX_ENTRIES,
        clock: Callable[[], float] = time.monotonic,
    ):
        """Initialize the cache.

        Args:
            max_entries: Maximum number of entries kept before eviction.
            clock: Monotonic time source in seconds (injectable for tests).
        """
        self._max_entries = max_entries
        self._clock = clock
        self._entries: OrderedDict[str, CacheEntry] = OrderedDict()
        # a lock lives only while some fetch holds or waits on it
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = weakref.WeakValueDictionary()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: str) -> bool:
        return self.get(key) is not None

    def get(self, key: str) -> Any | None:
        """Get a cached value if present and not expired.

        Returns:
            The cached value if valid, None if expired or not set.
        """
        entry = self._entries.get(key)
        if entry is None:
            return None
        if entry.expired(self._clock()):
            del self._entries[key]
            logger.debug(f"Cache entry expired: {key}")
            return None
        return entry.value

    def set(self, key: str, value: Any, ttl_class: TTLClass) -> None:
        """Store a value under a TTL class."""
        # re-inserting moves the key to the back of the FIFO
        self._entries.pop(key, None)
        self._entries[key] = CacheEntry(value=value, written_at=self._clock(), ttl_class=ttl_class)
        while len(self._entries) > self._max_entries:
            evicted, _ = self._entries.popitem(last=False)
            logger.debug(f"Cache full, evicted {evicted}")

    def invalidate(self, key: str) -> None:
        self._entries.pop(key, None)

    def clear(self) -> None:
        """Remove every entry."""
        self._entries.clear()
        self._locks.clear()

    def lock(self, key: str) -> asyncio.Lock:
        """Get the async lock coordinating fetches for one key."""
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock
