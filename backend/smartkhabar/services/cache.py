"""
Read-through TTL cache shared across concurrent requests.

Passed into services explicitly; there is no module-level instance.
"""
import asyncio
import time
from collections import OrderedDict
from typing import Any, Awaitable, Callable, Hashable, Optional


class TTLCache:
    """
    Key-value cache with per-entry expiry.

    Features:
    - Async-safe: one lock guards every read and write
    - Lazy eviction of expired entries on access
    - Bounded size, oldest entry evicted first
    """

    def __init__(
        self,
        ttl_seconds: float = 300.0,
        max_entries: int = 1024,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries
        self._clock = clock
        self._entries: OrderedDict[Hashable, tuple[Any, float]] = OrderedDict()
        self._lock = asyncio.Lock()
        self.hits = 0
        self.misses = 0

    async def get(self, key: Hashable) -> Optional[Any]:
        async with self._lock:
            return self._get_locked(key)

    async def set(self, key: Hashable, value: Any, ttl_seconds: Optional[float] = None):
        async with self._lock:
            self._set_locked(key, value, ttl_seconds)

    async def get_or_set(
        self,
        key: Hashable,
        factory: Callable[[], Awaitable[Any]],
        ttl_seconds: Optional[float] = None,
    ) -> Any:
        """
        Return the cached value, computing and storing it on a miss.

        The factory runs outside the lock, so two concurrent misses may both
        compute; the later write wins.
        """
        async with self._lock:
            value = self._get_locked(key)
        if value is not None:
            return value

        value = await factory()
        async with self._lock:
            self._set_locked(key, value, ttl_seconds)
        return value

    async def invalidate(self, key: Hashable):
        async with self._lock:
            self._entries.pop(key, None)

    async def clear(self):
        async with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)

    def _get_locked(self, key: Hashable) -> Optional[Any]:
        entry = self._entries.get(key)
        if entry is None:
            self.misses += 1
            return None

        value, expires_at = entry
        if self._clock() >= expires_at:
            del self._entries[key]
            self.misses += 1
            return None

        self.hits += 1
        return value

    def _set_locked(self, key: Hashable, value: Any, ttl_seconds: Optional[float]):
        ttl = self.ttl_seconds if ttl_seconds is None else ttl_seconds
        self._entries[key] = (value, self._clock() + ttl)
        self._entries.move_to_end(key)
        while len(self._entries) > self.max_entries:
            self._entries.popitem(last=False)
