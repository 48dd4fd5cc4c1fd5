"""Small in-process TTL cache with LRU eviction."""

from __future__ import annotations

import logging
import time
from collections import OrderedDict
from collections.abc import Awaitable, Callable
from typing import Any, Generic, Hashable, TypeVar

logger = logging.getLogger(__name__)

V = TypeVar("V")


class TTLCache(Generic[V]):
    """Entries expire ``ttl_seconds`` after being stored.

    When ``max_size`` is reached the least recently used entry is evicted.
    A disabled cache stores nothing and always misses.
    """

    def __init__(
        self,
        max_size: int = 500,
        ttl_seconds: float = 3600.0,
        enabled: bool = True,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._entries: OrderedDict[Hashable, tuple[V, float]] = OrderedDict()
        self._max_size = max_size
        self._ttl = ttl_seconds
        self._enabled = enabled
        self._clock = clock

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, key: Hashable) -> V | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        value, stored_at = entry
        if self._clock() - stored_at >= self._ttl:
            del self._entries[key]
            return None
        self._entries.move_to_end(key)
        return value

    def set(self, key: Hashable, value: V) -> None:
        if not self._enabled:
            return
        self._entries[key] = (value, self._clock())
        self._entries.move_to_end(key)
        while len(self._entries) > self._max_size:
            evicted, _ = self._entries.popitem(last=False)
            logger.debug("Evicted cache entry %s", evicted)

    def invalidate(self, key: Hashable) -> None:
        self._entries.pop(key, None)

    def clear(self) -> None:
        self._entries.clear()

    async def get_or_load(self, key: Hashable, loader: Callable[[], Awaitable[V | None]]) -> V | None:
        """Return the cached value or await ``loader`` and cache a non-None result."""
        cached = self.get(key)
        if cached is not None:
            return cached
        value = await loader()
        if value is not None:
            self.set(key, value)
        return value

    def stats(self) -> dict[str, Any]:
        return {"size": len(self._entries), "max_size": self._max_size, "ttl_seconds": self._ttl}
