"""utils/cache.py

In-process TTL cache with LRU eviction.

Instances are owned by core.services.BotServices and passed to the stores that
read through them; nothing here is a module-level singleton, so each test (or
each bot instance) gets its own isolated cache.

Semantics:
  - Entries expire lazily on read once older than ``ttl_seconds``.
  - A read refreshes recency (not age), so hot keys are evicted last.
  - Once over ``max_entries`` the least recently used entry is dropped.
"""

from __future__ import annotations

import time
from collections import OrderedDict
from typing import Any, Callable, Hashable

_MISSING = object()


class TTLCache:
    def __init__(
        self,
        *,
        ttl_seconds: float,
        max_entries: int = 1024,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        self.ttl_seconds = float(ttl_seconds)
        self.max_entries = max(1, int(max_entries))
        self._clock = clock
        self._data: OrderedDict[Hashable, tuple[float, Any]] = OrderedDict()
        self.hits = 0
        self.misses = 0

    def get(self, key: Hashable, default: Any = None) -> Any:
        item = self._data.get(key, _MISSING)
        if item is _MISSING:
            self.misses += 1
            return default
        stored_at, value = item
        if self._clock() - stored_at >= self.ttl_seconds:
            del self._data[key]
            self.misses += 1
            return default
        self._data.move_to_end(key)
        self.hits += 1
        return value

    def set(self, key: Hashable, value: Any) -> None:
        self._data[key] = (self._clock(), value)
        self._data.move_to_end(key)
        while len(self._data) > self.max_entries:
            self._data.popitem(last=False)

    def delete(self, key: Hashable) -> None:
        self._data.pop(key, None)

    def invalidate_prefix(self, prefix: str) -> int:
        """Drop every string key starting with ``prefix``. Returns the count removed."""
        doomed = [k for k in self._data if isinstance(k, str) and k.startswith(prefix)]
        for k in doomed:
            del self._data[k]
        return len(doomed)

    def clear(self) -> None:
        self._data.clear()

    def __contains__(self, key: Hashable) -> bool:
        return self.get(key, _MISSING) is not _MISSING

    def __len__(self) -> int:
        now = self._clock()
        expired = [k for k, (ts, _) in self._data.items() if now - ts >= self.ttl_seconds]
        for k in expired:
            del self._data[k]
        return len(self._data)
