from __future__ import annotations

import threading
import time
from typing import Callable, Dict, Iterable, List, Optional, Set, Tuple


class MemoryCache:
    """Process-local stand-in for RedisCache.

    Expiry is passive: an entry past its deadline is dropped when it is read,
    there is no background sweep. ``clock`` returns seconds and is injectable
    so tests can move time forward.
    """

    def __init__(self, *, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._entries: Dict[str, Tuple[str, float]] = {}
        self._indexes: Dict[str, Set[str]] = {}
        self._lock = threading.Lock()

    def verify_connection(self) -> None:
        return None

    async def get(self, key: str) -> Optional[str]:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            value, expires_at = entry
            if self._clock() >= expires_at:
                self._entries.pop(key, None)
                return None
            return value

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        with self._lock:
            self._entries[key] = (value, self._clock() + max(1, int(ttl_seconds)))

    async def delete(self, keys: Iterable[str]) -> int:
        removed = 0
        with self._lock:
            for key in keys:
                if self._entries.pop(key, None) is not None:
                    removed += 1
        return removed

    async def add_to_index(self, index_key: str, key: str, ttl_seconds: int) -> None:
        # Members expire on their own; the index only needs to outlive them
        with self._lock:
            self._indexes.setdefault(index_key, set()).add(key)

    async def drain_index(self, index_key: str) -> List[str]:
        with self._lock:
            members = self._indexes.pop(index_key, set())
            for member in members:
                self._entries.pop(member, None)
            return sorted(members)

    async def incr(self, key: str) -> int:
        # Counters never expire, matching Redis INCR on a key without a TTL
        with self._lock:
            entry = self._entries.get(key)
            current = int(entry[0]) if entry and self._clock() < entry[1] else 0
            self._entries[key] = (str(current + 1), float("inf"))
            return current + 1

    async def close(self) -> None:
        with self._lock:
            self._entries.clear()
            self._indexes.clear()
