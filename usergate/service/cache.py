from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Iterable, List, Optional, Protocol, Union

from usergate.logging import get_logger
from usergate.service.errors import CacheUnavailableError

logger = get_logger(__name__)

LIST_KEY_PREFIX = "users:list:"
DETAIL_KEY_PREFIX = "user:detail:"
LIST_INDEX_KEY = "users:index:lists"
GENERATION_KEY = "users:cache:generation"


def list_cache_key(full_path: str) -> str:
    """Key for a list view; the path includes the query string."""
    return f"{LIST_KEY_PREFIX}{full_path}"


def detail_cache_key(user_id: str) -> str:
    return f"{DETAIL_KEY_PREFIX}{user_id}"


class CacheBackend(Protocol):
    async def get(self, key: str) -> Optional[str]: ...

    async def set(self, key: str, value: str, ttl_seconds: int) -> None: ...

    async def delete(self, keys: Iterable[str]) -> int: ...

    async def add_to_index(self, index_key: str, key: str, ttl_seconds: int) -> None: ...

    async def drain_index(self, index_key: str) -> List[str]: ...

    async def incr(self, key: str) -> int: ...


class CacheCodec(Protocol):
    def encode(self, value: Any) -> str: ...

    def decode(self, raw: str) -> Any: ...


class JsonCodec:
    """Canonical JSON text; sorted keys so equal values encode identically."""

    def encode(self, value: Any) -> str:
        return json.dumps(value, sort_keys=True, separators=(",", ":"))

    def decode(self, raw: str) -> Any:
        return json.loads(raw)


@dataclass(frozen=True)
class Hit:
    value: Any


class _Miss:
    _instance: Optional["_Miss"] = None

    def __new__(cls) -> "_Miss":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "MISS"

    def __bool__(self) -> bool:
        return False


MISS = _Miss()

LookupResult = Union[Hit, _Miss]


class ReadThroughCache:
    """Get-or-populate cache in front of the user store.

    Every entry is stored with the cache generation that was current when
    its value was read from the store. Writes advance the generation, so an
    entry populated by a read that overlapped a write is never served.

    ``lookup`` failures are surfaced as ``CacheUnavailableError`` because the
    caller cannot tell a miss from an outage. ``store`` and the invalidation
    helpers are best-effort: a failed write is logged and the request goes on.
    """

    def __init__(
        self,
        backend: CacheBackend,
        *,
        codec: Optional[CacheCodec] = None,
        timeout_seconds: float = 2.0,
        list_index_ttl_seconds: int = 1800,
    ) -> None:
        self.backend = backend
        self.codec: CacheCodec = codec or JsonCodec()
        self.timeout_seconds = timeout_seconds
        self.list_index_ttl_seconds = list_index_ttl_seconds

    async def _bounded(self, awaitable):
        return await asyncio.wait_for(awaitable, self.timeout_seconds)

    async def _read_generation(self) -> int:
        raw = await self._bounded(self.backend.get(GENERATION_KEY))
        return int(raw) if raw is not None else 0

    async def generation(self) -> int:
        try:
            return await self._read_generation()
        except Exception as exc:
            logger.error(
                "cache_generation_failed",
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise CacheUnavailableError() from exc

    async def _lookup(self, key: str, generation: int) -> LookupResult:
        try:
            raw = await self._bounded(self.backend.get(key))
        except Exception as exc:
            logger.error(
                "cache_lookup_failed",
                key=key,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise CacheUnavailableError() from exc
        if raw is None:
            logger.debug("cache_miss", key=key)
            return MISS
        try:
            entry = self.codec.decode(raw)
            entry_generation = entry["generation"]
            value = entry["value"]
        except (ValueError, TypeError, KeyError) as exc:
            # Corrupted cache entry - treat as cache miss
            logger.warning("cache_entry_corrupt", key=key, error=str(exc))
            return MISS
        if entry_generation != generation:
            logger.debug(
                "cache_entry_outdated",
                key=key,
                entry_generation=entry_generation,
                generation=generation,
            )
            return MISS
        logger.debug("cache_hit", key=key)
        return Hit(value)

    async def lookup(self, key: str) -> LookupResult:
        return await self._lookup(key, await self.generation())

    async def store(
        self,
        key: str,
        value: Any,
        ttl_seconds: int,
        *,
        generation: Optional[int] = None,
    ) -> bool:
        """Populate ``key``; ``generation`` is the one read before the store read."""
        try:
            if generation is None:
                generation = await self._read_generation()
            encoded = self.codec.encode({"generation": generation, "value": value})
            await self._bounded(self.backend.set(key, encoded, ttl_seconds))
            if key.startswith(LIST_KEY_PREFIX):
                await self._bounded(
                    self.backend.add_to_index(
                        LIST_INDEX_KEY,
                        key,
                        max(ttl_seconds, self.list_index_ttl_seconds),
                    )
                )
        except Exception as exc:
            logger.warning(
                "cache_store_failed",
                key=key,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return False
        return True

    async def fetch(
        self,
        key: str,
        loader: Callable[[], Awaitable[Any]],
        ttl_seconds: int,
        *,
        keep: Optional[Callable[[Any], bool]] = None,
    ) -> Any:
        """Return the cached value for ``key`` or load and populate it.

        ``keep`` decides whether a loaded value is worth caching. Errors
        raised by ``loader`` propagate and nothing is stored.
        """
        generation = await self.generation()
        cached = await self._lookup(key, generation)
        if isinstance(cached, Hit):
            return cached.value
        value = await loader()
        if keep is None or keep(value):
            await self.store(key, value, ttl_seconds, generation=generation)
        return value

    async def advance_generation(self) -> None:
        try:
            generation = await self._bounded(self.backend.incr(GENERATION_KEY))
        except Exception as exc:
            logger.warning("cache_generation_advance_failed", error=str(exc))
            return
        logger.debug("cache_generation_advanced", generation=generation)

    async def invalidate(self, keys: Iterable[str]) -> None:
        keys = list(keys)
        try:
            await self._bounded(self.backend.delete(keys))
        except Exception as exc:
            logger.warning("cache_invalidate_failed", keys=keys, error=str(exc))

    async def invalidate_lists(self) -> None:
        try:
            dropped = await self._bounded(self.backend.drain_index(LIST_INDEX_KEY))
        except Exception as exc:
            logger.warning("cache_list_invalidate_failed", error=str(exc))
            return
        if dropped:
            logger.debug("cache_lists_invalidated", count=len(dropped))

    async def invalidate_after_write(self, detail_keys: Iterable[str]) -> None:
        """Retire everything read before a store write, then free the keys."""
        await self.advance_generation()
        await self.invalidate(detail_keys)
        await self.invalidate_lists()
