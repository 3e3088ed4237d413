from __future__ import annotations

from typing import Iterable, List, Optional

import redis.asyncio as aioredis
from redis import Redis


class RedisCache:
    """Thin async Redis wrapper holding serialized user views."""

    DEFAULT_OPERATION_TIMEOUT = 5.0

    def __init__(self, redis_url: str, *, socket_timeout: float = DEFAULT_OPERATION_TIMEOUT):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling the cache."""
        # Short-lived sync client so the async client is not bound to a
        # temporary event loop during startup checks.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def get(self, key: str) -> Optional[str]:
        return await self.client.get(key)

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        await self.client.set(key, value, ex=max(1, int(ttl_seconds)))

    async def delete(self, keys: Iterable[str]) -> int:
        keys = list(keys)
        if not keys:
            return 0
        return await self.client.delete(*keys)

    async def add_to_index(self, index_key: str, key: str, ttl_seconds: int) -> None:
        pipe = self.client.pipeline()
        pipe.sadd(index_key, key)
        pipe.expire(index_key, max(1, int(ttl_seconds)))
        await pipe.execute()

    async def drain_index(self, index_key: str) -> List[str]:
        """Delete every key tracked in ``index_key`` and the index itself."""
        members = await self.client.smembers(index_key)
        pipe = self.client.pipeline()
        for member in members:
            pipe.delete(member)
        pipe.delete(index_key)
        await pipe.execute()
        return sorted(members)

    async def incr(self, key: str) -> int:
        return await self.client.incr(key)

    async def close(self) -> None:
        await self.client.aclose()


class SyncRedisCache:
    """Synchronous Redis wrapper for use in tests.

    Uses a synchronous client internally to avoid event loop binding issues
    in pytest, but exposes async methods so it can be awaited uniformly like
    RedisCache.
    """

    DEFAULT_OPERATION_TIMEOUT = 5.0

    def __init__(self, redis_url: str, *, socket_timeout: float = DEFAULT_OPERATION_TIMEOUT):
        self.redis_url = redis_url
        self.client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def verify_connection(self) -> None:
        self.client.ping()

    async def get(self, key: str) -> Optional[str]:
        return self.client.get(key)

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        self.client.set(key, value, ex=max(1, int(ttl_seconds)))

    async def delete(self, keys: Iterable[str]) -> int:
        keys = list(keys)
        if not keys:
            return 0
        return self.client.delete(*keys)

    async def add_to_index(self, index_key: str, key: str, ttl_seconds: int) -> None:
        pipe = self.client.pipeline()
        pipe.sadd(index_key, key)
        pipe.expire(index_key, max(1, int(ttl_seconds)))
        pipe.execute()

    async def drain_index(self, index_key: str) -> List[str]:
        members = self.client.smembers(index_key)
        pipe = self.client.pipeline()
        for member in members:
            pipe.delete(member)
        pipe.delete(index_key)
        pipe.execute()
        return sorted(members)

    async def incr(self, key: str) -> int:
        return self.client.incr(key)

    async def close(self) -> None:
        self.client.close()
