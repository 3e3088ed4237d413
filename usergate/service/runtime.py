from __future__ import annotations

import asyncio
from typing import Any, Callable, Optional
from urllib.parse import urlparse, urlunparse

from usergate.config import Settings
from usergate.logging import get_logger
from usergate.service.auth import AuthService
from usergate.service.cache import CacheBackend, ReadThroughCache
from usergate.service.email_domain import AllowAllDomains, DomainChecker, MXDomainChecker
from usergate.service.store import BoundedStore, UserStore
from usergate.service.tokens import TokenService
from usergate.service.users import UserService
from usergate.storage.memory import MemoryStore
from usergate.storage.memory_cache import MemoryCache
from usergate.storage.postgres import PostgresStore
from usergate.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password component of a URL with ``***`` for logging."""
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(parsed._replace(netloc=netloc))


class Runtime:
    """Holds the service instances shared by every request.

    Collaborators can be passed in directly; anything omitted is built
    from ``settings``.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        store: Optional[UserStore] = None,
        cache_backend: Optional[CacheBackend] = None,
        domain_checker: Optional[DomainChecker] = None,
        clock: Optional[Callable[[], float]] = None,
    ) -> None:
        self.settings = settings
        logger.info(
            "runtime_init_started",
            use_memory_store=settings.use_memory_store,
            test_mode=settings.test_mode,
        )

        self.store = store if store is not None else self._build_store()
        self.cache_backend = (
            cache_backend if cache_backend is not None else self._build_cache_backend()
        )
        self.domain_checker = (
            domain_checker if domain_checker is not None else self._build_domain_checker()
        )

        token_kwargs: dict[str, Any] = {"ttl_seconds": settings.token_ttl_seconds}
        if clock is not None:
            token_kwargs["clock"] = clock
        self.tokens = TokenService(settings.jwt_secret, **token_kwargs)

        self.bounded_store = BoundedStore(
            self.store,
            timeout_seconds=settings.store_timeout_seconds,
            read_retries=settings.store_read_retries,
        )
        self.cache = ReadThroughCache(
            self.cache_backend,
            timeout_seconds=settings.cache_timeout_seconds,
            list_index_ttl_seconds=settings.list_cache_ttl_seconds,
        )
        self.auth = AuthService(self.bounded_store, self.tokens, self.domain_checker)
        self.users = UserService(
            self.bounded_store,
            self.auth,
            self.cache,
            list_ttl_seconds=settings.list_cache_ttl_seconds,
            detail_ttl_seconds=settings.detail_cache_ttl_seconds,
            invalidate_on_write=settings.cache_invalidate_on_write,
        )
        logger.info(
            "runtime_init_completed",
            store_type=type(self.store).__name__,
            cache_type=type(self.cache_backend).__name__,
        )

    def _build_store(self) -> UserStore:
        store_type = "memory" if self.settings.use_memory_store else "postgres"
        try:
            store = (
                MemoryStore()
                if self.settings.use_memory_store
                else PostgresStore(self.settings.database_url)
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise
        logger.info("runtime_store_initialized", store_type=store_type)
        return store

    def _build_cache_backend(self) -> CacheBackend:
        settings = self.settings
        redis_error: Exception | None = None
        if settings.redis_url:
            try:
                # Sync client in test mode avoids binding to a per-test event loop
                if settings.test_mode:
                    cache = SyncRedisCache(settings.redis_url)
                else:
                    cache = RedisCache(settings.redis_url)
                cache.verify_connection()
                return cache
            except Exception as exc:
                redis_error = exc

        if not settings.test_mode and not settings.allow_redis_fallback_dev:
            raise RuntimeError(
                "Redis is required for the user cache; start Redis or set "
                "TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
            ) from redis_error

        fallback_mode = "TEST_MODE" if settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
        logger.warning(
            "redis_disabled_fallback",
            redis_url=_mask_url_password(settings.redis_url),
            error=str(redis_error) if redis_error else "redis_url_missing",
            message=f"Running without Redis under {fallback_mode}; user cache is process-local.",
            mode=fallback_mode,
        )
        return MemoryCache()

    def _build_domain_checker(self) -> DomainChecker:
        if not self.settings.email_domain_check:
            logger.warning("email_domain_check_disabled")
            return AllowAllDomains()
        return MXDomainChecker(timeout_seconds=self.settings.dns_timeout_seconds)

    async def check_health(self) -> dict[str, str]:
        """Probe store and cache; each probe is bounded by its own timeout."""
        results: dict[str, str] = {}
        probes = (
            ("store", self.store, self.settings.store_timeout_seconds),
            ("cache", self.cache_backend, self.settings.cache_timeout_seconds),
        )
        for name, component, timeout in probes:
            try:
                await asyncio.wait_for(
                    asyncio.to_thread(component.verify_connection), timeout=timeout
                )
                results[name] = "healthy"
            except asyncio.TimeoutError:
                logger.warning("health_check_timeout", component=name)
                results[name] = "timeout"
            except Exception as exc:
                logger.error(
                    "health_check_failed",
                    component=name,
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
                results[name] = "unhealthy"
        return results

    async def close(self) -> None:
        close_cache = getattr(self.cache_backend, "close", None)
        if close_cache is not None:
            try:
                await close_cache()
            except Exception as exc:
                logger.warning("runtime_cache_close_failed", error=str(exc))
        close_store = getattr(self.store, "close", None)
        if close_store is not None:
            try:
                await asyncio.to_thread(close_store)
            except Exception as exc:
                logger.warning("runtime_store_close_failed", error=str(exc))
        logger.info("runtime_closed")
