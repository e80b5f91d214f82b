from __future__ import annotations

import asyncio
import threading
from typing import Optional, Union
from urllib.parse import urlparse, urlunparse

from tokengate.config import RevocationBackend, get_settings, reset_settings_cache
from tokengate.logging import get_logger
from tokengate.service.auth import AuthService
from tokengate.service.revocation import (
    InMemoryRevocationRegistry,
    RedisRevocationRegistry,
    RevocationRegistry,
)
from tokengate.storage.memory import MemoryStore
from tokengate.storage.postgres import PostgresStore
from tokengate.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password component of a connection URL with ``***`` for logging."""
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
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            revocation_backend=self.settings.revocation_backend.value,
            test_mode=self.settings.test_mode,
        )

        store_type = "memory" if self.settings.use_memory_store else "postgres"
        try:
            self.store: Union[MemoryStore, PostgresStore] = (
                MemoryStore()
                if self.settings.use_memory_store
                else PostgresStore(self.settings.database_url)
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                database_url=_mask_url_password(self.settings.database_url),
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise
        logger.info("runtime_store_initialized", store_type=store_type)

        self.cache: Union[RedisCache, SyncRedisCache, None] = None
        self.registry = self._build_registry()
        self.auth = AuthService(self.store, self.registry, self.settings)

    def _build_registry(self) -> RevocationRegistry:
        settings = self.settings
        if settings.revocation_backend != RevocationBackend.REDIS:
            return InMemoryRevocationRegistry(leeway_seconds=settings.token_leeway_seconds)

        redis_error: Exception | None = None
        try:
            # Sync client in test mode avoids binding to per-test event loops
            if settings.test_mode:
                cache = SyncRedisCache(settings.redis_url)
            else:
                cache = RedisCache(settings.redis_url)
            cache.verify_connection()
            self.cache = cache
        except Exception as exc:
            redis_error = exc

        if self.cache is not None:
            return RedisRevocationRegistry(
                self.cache,
                default_ttl_seconds=settings.refresh_token_ttl_minutes * 60,
                leeway_seconds=settings.token_leeway_seconds,
            )

        if not settings.test_mode and not settings.allow_redis_fallback_dev:
            raise RuntimeError(
                "Redis is required for REVOCATION_BACKEND=redis; start Redis or set "
                "TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for the in-memory registry."
            ) from redis_error

        logger.warning(
            "redis_disabled_fallback",
            redis_url=_mask_url_password(settings.redis_url),
            error=str(redis_error),
            mode="TEST_MODE" if settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV",
        )
        return InMemoryRevocationRegistry(leeway_seconds=settings.token_leeway_seconds)

    async def close(self) -> None:
        if self.cache is not None:
            await self.cache.close()
        if isinstance(self.store, PostgresStore):
            self.store.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton (double-checked locking)."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None and runtime.cache is not None:
            # test mode only ever builds SyncRedisCache
            try:
                asyncio.run(runtime.cache.close())
            except Exception as exc:
                logger.debug("runtime_cache_close_failed", error=str(exc))

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime
