from __future__ import annotations

import redis.asyncio as aioredis
from redis import Redis

REVOKED_REFRESH_PREFIX = "auth:refresh:revoked:"


class RedisCache:
    """Thin Redis wrapper holding revoked refresh-token identifiers."""

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
        """Assert Redis connectivity before enabling the shared registry."""

        # Short-lived sync client so the async client is not bound to a startup loop.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def mark_refresh_revoked(self, jti: str, ttl_seconds: int) -> None:
        await self.client.set(f"{REVOKED_REFRESH_PREFIX}{jti}", "1", ex=max(1, ttl_seconds))

    async def is_refresh_revoked(self, jti: str) -> bool:
        return bool(await self.client.exists(f"{REVOKED_REFRESH_PREFIX}{jti}"))

    async def close(self) -> None:
        """Close the connection pool. Call when shutting down or resetting runtime."""
        await self.client.close()
        await self.client.connection_pool.disconnect()


class SyncRedisCache:
    """Synchronous Redis wrapper for tests.

    Avoids binding an asyncio client to pytest's per-test event loops while
    keeping the awaitable surface of :class:`RedisCache`.
    """

    def __init__(self, redis_url: str, *, socket_timeout: float = RedisCache.DEFAULT_OPERATION_TIMEOUT):
        self.redis_url = redis_url
        self._sync_client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def verify_connection(self) -> None:
        self._sync_client.ping()

    async def mark_refresh_revoked(self, jti: str, ttl_seconds: int) -> None:
        self._sync_client.set(f"{REVOKED_REFRESH_PREFIX}{jti}", "1", ex=max(1, ttl_seconds))

    async def is_refresh_revoked(self, jti: str) -> bool:
        return bool(self._sync_client.exists(f"{REVOKED_REFRESH_PREFIX}{jti}"))

    async def close(self) -> None:
        self._sync_client.close()
