from __future__ import annotations

import threading
import time
from typing import Callable, Dict, Optional, Protocol

from tokengate.logging import get_logger
from tokengate.storage.redis_cache import RedisCache

logger = get_logger(__name__)

_PRUNE_INTERVAL_SECONDS = 300


class RevocationRegistry(Protocol):
    async def revoke(self, jti: Optional[str], expires_at: Optional[float] = None) -> None: ...

    async def is_revoked(self, jti: Optional[str]) -> bool: ...


class InMemoryRevocationRegistry:
    """Process-local set of revoked refresh-token identifiers.

    Entries remember the token's ``exp`` so they can be pruned once the token
    would be rejected as expired anyway. Entries revoked without an expiry are
    kept for the lifetime of the process.
    """

    def __init__(
        self,
        *,
        leeway_seconds: int = 0,
        clock: Callable[[], float] = time.time,
        prune_interval_seconds: int = _PRUNE_INTERVAL_SECONDS,
    ) -> None:
        self._entries: Dict[str, Optional[float]] = {}
        self._lock = threading.Lock()
        self._leeway = leeway_seconds
        self._clock = clock
        self._prune_interval = prune_interval_seconds
        self._last_prune = clock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def revoke_sync(self, jti: Optional[str], expires_at: Optional[float] = None) -> None:
        if not jti:
            return
        with self._lock:
            # None pins the entry; otherwise keep the latest expiry seen
            if expires_at is None or (jti in self._entries and self._entries[jti] is None):
                self._entries[jti] = None
            else:
                self._entries[jti] = max(self._entries.get(jti) or expires_at, expires_at)
            if self._clock() - self._last_prune >= self._prune_interval:
                self._prune_locked()

    def is_revoked_sync(self, jti: Optional[str]) -> bool:
        if not jti:
            return False
        with self._lock:
            return jti in self._entries

    async def revoke(self, jti: Optional[str], expires_at: Optional[float] = None) -> None:
        self.revoke_sync(jti, expires_at)

    async def is_revoked(self, jti: Optional[str]) -> bool:
        return self.is_revoked_sync(jti)

    def prune(self) -> int:
        """Drop entries whose token has expired; returns how many were removed."""
        with self._lock:
            return self._prune_locked()

    def _prune_locked(self) -> int:
        now = self._clock()
        cutoff = now - self._leeway
        stale = [
            jti for jti, exp in self._entries.items() if exp is not None and exp < cutoff
        ]
        for jti in stale:
            del self._entries[jti]
        self._last_prune = now
        if stale:
            logger.debug("revocation_registry_pruned", removed=len(stale))
        return len(stale)


class RedisRevocationRegistry:
    """Revocation entries shared through Redis with a local write-through copy.

    Keys expire with the token they describe. A Redis read failure is treated
    as "revoked" so an outage never re-admits a logged-out token.
    """

    def __init__(
        self,
        cache: RedisCache,
        *,
        default_ttl_seconds: int,
        leeway_seconds: int = 0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.cache = cache
        self._default_ttl = default_ttl_seconds
        self._leeway = leeway_seconds
        self._clock = clock
        self._local = InMemoryRevocationRegistry(leeway_seconds=leeway_seconds, clock=clock)

    def _ttl_for(self, expires_at: Optional[float]) -> int:
        if expires_at is None:
            return self._default_ttl
        return max(int(expires_at - self._clock()) + self._leeway, 1)

    async def revoke(self, jti: Optional[str], expires_at: Optional[float] = None) -> None:
        if not jti:
            return
        self._local.revoke_sync(jti, expires_at)
        try:
            await self.cache.mark_refresh_revoked(jti, self._ttl_for(expires_at))
        except Exception as exc:
            logger.warning("cache_revoked_refresh_token_failed", jti=jti, error=str(exc))

    async def is_revoked(self, jti: Optional[str]) -> bool:
        if not jti:
            return False
        if self._local.is_revoked_sync(jti):
            return True
        try:
            return await self.cache.is_refresh_revoked(jti)
        except Exception as exc:
            logger.warning(
                "check_revoked_refresh_token_failed_defaulting_to_revoked",
                jti=jti,
                error=str(exc),
            )
            return True
