from __future__ import annotations

import logging

from ..cache.store import CacheStore
from ..errors import RateLimitExceeded
from ..settings import AppSettings

logger = logging.getLogger(__name__)


class RateLimiter:
    """Fixed-window request counter per (provider, user).

    The first request of a window creates the counter with the window TTL;
    later requests only increment it. Requests without a user id are not
    limited.
    """

    KEY_PREFIX = "ratelimit:ai"

    def __init__(self, store: CacheStore, limit: int = 60, window_seconds: int = 60):
        self.store = store
        self.limit = limit
        self.window_seconds = window_seconds

    @classmethod
    def from_settings(cls, store: CacheStore, settings: AppSettings) -> RateLimiter:
        return cls(
            store,
            limit=settings.rate_limit_per_minute,
            window_seconds=settings.rate_limit_window_seconds,
        )

    def _key(self, provider: str, user_id: str) -> str:
        return f"{self.KEY_PREFIX}:{provider}:{user_id}"

    async def check_rate_limit(self, provider: str, user_id: str | None) -> None:
        """Count one request, raising RateLimitExceeded when over the limit."""
        if not user_id:
            return

        key = self._key(provider, user_id)
        count = await self.store.incr(key, 1, ttl_if_absent=self.window_seconds)
        if count > self.limit:
            logger.warning(
                f"Rate limit exceeded for user {user_id} on provider {provider} "
                f"({count}/{self.limit})"
            )
            # Seconds left in the current window
            retry_after = await self.store.ttl(key)
            if retry_after <= 0:
                retry_after = self.window_seconds
            raise RateLimitExceeded(provider, self.limit, retry_after)

    async def remaining(self, provider: str, user_id: str) -> int:
        """Requests left in the current window."""
        count = await self.store.get(self._key(provider, user_id)) or 0
        return max(self.limit - int(count), 0)

    async def reset(self, provider: str, user_id: str) -> None:
        await self.store.delete(self._key(provider, user_id))
