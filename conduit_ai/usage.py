"""Per-user, per-provider usage accounting."""

from __future__ import annotations

import logging
from collections.abc import Iterable
from datetime import UTC, datetime

from pydantic import BaseModel, Field

from .cache.store import CacheStore
from .errors import CacheError

logger = logging.getLogger(__name__)


class ProviderUsage(BaseModel):
    """Usage counters for one (provider, user) pair."""

    total_requests: int = 0
    total_tokens: int = 0
    last_used_at: datetime | None = None


class UserStats(BaseModel):
    """Usage for one user across providers."""

    by_provider: dict[str, ProviderUsage] = Field(default_factory=dict)
    total_requests: int = 0
    total_tokens: int = 0


class UsageTracker:
    """Counts requests and tokens in the shared store.

    Every write refreshes the TTL of the pair's counters, so stats describe
    roughly the last day of activity.
    """

    KEY_PREFIX = "stats:ai"

    def __init__(self, store: CacheStore, ttl: int = 86400):
        self.store = store
        self.ttl = ttl

    def _keys(self, provider: str, user_id: str) -> tuple[str, str, str]:
        base = f"{self.KEY_PREFIX}:{provider}:{user_id}"
        return f"{base}:requests", f"{base}:tokens", f"{base}:last_used"

    async def record(self, provider: str, user_id: str | None, tokens: int) -> None:
        """Add one request and its tokens. Failures are logged, never raised."""
        if not user_id:
            return

        requests_key, tokens_key, last_used_key = self._keys(provider, user_id)
        try:
            await self.store.incr(requests_key, 1)
            await self.store.incr(tokens_key, tokens)
            await self.store.set(
                last_used_key, datetime.now(UTC).isoformat(), ttl=self.ttl
            )
            await self.store.expire(requests_key, self.ttl)
            await self.store.expire(tokens_key, self.ttl)
        except CacheError as e:
            logger.error(f"Error tracking usage for {user_id} on {provider}: {e}")

    async def get_usage(self, provider: str, user_id: str) -> ProviderUsage:
        requests, tokens, last_used = await self.store.mget(
            list(self._keys(provider, user_id))
        )
        return ProviderUsage(
            total_requests=int(requests or 0),
            total_tokens=int(tokens or 0),
            last_used_at=datetime.fromisoformat(last_used) if last_used else None,
        )

    async def get_user_stats(self, user_id: str, providers: Iterable[str]) -> UserStats:
        """Aggregate a user's usage over the given providers.

        Providers the user never called are left out of ``by_provider``.
        """
        stats = UserStats()
        for provider in providers:
            try:
                usage = await self.get_usage(provider, user_id)
            except (CacheError, ValueError) as e:
                logger.error(f"Error reading usage for {user_id} on {provider}: {e}")
                continue
            if usage.total_requests == 0 and usage.last_used_at is None:
                continue
            stats.by_provider[provider] = usage
            stats.total_requests += usage.total_requests
            stats.total_tokens += usage.total_tokens
        return stats
