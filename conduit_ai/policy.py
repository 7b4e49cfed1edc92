"""Retry and fallback policy for provider calls."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Mapping
from typing import Any

from pydantic import BaseModel, Field

from .models.base import ProviderAdapter

logger = logging.getLogger(__name__)


class RetryExhausted(Exception):
    """All attempts failed, or a terminal error stopped the loop early."""

    def __init__(self, last_error: Exception, attempts: int, retryable: bool):
        super().__init__(str(last_error))
        self.last_error = last_error
        self.attempts = attempts
        self.retryable = retryable


class RetryPolicy(BaseModel):
    """Bounded retry with linear backoff.

    Attempt ``n`` that fails with a retryable error is followed by a sleep of
    ``n * delay_unit`` seconds; terminal errors stop the loop immediately.
    """

    max_attempts: int = Field(default=3, ge=1)
    max_delay: float = 60.0

    def delay_for(self, attempt: int, delay_unit: float) -> float:
        """Delay after 1-based attempt number ``attempt``."""
        return min(attempt * delay_unit, self.max_delay)

    async def execute(
        self,
        func: Callable[[], Awaitable[Any]],
        *,
        is_retryable: Callable[[Exception], bool],
        delay_unit: float = 1.0,
        label: str = "",
    ) -> Any:
        """Run func until it succeeds or attempts run out.

        Raises:
            RetryExhausted: wrapping the last error
        """
        for attempt in range(1, self.max_attempts + 1):
            try:
                return await func()
            except Exception as e:
                retryable = is_retryable(e)
                if not retryable or attempt == self.max_attempts:
                    raise RetryExhausted(e, attempt, retryable) from e

                delay = self.delay_for(attempt, delay_unit)
                logger.warning(
                    f"{label} attempt {attempt} failed, retrying in {delay:.1f}s: {e}"
                )
                await asyncio.sleep(delay)

        raise RuntimeError("retry loop exited without a result")


class Route(BaseModel):
    """A (provider, model) pair to send a request to."""

    provider: str
    model: str


class FallbackPlan(BaseModel):
    """At most one alternative route, tried after the primary fails."""

    fallback_provider: str | None = "gemini"

    def route_for(
        self,
        provider: str,
        adapters: Mapping[str, ProviderAdapter],
    ) -> Route | None:
        """The fallback route for a request to ``provider``, if one applies."""
        if not self.fallback_provider or provider == self.fallback_provider:
            return None
        adapter = adapters.get(self.fallback_provider)
        if adapter is None or not adapter.is_available():
            return None
        return Route(provider=self.fallback_provider, model=adapter.default_model)
