"""Unit tests for retry and fallback policy."""

from __future__ import annotations

from unittest.mock import AsyncMock, patch

import pytest

from conduit_ai.errors import ProviderError
from conduit_ai.models import MockAdapter
from conduit_ai.policy import FallbackPlan, RetryExhausted, RetryPolicy, Route


def _retryable(error: Exception) -> bool:
    return isinstance(error, ProviderError) and (error.status or 0) >= 500


class TestRetryPolicy:
    """Tests for RetryPolicy."""

    @pytest.mark.asyncio
    async def test_linear_backoff_between_attempts(self):
        func = AsyncMock(
            side_effect=[
                ProviderError("down", provider="p", status=503),
                ProviderError("down", provider="p", status=503),
                "ok",
            ]
        )
        with patch("conduit_ai.policy.asyncio.sleep", new_callable=AsyncMock) as sleep:
            result = await RetryPolicy().execute(
                func, is_retryable=_retryable, delay_unit=2.0
            )

        assert result == "ok"
        assert func.await_count == 3
        assert [call.args[0] for call in sleep.await_args_list] == [2.0, 4.0]

    @pytest.mark.asyncio
    async def test_exhaustion_after_max_attempts(self):
        error = ProviderError("down", provider="p", status=503)
        func = AsyncMock(side_effect=error)
        with patch("conduit_ai.policy.asyncio.sleep", new_callable=AsyncMock):
            with pytest.raises(RetryExhausted) as exc_info:
                await RetryPolicy(max_attempts=3).execute(func, is_retryable=_retryable)

        assert func.await_count == 3
        assert exc_info.value.attempts == 3
        assert exc_info.value.retryable is True
        assert exc_info.value.last_error is error

    @pytest.mark.asyncio
    async def test_terminal_error_stops_immediately(self):
        func = AsyncMock(side_effect=ProviderError("bad", provider="p", status=400))
        with patch("conduit_ai.policy.asyncio.sleep", new_callable=AsyncMock) as sleep:
            with pytest.raises(RetryExhausted) as exc_info:
                await RetryPolicy().execute(func, is_retryable=_retryable)

        assert func.await_count == 1
        assert exc_info.value.attempts == 1
        assert exc_info.value.retryable is False
        sleep.assert_not_awaited()

    def test_delay_is_capped(self):
        policy = RetryPolicy(max_delay=5.0)
        assert policy.delay_for(1, 2.0) == 2.0
        assert policy.delay_for(3, 2.0) == 5.0


class TestFallbackPlan:
    """Tests for FallbackPlan."""

    def test_route_to_fallback_default_model(self):
        adapters = {
            "groq": MockAdapter(name="groq"),
            "gemini": MockAdapter(name="gemini", models=["gemini-pro"]),
        }
        plan = FallbackPlan(fallback_provider="gemini")
        assert plan.route_for("groq", adapters) == Route(
            provider="gemini", model="gemini-pro"
        )

    def test_no_route_from_fallback_provider_itself(self):
        adapters = {"gemini": MockAdapter(name="gemini")}
        assert FallbackPlan(fallback_provider="gemini").route_for("gemini", adapters) is None

    def test_no_route_when_fallback_unavailable(self):
        adapters = {
            "groq": MockAdapter(name="groq"),
            "gemini": MockAdapter(name="gemini", available=False),
        }
        assert FallbackPlan(fallback_provider="gemini").route_for("groq", adapters) is None
        assert FallbackPlan(fallback_provider=None).route_for("groq", adapters) is None
