"""Behaviour tests for the orchestrator."""

from __future__ import annotations

import asyncio
import json
from unittest.mock import AsyncMock, patch

import httpx
import pytest
import pytest_asyncio

from conduit_ai import (
    AppSettings,
    GenerationFailed,
    GenerationRequest,
    GenerationSettings,
    Message,
    ModelUnavailable,
    Orchestrator,
    ProviderUnavailable,
    RateLimitExceeded,
)
from conduit_ai.cache import MemoryStore
from conduit_ai.errors import ProviderError
from conduit_ai.models import GroqAdapter, HTTPConnectionPool, MockAdapter, OllamaAdapter
from conduit_ai.models.mock import transient_error
from conduit_ai.orchestrator import response_cache_key


class _OpenStream(httpx.AsyncByteStream):
    """Response body that sends one chunk, then stays open until closed."""

    def __init__(self, first: bytes):
        self.first = first
        self.closed = False

    async def __aiter__(self):
        yield self.first
        await asyncio.Event().wait()

    async def aclose(self) -> None:
        self.closed = True


def _settings(**overrides) -> AppSettings:
    values = {
        "gemini_api_key": None,
        "groq_api_key": None,
        "huggingface_api_key": None,
        "ollama_url": None,
        "redis_url": None,
        "fallback_provider": "gemini",
        "synthetic_chunk_delay": 0,
    }
    values.update(overrides)
    return AppSettings(_env_file=None, **values)


def _request(provider: str = "groq", temperature: float = 0.7, **kwargs) -> GenerationRequest:
    return GenerationRequest(
        provider=provider,
        model=kwargs.pop("model", "mock-model"),
        messages=[Message(role="user", content="What is the capital of France?")],
        system_prompt=kwargs.pop("system_prompt", "You are helpful."),
        settings=GenerationSettings(temperature=temperature),
        user_id=kwargs.pop("user_id", "user-1"),
        **kwargs,
    )


@pytest.fixture
def groq():
    return MockAdapter(name="groq")


@pytest.fixture
def gemini():
    return MockAdapter(name="gemini")


@pytest.fixture
def store():
    return MemoryStore()


@pytest_asyncio.fixture
async def orchestrator(groq, gemini, store):
    orchestrator = Orchestrator(
        {"groq": groq, "gemini": gemini}, store=store, settings=_settings()
    )
    yield orchestrator
    await orchestrator.close()


class TestValidation:
    """Requests are validated before any vendor call."""

    @pytest.mark.asyncio
    async def test_unknown_provider(self, orchestrator, groq, gemini):
        with pytest.raises(ProviderUnavailable) as exc_info:
            await orchestrator.generate_response(_request(provider="openai"))
        assert exc_info.value.provider == "openai"
        assert groq.call_count == 0
        assert gemini.call_count == 0

    @pytest.mark.asyncio
    async def test_unconfigured_provider(self, orchestrator, groq):
        groq.available = False
        with pytest.raises(ProviderUnavailable):
            await orchestrator.generate_response(_request())
        assert groq.call_count == 0

    @pytest.mark.asyncio
    async def test_unknown_model(self, orchestrator, groq, store):
        with pytest.raises(ModelUnavailable) as exc_info:
            await orchestrator.generate_response(_request(model="gpt-9"))
        assert exc_info.value.details["available_models"] == [
            "mock-model",
            "mock-model-large",
        ]
        assert groq.call_count == 0
        assert not await store.exists("ratelimit:ai:groq:user-1")


class TestCaching:
    """Deterministic responses are cached."""

    @pytest.mark.asyncio
    async def test_temperature_zero_is_cached(self, orchestrator, groq):
        first = await orchestrator.generate_response(_request(temperature=0))
        second = await orchestrator.generate_response(_request(temperature=0))

        assert groq.call_count == 1
        assert first.from_cache is False
        assert second.from_cache is True
        assert second.content == first.content

    @pytest.mark.asyncio
    async def test_nonzero_temperature_is_not_cached(self, orchestrator, groq, store):
        await orchestrator.generate_response(_request(temperature=0.7))
        await orchestrator.generate_response(_request(temperature=0.7))

        assert groq.call_count == 2
        assert await store.clear("ai:response:*") == 0

    @pytest.mark.asyncio
    async def test_cache_hit_consumes_rate_limit(self, orchestrator, store):
        await orchestrator.generate_response(_request(temperature=0))
        await orchestrator.generate_response(_request(temperature=0))
        assert await store.get("ratelimit:ai:groq:user-1") == 2

    @pytest.mark.asyncio
    async def test_cache_hit_does_not_record_usage(self, orchestrator):
        await orchestrator.generate_response(_request(temperature=0))
        await orchestrator.generate_response(_request(temperature=0))
        stats = await orchestrator.get_user_stats("user-1")
        assert stats.total_requests == 1

    def test_cache_key_covers_prompt_and_settings(self):
        base = response_cache_key(_request(temperature=0))
        assert base.startswith("ai:response:")
        assert response_cache_key(_request(temperature=0)) == base
        assert response_cache_key(_request(temperature=0, system_prompt="Be terse.")) != base
        assert response_cache_key(_request(temperature=0, model="mock-model-large")) != base
        # The caller identity is not part of the key
        assert response_cache_key(_request(temperature=0, user_id="other")) == base


class TestRetryAndFallback:
    """Transient failures are retried, then the fallback provider is used."""

    @pytest.mark.asyncio
    async def test_retries_then_succeeds(self, orchestrator, groq, gemini):
        groq.queue(transient_error("groq"), transient_error("groq"), "Paris")
        result = await orchestrator.generate_response(_request())

        assert result.content == "Paris"
        assert result.provider == "groq"
        assert groq.call_count == 3
        assert gemini.call_count == 0

    @pytest.mark.asyncio
    async def test_fallback_after_exactly_three_attempts(self, orchestrator, groq, gemini):
        groq.queue(*(transient_error("groq") for _ in range(3)))
        gemini.queue("Paris, from the fallback")

        result = await orchestrator.generate_response(_request())

        assert groq.call_count == 3
        assert gemini.call_count == 1
        assert result.provider == "gemini"
        assert result.model == gemini.default_model
        assert result.content == "Paris, from the fallback"

    @pytest.mark.asyncio
    async def test_terminal_error_is_not_retried(self, orchestrator, groq, gemini):
        groq.queue(ProviderError("bad request", provider="groq", status=400))
        await orchestrator.generate_response(_request())

        assert groq.call_count == 1
        assert gemini.call_count == 1

    @pytest.mark.asyncio
    async def test_backoff_uses_adapter_delay(self, orchestrator, groq):
        groq.retry_delay = 1.5
        groq.queue(transient_error("groq"), transient_error("groq"), "ok")
        with patch("conduit_ai.policy.asyncio.sleep", new_callable=AsyncMock) as sleep:
            await orchestrator.generate_response(_request())
        assert [call.args[0] for call in sleep.await_args_list] == [1.5, 3.0]

    @pytest.mark.asyncio
    async def test_no_fallback_from_fallback_provider(self, orchestrator, gemini, groq):
        gemini.queue(*(transient_error("gemini") for _ in range(3)))

        with pytest.raises(GenerationFailed) as exc_info:
            await orchestrator.generate_response(_request(provider="gemini"))

        assert exc_info.value.attempts == 3
        assert exc_info.value.retryable is True
        assert isinstance(exc_info.value.__cause__, ProviderError)
        assert groq.call_count == 0

    @pytest.mark.asyncio
    async def test_fallback_failure_surfaces_as_generation_failed(
        self, orchestrator, groq, gemini
    ):
        groq.queue(*(transient_error("groq") for _ in range(3)))
        gemini.queue(ProviderError("forbidden", provider="gemini", status=403))

        with pytest.raises(GenerationFailed) as exc_info:
            await orchestrator.generate_response(_request())

        assert exc_info.value.provider == "gemini"
        assert "groq" in exc_info.value.message

    @pytest.mark.asyncio
    async def test_no_fallback_configured(self, groq, gemini, store):
        orchestrator = Orchestrator(
            {"groq": groq, "gemini": gemini},
            store=store,
            settings=_settings(fallback_provider=None),
        )
        groq.queue(*(transient_error("groq") for _ in range(3)))

        with pytest.raises(GenerationFailed):
            await orchestrator.generate_response(_request())
        assert gemini.call_count == 0

    @pytest.mark.asyncio
    async def test_vendor_outage_end_to_end(self, store):
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(json.loads(request.content)["model"])
            return httpx.Response(503, json={"error": {"message": "Service Unavailable"}})

        pool = HTTPConnectionPool(transport=httpx.MockTransport(handler))
        orchestrator = Orchestrator(
            {"groq": GroqAdapter(api_key="gsk", connection_pool=pool)},
            store=store,
            settings=_settings(),
            pool=pool,
        )

        with patch("conduit_ai.policy.asyncio.sleep", new_callable=AsyncMock):
            with pytest.raises(GenerationFailed) as exc_info:
                await orchestrator.generate_response(
                    _request(model="mixtral-8x7b-32768")
                )

        assert len(calls) == 3
        assert exc_info.value.attempts == 3
        assert exc_info.value.__cause__.status == 503
        await orchestrator.close()


class TestRateLimiting:
    """Per-(provider, user) budgets."""

    @pytest.mark.asyncio
    async def test_limit_enforced_per_provider(self, groq, gemini, store):
        orchestrator = Orchestrator(
            {"groq": groq, "gemini": gemini},
            store=store,
            settings=_settings(rate_limit_per_minute=2),
        )

        await orchestrator.generate_response(_request())
        await orchestrator.generate_response(_request())
        with pytest.raises(RateLimitExceeded):
            await orchestrator.generate_response(_request())

        assert groq.call_count == 2
        # Other providers and users keep their own budgets
        await orchestrator.generate_response(_request(provider="gemini"))
        await orchestrator.generate_response(_request(user_id="user-2"))


class TestStreaming:
    """Streaming responses."""

    @pytest.mark.asyncio
    async def test_native_stream_chunks_concatenate(self, orchestrator, groq, store):
        groq.queue("The capital of France is Paris.")
        chunks: list[str] = []
        on_complete = AsyncMock()

        result = await orchestrator.generate_streaming_response(
            _request(temperature=0), chunks.append, on_complete
        )

        assert len(chunks) > 1
        assert "".join(chunks) == result.content == "The capital of France is Paris."
        assert result.streaming is True
        assert groq.stream_calls == 1
        on_complete.assert_awaited_once_with(result)
        # Streaming never writes the response cache
        assert await store.clear("ai:response:*") == 0

    @pytest.mark.asyncio
    async def test_async_chunk_callback(self, orchestrator):
        chunks: list[str] = []

        async def on_chunk(text: str) -> None:
            chunks.append(text)

        result = await orchestrator.generate_streaming_response(_request(), on_chunk)
        assert "".join(chunks) == result.content

    @pytest.mark.asyncio
    async def test_synthesized_stream_for_non_streaming_provider(
        self, orchestrator, groq
    ):
        groq.streaming = False
        groq.queue(transient_error("groq"), "  Paris is the capital.\n")
        chunks: list[str] = []

        result = await orchestrator.generate_streaming_response(
            _request(), chunks.append
        )

        assert groq.call_count == 2
        assert groq.stream_calls == 0
        assert "".join(chunks) == result.content == "  Paris is the capital.\n"
        assert result.streaming is False

    @pytest.mark.asyncio
    async def test_native_stream_failure_is_not_retried(self, orchestrator, groq, gemini):
        groq.queue(transient_error("groq"))
        with pytest.raises(GenerationFailed) as exc_info:
            await orchestrator.generate_streaming_response(_request(), lambda text: None)

        assert groq.stream_calls == 1
        assert gemini.stream_calls == 0
        assert exc_info.value.attempts == 1
        assert exc_info.value.retryable is True

    @pytest.mark.asyncio
    async def test_streaming_validates_and_rate_limits(self, groq, gemini, store):
        orchestrator = Orchestrator(
            {"groq": groq, "gemini": gemini},
            store=store,
            settings=_settings(rate_limit_per_minute=1),
        )
        with pytest.raises(ModelUnavailable):
            await orchestrator.generate_streaming_response(
                _request(model="nope"), lambda text: None
            )

        await orchestrator.generate_streaming_response(_request(), lambda text: None)
        with pytest.raises(RateLimitExceeded):
            await orchestrator.generate_streaming_response(_request(), lambda text: None)


    @pytest.mark.asyncio
    async def test_unexpected_stream_error_surfaces_as_generation_failed(
        self, orchestrator, groq
    ):
        groq.queue(RuntimeError("decoder state corrupted"))
        with pytest.raises(GenerationFailed) as exc_info:
            await orchestrator.generate_streaming_response(_request(), lambda text: None)

        assert exc_info.value.attempts == 1
        assert exc_info.value.retryable is False
        assert isinstance(exc_info.value.__cause__, RuntimeError)

    @pytest.mark.asyncio
    async def test_mid_stream_failure_keeps_delivered_chunks(self, store):
        records = [
            {"model": "llama2", "message": {"content": "Partial"}, "done": False},
            {"error": "model runner has unexpectedly stopped"},
        ]

        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path == "/api/tags":
                return httpx.Response(200, json={"models": [{"name": "llama2"}]})
            return httpx.Response(
                200, content="\n".join(json.dumps(r) for r in records).encode()
            )

        pool = HTTPConnectionPool(transport=httpx.MockTransport(handler))
        orchestrator = Orchestrator(
            {"ollama": OllamaAdapter("http://ollama:11434", connection_pool=pool)},
            store=store,
            settings=_settings(),
            pool=pool,
        )

        chunks: list[str] = []
        with pytest.raises(GenerationFailed) as exc_info:
            await orchestrator.generate_streaming_response(
                _request(provider="ollama", model="llama2"), chunks.append
            )

        assert chunks == ["Partial"]
        assert exc_info.value.attempts == 1
        assert isinstance(exc_info.value.__cause__, ProviderError)
        await orchestrator.close()

    @pytest.mark.asyncio
    async def test_cancelling_synthesized_stream_stops_emission(
        self, groq, gemini, store
    ):
        groq.streaming = False
        groq.queue("one two three four five six seven eight")
        orchestrator = Orchestrator(
            {"groq": groq, "gemini": gemini},
            store=store,
            settings=_settings(synthetic_chunk_delay=0.05),
        )
        chunks: list[str] = []
        third_chunk = asyncio.Event()

        def on_chunk(text: str) -> None:
            chunks.append(text)
            if len(chunks) == 3:
                third_chunk.set()

        task = asyncio.create_task(
            orchestrator.generate_streaming_response(_request(), on_chunk)
        )
        await asyncio.wait_for(third_chunk.wait(), timeout=1)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        await asyncio.sleep(0.2)
        assert chunks == ["one ", "two ", "three "]
        await orchestrator.close()

    @pytest.mark.asyncio
    async def test_cancelling_native_stream_closes_response(self, store):
        body = _OpenStream(b'data: {"choices": [{"delta": {"content": "Par"}}]}\n\n')
        pool = HTTPConnectionPool(
            transport=httpx.MockTransport(
                lambda request: httpx.Response(200, stream=body)
            )
        )
        orchestrator = Orchestrator(
            {"groq": GroqAdapter(api_key="gsk", connection_pool=pool)},
            store=store,
            settings=_settings(),
            pool=pool,
        )
        chunks: list[str] = []
        first_chunk = asyncio.Event()

        def on_chunk(text: str) -> None:
            chunks.append(text)
            first_chunk.set()

        task = asyncio.create_task(
            orchestrator.generate_streaming_response(
                _request(model="mixtral-8x7b-32768"), on_chunk
            )
        )
        await asyncio.wait_for(first_chunk.wait(), timeout=1)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert chunks == ["Par"]
        assert body.closed is True
        await orchestrator.close()


class TestMonitoring:
    """Provider listing, health, usage and housekeeping."""

    @pytest.mark.asyncio
    async def test_usage_stats(self, orchestrator):
        first = await orchestrator.generate_response(_request())
        second = await orchestrator.generate_response(_request(provider="gemini"))
        await orchestrator.generate_response(_request(user_id="someone-else"))

        stats = await orchestrator.get_user_stats("user-1")

        assert stats.total_requests == 2
        assert stats.total_tokens == first.usage.total_tokens + second.usage.total_tokens
        assert set(stats.by_provider) == {"groq", "gemini"}
        assert stats.by_provider["groq"].total_requests == 1
        assert stats.by_provider["groq"].last_used_at is not None

    @pytest.mark.asyncio
    async def test_unknown_user_has_empty_stats(self, orchestrator):
        stats = await orchestrator.get_user_stats("nobody")
        assert stats.total_requests == 0
        assert stats.by_provider == {}

    @pytest.mark.asyncio
    async def test_providers_health(self, store):
        adapters = {
            "healthy": MockAdapter(name="healthy"),
            "sick": MockAdapter(name="sick", healthy=False),
            "off": MockAdapter(name="off", available=False),
        }
        orchestrator = Orchestrator(adapters, store=store, settings=_settings())

        health = await orchestrator.get_providers_health()

        assert health["healthy"].healthy is True
        assert health["sick"].available is True
        assert health["sick"].healthy is False
        assert health["off"].available is False
        assert health["off"].healthy is False
        assert health["healthy"].last_checked is not None

    @pytest.mark.asyncio
    async def test_available_providers(self, orchestrator, groq):
        groq.available = False
        providers = orchestrator.get_available_providers()

        assert set(providers) == {"groq", "gemini"}
        assert providers["groq"].available is False
        assert providers["gemini"].available is True
        assert providers["gemini"].models == ["mock-model", "mock-model-large"]
        assert providers["gemini"].supports_streaming is True

    @pytest.mark.asyncio
    async def test_cleanup_cache(self, groq, gemini):
        clock_now = [0.0]
        store = MemoryStore(clock=lambda: clock_now[0])
        orchestrator = Orchestrator(
            {"groq": groq, "gemini": gemini}, store=store, settings=_settings()
        )
        await orchestrator.generate_response(_request(temperature=0))

        clock_now[0] = 4000.0
        # Cached response (1h) and rate counter (60s) have expired, usage (24h) has not
        assert await orchestrator.cleanup_cache() == 2


class TestFromSettings:
    """Construction from settings."""

    @pytest.mark.asyncio
    async def test_all_providers_registered(self):
        orchestrator = await Orchestrator.from_settings(_settings(groq_api_key="gsk"))
        try:
            providers = orchestrator.get_available_providers()
            assert set(providers) == {"gemini", "groq", "huggingface", "ollama"}
            assert providers["groq"].available is True
            assert providers["gemini"].available is False
            assert providers["ollama"].available is False
            assert providers["huggingface"].supports_streaming is False
            assert isinstance(orchestrator.store, MemoryStore)
        finally:
            await orchestrator.close()
