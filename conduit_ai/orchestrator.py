"""Request orchestration across providers.

A request moves through validation, rate limiting, cache lookup, generation
(with retries), cache store and usage accounting. When generation on the
requested provider fails, the request is re-run once against the fallback
provider's default model.
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import logging
import time
from collections.abc import Callable, Mapping
from datetime import UTC, datetime
from typing import Any

from pydantic import BaseModel, ValidationError

from .cache.store import CacheStore, MemoryStore, create_cache_store
from .errors import (
    CacheError,
    ConduitError,
    GenerationFailed,
    ModelUnavailable,
    ProviderError,
    ProviderUnavailable,
)
from .models.base import GenerationRequest, GenerationResult, ProviderAdapter
from .models.connection_pool import HTTPConnectionPool
from .models.registry import build_adapters
from .models.streaming import ChunkCallback, emit_chunk, synthesize_stream
from .policy import FallbackPlan, RetryExhausted, RetryPolicy
from .security.ratelimit import RateLimiter
from .settings import AppSettings
from .usage import UsageTracker, UserStats

logger = logging.getLogger(__name__)

CACHE_KEY_PREFIX = "ai:response:"

CompletionCallback = Callable[[GenerationResult], Any]


class ProviderDescriptor(BaseModel):
    """What a provider offers, as configured in this process."""

    display_name: str
    available: bool
    models: list[str]
    features: list[str]
    supports_streaming: bool
    rate_limit_description: str


class ProviderHealth(BaseModel):
    available: bool
    healthy: bool
    last_checked: datetime
    error: str | None = None


def response_cache_key(request: GenerationRequest) -> str:
    """Deterministic cache key for a request.

    Covers provider, model, the prepared messages and the sampling settings
    that change the output.
    """
    payload = {
        "provider": request.provider,
        "model": request.model,
        "messages": [
            {"role": msg.role.value, "content": msg.content}
            for msg in request.prepared_messages()
        ],
        "settings": {
            "temperature": request.settings.temperature,
            "maxTokens": request.settings.max_tokens,
            "topP": request.settings.top_p,
        },
    }
    digest = hashlib.sha256(json.dumps(payload, sort_keys=True).encode()).hexdigest()
    return f"{CACHE_KEY_PREFIX}{digest}"


class Orchestrator:
    """Routes generation requests to provider adapters.

    Examples:
        orchestrator = await Orchestrator.from_settings(AppSettings())
        result = await orchestrator.generate_response(
            GenerationRequest(
                provider="groq",
                model="mixtral-8x7b-32768",
                messages=[Message(role="user", content="Hello")],
                user_id="user-1",
            )
        )
        await orchestrator.close()
    """

    def __init__(
        self,
        adapters: Mapping[str, ProviderAdapter],
        store: CacheStore | None = None,
        settings: AppSettings | None = None,
        pool: HTTPConnectionPool | None = None,
    ):
        self.settings = settings or AppSettings()
        self.adapters: dict[str, ProviderAdapter] = dict(adapters)
        self.store = store or MemoryStore()
        self.pool = pool

        self.rate_limiter = RateLimiter.from_settings(self.store, self.settings)
        self.usage = UsageTracker(self.store, ttl=self.settings.usage_ttl)
        self.retry_policy = RetryPolicy(max_attempts=self.settings.max_attempts)
        self.fallback = FallbackPlan(fallback_provider=self.settings.fallback_provider)

    @classmethod
    async def from_settings(cls, settings: AppSettings | None = None) -> Orchestrator:
        """Build adapters, the shared HTTP pool and the cache store."""
        settings = settings or AppSettings()
        pool = HTTPConnectionPool.from_settings(settings)
        adapters = build_adapters(settings, pool)
        store = await create_cache_store(settings)

        for adapter in adapters.values():
            if adapter.is_available():
                await adapter.load_available_models()

        available = [name for name, a in adapters.items() if a.is_available()]
        logger.info(f"AI orchestrator initialized with providers: {available}")
        return cls(adapters, store=store, settings=settings, pool=pool)

    # -- validation -----------------------------------------------------

    def get_adapter(self, provider: str) -> ProviderAdapter:
        adapter = self.adapters.get(provider)
        if adapter is None or not adapter.is_available():
            raise ProviderUnavailable(provider)
        return adapter

    async def _validate(self, request: GenerationRequest) -> ProviderAdapter:
        adapter = self.get_adapter(request.provider)
        models = await adapter.load_available_models()
        if request.model not in models:
            raise ModelUnavailable(request.provider, request.model, models)
        return adapter

    async def _admit(self, request: GenerationRequest) -> ProviderAdapter:
        adapter = await self._validate(request)
        await self.rate_limiter.check_rate_limit(request.provider, request.user_id)
        return adapter

    # -- cache ----------------------------------------------------------

    async def _cache_get(self, key: str) -> GenerationResult | None:
        try:
            cached = await self.store.get(key)
            if cached is None:
                return None
            return GenerationResult.model_validate(cached)
        except (CacheError, ValidationError) as e:
            logger.error(f"Error reading cached response {key}: {e}")
            return None

    async def _cache_set(self, key: str, result: GenerationResult) -> None:
        try:
            await self.store.set(
                key,
                result.model_dump(mode="json"),
                ttl=self.settings.response_cache_ttl,
            )
        except CacheError as e:
            logger.error(f"Error caching response {key}: {e}")

    # -- generation -----------------------------------------------------

    async def _call_with_retry(
        self, adapter: ProviderAdapter, request: GenerationRequest
    ) -> GenerationResult:
        messages = request.prepared_messages()
        try:
            return await self.retry_policy.execute(
                lambda: adapter.generate_response(
                    request.model, messages, request.settings
                ),
                is_retryable=adapter.is_retryable_error,
                delay_unit=adapter.retry_delay,
                label=f"{adapter.display_name} generation",
            )
        except RetryExhausted as e:
            logger.error(
                f"Generation failed on {request.provider} after {e.attempts} attempt(s): "
                f"{e.last_error}",
                extra={
                    "provider": request.provider,
                    "model": request.model,
                    "user_id": request.user_id,
                    "attempts": e.attempts,
                },
            )
            raise GenerationFailed(
                f"Failed to generate response with {request.provider}: {e.last_error}",
                provider=request.provider,
                model=request.model,
                attempts=e.attempts,
                retryable=e.retryable,
            ) from e.last_error

    async def _complete(
        self,
        adapter: ProviderAdapter,
        request: GenerationRequest,
        *,
        use_cache: bool,
    ) -> GenerationResult:
        """Everything after admission: cache, generation, accounting."""
        start_time = time.perf_counter()
        cacheable = use_cache and request.settings.temperature == 0
        cache_key = response_cache_key(request) if cacheable else None

        if cache_key:
            cached = await self._cache_get(cache_key)
            if cached is not None:
                logger.info(
                    f"Returning cached response for {request.provider}/{request.model}",
                    extra={"provider": request.provider, "user_id": request.user_id},
                )
                return cached.model_copy(update={"from_cache": True})

        result = await self._call_with_retry(adapter, request)
        result = result.model_copy(
            update={"response_time_ms": (time.perf_counter() - start_time) * 1000}
        )

        if cache_key:
            await self._cache_set(cache_key, result)

        await self.usage.record(
            request.provider, request.user_id, result.usage.total_tokens
        )

        logger.info(
            f"Generated response with {request.provider}/{request.model}",
            extra={
                "provider": request.provider,
                "model": request.model,
                "user_id": request.user_id,
                "tokens": result.usage.total_tokens,
                "response_time_ms": result.response_time_ms,
            },
        )
        return result

    async def _respond(
        self,
        request: GenerationRequest,
        *,
        use_cache: bool,
        adapter: ProviderAdapter | None = None,
    ) -> GenerationResult:
        """Run the request, then the fallback route if generation failed.

        ``adapter`` is passed when the request has already been admitted.
        """
        try:
            if adapter is None:
                adapter = await self._admit(request)
            return await self._complete(adapter, request, use_cache=use_cache)
        except GenerationFailed as e:
            route = self.fallback.route_for(request.provider, self.adapters)
            if route is None:
                raise

            logger.warning(
                f"Trying fallback provider {route.provider} after {request.provider} failed",
                extra={"provider": request.provider, "fallback_provider": route.provider},
            )
            fallback_request = request.model_copy(
                update={"provider": route.provider, "model": route.model}
            )
            try:
                fallback_adapter = await self._admit(fallback_request)
                return await self._complete(
                    fallback_adapter, fallback_request, use_cache=use_cache
                )
            except ConduitError as fe:
                logger.error(f"Fallback provider {route.provider} also failed: {fe}")
                raise GenerationFailed(
                    f"{request.provider} failed ({e.message}) and fallback "
                    f"{route.provider} failed: {fe.message}",
                    provider=route.provider,
                    model=route.model,
                    attempts=getattr(fe, "attempts", 1),
                    retryable=getattr(fe, "retryable", False),
                ) from fe

    async def generate_response(self, request: GenerationRequest) -> GenerationResult:
        """Generate a complete response.

        Raises:
            ProviderUnavailable: unknown or unconfigured provider
            ModelUnavailable: model not offered by the provider
            RateLimitExceeded: the user's budget for this provider is spent
            GenerationFailed: the provider, and the fallback if any, failed
        """
        return await self._respond(request, use_cache=True)

    async def generate_streaming_response(
        self,
        request: GenerationRequest,
        on_chunk: ChunkCallback,
        on_complete: CompletionCallback | None = None,
    ) -> GenerationResult:
        """Generate a response, delivering text chunks to ``on_chunk`` in order.

        Streaming responses are never cached. Native streams are attempted
        once; providers without native streaming are generated in full (with
        retries and fallback) and then delivered word by word.
        """
        adapter = await self._admit(request)

        if not adapter.supports_streaming():
            result = await self._respond(request, use_cache=False, adapter=adapter)
            await synthesize_stream(
                result.content, on_chunk, self.settings.synthetic_chunk_delay
            )
            result = result.model_copy(update={"streaming": False})
        else:
            result = await self._stream_once(adapter, request, on_chunk)

        if on_complete is not None:
            await emit_chunk(on_complete, result)
        return result

    async def _stream_once(
        self,
        adapter: ProviderAdapter,
        request: GenerationRequest,
        on_chunk: ChunkCallback,
    ) -> GenerationResult:
        start_time = time.perf_counter()
        try:
            result = await adapter.generate_streaming_response(
                request.model, request.prepared_messages(), request.settings, on_chunk
            )
        except ProviderError as e:
            logger.error(
                f"Streaming generation failed on {request.provider}: {e}",
                extra={
                    "provider": request.provider,
                    "model": request.model,
                    "user_id": request.user_id,
                },
            )
            raise GenerationFailed(
                f"Failed to generate streaming response with {request.provider}: {e}",
                provider=request.provider,
                model=request.model,
                attempts=1,
                retryable=adapter.is_retryable_error(e),
            ) from e
        except Exception as e:
            logger.error(
                f"Streaming generation on {request.provider} aborted: {e}",
                extra={"provider": request.provider, "model": request.model},
            )
            raise GenerationFailed(
                f"Failed to generate streaming response with {request.provider}: {e}",
                provider=request.provider,
                model=request.model,
                attempts=1,
                retryable=False,
            ) from e

        result = result.model_copy(
            update={"response_time_ms": (time.perf_counter() - start_time) * 1000}
        )
        await self.usage.record(
            request.provider, request.user_id, result.usage.total_tokens
        )
        logger.info(
            f"Streamed response with {request.provider}/{request.model}",
            extra={
                "provider": request.provider,
                "model": request.model,
                "user_id": request.user_id,
                "tokens": result.usage.total_tokens,
            },
        )
        return result

    # -- listing & monitoring -------------------------------------------

    def get_available_providers(self) -> dict[str, ProviderDescriptor]:
        return {
            name: ProviderDescriptor(**adapter.describe())
            for name, adapter in self.adapters.items()
        }

    async def _check_health(self, adapter: ProviderAdapter) -> ProviderHealth:
        available = adapter.is_available()
        error = None
        healthy = False
        if available:
            try:
                healthy = await adapter.health_check()
            except Exception as e:
                logger.error(f"Health check for {adapter.name} raised: {e}")
                error = str(e)
        return ProviderHealth(
            available=available,
            healthy=healthy,
            last_checked=datetime.now(UTC),
            error=error,
        )

    async def get_providers_health(self) -> dict[str, ProviderHealth]:
        """Health of every provider, checked concurrently."""
        names = list(self.adapters)
        results = await asyncio.gather(
            *(self._check_health(self.adapters[name]) for name in names)
        )
        return dict(zip(names, results))

    async def get_user_stats(self, user_id: str) -> UserStats:
        return await self.usage.get_user_stats(user_id, self.adapters)

    async def cleanup_cache(self) -> int:
        """Drop expired entries from the in-process store."""
        purged = await self.store.purge_expired()
        if purged:
            logger.info(f"Cleaned up {purged} expired cache entries")
        return purged

    async def close(self) -> None:
        if self.pool is not None:
            await self.pool.close()
        await self.store.close()
        logger.info("AI orchestrator closed")

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()
