"""Canonical request/response types and the provider adapter interface."""

from __future__ import annotations

import logging
import math
import time
from abc import ABC, abstractmethod
from collections.abc import AsyncIterable, Iterator
from contextlib import contextmanager
from enum import Enum
from typing import Any

import httpx
from pydantic import BaseModel, Field

from ..errors import ProviderError
from .connection_pool import HTTPConnectionPool
from .streaming import (
    ChunkCallback,
    StreamDelta,
    emit_chunk,
    iter_lines,
    synthesize_stream,
)

logger = logging.getLogger(__name__)


class MessageRole(str, Enum):
    """Canonical conversation roles."""

    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"


class Message(BaseModel):
    """One conversation turn."""

    role: MessageRole
    content: str


class GenerationSettings(BaseModel):
    """Sampling settings. Values are forwarded to vendors as given."""

    temperature: float = 0.7
    top_p: float = 0.9
    top_k: int = 40
    max_tokens: int = 2048
    stop_sequences: list[str] | None = None
    seed: int | None = None


class GenerationRequest(BaseModel):
    """Provider-agnostic generation request."""

    provider: str
    model: str
    messages: list[Message] = Field(default_factory=list)
    system_prompt: str | None = None
    settings: GenerationSettings = Field(default_factory=GenerationSettings)
    user_id: str | None = None
    conversation_id: str | None = None

    def prepared_messages(self) -> list[Message]:
        """Messages with the system prompt, if any, as the leading turn."""
        prepared: list[Message] = []
        if self.system_prompt:
            prepared.append(Message(role=MessageRole.SYSTEM, content=self.system_prompt))
        prepared.extend(
            Message(role=msg.role, content=msg.content) for msg in self.messages
        )
        return prepared


class TokenUsage(BaseModel):
    """Token accounting for one generation."""

    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0


class GenerationResult(BaseModel):
    """Provider-agnostic generation result."""

    content: str
    usage: TokenUsage = Field(default_factory=TokenUsage)
    finish_reason: str = "stop"
    response_time_ms: float = 0.0
    provider: str
    model: str
    from_cache: bool = False
    streaming: bool = False


def estimate_tokens(text: str | None) -> int:
    """Approximate token count: one token per four characters."""
    if not text:
        return 0
    return math.ceil(len(text) / 4)


def estimate_usage(prompt: str | list[Message], completion: str) -> TokenUsage:
    """Estimate usage for vendors that do not report it.

    A message list is estimated per message, so each turn rounds up on its own.
    """
    if isinstance(prompt, str):
        prompt_tokens = estimate_tokens(prompt)
    else:
        prompt_tokens = sum(estimate_tokens(msg.content) for msg in prompt)
    completion_tokens = estimate_tokens(completion)
    return TokenUsage(
        prompt_tokens=prompt_tokens,
        completion_tokens=completion_tokens,
        total_tokens=prompt_tokens + completion_tokens,
    )


def system_instruction(messages: list[Message]) -> str | None:
    """Join all system turns into one instruction string."""
    parts = [msg.content for msg in messages if msg.role == MessageRole.SYSTEM]
    return "\n\n".join(parts) if parts else None


class ProviderAdapter(ABC):
    """Base class for per-vendor adapters.

    Subclasses translate canonical messages into the vendor wire format,
    perform exactly one HTTP call per generation and classify failures. They
    never retry; the orchestrator owns the retry loop.
    """

    name: str = ""
    display_name: str = ""
    default_model: str = ""
    available_models: tuple[str, ...] = ()
    features: tuple[str, ...] = ("text-generation",)
    rate_limit_description: str = ""
    streaming: bool = True
    # Seconds; 60 for hosted vendors, 120 for slower or self-hosted ones
    timeout: float = 60.0
    # Backoff unit used by the orchestrator: attempt * retry_delay
    retry_delay: float = 1.0
    synthetic_chunk_delay: float = 0.1

    RETRYABLE_STATUS = frozenset({429})
    NETWORK_CODES = frozenset({"timeout", "connect_error", "network_error"})

    def __init__(self, connection_pool: HTTPConnectionPool | None = None):
        self.pool = connection_pool or HTTPConnectionPool(timeout=self.timeout)

    # -- descriptor -----------------------------------------------------

    @abstractmethod
    def is_available(self) -> bool:
        """True iff the credential/endpoint is configured. No I/O."""
        ...

    def get_available_models(self) -> list[str]:
        return list(self.available_models)

    async def load_available_models(self) -> list[str]:
        """Model catalog; adapters with a dynamic catalog discover it here."""
        return self.get_available_models()

    def supports_streaming(self) -> bool:
        return self.streaming

    def get_supported_features(self) -> list[str]:
        return list(self.features)

    def get_rate_limit(self) -> str:
        return self.rate_limit_description

    # -- generation -----------------------------------------------------

    @abstractmethod
    async def generate_response(
        self,
        model: str,
        messages: list[Message],
        settings: GenerationSettings,
    ) -> GenerationResult:
        """Perform one vendor call and return the canonical result."""
        ...

    async def generate_streaming_response(
        self,
        model: str,
        messages: list[Message],
        settings: GenerationSettings,
        on_chunk: ChunkCallback,
    ) -> GenerationResult:
        """Stream a generation, delivering text deltas to on_chunk in order."""
        if not self.supports_streaming():
            logger.warning(
                f"{self.display_name} does not support streaming, "
                "falling back to regular generation"
            )
            result = await self.generate_response(model, messages, settings)
            await synthesize_stream(result.content, on_chunk, self.synthetic_chunk_delay)
            return result.model_copy(update={"streaming": False})

        start_time = time.perf_counter()
        url, request_kwargs = self.build_stream_request(model, messages, settings)
        with self._transport_errors():
            async with self.pool.stream("POST", url, **request_kwargs) as response:
                await self._raise_for_status(response)
                result = await self.consume_stream(
                    iter_lines(response.aiter_bytes()), on_chunk, model, messages
                )
        return result.model_copy(
            update={"response_time_ms": (time.perf_counter() - start_time) * 1000}
        )

    def build_stream_request(
        self,
        model: str,
        messages: list[Message],
        settings: GenerationSettings,
    ) -> tuple[str, dict[str, Any]]:
        """URL and httpx keyword arguments for a streaming call."""
        raise NotImplementedError(f"{self.display_name} does not stream natively")

    def decode_stream_line(self, line: str) -> StreamDelta | None:
        """Decode one line of the vendor stream into a text delta."""
        raise NotImplementedError(f"{self.display_name} does not stream natively")

    async def consume_stream(
        self,
        lines: AsyncIterable[str],
        on_chunk: ChunkCallback,
        model: str,
        messages: list[Message],
    ) -> GenerationResult:
        """Decode stream lines, emit deltas and accumulate the final result."""
        parts: list[str] = []
        usage: TokenUsage | None = None
        finish_reason = "stop"
        model_name = model

        async for line in lines:
            try:
                delta = self.decode_stream_line(line)
            except (ValueError, AttributeError, TypeError, KeyError) as e:
                logger.warning(
                    f"Failed to parse {self.display_name} streaming chunk: {e}"
                )
                continue
            if delta is None:
                continue
            if delta.text:
                parts.append(delta.text)
                await emit_chunk(on_chunk, delta.text)
            if delta.usage is not None:
                usage = delta.usage
            if delta.finish_reason:
                finish_reason = delta.finish_reason
            if delta.model:
                model_name = delta.model

        content = "".join(parts)
        if usage is None or usage.total_tokens == 0:
            usage = estimate_usage(messages, content)

        return GenerationResult(
            content=content,
            usage=usage,
            finish_reason=finish_reason,
            provider=self.name,
            model=model_name,
            streaming=True,
        )

    # -- errors ---------------------------------------------------------

    def is_retryable_error(self, error: Exception) -> bool:
        """Transient: network failures, 429 and 5xx. Everything else is terminal."""
        if isinstance(error, httpx.TimeoutException | httpx.NetworkError):
            return True
        if isinstance(error, ProviderError):
            if error.code in self.NETWORK_CODES:
                return True
            if error.status is not None and (
                error.status >= 500 or error.status in self.RETRYABLE_STATUS
            ):
                return True
        return False

    @contextmanager
    def _transport_errors(self) -> Iterator[None]:
        """Convert httpx transport failures into ProviderError."""
        try:
            yield
        except httpx.TimeoutException as e:
            raise ProviderError(
                f"{self.display_name} request timed out",
                provider=self.name,
                code="timeout",
            ) from e
        except httpx.ConnectError as e:
            raise ProviderError(
                f"Could not connect to {self.display_name}: {e}",
                provider=self.name,
                code="connect_error",
            ) from e
        except httpx.TransportError as e:
            raise ProviderError(
                f"{self.display_name} network error: {e}",
                provider=self.name,
                code="network_error",
            ) from e

    def _extract_error(self, data: Any) -> tuple[str | None, Any]:
        """Vendor error message and code from an error body."""
        if not isinstance(data, dict):
            return None, None
        error = data.get("error")
        if isinstance(error, dict):
            return error.get("message"), error.get("code")
        if isinstance(error, str):
            return error, None
        return None, None

    async def _raise_for_status(self, response: httpx.Response) -> None:
        if response.is_success:
            return
        await response.aread()
        try:
            data = response.json()
        except ValueError:
            data = {"error": response.text}
        message, code = self._extract_error(data)
        raise ProviderError(
            f"{self.display_name} API error: {response.status_code} - "
            f"{message or response.reason_phrase}",
            provider=self.name,
            status=response.status_code,
            code=code,
            details=data if isinstance(data, dict) else {"body": data},
        )

    def _invalid_response(self, reason: str) -> ProviderError:
        return ProviderError(
            f"Invalid response format from {self.display_name}: {reason}",
            provider=self.name,
            code="invalid_response",
        )

    async def _post_json(self, url: str, **kwargs: Any) -> Any:
        """POST, raise on failure, return the decoded JSON body."""
        with self._transport_errors():
            response = await self.pool.post(url, timeout=self.timeout, **kwargs)
        await self._raise_for_status(response)
        try:
            return response.json()
        except ValueError as e:
            raise self._invalid_response("body is not JSON") from e

    # -- monitoring -----------------------------------------------------

    async def health_check(self) -> bool:
        """Issue one minimal real request. Never raises."""
        if not self.is_available():
            return False
        try:
            result = await self.generate_response(
                self.default_model,
                [Message(role=MessageRole.USER, content="Hello")],
                GenerationSettings(max_tokens=10, temperature=0),
            )
            return bool(result.content)
        except Exception as e:
            logger.error(f"{self.display_name} health check failed: {e}")
            return False

    def describe(self) -> dict[str, Any]:
        """Descriptor used by the orchestrator's provider listing."""
        return {
            "display_name": self.display_name,
            "available": self.is_available(),
            "models": self.get_available_models(),
            "features": self.get_supported_features(),
            "supports_streaming": self.supports_streaming(),
            "rate_limit_description": self.get_rate_limit(),
        }
