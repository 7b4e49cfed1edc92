"""Mock provider adapter for testing."""

from __future__ import annotations

from collections import deque
from typing import Any

from ..errors import ProviderError
from .base import (
    GenerationResult,
    GenerationSettings,
    Message,
    MessageRole,
    ProviderAdapter,
    estimate_usage,
)
from .streaming import ChunkCallback, emit_chunk, split_words


class MockAdapter(ProviderAdapter):
    """Scriptable adapter that never touches the network.

    Queued outcomes are consumed one per call; each is either a response
    string or an exception to raise. With an empty queue the adapter echoes
    the last user message.

    Examples:
        adapter = MockAdapter(name="primary", outcomes=[
            ProviderError("busy", provider="primary", status=503),
            "Hello there",
        ])
    """

    display_name = "Mock"
    default_model = "mock-model"
    available_models = ("mock-model", "mock-model-large")
    features = ("text-generation", "streaming", "testing")
    rate_limit_description = "No limit (mock)"
    retry_delay = 0.0
    synthetic_chunk_delay = 0.0

    def __init__(
        self,
        name: str = "mock",
        outcomes: list[str | Exception] | None = None,
        models: list[str] | None = None,
        available: bool = True,
        streaming: bool = True,
        healthy: bool = True,
    ):
        super().__init__()
        self.name = name
        self.display_name = f"Mock ({name})"
        self.outcomes: deque[str | Exception] = deque(outcomes or [])
        if models is not None:
            self.available_models = tuple(models)
            self.default_model = models[0] if models else ""
        self.available = available
        self.streaming = streaming
        self.healthy = healthy
        self.calls: list[dict[str, Any]] = []
        self.stream_calls = 0

    @property
    def call_count(self) -> int:
        return len(self.calls)

    def is_available(self) -> bool:
        return self.available

    def queue(self, *outcomes: str | Exception) -> None:
        self.outcomes.extend(outcomes)

    def _next_content(self, messages: list[Message]) -> str:
        if self.outcomes:
            outcome = self.outcomes.popleft()
            if isinstance(outcome, Exception):
                raise outcome
            return outcome
        for msg in reversed(messages):
            if msg.role == MessageRole.USER:
                return f"Mock response to: {msg.content}"
        return "Mock response"

    async def generate_response(
        self,
        model: str,
        messages: list[Message],
        settings: GenerationSettings,
    ) -> GenerationResult:
        self.calls.append({"model": model, "messages": messages, "settings": settings})
        content = self._next_content(messages)
        return GenerationResult(
            content=content,
            usage=estimate_usage(messages, content),
            provider=self.name,
            model=model,
        )

    async def generate_streaming_response(
        self,
        model: str,
        messages: list[Message],
        settings: GenerationSettings,
        on_chunk: ChunkCallback,
    ) -> GenerationResult:
        if not self.supports_streaming():
            return await super().generate_streaming_response(
                model, messages, settings, on_chunk
            )

        self.stream_calls += 1
        content = self._next_content(messages)
        for word in split_words(content):
            await emit_chunk(on_chunk, word)
        return GenerationResult(
            content=content,
            usage=estimate_usage(messages, content),
            provider=self.name,
            model=model,
            streaming=True,
        )

    async def health_check(self) -> bool:
        return self.available and self.healthy


def transient_error(provider: str = "mock", status: int = 503) -> ProviderError:
    """A retryable vendor failure, for scripting outcomes."""
    return ProviderError(
        f"Mock API error: {status} - Service Unavailable",
        provider=provider,
        status=status,
    )
