"""OpenAI-compatible adapter for any provider using the OpenAI API format.

This adapter works with:
- Groq (Llama, Mixtral, Gemma)
- OpenAI (GPT-3.5, GPT-4, etc.)
- OpenRouter, Together AI, Anyscale
- Any other OpenAI-compatible ``/chat/completions`` endpoint
"""

from __future__ import annotations

import time
from typing import Any

from .base import (
    GenerationResult,
    GenerationSettings,
    Message,
    MessageRole,
    ProviderAdapter,
    TokenUsage,
    estimate_usage,
    system_instruction,
)
from .connection_pool import HTTPConnectionPool
from .streaming import StreamDelta, sse_payload


class OpenAICompatibleAdapter(ProviderAdapter):
    """Universal adapter for OpenAI-compatible APIs.

    Examples:
        # Groq Llama
        adapter = OpenAICompatibleAdapter(
            base_url="https://api.groq.com/openai/v1",
            api_key=os.getenv("GROQ_API_KEY"),
            models=["llama3-70b-8192"],
        )
        result = await adapter.generate_response("llama3-70b-8192", messages, settings)
    """

    name = "openai-compatible"
    display_name = "OpenAI-compatible"
    features = ("text-generation", "streaming", "function-calling", "json-mode")
    # Vendor error types that signal a transient condition
    RETRYABLE_ERROR_TYPES = frozenset({"server_error", "rate_limit_exceeded"})

    def __init__(
        self,
        base_url: str = "https://api.openai.com/v1",
        api_key: str | None = None,
        models: list[str] | None = None,
        default_model: str | None = None,
        connection_pool: HTTPConnectionPool | None = None,
    ):
        """Initialize the adapter.

        Args:
            base_url: API endpoint (e.g., "https://api.groq.com/openai/v1")
            api_key: API key for authentication
            models: Models this endpoint serves; defaults to the class list
            default_model: Model used for health checks
            connection_pool: Optional shared connection pool
        """
        super().__init__(connection_pool)
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        if models is not None:
            self.available_models = tuple(models)
        if default_model is not None:
            self.default_model = default_model

    def is_available(self) -> bool:
        return bool(self.api_key)

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

    def build_request_body(
        self,
        model: str,
        messages: list[Message],
        settings: GenerationSettings,
        stream: bool = False,
    ) -> dict[str, Any]:
        formatted: list[dict[str, str]] = []
        instruction = system_instruction(messages)
        if instruction:
            formatted.append({"role": "system", "content": instruction})
        formatted.extend(
            {"role": msg.role.value, "content": msg.content}
            for msg in messages
            if msg.role != MessageRole.SYSTEM
        )

        body: dict[str, Any] = {
            "model": model,
            "messages": formatted,
            "max_tokens": settings.max_tokens,
            "temperature": settings.temperature,
            "top_p": settings.top_p,
            "stream": stream,
        }
        if settings.stop_sequences:
            body["stop"] = settings.stop_sequences
        if settings.seed is not None:
            body["seed"] = settings.seed
        return body

    @staticmethod
    def _usage(data: dict[str, Any]) -> TokenUsage | None:
        # Groq reports streaming usage under x_groq
        usage = data.get("usage") or (data.get("x_groq") or {}).get("usage")
        if not usage:
            return None
        return TokenUsage(
            prompt_tokens=usage.get("prompt_tokens", 0),
            completion_tokens=usage.get("completion_tokens", 0),
            total_tokens=usage.get("total_tokens", 0),
        )

    async def generate_response(
        self,
        model: str,
        messages: list[Message],
        settings: GenerationSettings,
    ) -> GenerationResult:
        start_time = time.perf_counter()
        data = await self._post_json(
            f"{self.base_url}/chat/completions",
            headers=self._headers(),
            json=self.build_request_body(model, messages, settings),
        )

        choices = data.get("choices") if isinstance(data, dict) else None
        if not choices:
            raise self._invalid_response(f"no choices in {self.display_name} response")

        choice = choices[0]
        content = (choice.get("message") or {}).get("content") or ""
        usage = self._usage(data)
        if usage is None or usage.total_tokens == 0:
            usage = estimate_usage(messages, content)

        return GenerationResult(
            content=content,
            usage=usage,
            finish_reason=choice.get("finish_reason") or "stop",
            response_time_ms=(time.perf_counter() - start_time) * 1000,
            provider=self.name,
            model=data.get("model") or model,
        )

    def build_stream_request(
        self,
        model: str,
        messages: list[Message],
        settings: GenerationSettings,
    ) -> tuple[str, dict[str, Any]]:
        return f"{self.base_url}/chat/completions", {
            "headers": self._headers(),
            "json": self.build_request_body(model, messages, settings, stream=True),
            "timeout": self.timeout,
        }

    def decode_stream_line(self, line: str) -> StreamDelta | None:
        data = sse_payload(line)
        if data is None:
            return None
        choices = data.get("choices") or []
        delta = StreamDelta(usage=self._usage(data), model=data.get("model"))
        if choices:
            choice = choices[0]
            delta.text = (choice.get("delta") or {}).get("content") or ""
            delta.finish_reason = choice.get("finish_reason")
        return delta

    def _extract_error(self, data: Any) -> tuple[str | None, Any]:
        message, code = super()._extract_error(data)
        if code is None and isinstance(data, dict):
            error = data.get("error")
            if isinstance(error, dict):
                code = error.get("type")
        return message, code

    def is_retryable_error(self, error: Exception) -> bool:
        if super().is_retryable_error(error):
            return True
        details = getattr(error, "details", None) or {}
        error_body = details.get("error")
        if isinstance(error_body, dict):
            return error_body.get("type") in self.RETRYABLE_ERROR_TYPES
        return False


class GroqAdapter(OpenAICompatibleAdapter):
    """Groq LPU inference through its OpenAI-compatible endpoint."""

    name = "groq"
    display_name = "Groq"
    default_model = "mixtral-8x7b-32768"
    available_models = (
        "mixtral-8x7b-32768",
        "llama2-70b-4096",
        "llama3-8b-8192",
        "llama3-70b-8192",
        "gemma-7b-it",
        "gemma2-9b-it",
    )
    features = (
        "text-generation",
        "fast-inference",
        "streaming",
        "function-calling",
        "json-mode",
    )
    rate_limit_description = "30 requests/minute (free tier)"

    def __init__(
        self,
        api_key: str | None = None,
        base_url: str = "https://api.groq.com/openai/v1",
        connection_pool: HTTPConnectionPool | None = None,
    ):
        super().__init__(
            base_url=base_url,
            api_key=api_key,
            connection_pool=connection_pool,
        )
