"""Google Gemini adapter.

Gemini differs from OpenAI-style APIs in a few ways:
- The assistant role is called "model"
- System prompts go in a separate ``systemInstruction`` field
- The API key travels as a ``key`` query parameter
- Streaming uses ``:streamGenerateContent?alt=sse``
"""

from __future__ import annotations

import logging
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

logger = logging.getLogger(__name__)

_ROLE_MAP = {
    MessageRole.USER: "user",
    MessageRole.ASSISTANT: "model",
}


class GeminiAdapter(ProviderAdapter):
    """Adapter for the Gemini ``generateContent`` API."""

    name = "gemini"
    display_name = "Google Gemini"
    default_model = "gemini-pro"
    available_models = (
        "gemini-pro",
        "gemini-pro-vision",
        "gemini-1.5-pro",
        "gemini-1.5-flash",
    )
    features = (
        "text-generation",
        "multimodal",
        "vision",
        "streaming",
        "system-instructions",
        "function-calling",
    )
    rate_limit_description = "60 requests/minute (free tier)"
    timeout = 60.0
    retry_delay = 1.0

    def __init__(
        self,
        api_key: str | None = None,
        base_url: str = "https://generativelanguage.googleapis.com/v1beta",
        connection_pool: HTTPConnectionPool | None = None,
    ):
        super().__init__(connection_pool)
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")

    def is_available(self) -> bool:
        return bool(self.api_key)

    def build_request_body(
        self,
        messages: list[Message],
        settings: GenerationSettings,
    ) -> dict[str, Any]:
        contents = [
            {"role": _ROLE_MAP[msg.role], "parts": [{"text": msg.content}]}
            for msg in messages
            if msg.role in _ROLE_MAP
        ]

        generation_config: dict[str, Any] = {
            "temperature": settings.temperature,
            "topK": settings.top_k,
            "topP": settings.top_p,
            "maxOutputTokens": settings.max_tokens,
        }
        if settings.stop_sequences:
            generation_config["stopSequences"] = settings.stop_sequences

        body: dict[str, Any] = {
            "contents": contents,
            "generationConfig": generation_config,
        }

        instruction = system_instruction(messages)
        if instruction:
            body["systemInstruction"] = {"parts": [{"text": instruction}]}

        return body

    def _url(self, model: str, endpoint: str) -> str:
        return f"{self.base_url}/models/{model}:{endpoint}"

    @staticmethod
    def _usage(data: dict[str, Any]) -> TokenUsage | None:
        metadata = data.get("usageMetadata")
        if not metadata:
            return None
        return TokenUsage(
            prompt_tokens=metadata.get("promptTokenCount", 0),
            completion_tokens=metadata.get("candidatesTokenCount", 0),
            total_tokens=metadata.get("totalTokenCount", 0),
        )

    @staticmethod
    def _candidate_text(candidate: dict[str, Any]) -> str:
        parts = (candidate.get("content") or {}).get("parts") or []
        return "".join(part.get("text", "") for part in parts)

    async def generate_response(
        self,
        model: str,
        messages: list[Message],
        settings: GenerationSettings,
    ) -> GenerationResult:
        start_time = time.perf_counter()
        data = await self._post_json(
            self._url(model, "generateContent"),
            params={"key": self.api_key},
            json=self.build_request_body(messages, settings),
        )

        candidates = data.get("candidates") if isinstance(data, dict) else None
        if not candidates:
            raise self._invalid_response("no candidates in Gemini response")

        candidate = candidates[0]
        finish_reason = candidate.get("finishReason") or "STOP"
        if finish_reason != "STOP":
            logger.warning(f"Gemini generation finished with reason: {finish_reason}")

        content = self._candidate_text(candidate)
        usage = self._usage(data)
        if usage is None or usage.total_tokens == 0:
            usage = estimate_usage(messages, content)

        return GenerationResult(
            content=content,
            usage=usage,
            finish_reason=finish_reason,
            response_time_ms=(time.perf_counter() - start_time) * 1000,
            provider=self.name,
            model=model,
        )

    def build_stream_request(
        self,
        model: str,
        messages: list[Message],
        settings: GenerationSettings,
    ) -> tuple[str, dict[str, Any]]:
        return self._url(model, "streamGenerateContent"), {
            "params": {"alt": "sse", "key": self.api_key},
            "json": self.build_request_body(messages, settings),
            "timeout": self.timeout,
        }

    def decode_stream_line(self, line: str) -> StreamDelta | None:
        data = sse_payload(line)
        if data is None:
            return None
        candidates = data.get("candidates") or []
        if not candidates:
            return StreamDelta(usage=self._usage(data))
        candidate = candidates[0]
        return StreamDelta(
            text=self._candidate_text(candidate),
            usage=self._usage(data),
            finish_reason=candidate.get("finishReason"),
        )
