"""Ollama adapter for self-hosted models.

Ollama is treated as a plain HTTP endpoint. Its model catalog is discovered
from ``/api/tags`` once and cached on the adapter; streams are
newline-delimited JSON with a final ``done`` record carrying token counts.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any

import httpx

from ..errors import ProviderError
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
from .streaming import StreamDelta, iter_lines, ndjson_payload

logger = logging.getLogger(__name__)

# Used when the catalog cannot be discovered
DEFAULT_MODELS = (
    "llama2",
    "llama2:7b",
    "llama2:13b",
    "codellama",
    "codellama:7b",
    "mistral",
    "mixtral",
    "phi",
    "neural-chat",
    "starling-lm",
)


class OllamaAdapter(ProviderAdapter):
    """Adapter for the Ollama ``/api/chat`` endpoint."""

    name = "ollama"
    display_name = "Ollama"
    default_model = "llama2"
    features = (
        "text-generation",
        "local-inference",
        "privacy-focused",
        "streaming",
        "custom-models",
        "offline-capable",
    )
    rate_limit_description = "No limit (local inference)"
    timeout = 120.0
    retry_delay = 1.0

    def __init__(
        self,
        base_url: str | None = None,
        connection_pool: HTTPConnectionPool | None = None,
    ):
        super().__init__(connection_pool)
        self.base_url = base_url.rstrip("/") if base_url else None
        self._models: list[str] = []
        self.models_loaded = False
        self._models_lock = asyncio.Lock()

    def is_available(self) -> bool:
        return bool(self.base_url)

    def get_available_models(self) -> list[str]:
        return list(self._models)

    async def load_available_models(self, refresh: bool = False) -> list[str]:
        """Discover the model catalog once; static defaults if discovery fails."""
        if self.models_loaded and not refresh:
            return self.get_available_models()

        async with self._models_lock:
            if self.models_loaded and not refresh:
                return self.get_available_models()
            try:
                data = await self._get_json("/api/tags")
                models = data.get("models") if isinstance(data, dict) else None
                if isinstance(models, list):
                    self._models = [model["name"] for model in models if "name" in model]
                    logger.info(
                        f"Loaded {len(self._models)} Ollama models: {self._models}"
                    )
                else:
                    logger.warning("No models found in Ollama response")
                    self._models = []
            except (ProviderError, KeyError, TypeError) as e:
                logger.error(f"Failed to load Ollama models: {e}")
                self._models = list(DEFAULT_MODELS)
            self.models_loaded = True

        return self.get_available_models()

    async def _get_json(self, path: str) -> Any:
        with self._transport_errors():
            response = await self.pool.get(f"{self.base_url}{path}", timeout=self.timeout)
        await self._raise_for_status(response)
        try:
            return response.json()
        except ValueError as e:
            raise self._invalid_response("body is not JSON") from e

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

        options: dict[str, Any] = {
            "temperature": settings.temperature,
            "top_p": settings.top_p,
            "top_k": settings.top_k,
            "num_predict": settings.max_tokens,
        }
        if settings.stop_sequences:
            options["stop"] = settings.stop_sequences
        if settings.seed is not None:
            options["seed"] = settings.seed

        return {
            "model": model,
            "messages": formatted,
            "stream": stream,
            "options": options,
        }

    @staticmethod
    def _usage(data: dict[str, Any]) -> TokenUsage:
        prompt_tokens = data.get("prompt_eval_count") or 0
        completion_tokens = data.get("eval_count") or 0
        return TokenUsage(
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
            total_tokens=prompt_tokens + completion_tokens,
        )

    async def generate_response(
        self,
        model: str,
        messages: list[Message],
        settings: GenerationSettings,
    ) -> GenerationResult:
        start_time = time.perf_counter()
        data = await self._post_json(
            f"{self.base_url}/api/chat",
            json=self.build_request_body(model, messages, settings),
        )

        message = data.get("message") if isinstance(data, dict) else None
        if not message or not message.get("content"):
            raise self._invalid_response("missing message content")

        content = message["content"]
        usage = self._usage(data)
        if usage.total_tokens == 0:
            usage = estimate_usage(messages, content)

        return GenerationResult(
            content=content,
            usage=usage,
            finish_reason="stop" if data.get("done") else "length",
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
        return f"{self.base_url}/api/chat", {
            "json": self.build_request_body(model, messages, settings, stream=True),
            "timeout": self.timeout,
        }

    def decode_stream_line(self, line: str) -> StreamDelta | None:
        data = ndjson_payload(line)
        if data is None:
            return None
        if data.get("error"):
            raise ProviderError(
                f"Ollama stream error: {data['error']}",
                provider=self.name,
                details=data,
            )
        delta = StreamDelta(
            text=(data.get("message") or {}).get("content") or "",
            model=data.get("model"),
        )
        if data.get("done"):
            delta.done = True
            delta.usage = self._usage(data)
            delta.finish_reason = data.get("done_reason") or "stop"
        return delta

    def is_retryable_error(self, error: Exception) -> bool:
        details = getattr(error, "details", None) or {}
        message = details.get("error")
        if isinstance(message, str):
            lowered = message.lower()
            if "model" in lowered and "not found" in lowered:
                return False
            if "loading" in lowered or "busy" in lowered:
                return True
        return super().is_retryable_error(error)

    async def health_check(self) -> bool:
        """Healthy when the tags endpoint answers with a model list."""
        if not self.is_available():
            return False
        try:
            data = await self._get_json("/api/tags")
            return isinstance(data.get("models"), list)
        except Exception as e:
            logger.error(f"Ollama health check failed: {e}")
            return False

    async def get_system_info(self) -> dict[str, Any] | None:
        """Version information from ``/api/version``."""
        try:
            return await self._get_json("/api/version")
        except ProviderError as e:
            logger.error(f"Failed to get Ollama system info: {e}")
            return None

    async def pull_model(self, model: str) -> bool:
        """Download a model into the Ollama server and refresh the catalog."""
        logger.info(f"Starting download of model: {model}")
        try:
            with self._transport_errors():
                async with self.pool.stream(
                    "POST",
                    f"{self.base_url}/api/pull",
                    json={"name": model},
                    timeout=httpx.Timeout(self.timeout, read=None),
                ) as response:
                    await self._raise_for_status(response)
                    async for line in iter_lines(response.aiter_bytes()):
                        try:
                            progress = ndjson_payload(line)
                        except ValueError:
                            continue
                        if progress and progress.get("error"):
                            raise ProviderError(
                                f"Ollama pull failed: {progress['error']}",
                                provider=self.name,
                                details=progress,
                            )
                        if progress and progress.get("status"):
                            logger.info(f"Model download progress: {progress['status']}")
        except ProviderError as e:
            logger.error(f"Failed to download model {model}: {e}")
            return False

        await self.load_available_models(refresh=True)
        logger.info(f"Model {model} downloaded successfully")
        return True
