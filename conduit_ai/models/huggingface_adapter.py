"""HuggingFace Inference API adapter.

The Inference API has no chat schema, no system field and no streaming, so
the conversation is shaped into a single ``inputs`` string per model family
and the generated text is cleaned up heuristically afterwards.
"""

from __future__ import annotations

import json
import re
import time
from typing import Any

from .base import (
    GenerationResult,
    GenerationSettings,
    Message,
    MessageRole,
    ProviderAdapter,
    estimate_usage,
)
from .connection_pool import HTTPConnectionPool

_ROLE_PREFIX_RE = re.compile(r"^(assistant:|bot:|ai:)", re.IGNORECASE)
_SPECIAL_TOKEN_RE = re.compile(r"<\|.*?\|>")
_BRACKET_TOKEN_RE = re.compile(r"\[.*?\]")

_TRANSIENT_MARKERS = ("loading", "overloaded", "timeout")


def _last_user_message(messages: list[Message]) -> str:
    for msg in reversed(messages):
        if msg.role == MessageRole.USER:
            return msg.content
    return ""


def shape_input(model: str, messages: list[Message]) -> str:
    """Build the ``inputs`` string for a model family.

    - DialoGPT answers only the latest user turn
    - BlenderBot gets the whole non-system history, one turn per line
    - FLAN-T5 / BLOOM get the system prompt followed by the latest user turn
    - anything else gets a ``role: content`` transcript ending in ``assistant:``
    """
    if "DialoGPT" in model:
        return _last_user_message(messages)

    if "blenderbot" in model:
        return "\n".join(
            msg.content for msg in messages if msg.role != MessageRole.SYSTEM
        )

    if "flan-t5" in model or "bloom" in model:
        prompt = ""
        system = next(
            (msg.content for msg in messages if msg.role == MessageRole.SYSTEM),
            None,
        )
        if system:
            prompt += system + "\n\n"
        prompt += _last_user_message(messages)
        return prompt

    transcript = "\n".join(
        f"{msg.role.value}: {msg.content}"
        for msg in messages
        if msg.role != MessageRole.SYSTEM
    )
    return transcript + "\nassistant:"


def clean_generated_content(content: str, model: str, prompt: str = "") -> str:
    """Strip echoed input, role prefixes and special tokens from output."""
    if not content or not isinstance(content, str):
        return ""

    # Text-generation models return the prompt followed by the continuation
    if prompt and content.startswith(prompt):
        content = content[len(prompt):]

    content = _ROLE_PREFIX_RE.sub("", content.strip()).strip()

    if "DialoGPT" in model:
        lines = content.split("\n")
        if lines[-1].strip():
            content = lines[-1].strip()

    content = _SPECIAL_TOKEN_RE.sub("", content).strip()
    content = _BRACKET_TOKEN_RE.sub("", content).strip()
    return content


class HuggingFaceAdapter(ProviderAdapter):
    """Adapter for ``api-inference.huggingface.co``."""

    name = "huggingface"
    display_name = "HuggingFace"
    default_model = "microsoft/DialoGPT-large"
    available_models = (
        "microsoft/DialoGPT-large",
        "microsoft/DialoGPT-medium",
        "facebook/blenderbot-400M-distill",
        "google/flan-t5-large",
        "google/flan-t5-xl",
        "bigscience/bloom-560m",
        "EleutherAI/gpt-j-6b",
    )
    features = (
        "text-generation",
        "conversation",
        "open-models",
        "community-models",
        "fine-tuning",
    )
    rate_limit_description = "100 requests/hour (free tier)"
    streaming = False
    # Cold models can take a while to load
    timeout = 120.0
    retry_delay = 2.0

    def __init__(
        self,
        api_key: str | None = None,
        base_url: str = "https://api-inference.huggingface.co",
        connection_pool: HTTPConnectionPool | None = None,
    ):
        super().__init__(connection_pool)
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")

    def is_available(self) -> bool:
        return bool(self.api_key)

    def build_request_body(
        self,
        inputs: str,
        settings: GenerationSettings,
    ) -> dict[str, Any]:
        parameters: dict[str, Any] = {
            "max_length": settings.max_tokens,
            "temperature": settings.temperature,
            "top_p": settings.top_p,
            "do_sample": True,
        }
        if settings.stop_sequences:
            # Only a single stop sequence is accepted
            parameters["stop_sequence"] = settings.stop_sequences[0]

        return {
            "inputs": inputs,
            "parameters": parameters,
            "options": {"wait_for_model": True, "use_cache": True},
        }

    @staticmethod
    def extract_text(data: Any) -> str:
        """Pull generated text out of the several response shapes."""
        if isinstance(data, list) and data:
            data = data[0]
        if isinstance(data, str):
            return data
        if isinstance(data, dict):
            if "generated_text" in data:
                return data["generated_text"] or ""
            if "response" in data:
                return data["response"] or ""
        return json.dumps(data)

    async def generate_response(
        self,
        model: str,
        messages: list[Message],
        settings: GenerationSettings,
    ) -> GenerationResult:
        start_time = time.perf_counter()
        inputs = shape_input(model, messages)
        data = await self._post_json(
            f"{self.base_url}/models/{model}",
            headers={
                "Authorization": f"Bearer {self.api_key}",
                "Content-Type": "application/json",
            },
            json=self.build_request_body(inputs, settings),
        )

        content = clean_generated_content(self.extract_text(data), model, inputs)

        return GenerationResult(
            content=content,
            usage=estimate_usage(inputs, content),
            finish_reason="stop",
            response_time_ms=(time.perf_counter() - start_time) * 1000,
            provider=self.name,
            model=model,
        )

    def is_retryable_error(self, error: Exception) -> bool:
        if super().is_retryable_error(error):
            return True
        details = getattr(error, "details", None) or {}
        message = details.get("error")
        if isinstance(message, str):
            lowered = message.lower()
            return any(marker in lowered for marker in _TRANSIENT_MARKERS)
        return False
