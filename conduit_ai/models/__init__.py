"""Provider adapters and canonical generation types."""

from .base import (
    GenerationRequest,
    GenerationResult,
    GenerationSettings,
    Message,
    MessageRole,
    ProviderAdapter,
    TokenUsage,
    estimate_tokens,
)
from .connection_pool import HTTPConnectionPool
from .gemini_adapter import GeminiAdapter
from .huggingface_adapter import HuggingFaceAdapter
from .mock import MockAdapter
from .ollama_adapter import OllamaAdapter
from .openai_compatible import GroqAdapter, OpenAICompatibleAdapter
from .registry import ProviderName, build_adapters

__all__ = [
    "GenerationRequest",
    "GenerationResult",
    "GenerationSettings",
    "Message",
    "MessageRole",
    "ProviderAdapter",
    "TokenUsage",
    "estimate_tokens",
    "HTTPConnectionPool",
    "GeminiAdapter",
    "GroqAdapter",
    "HuggingFaceAdapter",
    "MockAdapter",
    "OllamaAdapter",
    "OpenAICompatibleAdapter",
    "ProviderName",
    "build_adapters",
]
