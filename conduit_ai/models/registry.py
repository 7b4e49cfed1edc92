"""Closed set of built-in providers and their construction from settings."""

from __future__ import annotations

import logging
from enum import Enum

from ..settings import AppSettings
from .base import ProviderAdapter
from .connection_pool import HTTPConnectionPool
from .gemini_adapter import GeminiAdapter
from .huggingface_adapter import HuggingFaceAdapter
from .ollama_adapter import OllamaAdapter
from .openai_compatible import GroqAdapter

logger = logging.getLogger(__name__)


class ProviderName(str, Enum):
    """Built-in provider identifiers."""

    GEMINI = "gemini"
    GROQ = "groq"
    HUGGINGFACE = "huggingface"
    OLLAMA = "ollama"


def build_adapter(
    provider: ProviderName,
    settings: AppSettings,
    pool: HTTPConnectionPool,
) -> ProviderAdapter:
    """Construct the adapter for one built-in provider."""
    if provider is ProviderName.GEMINI:
        return GeminiAdapter(api_key=settings.gemini_api_key, connection_pool=pool)
    if provider is ProviderName.GROQ:
        return GroqAdapter(api_key=settings.groq_api_key, connection_pool=pool)
    if provider is ProviderName.HUGGINGFACE:
        return HuggingFaceAdapter(
            api_key=settings.huggingface_api_key, connection_pool=pool
        )
    if provider is ProviderName.OLLAMA:
        return OllamaAdapter(base_url=settings.ollama_url, connection_pool=pool)
    raise ValueError(f"Unknown provider: {provider}")


def build_adapters(
    settings: AppSettings,
    pool: HTTPConnectionPool,
) -> dict[str, ProviderAdapter]:
    """Build every built-in adapter, sharing one connection pool.

    All providers are registered; ``is_available()`` reports which of them
    are configured.
    """
    adapters: dict[str, ProviderAdapter] = {}
    for provider in ProviderName:
        adapter = build_adapter(provider, settings, pool)
        adapters[provider.value] = adapter
        if adapter.is_available():
            logger.info(f"{adapter.display_name} provider initialized")
        else:
            logger.info(f"{adapter.display_name} provider not configured")
    return adapters
