from __future__ import annotations

from conduit_ai.models import build_adapters
from conduit_ai.models.connection_pool import HTTPConnectionPool
from conduit_ai.settings import AppSettings


def test_defaults(monkeypatch):
    for name in ("GEMINI_API_KEY", "GROQ_API_KEY", "HUGGINGFACE_API_KEY", "OLLAMA_URL", "REDIS_URL"):
        monkeypatch.delenv(name, raising=False)
        monkeypatch.delenv(f"CONDUIT_{name}", raising=False)

    settings = AppSettings(_env_file=None)

    assert settings.gemini_api_key is None
    assert settings.redis_url is None
    assert settings.rate_limit_per_minute == 60
    assert settings.fallback_provider == "gemini"
    assert settings.max_attempts == 3
    assert settings.response_cache_ttl == 3600
    assert settings.usage_ttl == 86400


def test_conventional_env_names(monkeypatch):
    monkeypatch.setenv("GROQ_API_KEY", "gsk-test")
    monkeypatch.setenv("OLLAMA_URL", "http://localhost:11434")
    monkeypatch.setenv("CONDUIT_RATE_LIMIT_PER_MINUTE", "10")

    settings = AppSettings(_env_file=None)

    assert settings.groq_api_key == "gsk-test"
    assert settings.ollama_url == "http://localhost:11434"
    assert settings.rate_limit_per_minute == 10


def test_prefixed_env_names(monkeypatch):
    monkeypatch.setenv("CONDUIT_GEMINI_API_KEY", "g-test")
    settings = AppSettings(_env_file=None)
    assert settings.gemini_api_key == "g-test"


def test_blank_values_are_unset(monkeypatch):
    monkeypatch.setenv("GEMINI_API_KEY", "  ")
    monkeypatch.setenv("CONDUIT_FALLBACK_PROVIDER", "")
    settings = AppSettings(_env_file=None)
    assert settings.gemini_api_key is None
    assert settings.fallback_provider is None


def test_adapters_follow_configuration():
    settings = AppSettings(
        _env_file=None,
        gemini_api_key="g",
        groq_api_key=None,
        huggingface_api_key=None,
        ollama_url="http://ollama:11434",
    )
    adapters = build_adapters(settings, HTTPConnectionPool())

    assert set(adapters) == {"gemini", "groq", "huggingface", "ollama"}
    assert adapters["gemini"].is_available()
    assert not adapters["groq"].is_available()
    assert not adapters["huggingface"].is_available()
    assert adapters["ollama"].is_available()
    assert adapters["ollama"].base_url == "http://ollama:11434"
