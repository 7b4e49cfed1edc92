from __future__ import annotations

from pydantic import AliasChoices, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class AppSettings(BaseSettings):
    """Process configuration, read once at startup.

    Vendor credentials are also accepted under their conventional names
    (GEMINI_API_KEY, GROQ_API_KEY, HUGGINGFACE_API_KEY, OLLAMA_URL, REDIS_URL).
    """

    # Provider credentials / endpoints
    gemini_api_key: str | None = Field(
        default=None,
        validation_alias=AliasChoices("CONDUIT_GEMINI_API_KEY", "GEMINI_API_KEY"),
    )
    groq_api_key: str | None = Field(
        default=None,
        validation_alias=AliasChoices("CONDUIT_GROQ_API_KEY", "GROQ_API_KEY"),
    )
    huggingface_api_key: str | None = Field(
        default=None,
        validation_alias=AliasChoices(
            "CONDUIT_HUGGINGFACE_API_KEY", "HUGGINGFACE_API_KEY"
        ),
    )
    ollama_url: str | None = Field(
        default=None,
        validation_alias=AliasChoices("CONDUIT_OLLAMA_URL", "OLLAMA_URL"),
    )

    # Optional external store; in-process store when unset
    redis_url: str | None = Field(
        default=None,
        validation_alias=AliasChoices("CONDUIT_REDIS_URL", "REDIS_URL"),
    )

    # Rate limiting (fixed window)
    rate_limit_per_minute: int = 60
    rate_limit_window_seconds: int = 60

    # Retry / fallback
    fallback_provider: str | None = "gemini"
    max_attempts: int = 3

    # TTLs in seconds
    response_cache_ttl: int = 3600
    usage_ttl: int = 86400

    # Delay between synthesized chunks for adapters without native streaming
    synthetic_chunk_delay: float = 0.05

    # HTTP pool
    http_max_connections: int = 100
    http_max_keepalive_connections: int = 20

    model_config = SettingsConfigDict(
        env_prefix="CONDUIT_",
        env_parse_none_str="none",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    @field_validator(
        "gemini_api_key",
        "groq_api_key",
        "huggingface_api_key",
        "ollama_url",
        "redis_url",
        "fallback_provider",
        mode="before",
    )
    @classmethod
    def blank_to_none(cls, v):
        if isinstance(v, str) and not v.strip():
            return None
        return v
