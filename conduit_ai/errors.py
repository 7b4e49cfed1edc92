"""Error taxonomy for the provider orchestration core.

Callers only ever see ConduitError subclasses. Adapters raise ProviderError;
the orchestrator decides whether to retry it and wraps the final failure in
GenerationFailed. HTTP status mapping is left to the host application.
"""

from __future__ import annotations

from typing import Any


class ConduitError(Exception):
    """Base exception for all conduit errors."""

    def __init__(self, message: str, *, details: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class ConfigurationError(ConduitError):
    """Request refers to something this process cannot serve. Never retried."""

    pass


class ProviderUnavailable(ConfigurationError):
    """Provider is unknown or not configured."""

    def __init__(self, provider: str, message: str | None = None):
        super().__init__(
            message or f"AI provider '{provider}' is not available",
            details={"provider": provider},
        )
        self.provider = provider


class ModelUnavailable(ConfigurationError):
    """Model is not in the provider's model list."""

    def __init__(
        self,
        provider: str,
        model: str,
        available_models: list[str] | None = None,
    ):
        super().__init__(
            f"Model '{model}' is not available for provider '{provider}'",
            details={
                "provider": provider,
                "model": model,
                "available_models": list(available_models or []),
            },
        )
        self.provider = provider
        self.model = model


class RateLimitExceeded(ConduitError):
    """Per-(provider, user) request budget for the current window is spent."""

    def __init__(self, provider: str, limit: int, retry_after: int = 60):
        super().__init__(
            f"Rate limit exceeded for AI provider '{provider}'. "
            f"Limit: {limit} requests per minute.",
            details={"provider": provider, "limit": limit, "retry_after": retry_after},
        )
        self.provider = provider
        self.limit = limit
        self.retry_after = retry_after


class ProviderError(ConduitError):
    """A vendor call failed.

    Attributes:
        provider: Adapter name
        status: HTTP status code, None for transport failures
        code: Vendor error code, or one of "timeout", "connect_error",
              "network_error", "invalid_response"
    """

    def __init__(
        self,
        message: str,
        *,
        provider: str,
        status: int | None = None,
        code: str | int | None = None,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message, details=details)
        self.provider = provider
        self.status = status
        self.code = code


class GenerationFailed(ConduitError):
    """Generation could not be completed, after retries and fallback."""

    def __init__(
        self,
        message: str,
        *,
        provider: str,
        model: str,
        attempts: int = 1,
        retryable: bool = False,
    ):
        super().__init__(
            message,
            details={
                "provider": provider,
                "model": model,
                "attempts": attempts,
                "retryable": retryable,
            },
        )
        self.provider = provider
        self.model = model
        self.attempts = attempts
        self.retryable = retryable


class CacheError(ConduitError):
    """Cache or usage store failure. Logged and swallowed by callers."""

    pass
