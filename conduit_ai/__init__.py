"""conduit-ai: one request/response contract over several LLM providers."""

from .errors import (
    ConduitError,
    GenerationFailed,
    ModelUnavailable,
    ProviderError,
    ProviderUnavailable,
    RateLimitExceeded,
)
from .models import GenerationRequest, GenerationResult, GenerationSettings, Message
from .orchestrator import Orchestrator, ProviderDescriptor, ProviderHealth
from .settings import AppSettings

__all__ = [
    "AppSettings",
    "ConduitError",
    "GenerationFailed",
    "GenerationRequest",
    "GenerationResult",
    "GenerationSettings",
    "Message",
    "ModelUnavailable",
    "Orchestrator",
    "ProviderDescriptor",
    "ProviderError",
    "ProviderHealth",
    "ProviderUnavailable",
    "RateLimitExceeded",
]
