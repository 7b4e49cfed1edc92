"""Request admission controls."""

from .ratelimit import RateLimiter

__all__ = ["RateLimiter"]
