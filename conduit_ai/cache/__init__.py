"""Cache module for conduit-ai."""

from .store import CacheStore, MemoryStore, RedisStore, create_cache_store

__all__ = ["CacheStore", "MemoryStore", "RedisStore", "create_cache_store"]
