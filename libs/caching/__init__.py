"""
Caching utilities for the assistant.

This module provides:
- Redis client management for the durable stores
- A bounded LRU cache with TTL for in-process values such as embeddings
"""

from libs.caching.lru_cache import TTLCache
from libs.caching.redis_client import get_redis_client

__all__ = ["TTLCache", "get_redis_client"]
