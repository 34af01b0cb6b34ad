"""
Durable stores for the assistant.

Provides:
- Protocol interfaces the pipeline depends on
- Redis-backed implementations of every interface
"""

from libs.stores.interfaces import GraphStore, ProfileStore, QualityStore, RecallStore, ReflexionStore
from libs.stores.redis_stores import (
    RedisGraphStore,
    RedisProfileStore,
    RedisQualityStore,
    RedisRecallStore,
    RedisReflexionStore,
)

__all__ = [
    "GraphStore",
    "ProfileStore",
    "QualityStore",
    "RecallStore",
    "ReflexionStore",
    "RedisGraphStore",
    "RedisProfileStore",
    "RedisQualityStore",
    "RedisRecallStore",
    "RedisReflexionStore",
]
