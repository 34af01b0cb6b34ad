"""
Embedding and vector search seams.

Both are optional for the pipeline: without them hybrid search runs
lexical-only.
"""

from typing import List, Optional, Protocol

import structlog
from langchain_openai import OpenAIEmbeddings
from pydantic import BaseModel, Field

from libs.caching.lru_cache import TTLCache

logger = structlog.get_logger(__name__)


class VectorNeighbor(BaseModel):
    """A knowledge record returned by a vector index."""

    question: str = ""
    answer: str = ""
    source: str = ""
    distance: Optional[float] = Field(default=None, description="Distance to the query vector, lower is closer")


class Embedder(Protocol):
    async def embed(self, text: str) -> List[float]:
        ...


class VectorIndex(Protocol):
    async def vector_search(self, vector: List[float], limit: int) -> List[VectorNeighbor]:
        """Return up to ``limit`` nearest records with their distances."""
        ...


class OpenAIEmbedder:
    """Embedder backed by LangChain's OpenAIEmbeddings."""

    def __init__(self, model: str = "text-embedding-3-small", api_key: Optional[str] = None):
        kwargs = {"model": model}
        if api_key:
            kwargs["api_key"] = api_key
        self.embeddings = OpenAIEmbeddings(**kwargs)
        self.model = model

    async def embed(self, text: str) -> List[float]:
        return await self.embeddings.aembed_query(text)


class CachedEmbedder:
    """
    Memoizes query embeddings in a bounded LRU cache with TTL.

    Usage:
        embedder = CachedEmbedder(OpenAIEmbedder(), max_size=512, ttl_seconds=3600)
        vector = await embedder.embed("yazici kurulumu")
    """

    def __init__(self, embedder: Embedder, max_size: int = 512, ttl_seconds: float = 3600):
        self.embedder = embedder
        self.cache: TTLCache[List[float]] = TTLCache(max_size=max_size, ttl_seconds=ttl_seconds)

    async def embed(self, text: str) -> List[float]:
        cached = self.cache.get(text)
        if cached is not None:
            return cached

        vector = await self.embedder.embed(text)
        self.cache.set(text, vector)
        return vector
