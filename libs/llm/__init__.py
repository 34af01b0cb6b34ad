"""Generation and embedding seams used by every model-backed component."""

from libs.llm.embeddings import CachedEmbedder, Embedder, OpenAIEmbedder, VectorIndex, VectorNeighbor
from libs.llm.generation import (
    ChatMessage,
    GenerationError,
    GenerationResult,
    Generator,
    LangChainGenerator,
    ProviderConfig,
    generate_json,
    generate_text,
)

__all__ = [
    "CachedEmbedder",
    "ChatMessage",
    "Embedder",
    "GenerationError",
    "GenerationResult",
    "Generator",
    "LangChainGenerator",
    "OpenAIEmbedder",
    "ProviderConfig",
    "VectorIndex",
    "VectorNeighbor",
    "generate_json",
    "generate_text",
]
