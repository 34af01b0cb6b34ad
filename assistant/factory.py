"""Wiring of the chat pipeline from settings and injected collaborators."""

from typing import Optional

import structlog

from assistant.composer.prompt_assembler import PromptAssembler
from assistant.intelligence.graph_query import GraphQuery
from assistant.intelligence.quality_scorer import QualityScorer
from assistant.intelligence.reflexion import ReflexionEngine
from assistant.orchestrators.background import BackgroundTaskSupervisor
from assistant.orchestrators.chat_pipeline import ChatPipeline
from assistant.schemas.pipeline_state import AgentProfile
from assistant.tools.crag_evaluator import CragEvaluator
from assistant.tools.query_analyzer import QueryAnalyzer
from assistant.tools.reranker import Reranker
from assistant.tools.search_engine import SearchEngine
from libs.caching.redis_client import get_redis_client
from libs.common.logging_config import configure_logging
from libs.common.settings import Settings, get_settings
from libs.llm.embeddings import CachedEmbedder, Embedder, OpenAIEmbedder, VectorIndex
from libs.llm.generation import Generator, LangChainGenerator
from libs.memory import CoreMemory, MemoryEngine, RecallMemory
from libs.stores import (
    RedisGraphStore,
    RedisProfileStore,
    RedisQualityStore,
    RedisRecallStore,
    RedisReflexionStore,
)

logger = structlog.get_logger(__name__)


async def create_chat_pipeline(
    settings: Optional[Settings] = None,
    generator: Optional[Generator] = None,
    embedder: Optional[Embedder] = None,
    vector_index: Optional[VectorIndex] = None,
    redis_client=None,
    agent_profile: Optional[AgentProfile] = None,
) -> ChatPipeline:
    """
    Build a ready-to-use ChatPipeline.

    Without a reachable Redis the durable-store components (memory,
    quality scoring, reflexion, graph) are left out and the pipeline
    still answers.

    Args:
        settings: Settings to use (defaults to get_settings())
        generator: Generation backend (defaults to LangChainGenerator)
        embedder: Query embedder; wrapped in an LRU/TTL cache
        vector_index: Nearest-neighbour index; vector search is off without it
        redis_client: Async Redis client (defaults to get_redis_client())
        agent_profile: Persona, policy and topics rendered into every prompt

    Returns:
        ChatPipeline
    """
    settings = settings or get_settings()
    configure_logging(level=settings.log_level, json_output=settings.log_json)

    generator = generator or LangChainGenerator()
    provider_config = settings.provider_config()

    if embedder is None and vector_index is not None and settings.openai_api_key:
        embedder = OpenAIEmbedder(model=settings.embedding_model, api_key=settings.openai_api_key)
    if embedder is not None:
        embedder = CachedEmbedder(
            embedder,
            max_size=settings.embedding_cache_size,
            ttl_seconds=settings.embedding_cache_ttl_seconds,
        )

    search_engine = SearchEngine(
        embedder=embedder,
        vector_index=vector_index,
        distance_threshold=settings.vector_distance_threshold,
        rrf_k=settings.rrf_k,
    )
    reranker = Reranker(
        generator,
        provider_config,
        api_key=settings.rerank_api_key,
        api_url=settings.rerank_url,
        model=settings.rerank_model,
        timeout=settings.rerank_timeout_seconds,
    )

    if redis_client is None:
        redis_client = await get_redis_client()

    memory_engine = quality_scorer = reflexion = graph_query = None
    if redis_client is None:
        logger.warning("Redis unavailable, memory, quality scoring and reflexion disabled")
    else:
        if settings.memory_enabled:
            memory_engine = MemoryEngine(
                CoreMemory(RedisProfileStore(redis_client), generator, provider_config),
                RecallMemory(RedisRecallStore(redis_client)),
                core_token_budget=settings.core_memory_token_budget,
                recall_token_budget=settings.recall_memory_token_budget,
            )
        quality_scorer = QualityScorer(
            generator,
            provider_config,
            RedisQualityStore(redis_client),
            low_quality_threshold=settings.low_quality_threshold,
        )
        reflexion = ReflexionEngine(generator, provider_config, RedisReflexionStore(redis_client))
        if settings.graph_enabled:
            graph_query = GraphQuery(RedisGraphStore(redis_client))

    pipeline = ChatPipeline(
        query_analyzer=QueryAnalyzer(generator, provider_config),
        search_engine=search_engine,
        reranker=reranker,
        crag_evaluator=CragEvaluator(generator, provider_config, settings.max_rewrite_attempts),
        prompt_assembler=PromptAssembler(agent_profile, settings.evidence_token_budget),
        generator=generator,
        provider_config=provider_config,
        memory_engine=memory_engine,
        quality_scorer=quality_scorer,
        reflexion=reflexion,
        graph_query=graph_query,
        supervisor=BackgroundTaskSupervisor(),
        max_output_tokens=settings.generation_max_output_tokens,
        min_rerank_score=settings.min_rerank_score,
        max_rewrite_attempts=settings.max_rewrite_attempts,
        low_quality_handoff_threshold=settings.low_quality_handoff_threshold,
        graph_token_budget=settings.graph_token_budget,
        fallback_reply=settings.fallback_reply,
    )

    logger.info(
        "Chat pipeline created",
        model=provider_config.model,
        vector_search=search_engine.vector_enabled,
        rerank_api=bool(settings.rerank_api_key),
        memory=memory_engine is not None,
        quality=quality_scorer is not None,
        graph=graph_query is not None,
    )
    return pipeline
