"""Three-tier reranker for retrieval candidates.

Tiers, first success wins:
1. External rerank API (Cohere-compatible ``/v1/rerank``), only with an API key
2. Model-as-reranker: one generation call returns ``[{index, score}]``
3. Arithmetic fallback from the fused RRF score, or 1 / (60 + rank + 1)

Every candidate comes back with a ``rerank_score`` in [0, 1], sorted
descending. Candidates are never dropped.

Usage:
    reranker = Reranker(generator, provider_config, api_key=settings.rerank_api_key)
    ranked = await reranker.rerank(query, candidates)
"""

import time
from typing import Any, Dict, List, Optional, Sequence

import httpx
import structlog
from langsmith import traceable

from assistant.schemas.pipeline_state import CandidateResult
from libs.llm.generation import Generator, ProviderConfig, generate_json

logger = structlog.get_logger(__name__)

DEFAULT_RERANK_URL = "https://api.cohere.com/v1/rerank"
DEFAULT_RERANK_MODEL = "rerank-v3.5"
DEFAULT_RERANK_TIMEOUT = 5.0
FALLBACK_RRF_K = 60
MAX_LLM_RERANK_TOKENS = 1024

LLM_RERANK_SYSTEM_PROMPT = """You score knowledge base results for a customer question.
Rate how relevant each result is to the question between 0 and 1 (0 = unrelated, 1 = fully answers it).
Reply with ONLY a JSON array, nothing else.
Format: [{"index": 0, "score": 0.95}, {"index": 1, "score": 0.3}]"""


class RerankError(Exception):
    """A reranking tier produced no usable scores."""


def _clamp(score: float) -> float:
    return max(0.0, min(1.0, float(score)))


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _with_scores(candidates: Sequence[CandidateResult], scores: Dict[int, float]) -> List[CandidateResult]:
    annotated = [
        c.model_copy(update={"rerank_score": scores.get(i, 0.0)})
        for i, c in enumerate(candidates)
    ]
    annotated.sort(key=lambda c: c.rerank_score, reverse=True)
    return annotated


def build_llm_rerank_prompt(query: str, candidates: Sequence[CandidateResult]) -> str:
    items = "\n\n".join(
        f"[{i}] Soru: {c.question}\nCevap: {c.answer}" for i, c in enumerate(candidates)
    )
    return f'Question: "{query}"\n\nResults:\n{items}\n\nScore every result from 0 to 1. Return a JSON array.'


def rrf_fallback(candidates: Sequence[CandidateResult], k: int = FALLBACK_RRF_K) -> List[CandidateResult]:
    """Tier 3: reuse the fused score, else 1 / (k + rank + 1). Cannot fail."""
    scores = {
        rank: _clamp(c.rrf_score) if c.rrf_score is not None else 1.0 / (k + rank + 1)
        for rank, c in enumerate(candidates)
    }
    return _with_scores(candidates, scores)


class Reranker:
    """Relevance reordering with a total fallback chain."""

    def __init__(
        self,
        generator: Generator,
        provider_config: ProviderConfig,
        api_key: Optional[str] = None,
        api_url: str = DEFAULT_RERANK_URL,
        model: str = DEFAULT_RERANK_MODEL,
        timeout: float = DEFAULT_RERANK_TIMEOUT,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        """
        Initialize the reranker.

        Args:
            generator: Model used for tier 2
            provider_config: Provider settings for tier 2
            api_key: Rerank API key; tier 1 is skipped without it
            api_url: Rerank endpoint
            model: Rerank model name
            timeout: Tier 1 timeout in seconds
            http_client: Optional shared client (a short-lived one is opened per call otherwise)
        """
        self.generator = generator
        self.provider_config = provider_config
        self.api_key = api_key
        self.api_url = api_url
        self.model = model
        self.timeout = timeout
        self.http_client = http_client

    async def _post_rerank(self, payload: Dict[str, Any]) -> httpx.Response:
        headers = {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {self.api_key}",
        }
        if self.http_client is not None:
            return await self.http_client.post(self.api_url, json=payload, headers=headers, timeout=self.timeout)
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            return await client.post(self.api_url, json=payload, headers=headers)

    async def api_rerank(self, query: str, candidates: Sequence[CandidateResult]) -> List[CandidateResult]:
        """Tier 1: external rerank API."""
        payload = {
            "model": self.model,
            "query": query,
            "documents": [f"{c.question} {c.answer}".strip() for c in candidates],
            "top_n": len(candidates),
        }
        response = await self._post_rerank(payload)
        response.raise_for_status()

        results = response.json().get("results")
        if not isinstance(results, list):
            raise RerankError("rerank response has no results list")

        scores: Dict[int, float] = {}
        for item in results:
            index = item.get("index") if isinstance(item, dict) else None
            score = item.get("relevance_score") if isinstance(item, dict) else None
            if isinstance(index, int) and 0 <= index < len(candidates) and _is_number(score):
                scores[index] = _clamp(score)
        if not scores:
            raise RerankError("rerank response has no usable scores")
        return _with_scores(candidates, scores)

    async def llm_rerank(self, query: str, candidates: Sequence[CandidateResult]) -> List[CandidateResult]:
        """Tier 2: model-as-reranker. Unmapped indices score 0."""
        parsed = await generate_json(
            self.generator,
            build_llm_rerank_prompt(query, candidates),
            LLM_RERANK_SYSTEM_PROMPT,
            MAX_LLM_RERANK_TOKENS,
            self.provider_config,
        )
        if not isinstance(parsed, list):
            raise RerankError(f"expected a JSON array, got {type(parsed).__name__}")

        scores: Dict[int, float] = {}
        for item in parsed:
            if not isinstance(item, dict):
                continue
            index, score = item.get("index"), item.get("score")
            if isinstance(index, int) and not isinstance(index, bool) and _is_number(score):
                scores[index] = _clamp(score)
        return _with_scores(candidates, scores)

    @traceable(run_type="tool", name="reranker", tags=["retrieval", "rerank"])
    async def rerank(self, query: str, candidates: Sequence[CandidateResult]) -> List[CandidateResult]:
        if not candidates:
            return []

        start_time = time.time()

        if self.api_key:
            try:
                ranked = await self.api_rerank(query, candidates)
                logger.info(
                    "Rerank completed",
                    tier="api",
                    count=len(ranked),
                    duration_ms=round((time.time() - start_time) * 1000, 2),
                )
                return ranked
            except Exception as e:
                logger.warning("Rerank API failed, falling back to model reranking", error=str(e))

        try:
            ranked = await self.llm_rerank(query, candidates)
            logger.info(
                "Rerank completed",
                tier="llm",
                count=len(ranked),
                duration_ms=round((time.time() - start_time) * 1000, 2),
            )
            return ranked
        except Exception as e:
            logger.warning("Model reranking failed, falling back to fused scores", error=str(e))

        ranked = rrf_fallback(candidates)
        logger.info("Rerank completed", tier="rrf", count=len(ranked))
        return ranked
