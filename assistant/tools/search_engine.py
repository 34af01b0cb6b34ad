"""Hybrid lexical + vector search over an in-memory knowledge base.

Lexical scoring is Turkish-aware (diacritics folded, case folded, whitespace
collapsed). Vector search is optional and degrades silently to lexical-only.
The two rankings are fused with Reciprocal Rank Fusion.

Usage:
    engine = SearchEngine(embedder=embedder, vector_index=index)
    results = await engine.hybrid_search("yazici kurulumu", knowledge_base)
"""

import time
from typing import Dict, Iterable, List, Optional, Sequence

import structlog

from assistant.schemas.pipeline_state import CandidateResult, Citation, KnowledgeEntry
from libs.common.text import normalize_for_matching
from libs.llm.embeddings import Embedder, VectorIndex, VectorNeighbor

logger = structlog.get_logger(__name__)

EXACT_MATCH_SCORE = 15
PHRASE_MATCH_SCORE = 8
QUESTION_WORD_SCORE = 3
ANSWER_WORD_SCORE = 1

DEFAULT_RRF_K = 60
DEFAULT_DISTANCE_THRESHOLD = 0.8
MAX_FINAL_RESULTS = 5


def adaptive_top_k(kb_size: int) -> int:
    """Small KB (<50): 3, medium (<500): 5, large: 7."""
    if kb_size < 50:
        return 3
    if kb_size < 500:
        return 5
    return 7


def phrase_match(query: str, text: str) -> bool:
    """True when any adjacent word pair of the query occurs in the text."""
    words = [w for w in normalize_for_matching(query).split(" ") if w]
    if len(words) < 2:
        return False
    normalized_text = normalize_for_matching(text)
    return any(f"{a} {b}" in normalized_text for a, b in zip(words, words[1:]))


def fusion_key(item: CandidateResult) -> str:
    return f"{item.question[:80]}|{item.answer[:40]}"


class SearchEngine:
    """Hybrid retrieval with adaptive top-K."""

    def __init__(
        self,
        embedder: Optional[Embedder] = None,
        vector_index: Optional[VectorIndex] = None,
        distance_threshold: float = DEFAULT_DISTANCE_THRESHOLD,
        rrf_k: int = DEFAULT_RRF_K,
    ):
        """
        Initialize the search engine.

        Args:
            embedder: Optional query embedder
            vector_index: Optional nearest-neighbour index over the same knowledge base
            distance_threshold: Neighbours farther than this are dropped
            rrf_k: Reciprocal rank fusion constant
        """
        self.embedder = embedder
        self.vector_index = vector_index
        self.distance_threshold = distance_threshold
        self.rrf_k = rrf_k

    @property
    def vector_enabled(self) -> bool:
        return self.embedder is not None and self.vector_index is not None

    def full_text_search(
        self,
        knowledge_base: Sequence[KnowledgeEntry],
        query: str,
        top_k: int = 3,
    ) -> List[CandidateResult]:
        """
        Score every record against the query and keep the best ``top_k``.

        Scoring: +15 exact question match, +8 bigram match in the question,
        +3 per query word in the question, +1 per query word in the answer.
        Words of one character are ignored; zero-score records are dropped.
        """
        if not knowledge_base or not query:
            return []

        normalized_query = normalize_for_matching(query)
        query_words = [w for w in normalized_query.split(" ") if len(w) > 1]
        if not query_words:
            return []

        scored: List[CandidateResult] = []
        for entry in knowledge_base:
            n_question = normalize_for_matching(entry.question)
            n_answer = normalize_for_matching(entry.answer)

            score = 0
            if n_question == normalized_query:
                score += EXACT_MATCH_SCORE
            if phrase_match(query, entry.question):
                score += PHRASE_MATCH_SCORE
            for word in query_words:
                if word in n_question:
                    score += QUESTION_WORD_SCORE
                if word in n_answer:
                    score += ANSWER_WORD_SCORE

            if score > 0:
                scored.append(
                    CandidateResult(
                        question=entry.question,
                        answer=entry.answer,
                        source=entry.source,
                        text_score=float(score),
                    )
                )

        scored.sort(key=lambda r: r.text_score, reverse=True)
        return scored[:top_k]

    def filter_by_distance(self, neighbors: Iterable[VectorNeighbor]) -> List[CandidateResult]:
        """Drop neighbours beyond the distance threshold; unknown distances pass."""
        kept = []
        for n in neighbors:
            if n.distance is not None and n.distance > self.distance_threshold:
                continue
            kept.append(
                CandidateResult(
                    question=n.question,
                    answer=n.answer,
                    source=n.source,
                    vector_distance=n.distance,
                )
            )
        return kept

    async def vector_search(self, query: str, limit: int) -> List[CandidateResult]:
        """Nearest neighbours of the query; [] when unavailable or failing."""
        if not self.vector_enabled:
            return []
        try:
            vector = await self.embedder.embed(query)
            neighbors = await self.vector_index.vector_search(vector, limit)
            return self.filter_by_distance(neighbors)
        except Exception as e:
            logger.warning("Vector search failed, using lexical results only", error=str(e))
            return []

    def reciprocal_rank_fusion(
        self,
        vector_results: Sequence[CandidateResult],
        text_results: Sequence[CandidateResult],
    ) -> List[CandidateResult]:
        """
        Fuse two rankings: score = sum of 1 / (k + rank + 1) over the lists
        containing a record (rank is 0-based).

        The vector list is read first; a record found by both strategies
        keeps its vector distance and gains its text score.
        """
        scores: Dict[str, float] = {}
        items: Dict[str, CandidateResult] = {}

        for rank, item in enumerate(vector_results):
            key = fusion_key(item)
            scores[key] = scores.get(key, 0.0) + 1.0 / (self.rrf_k + rank + 1)
            items[key] = item

        for rank, item in enumerate(text_results):
            key = fusion_key(item)
            scores[key] = scores.get(key, 0.0) + 1.0 / (self.rrf_k + rank + 1)
            if key in items:
                items[key] = items[key].model_copy(update={"text_score": item.text_score})
            else:
                items[key] = item

        ranked = sorted(scores.items(), key=lambda kv: kv[1], reverse=True)
        return [items[key].model_copy(update={"rrf_score": score}) for key, score in ranked]

    async def hybrid_search(
        self,
        query: str,
        knowledge_base: Sequence[KnowledgeEntry],
        kb_size: Optional[int] = None,
    ) -> List[CandidateResult]:
        """
        Lexical + vector retrieval fused by RRF.

        Args:
            query: Search query
            knowledge_base: In-memory knowledge records
            kb_size: Size used for adaptive top-K (defaults to len(knowledge_base))

        Returns:
            At most min(adaptive_top_k, 5) candidates, best first
        """
        start_time = time.time()
        effective_size = kb_size if kb_size is not None else len(knowledge_base)
        top_k = adaptive_top_k(effective_size)
        fetch_k = top_k * 2
        max_final = min(top_k, MAX_FINAL_RESULTS)

        text_results = self.full_text_search(knowledge_base, query, fetch_k)
        vector_results = await self.vector_search(query, fetch_k)

        if vector_results and text_results:
            results = self.reciprocal_rank_fusion(vector_results, text_results)[:max_final]
            strategy = "hybrid"
        elif vector_results:
            results = vector_results[:max_final]
            strategy = "vector"
        elif text_results:
            results = text_results[:max_final]
            strategy = "lexical"
        else:
            results = []
            strategy = "none"

        logger.info(
            "Hybrid search completed",
            strategy=strategy,
            text_hits=len(text_results),
            vector_hits=len(vector_results),
            returned=len(results),
            top_k=top_k,
            duration_ms=round((time.time() - start_time) * 1000, 2),
        )
        return results

    @staticmethod
    def merge_results(result_lists: Iterable[Sequence[CandidateResult]]) -> List[CandidateResult]:
        """Union of several result lists, deduplicated by identity, keeping the highest RRF score."""
        merged: Dict[tuple, CandidateResult] = {}
        for results in result_lists:
            for result in results:
                existing = merged.get(result.identity)
                if existing is None or (result.rrf_score or 0.0) > (existing.rrf_score or 0.0):
                    merged[result.identity] = result
        return list(merged.values())

    @staticmethod
    def format_citations(results: Sequence[CandidateResult]) -> List[Citation]:
        return [
            Citation(
                index=i + 1,
                title=r.question,
                source=r.source or "Bilgi Tabani",
                snippet=r.answer[:200],
            )
            for i, r in enumerate(results)
        ]
