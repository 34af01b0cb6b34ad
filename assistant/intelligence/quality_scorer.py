"""
RAGAS-inspired answer quality scoring.

confidence = mean rerank score x min(count / 3, 1), or 0.1 without evidence.
A separate model call grades faithfulness and relevancy against the
evidence. An answer is branded low quality only when faithfulness was
actually graded.
"""

from typing import List, Optional, Sequence, Tuple

import structlog
from langsmith import traceable

from assistant.schemas.pipeline_state import CandidateResult
from libs.llm.generation import Generator, ProviderConfig, generate_json
from libs.models.records import QualityScore
from libs.stores.interfaces import QualityStore

logger = structlog.get_logger(__name__)

LOW_QUALITY_THRESHOLD = 0.5
NO_EVIDENCE_CONFIDENCE = 0.1
CORROBORATION_COUNT = 3
MAX_SCORE_TOKENS = 256
CONSECUTIVE_SCAN_LIMIT = 20

SCORE_SYSTEM_PROMPT = """You grade a support answer against its source documents.
Compute two metrics:
1. faithfulness (0-1): is the answer grounded in the sources? 1.0 = fully grounded, 0.0 = contradicts or invents.
2. relevancy (0-1): does the answer address the user's question? 1.0 = fully, 0.0 = not at all.
Reply with ONLY a JSON object, nothing else.
Format: {"faithfulness": 0.85, "relevancy": 0.9}"""


def compute_confidence(rag_results: Sequence[CandidateResult]) -> Tuple[float, float]:
    """Return (confidence, average rerank score) for a set of evidence records."""
    count = len(rag_results)
    if count == 0:
        return NO_EVIDENCE_CONFIDENCE, 0.0

    avg = sum((r.rerank_score or 0.0) for r in rag_results) / count
    return avg * min(count / CORROBORATION_COUNT, 1.0), avg


def _grade(value) -> Optional[float]:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return max(0.0, min(1.0, float(value)))


class QualityScorer:
    """
    Grades answers and tracks low-quality streaks per session.

    Usage:
        scorer = QualityScorer(generator, provider_config, quality_store)
        score = await scorer.score(query, answer, rag_results, session_id, message_id)
        streak = await scorer.get_consecutive_low_count(session_id)
    """

    def __init__(
        self,
        generator: Generator,
        provider_config: ProviderConfig,
        store: QualityStore,
        low_quality_threshold: float = LOW_QUALITY_THRESHOLD,
    ):
        self.generator = generator
        self.provider_config = provider_config
        self.store = store
        self.low_quality_threshold = low_quality_threshold

    async def _grade_answer(
        self,
        query: str,
        answer: str,
        rag_results: Sequence[CandidateResult],
    ) -> Tuple[Optional[float], Optional[float]]:
        context = "\n".join(f"[{i + 1}] {r.answer[:300]}" for i, r in enumerate(rag_results))
        prompt = "\n".join([
            f"Soru: {query}",
            f"Cevap: {answer}",
            f"\nSources:\n{context or '(no sources)'}",
        ])
        try:
            parsed = await generate_json(
                self.generator,
                prompt,
                SCORE_SYSTEM_PROMPT,
                MAX_SCORE_TOKENS,
                self.provider_config,
            )
            if not isinstance(parsed, dict):
                raise ValueError(f"expected a JSON object, got {type(parsed).__name__}")
            return _grade(parsed.get("faithfulness")), _grade(parsed.get("relevancy"))
        except Exception as e:
            logger.warning("Quality grading failed, leaving faithfulness and relevancy empty", error=str(e))
            return None, None

    @traceable(run_type="chain", name="quality_scorer", tags=["quality", "evaluation"])
    async def score(
        self,
        query: str,
        answer: str,
        rag_results: Sequence[CandidateResult],
        session_id: str,
        message_id: str,
    ) -> QualityScore:
        """
        Score one answer and persist the row best-effort.

        Args:
            query: Standalone query the answer responds to
            answer: Generated reply
            rag_results: Evidence the reply was generated from
            session_id: Session identifier
            message_id: Message identifier of the reply

        Returns:
            The score, whether or not persistence succeeded
        """
        confidence, avg_rerank = compute_confidence(rag_results)
        faithfulness, relevancy = await self._grade_answer(query, answer, rag_results)

        is_low_quality = False
        if faithfulness is not None:
            graded = [s for s in (faithfulness, relevancy, confidence) if s is not None]
            is_low_quality = sum(graded) / len(graded) < self.low_quality_threshold

        result = QualityScore(
            session_id=session_id,
            message_id=message_id,
            faithfulness=faithfulness,
            relevancy=relevancy,
            confidence=confidence,
            rag_result_count=len(rag_results),
            avg_rerank_score=avg_rerank,
            is_low_quality=is_low_quality,
        )

        try:
            await self.store.append(result)
        except Exception as e:
            logger.warning("Failed to persist quality score", session_id=session_id, error=str(e))

        logger.info(
            "Quality score computed",
            session_id=session_id,
            message_id=message_id,
            faithfulness=faithfulness,
            relevancy=relevancy,
            confidence=round(confidence, 3),
            is_low_quality=is_low_quality,
            rag_result_count=len(rag_results),
        )
        return result

    async def get_recent_scores(self, session_id: str, limit: int = 5) -> List[QualityScore]:
        """Most recent scores of a session, newest first ([] on failure)."""
        try:
            return await self.store.recent(session_id, limit)
        except Exception as e:
            logger.warning("Failed to read quality scores", session_id=session_id, error=str(e))
            return []

    async def get_consecutive_low_count(self, session_id: str) -> int:
        """Length of the current low-quality streak, newest first.

        The scan stops at the first non-low row or at a row whose
        faithfulness could not be graded.
        """
        count = 0
        for row in await self.get_recent_scores(session_id, CONSECUTIVE_SCAN_LIMIT):
            if row.faithfulness is None or not row.is_low_quality:
                break
            count += 1
        return count
