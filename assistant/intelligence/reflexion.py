"""
Reflexion engine: learning from explicit negative feedback.

When a user rejects an answer, one model call diagnoses the failure and the
lesson is stored. Later turns on the same topic get the stored lessons as
warnings in their instructions.
"""

from typing import List, Optional, Sequence

import structlog

from assistant.schemas.pipeline_state import CandidateResult
from libs.llm.generation import Generator, ProviderConfig, generate_json
from libs.models.records import ReflexionLog
from libs.stores.interfaces import ReflexionStore

logger = structlog.get_logger(__name__)

VALID_ERROR_TYPES = ("wrong_info", "incomplete", "irrelevant", "tone_issue")
DEFAULT_WARNING_LIMIT = 3
MAX_ANALYZE_TOKENS = 512

ANALYZE_SYSTEM_PROMPT = """You review customer support answers the user was unhappy with.
Inspect the question, the answer and the retrieved context, and find the source of the error.
Reply with ONLY a JSON object, nothing else.
Format:
{
  "topic": "short topic label (2-3 words)",
  "errorType": "wrong_info|incomplete|irrelevant|tone_issue",
  "analysis": "one or two sentence diagnosis",
  "correctInfo": "correct information or suggestion (empty string if unknown)"
}"""


def _text(value) -> str:
    return value.strip() if isinstance(value, str) else ""


class ReflexionEngine:
    """
    Records lessons from rejected answers and renders them as warnings.

    Usage:
        reflexion = ReflexionEngine(generator, provider_config, reflexion_store)
        await reflexion.analyze(session_id, query, answer, rag_results)
        warnings = await reflexion.get_warnings("product_support", standalone_query=query)
    """

    def __init__(self, generator: Generator, provider_config: ProviderConfig, store: ReflexionStore):
        self.generator = generator
        self.provider_config = provider_config
        self.store = store

    async def analyze(
        self,
        session_id: str,
        query: str,
        answer: str,
        rag_results: Sequence[CandidateResult] = (),
    ) -> Optional[ReflexionLog]:
        """Diagnose a rejected answer and store the lesson; None when dropped."""
        try:
            rag_context = (
                "\n".join(r.answer[:200] for r in rag_results) if rag_results else "(no retrieved context)"
            )
            prompt = "\n".join([
                "The user was not satisfied with this answer.",
                "",
                f"User question: {query}",
                f"Given answer: {answer}",
                f"Retrieved context:\n{rag_context}",
            ])
            parsed = await generate_json(
                self.generator,
                prompt,
                ANALYZE_SYSTEM_PROMPT,
                MAX_ANALYZE_TOKENS,
                self.provider_config,
            )
            if not isinstance(parsed, dict):
                raise ValueError(f"expected a JSON object, got {type(parsed).__name__}")

            error_type = parsed.get("errorType")
            if error_type not in VALID_ERROR_TYPES:
                error_type = "incomplete"

            log = ReflexionLog(
                session_id=session_id,
                topic=_text(parsed.get("topic")),
                error_type=error_type,
                analysis=_text(parsed.get("analysis")),
                correct_info=_text(parsed.get("correctInfo")),
                original_query=query,
                wrong_answer=answer,
            )
            stored = await self.store.append(log)
            logger.info("Reflexion lesson recorded", session_id=session_id, topic=stored.topic, error_type=error_type)
            return stored

        except Exception as e:
            logger.warning("Reflexion analysis failed, dropping event", session_id=session_id, error=str(e))
            return None

    async def _search(self, text: str, limit: int) -> List[ReflexionLog]:
        try:
            return await self.store.search_by_topic(text, limit)
        except Exception as e:
            logger.warning("Reflexion search failed", error=str(e))
            return []

    async def get_warnings(
        self,
        topic: str,
        standalone_query: Optional[str] = None,
        limit: int = DEFAULT_WARNING_LIMIT,
    ) -> str:
        """Render past lessons for a topic (and the current query) as prompt warnings."""
        results = await self._search(topic, limit) if topic else []

        if standalone_query and standalone_query != topic:
            seen = {r.id for r in results}
            for extra in await self._search(standalone_query, limit):
                if extra.id not in seen:
                    results.append(extra)
                    seen.add(extra.id)

        results = results[:limit]
        if not results:
            return ""

        blocks = []
        for r in results:
            lines = [f"DIKKAT: {r.analysis}"]
            if r.correct_info:
                lines.append(f"Dogru bilgi: {r.correct_info}")
            blocks.append("\n".join(lines))

        return "--- GECMIS HATALAR ---\n" + "\n---\n".join(blocks) + "\n---"
