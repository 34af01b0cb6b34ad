"""Corrective RAG evaluator.

Classifies each retrieved candidate as RELEVANT, PARTIAL or IRRELEVANT and
proposes rewritten search queries when the evidence is insufficient. Both
operations fail soft: evaluation treats every candidate as relevant and
rewriting returns the original query.
"""

import json
from typing import List, Sequence

import structlog
from langsmith import traceable

from assistant.schemas.pipeline_state import CandidateResult, CragVerdict
from libs.llm.generation import ChatMessage, Generator, ProviderConfig, generate_json, generate_text

logger = structlog.get_logger(__name__)

MAX_REWRITE_ATTEMPTS = 2
MAX_EVALUATE_TOKENS = 1024
MAX_REWRITE_TOKENS = 256
REWRITE_HISTORY_MESSAGES = 4

EVALUATE_SYSTEM_PROMPT = """You judge search results for a customer question.
Label every result:
- RELEVANT: answers the question directly
- PARTIAL: related but not a complete answer
- IRRELEVANT: unrelated to the question
Reply with ONLY a JSON array, nothing else.
Format: [{"index": 0, "verdict": "RELEVANT"}, ...]"""

REWRITE_SYSTEM_PROMPT = """You improve search queries for a Turkish customer support knowledge base.
Rewrite the user's query into a more effective search query.
Write only the new query in Turkish, nothing else."""


def _strip_quotes(text: str) -> str:
    return text.strip().strip("\"'").strip()


class CragEvaluator:
    """
    Relevance verdicts and query rewriting for the DEEP route.

    Usage:
        crag = CragEvaluator(generator, provider_config)
        verdict = await crag.evaluate(query, reranked)
        if verdict.insufficient:
            query = await crag.suggest_rewrite(query, history)
    """

    def __init__(
        self,
        generator: Generator,
        provider_config: ProviderConfig,
        max_rewrite_attempts: int = MAX_REWRITE_ATTEMPTS,
    ):
        self.generator = generator
        self.provider_config = provider_config
        self.max_rewrite_attempts = max_rewrite_attempts

    @traceable(run_type="chain", name="crag_evaluate", tags=["retrieval", "crag"])
    async def evaluate(self, query: str, results: Sequence[CandidateResult]) -> CragVerdict:
        """
        Partition results into relevant / partial / irrelevant, keeping input order.

        Candidates without a usable verdict count as irrelevant. Empty input
        is insufficient without a model call.
        """
        if not results:
            return CragVerdict()

        try:
            summary = [
                {"index": i, "question": r.question, "answer": r.answer[:300]}
                for i, r in enumerate(results)
            ]
            prompt = f"Customer question: {query}\n\nSearch results:\n{json.dumps(summary, ensure_ascii=False, indent=2)}"
            parsed = await generate_json(
                self.generator,
                prompt,
                EVALUATE_SYSTEM_PROMPT,
                MAX_EVALUATE_TOKENS,
                self.provider_config,
            )
            if not isinstance(parsed, list):
                raise ValueError(f"expected a JSON array, got {type(parsed).__name__}")

            labels = {}
            for item in parsed:
                if not isinstance(item, dict):
                    continue
                index = item.get("index")
                if isinstance(index, int) and not isinstance(index, bool) and 0 <= index < len(results):
                    labels.setdefault(index, str(item.get("verdict") or "").upper())

            relevant: List[CandidateResult] = []
            partial: List[CandidateResult] = []
            irrelevant: List[CandidateResult] = []
            for i, result in enumerate(results):
                label = labels.get(i)
                if label == "RELEVANT":
                    relevant.append(result)
                elif label == "PARTIAL":
                    partial.append(result)
                else:
                    irrelevant.append(result)

            verdict = CragVerdict(relevant=relevant, partial=partial, irrelevant=irrelevant)
            logger.info(
                "CRAG evaluation completed",
                relevant=len(relevant),
                partial=len(partial),
                irrelevant=len(irrelevant),
                insufficient=verdict.insufficient,
            )
            return verdict

        except Exception as e:
            logger.warning("CRAG evaluation failed, treating all results as relevant", error=str(e))
            return CragVerdict(relevant=list(results))

    @traceable(run_type="chain", name="crag_rewrite", tags=["retrieval", "crag"])
    async def suggest_rewrite(self, query: str, chat_history: Sequence[ChatMessage] = ()) -> str:
        """Propose a better search query; the original on failure or empty reply."""
        try:
            context = ""
            recent = list(chat_history)[-REWRITE_HISTORY_MESSAGES:]
            if recent:
                lines = [
                    f"{'Kullanici' if m.role == 'user' else 'Bot'}: {m.content}" for m in recent
                ]
                context = "\n\nChat history:\n" + "\n".join(lines)

            prompt = f"Original query: {query}{context}\n\nImproved search query:"
            result = await generate_text(
                self.generator,
                [ChatMessage(role="user", content=prompt)],
                REWRITE_SYSTEM_PROMPT,
                MAX_REWRITE_TOKENS,
                self.provider_config,
            )
            rewritten = _strip_quotes(result.reply or "")
            if not rewritten:
                return query

            logger.info("CRAG query rewritten", original=query[:80], rewritten=rewritten[:80])
            return rewritten

        except Exception as e:
            logger.warning("CRAG rewrite failed, keeping original query", error=str(e))
            return query
