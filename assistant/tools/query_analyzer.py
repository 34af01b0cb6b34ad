"""Query analysis for adaptive routing.

One model call classifies the utterance (complexity, intent, sub-queries,
memory/graph needs) and resolves pronouns into a standalone query. Every
field of the reply is validated on its own; classification failure never
blocks the turn.
"""

import json
import time
from typing import Any, Dict, List, Sequence

import structlog
from langsmith import traceable

from assistant.schemas.pipeline_state import (
    VALID_COMPLEXITIES,
    VALID_INTENTS,
    Analysis,
    determine_route,
)
from libs.common.text import strip_code_fences
from libs.llm.generation import ChatMessage, Generator, ProviderConfig, generate_text

logger = structlog.get_logger(__name__)

MAX_HISTORY_MESSAGES = 6
MAX_ANALYSIS_TOKENS = 512

ANALYSIS_SYSTEM_PROMPT = """You analyze customer support messages. Reply with ONLY a JSON object.

Fields:
- complexity: "simple" (one-line greeting, yes/no), "medium" (single-topic question), "complex" (multi-part, comparison, several questions)
- intent: "greeting", "faq", "product_support", "complaint", "escalation" (asks for a human/manager), "chitchat" (small talk, off-topic)
- subQueries: split complex messages into sub-questions; empty array otherwise
- requiresMemory: true when earlier conversations of this user are needed
- requiresGraph: true when relational knowledge is needed (product-category, customer-order relations)
- standaloneQuery: the message rewritten as a self-contained question, resolving pronouns ("bunu", "ayni seyi", "o urun") from the chat history

Examples:
User: "Merhaba" -> {"complexity":"simple","intent":"greeting","subQueries":[],"requiresMemory":false,"requiresGraph":false,"standaloneQuery":"Merhaba"}
User: "Kargo nerede?" -> {"complexity":"medium","intent":"product_support","subQueries":[],"requiresMemory":true,"requiresGraph":false,"standaloneQuery":"Kargo nerede?"}
History: "User: iPhone 15 fiyati ne kadar? Assistant: 45000 TL" User: "Bunu sepete ekle" -> standaloneQuery: "iPhone 15'i sepete ekle"

Write the standaloneQuery in the user's language. Output JSON only."""


def fallback_analysis(user_message: str) -> Analysis:
    """Complete safe default used when classification fails."""
    return Analysis(
        complexity="medium",
        intent="product_support",
        sub_queries=[],
        requires_memory=False,
        requires_graph=False,
        standalone_query=user_message,
        route="STANDARD",
    )


def validate_analysis(parsed: Dict[str, Any], user_message: str) -> Analysis:
    """Validate each field against its domain, defaulting on mismatch."""
    complexity = parsed.get("complexity")
    if complexity not in VALID_COMPLEXITIES:
        complexity = "medium"

    intent = parsed.get("intent")
    if intent not in VALID_INTENTS:
        intent = "product_support"

    raw_sub_queries = parsed.get("subQueries")
    sub_queries: List[str] = []
    if isinstance(raw_sub_queries, list):
        sub_queries = [q.strip() for q in raw_sub_queries if isinstance(q, str) and q.strip()]

    requires_memory = parsed.get("requiresMemory")
    if not isinstance(requires_memory, bool):
        requires_memory = False

    requires_graph = parsed.get("requiresGraph")
    if not isinstance(requires_graph, bool):
        requires_graph = False

    standalone_query = parsed.get("standaloneQuery")
    if not isinstance(standalone_query, str) or not standalone_query.strip():
        standalone_query = user_message

    return Analysis(
        complexity=complexity,
        intent=intent,
        sub_queries=sub_queries,
        requires_memory=requires_memory,
        requires_graph=requires_graph,
        standalone_query=standalone_query.strip(),
        route=determine_route(complexity, intent),
    )


class QueryAnalyzer:
    """
    Classifies an utterance and picks the FAST / STANDARD / DEEP route.

    Usage:
        analyzer = QueryAnalyzer(generator, provider_config)
        analysis = await analyzer.analyze("Bunu nasil kurarim?", history)
    """

    def __init__(self, generator: Generator, provider_config: ProviderConfig):
        self.generator = generator
        self.provider_config = provider_config

    @staticmethod
    def build_messages(user_message: str, chat_history: Sequence[ChatMessage]) -> List[ChatMessage]:
        """Last six history turns plus the current utterance."""
        messages = [m for m in list(chat_history)[-MAX_HISTORY_MESSAGES:] if m.content]
        messages.append(ChatMessage(role="user", content=user_message))
        return messages

    @traceable(run_type="chain", name="query_analyzer", tags=["routing", "classification"])
    async def analyze(self, user_message: str, chat_history: Sequence[ChatMessage] = ()) -> Analysis:
        start_time = time.time()
        try:
            result = await generate_text(
                self.generator,
                self.build_messages(user_message, chat_history),
                ANALYSIS_SYSTEM_PROMPT,
                MAX_ANALYSIS_TOKENS,
                self.provider_config,
            )

            cleaned = strip_code_fences(result.reply)
            if not cleaned:
                logger.warning("Query analyzer got an empty reply, using fallback")
                return fallback_analysis(user_message)

            parsed = json.loads(cleaned)
            if not isinstance(parsed, dict):
                logger.warning("Query analyzer reply is not an object, using fallback", reply_type=type(parsed).__name__)
                return fallback_analysis(user_message)

            analysis = validate_analysis(parsed, user_message)

            logger.info(
                "Query analysis completed",
                complexity=analysis.complexity,
                intent=analysis.intent,
                route=analysis.route,
                requires_memory=analysis.requires_memory,
                requires_graph=analysis.requires_graph,
                sub_queries=len(analysis.sub_queries),
                standalone_changed=analysis.standalone_query != user_message,
                duration_ms=round((time.time() - start_time) * 1000, 2),
            )
            return analysis

        except Exception as e:
            logger.warning("Query analysis failed, using fallback", error=str(e))
            return fallback_analysis(user_message)
