"""
Memory engine for unified memory management.

Combines core memory (always loaded) and recall memory (loaded only when
the query analysis asks for it) behind one load/update contract:
- Parallel fetching for performance
- Per-tier token budgets
- Best-effort write-back after each turn
"""

import asyncio
from typing import Any, Dict, Optional, Sequence

import structlog
from pydantic import BaseModel

from libs.llm.generation import ChatMessage
from libs.memory.core_memory import CORE_MEMORY_TOKEN_BUDGET, CoreMemory
from libs.memory.recall_memory import RECALL_MEMORY_TOKEN_BUDGET, RecallMemory

logger = structlog.get_logger(__name__)


class MemoryContext(BaseModel):
    """Rendered memory blocks for one turn."""

    core_memory: str = ""
    recall_memory: str = ""


class MemoryEngine:
    """
    Coordinates core and recall memory.

    Usage:
        engine = MemoryEngine(core_memory, recall_memory)
        context = await engine.load_context(user_id, standalone_query, analysis)
        await engine.update_after_conversation(user_id, session_id, history, summary)
    """

    def __init__(
        self,
        core_memory: CoreMemory,
        recall_memory: RecallMemory,
        core_token_budget: int = CORE_MEMORY_TOKEN_BUDGET,
        recall_token_budget: int = RECALL_MEMORY_TOKEN_BUDGET,
    ):
        """
        Initialize memory engine.

        Args:
            core_memory: Always-in-context profile tier
            recall_memory: Searched conversation summaries tier
            core_token_budget: Prompt budget for the profile block
            recall_token_budget: Prompt budget for the recall block
        """
        self.core = core_memory
        self.recall = recall_memory
        self.core_token_budget = core_token_budget
        self.recall_token_budget = recall_token_budget

    async def load_context(self, user_id: str, query: str, analysis: Optional[Any] = None) -> MemoryContext:
        """
        Load memory blocks for prompt injection.

        Core memory is always loaded. Recall memory is searched only when
        ``analysis.requires_memory`` is true.

        Args:
            user_id: User identifier
            query: Standalone query of the current turn
            analysis: Query analysis of the current turn

        Returns:
            MemoryContext with the rendered blocks ("" when empty)
        """
        wants_recall = bool(getattr(analysis, "requires_memory", False)) and bool(query)

        tasks = [self.core.format_for_prompt(user_id, self.core_token_budget)]
        if wants_recall:
            tasks.append(self.recall.format_for_prompt(query, user_id, self.recall_token_budget))

        results = await asyncio.gather(*tasks, return_exceptions=True)
        core_text = results[0]
        recall_text = results[1] if wants_recall else ""

        if isinstance(core_text, Exception):
            logger.error("Failed to load core memory", user_id=user_id, error=str(core_text))
            core_text = ""
        if isinstance(recall_text, Exception):
            logger.error("Failed to load recall memory", user_id=user_id, error=str(recall_text))
            recall_text = ""

        return MemoryContext(core_memory=core_text, recall_memory=recall_text)

    async def update_after_conversation(
        self,
        user_id: str,
        session_id: str,
        chat_history: Sequence[ChatMessage],
        summary: Optional[str] = None,
    ) -> None:
        """
        Post-turn write-back.

        Core extraction always runs; a recall entry is saved only for a
        non-empty summary. Failures are logged and swallowed.
        """
        try:
            await self.core.auto_extract(user_id, chat_history)
        except Exception as e:
            logger.warning("Core memory update failed", user_id=user_id, error=str(e))

        if not summary or not summary.strip():
            return

        try:
            await self.recall.save(user_id, session_id, summary.strip())
        except Exception as e:
            logger.warning("Recall memory update failed", user_id=user_id, error=str(e))

    async def get_core_profile(self, user_id: str) -> Dict[str, str]:
        """Raw core profile for a user."""
        return await self.core.load(user_id)
