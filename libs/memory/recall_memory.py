"""
Recall memory: durable conversation summaries searched on demand.
"""

import uuid
from typing import List, Optional

import structlog

from libs.models.records import RecallEntry
from libs.stores.interfaces import RecallStore

logger = structlog.get_logger(__name__)

RECALL_MEMORY_TOKEN_BUDGET = 1000
CHARS_PER_TOKEN = 2.5
DEFAULT_SEARCH_LIMIT = 5


class RecallMemory:
    """
    Searched-on-demand memory tier.

    Usage:
        recall = RecallMemory(recall_store)
        await recall.save(user_id, session_id, "Soru: ... Cevap: ...")
        block = await recall.format_for_prompt("yazici", user_id)
    """

    def __init__(self, store: RecallStore, token_budget: int = RECALL_MEMORY_TOKEN_BUDGET):
        self.store = store
        self.token_budget = token_budget

    async def save(
        self,
        user_id: str,
        session_id: str,
        content: str,
        type: str = "summary",
    ) -> Optional[RecallEntry]:
        """Append an entry; returns None when the store write failed."""
        entry = RecallEntry(
            id=f"rm-{uuid.uuid4().hex[:8]}",
            user_id=user_id,
            session_id=session_id,
            type=type,
            content=content,
        )
        try:
            await self.store.append(entry)
            return entry
        except Exception as e:
            logger.warning("Recall memory save failed", user_id=user_id, error=str(e))
            return None

    async def search(self, query: str, user_id: str, limit: int = DEFAULT_SEARCH_LIMIT) -> List[RecallEntry]:
        try:
            return await self.store.search(query, user_id, limit)
        except Exception as e:
            logger.warning("Recall memory search failed", user_id=user_id, error=str(e))
            return []

    async def format_for_prompt(self, query: str, user_id: str, token_budget: Optional[int] = None) -> str:
        """Search, then concatenate ``[type] content`` lines under the budget."""
        entries = await self.search(query, user_id)
        if not entries:
            return ""

        max_chars = int((token_budget or self.token_budget) * CHARS_PER_TOKEN)
        body = ""
        for entry in entries:
            line = f"[{entry.type or 'summary'}] {entry.content}\n"
            if len(body) + len(line) > max_chars:
                break
            body += line

        if not body:
            return ""
        return f"--- GECMIS KONUSMALAR ---\n{body}---"
