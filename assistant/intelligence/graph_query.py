"""Knowledge graph lookups rendered for the prompt."""

from typing import List

import structlog

from libs.models.records import GraphEdge
from libs.stores.interfaces import GraphStore

logger = structlog.get_logger(__name__)

DEFAULT_EDGE_LIMIT = 10
GRAPH_TOKEN_BUDGET = 500
CHARS_PER_TOKEN = 4


class GraphQuery:
    """Entity relationship lookup; never raises."""

    def __init__(self, store: GraphStore):
        self.store = store

    async def query(self, entity_name: str, limit: int = DEFAULT_EDGE_LIMIT) -> List[GraphEdge]:
        try:
            return await self.store.edges_for_entity(entity_name, limit)
        except Exception as e:
            logger.warning("Graph query failed", entity=entity_name[:80], error=str(e))
            return []

    async def format_for_prompt(self, entity_name: str, token_budget: int = GRAPH_TOKEN_BUDGET) -> str:
        edges = await self.query(entity_name)
        if not edges:
            return ""

        char_budget = token_budget * CHARS_PER_TOKEN
        lines: List[str] = []
        char_count = 0
        for edge in edges:
            line = f"{edge.source_name} --[{edge.relation}]--> {edge.target_name} ({edge.target_type})"
            if char_count + len(line) > char_budget:
                break
            lines.append(line)
            char_count += len(line)

        if not lines:
            return ""
        return "--- BILGI GRAFI ---\n" + "\n".join(lines) + "\n---"
