"""Protocol-based interfaces for the durable stores the pipeline consumes."""

from typing import Dict, List, Protocol

from libs.models.records import GraphEdge, QualityScore, RecallEntry, ReflexionLog


class ProfileStore(Protocol):
    """Key/value fact profile per user."""

    async def get_profile(self, user_id: str) -> Dict[str, str]:
        """Return every stored fact for a user (empty dict when none)."""
        ...

    async def upsert_fact(self, user_id: str, key: str, value: str) -> None:
        """Insert or overwrite one fact."""
        ...


class RecallStore(Protocol):
    """Append-only, free-text searchable conversation summaries."""

    async def append(self, entry: RecallEntry) -> None:
        ...

    async def search(self, query: str, user_id: str, limit: int) -> List[RecallEntry]:
        """Return up to ``limit`` entries of ``user_id`` matching ``query``."""
        ...


class QualityStore(Protocol):
    """One quality row per answer, read back newest first."""

    async def append(self, score: QualityScore) -> None:
        ...

    async def recent(self, session_id: str, limit: int) -> List[QualityScore]:
        ...


class ReflexionStore(Protocol):
    """Append-only lessons learned from negative feedback."""

    async def append(self, log: ReflexionLog) -> ReflexionLog:
        """Persist a log and return it with its assigned id."""
        ...

    async def search_by_topic(self, text: str, limit: int) -> List[ReflexionLog]:
        """Return newest logs whose topic matches ``text``."""
        ...


class GraphStore(Protocol):
    """Read-only entity relationship lookup."""

    async def edges_for_entity(self, entity_name: str, limit: int) -> List[GraphEdge]:
        """Return edges touching entities mentioned in ``entity_name``, heaviest first."""
        ...
