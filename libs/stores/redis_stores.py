"""
Redis implementations of the durable store interfaces.

Key layout:
- core_memory:{user_id}          hash of fact key -> value
- recall:{user_id}               list of RecallEntry JSON, newest first, never trimmed
- quality:{session_id}           list of QualityScore JSON, newest first
- reflexion:logs / reflexion:seq list of ReflexionLog JSON and its id counter
- graph:entities / graph:edges:{entity}  entity names and their edge lists

Searches are term/substring based on normalized text; no semantic matching.
"""

from typing import Dict, List

import structlog

from libs.common.text import normalize_for_matching
from libs.models.records import GraphEdge, QualityScore, RecallEntry, ReflexionLog

logger = structlog.get_logger(__name__)


def _terms(text: str) -> List[str]:
    return [w for w in normalize_for_matching(text).split(" ") if len(w) > 1]


class RedisProfileStore:
    """
    Core memory facts in one Redis hash per user.

    Usage:
        store = RedisProfileStore(redis_client)
        await store.upsert_fact("u1", "name", "Ayse")
        profile = await store.get_profile("u1")
    """

    def __init__(self, redis_client):
        self.redis = redis_client

    @staticmethod
    def _key(user_id: str) -> str:
        return f"core_memory:{user_id}"

    async def get_profile(self, user_id: str) -> Dict[str, str]:
        return await self.redis.hgetall(self._key(user_id)) or {}

    async def upsert_fact(self, user_id: str, key: str, value: str) -> None:
        await self.redis.hset(self._key(user_id), key, value)


class RedisRecallStore:
    """
    Recall entries in an append-only Redis list per user.

    Search ranks entries by how many query terms their content contains,
    newest first among equals; entries matching no term are skipped.
    """

    def __init__(self, redis_client):
        self.redis = redis_client

    @staticmethod
    def _key(user_id: str) -> str:
        return f"recall:{user_id}"

    async def append(self, entry: RecallEntry) -> None:
        await self.redis.lpush(self._key(entry.user_id), entry.model_dump_json())

    async def search(self, query: str, user_id: str, limit: int) -> List[RecallEntry]:
        terms = _terms(query)
        if not terms:
            return []

        raw_entries = await self.redis.lrange(self._key(user_id), 0, -1)
        scored = []
        for position, raw in enumerate(raw_entries):
            entry = RecallEntry.model_validate_json(raw)
            content = normalize_for_matching(entry.content)
            matches = sum(1 for term in terms if term in content)
            if matches:
                scored.append((-matches, position, entry))

        scored.sort(key=lambda item: (item[0], item[1]))
        return [entry for _, _, entry in scored[:limit]]


class RedisQualityStore:
    """Quality rows in a capped Redis list per session."""

    def __init__(self, redis_client, max_rows: int = 100):
        self.redis = redis_client
        self.max_rows = max_rows

    @staticmethod
    def _key(session_id: str) -> str:
        return f"quality:{session_id}"

    async def append(self, score: QualityScore) -> None:
        key = self._key(score.session_id)
        await self.redis.lpush(key, score.model_dump_json())
        await self.redis.ltrim(key, 0, self.max_rows - 1)

    async def recent(self, session_id: str, limit: int) -> List[QualityScore]:
        if limit <= 0:
            return []
        rows = await self.redis.lrange(self._key(session_id), 0, limit - 1)
        return [QualityScore.model_validate_json(row) for row in rows]


class RedisReflexionStore:
    """
    Reflexion logs in one global Redis list with a sequence id.

    A log matches a search text when its normalized topic contains the
    text or is contained in it.
    """

    LOGS_KEY = "reflexion:logs"
    SEQ_KEY = "reflexion:seq"

    def __init__(self, redis_client):
        self.redis = redis_client

    async def append(self, log: ReflexionLog) -> ReflexionLog:
        seq = await self.redis.incr(self.SEQ_KEY)
        stored = log.model_copy(update={"id": f"rx-{seq}"})
        await self.redis.lpush(self.LOGS_KEY, stored.model_dump_json())
        return stored

    async def search_by_topic(self, text: str, limit: int) -> List[ReflexionLog]:
        needle = normalize_for_matching(text)
        if not needle:
            return []

        results: List[ReflexionLog] = []
        for raw in await self.redis.lrange(self.LOGS_KEY, 0, -1):
            log = ReflexionLog.model_validate_json(raw)
            topic = normalize_for_matching(log.topic)
            if topic and (needle in topic or topic in needle):
                results.append(log)
                if len(results) >= limit:
                    break
        return results


class RedisGraphStore:
    """
    Knowledge graph edges indexed by entity name.

    Every edge is listed under both its source and its target entity.
    A lookup text matches an entity when it equals the entity name or
    mentions it.
    """

    ENTITIES_KEY = "graph:entities"

    def __init__(self, redis_client):
        self.redis = redis_client

    @staticmethod
    def _edges_key(entity: str) -> str:
        return f"graph:edges:{entity}"

    async def add_edge(self, edge: GraphEdge) -> None:
        payload = edge.model_dump_json()
        for name in {normalize_for_matching(edge.source_name), normalize_for_matching(edge.target_name)}:
            if not name:
                continue
            await self.redis.sadd(self.ENTITIES_KEY, name)
            await self.redis.rpush(self._edges_key(name), payload)

    async def edges_for_entity(self, entity_name: str, limit: int) -> List[GraphEdge]:
        text = normalize_for_matching(entity_name)
        if not text:
            return []

        entities = await self.redis.smembers(self.ENTITIES_KEY)
        matched = sorted(
            name for name in entities
            if name == text or (len(name) > 1 and f" {name} " in f" {text} ")
        )

        edges: Dict[tuple, GraphEdge] = {}
        for name in matched:
            for raw in await self.redis.lrange(self._edges_key(name), 0, -1):
                edge = GraphEdge.model_validate_json(raw)
                edges.setdefault((edge.source_name, edge.relation, edge.target_name), edge)

        ranked = sorted(edges.values(), key=lambda e: e.weight, reverse=True)
        logger.debug("Graph lookup", entities=matched, edges=len(ranked))
        return ranked[:limit]
