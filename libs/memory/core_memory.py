"""
Core memory: a durable per-user fact profile that is always in the prompt.

Facts are extracted passively from recent conversation turns by one model
call and upserted key by key. An empty value never reaches the store, and a
later non-empty value always overwrites an earlier one.
"""

from typing import Dict, Optional, Sequence

import structlog

from libs.llm.generation import ChatMessage, Generator, ProviderConfig, generate_json
from libs.stores.interfaces import ProfileStore

logger = structlog.get_logger(__name__)

CORE_MEMORY_TOKEN_BUDGET = 500
CHARS_PER_TOKEN = 2.5  # Turkish text averages ~2.5 chars per token
MAX_RECENT_MESSAGES = 10
MAX_EXTRACT_TOKENS = 512

FACT_KEYS = ("name", "branch", "phone", "company", "issue_history", "preferences")

PROFILE_HEADER = "--- KULLANICI PROFILI ---\n"

EXTRACTION_SYSTEM_PROMPT = """You extract a customer profile from a support conversation.
Return ONLY a JSON object. Include only facts the user stated explicitly; never guess.
Allowed keys: name, branch, phone, company, issue_history, preferences.
Leave out keys you have no value for.
Example: {"name": "Ahmet", "company": "ABC Ltd"}"""


def _clean_value(value) -> str:
    if value is None or isinstance(value, bool):
        return ""
    if isinstance(value, (list, tuple)):
        return ", ".join(str(v).strip() for v in value if str(v).strip())
    return str(value).strip()


class CoreMemory:
    """
    Always-in-context user profile.

    Usage:
        core = CoreMemory(profile_store, generator, provider_config)
        await core.auto_extract(user_id, recent_messages)
        block = await core.format_for_prompt(user_id)
    """

    def __init__(
        self,
        store: ProfileStore,
        generator: Generator,
        provider_config: ProviderConfig,
        token_budget: int = CORE_MEMORY_TOKEN_BUDGET,
    ):
        """
        Initialize core memory.

        Args:
            store: Durable key/value profile store
            generator: Model used for fact extraction
            provider_config: Provider settings for the extraction call
            token_budget: Default prompt budget for the rendered profile
        """
        self.store = store
        self.generator = generator
        self.provider_config = provider_config
        self.token_budget = token_budget

    async def load(self, user_id: str) -> Dict[str, str]:
        """Load a user's profile; {} when it is missing or the store fails."""
        try:
            return await self.store.get_profile(user_id) or {}
        except Exception as e:
            logger.warning("Core memory load failed", user_id=user_id, error=str(e))
            return {}

    async def save(self, user_id: str, key: str, value: str) -> None:
        """Upsert one fact. Empty values are ignored."""
        cleaned = _clean_value(value)
        if not cleaned:
            return
        await self.store.upsert_fact(user_id, key, cleaned)

    async def auto_extract(self, user_id: str, chat_history: Sequence[ChatMessage]) -> Dict[str, str]:
        """
        Extract profile facts from the last turns and persist them.

        Best-effort: failures are logged and swallowed.

        Args:
            user_id: User identifier
            chat_history: Conversation turns, oldest first

        Returns:
            The facts that were written
        """
        saved: Dict[str, str] = {}
        recent = list(chat_history)[-MAX_RECENT_MESSAGES:]
        transcript = "\n".join(f"{m.role}: {m.content}" for m in recent if m.content)
        if not transcript.strip():
            return saved

        try:
            extracted = await generate_json(
                self.generator,
                transcript,
                EXTRACTION_SYSTEM_PROMPT,
                MAX_EXTRACT_TOKENS,
                self.provider_config,
            )
            if not isinstance(extracted, dict):
                raise ValueError(f"expected a JSON object, got {type(extracted).__name__}")

            for key, value in extracted.items():
                if key not in FACT_KEYS:
                    continue
                cleaned = _clean_value(value)
                if not cleaned:
                    continue
                await self.store.upsert_fact(user_id, key, cleaned)
                saved[key] = cleaned

            logger.info("Core memory extracted", user_id=user_id, keys=sorted(saved))
        except Exception as e:
            logger.warning("Core memory extraction failed", user_id=user_id, error=str(e))

        return saved

    async def format_for_prompt(self, user_id: str, token_budget: Optional[int] = None) -> str:
        """Render the profile as labelled lines under the character budget."""
        profile = await self.load(user_id)
        if not profile:
            return ""

        max_chars = int((token_budget or self.token_budget) * CHARS_PER_TOKEN)
        rendered = PROFILE_HEADER
        for key, value in profile.items():
            line = f"{key}: {value}\n"
            if len(rendered) + len(line) > max_chars:
                break
            rendered += line
        return rendered
