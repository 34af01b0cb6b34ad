"""
Pytest configuration and fixtures for the assistant tests.

Provides shared fixtures for:
- Fake Redis client (fakeredis)
- Test environment settings
- A scripted generator standing in for the model provider
"""

from typing import Any, Callable, Dict, List, Optional, Union

import pytest

from libs.common.settings import get_settings
from libs.llm.generation import GenerationResult, ProviderConfig

Reply = Union[str, Exception, Callable[[list, str], str]]


class ScriptedGenerator:
    """
    Generator fake that answers by matching the system instruction.

    ``routes`` maps a substring of the system instruction to a reply, a
    list of replies consumed in order (the last one repeats), an
    exception to raise, or a callable ``(messages, system_instruction)``.
    Unmatched calls get ``default``.
    """

    def __init__(self, routes: Optional[Dict[str, Any]] = None, default: Reply = ""):
        self.routes = dict(routes or {})
        self.default = default
        self.calls: List[Dict[str, Any]] = []

    @staticmethod
    def _next(reply):
        if isinstance(reply, list):
            return reply.pop(0) if len(reply) > 1 else reply[0]
        return reply

    def _pick(self, system_instruction: str) -> Reply:
        for marker, reply in self.routes.items():
            if marker in system_instruction:
                return self._next(reply)
        return self._next(self.default)

    def calls_matching(self, marker: str) -> List[Dict[str, Any]]:
        return [c for c in self.calls if marker in c["system_instruction"]]

    async def generate(self, messages, system_instruction, max_output_tokens, provider_config):
        self.calls.append(
            {
                "messages": list(messages),
                "system_instruction": system_instruction,
                "max_output_tokens": max_output_tokens,
                "provider_config": provider_config,
            }
        )
        reply = self._pick(system_instruction)
        if isinstance(reply, Exception):
            raise reply
        if callable(reply):
            reply = reply(list(messages), system_instruction)
        return GenerationResult(reply=reply, finish_reason="stop")


@pytest.fixture
def scripted_generator() -> Callable[..., ScriptedGenerator]:
    """Factory for ScriptedGenerator instances."""
    return ScriptedGenerator


@pytest.fixture
def provider_config() -> ProviderConfig:
    return ProviderConfig(model="test-model", timeout_seconds=5.0)


@pytest.fixture
async def redis_client():
    """
    Provide fakeredis client for testing.

    This avoids requiring actual Redis server during tests.
    """
    from fakeredis import aioredis as fakeredis

    client = fakeredis.FakeRedis(decode_responses=True)
    await client.flushall()

    yield client

    await client.flushall()
    await client.aclose()


@pytest.fixture(autouse=True)
def setup_test_env(monkeypatch):
    """Run every test with test settings and a fresh settings cache."""
    monkeypatch.setenv("ASSISTANT_APP_ENV", "test")
    monkeypatch.setenv("ASSISTANT_LOG_JSON", "false")
    monkeypatch.delenv("ASSISTANT_REDIS_URL", raising=False)
    monkeypatch.delenv("ASSISTANT_RERANK_API_KEY", raising=False)
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()
