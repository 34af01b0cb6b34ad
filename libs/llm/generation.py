"""
Provider-agnostic generation seam.

Every component that asks a model for text or JSON goes through a
``Generator``: "generate text given message history and an instruction
block, honoring a token budget". ``LangChainGenerator`` is the production
implementation on top of ``langchain_openai.ChatOpenAI``.
"""

import asyncio
import json
from typing import Any, List, Literal, Optional, Protocol, Sequence

import structlog
from langchain_core.messages import AIMessage, BaseMessage, HumanMessage, SystemMessage
from langchain_openai import ChatOpenAI
from pydantic import BaseModel, Field

from libs.common.text import strip_code_fences

logger = structlog.get_logger(__name__)


class ChatMessage(BaseModel):
    """One conversation turn."""

    role: Literal["user", "assistant"] = Field(description="Speaker of the turn")
    content: str = Field(default="", description="Turn text")


class ProviderConfig(BaseModel):
    """Model selection and limits for one generation call."""

    provider: str = Field(default="openai", description="Backend name")
    model: str = Field(default="gpt-4o-mini", description="Model identifier")
    temperature: float = Field(default=0.3, ge=0.0, le=2.0)
    max_output_tokens: int = Field(default=2048, gt=0)
    timeout_seconds: float = Field(default=30.0, gt=0)
    api_key: Optional[str] = Field(default=None, repr=False, description="Provider API key")


class GenerationResult(BaseModel):
    """Reply text and the provider's finish reason."""

    reply: str = ""
    finish_reason: str = "stop"


class GenerationError(Exception):
    """Raised when a generation call returns nothing usable."""


class Generator(Protocol):
    """Anything that can turn a history plus an instruction block into text."""

    async def generate(
        self,
        messages: Sequence[ChatMessage],
        system_instruction: str,
        max_output_tokens: int,
        provider_config: ProviderConfig,
    ) -> GenerationResult:
        ...


async def generate_text(
    generator: Generator,
    messages: Sequence[ChatMessage],
    system_instruction: str,
    max_output_tokens: int,
    provider_config: ProviderConfig,
) -> GenerationResult:
    """Call the generator, bounded by the provider timeout."""
    return await asyncio.wait_for(
        generator.generate(messages, system_instruction, max_output_tokens, provider_config),
        timeout=provider_config.timeout_seconds,
    )


async def generate_json(
    generator: Generator,
    prompt: str,
    system_instruction: str,
    max_output_tokens: int,
    provider_config: ProviderConfig,
) -> Any:
    """
    Ask for a JSON reply to a single user prompt and deserialize it.

    Code fences around the payload are stripped before parsing.

    Raises:
        GenerationError: empty reply
        json.JSONDecodeError: reply is not JSON
        asyncio.TimeoutError: provider did not answer in time
    """
    result = await generate_text(
        generator,
        [ChatMessage(role="user", content=prompt)],
        system_instruction,
        max_output_tokens,
        provider_config,
    )
    cleaned = strip_code_fences(result.reply)
    if not cleaned:
        raise GenerationError("empty reply")
    return json.loads(cleaned)


class LangChainGenerator:
    """
    Generator backed by LangChain's ChatOpenAI.

    Usage:
        generator = LangChainGenerator()
        result = await generator.generate(history, system_prompt, 2048, config)
    """

    def _build_llm(self, max_output_tokens: int, provider_config: ProviderConfig) -> ChatOpenAI:
        kwargs: dict = {
            "model": provider_config.model,
            "temperature": provider_config.temperature,
            "max_tokens": max_output_tokens,
            "timeout": provider_config.timeout_seconds,
        }
        if provider_config.api_key:
            kwargs["api_key"] = provider_config.api_key
        return ChatOpenAI(**kwargs)

    @staticmethod
    def _to_langchain(messages: Sequence[ChatMessage], system_instruction: str) -> List[BaseMessage]:
        converted: List[BaseMessage] = [SystemMessage(content=system_instruction)]
        for message in messages:
            if message.role == "assistant":
                converted.append(AIMessage(content=message.content))
            else:
                converted.append(HumanMessage(content=message.content))
        return converted

    async def generate(
        self,
        messages: Sequence[ChatMessage],
        system_instruction: str,
        max_output_tokens: int,
        provider_config: ProviderConfig,
    ) -> GenerationResult:
        llm = self._build_llm(max_output_tokens, provider_config)
        response = await llm.ainvoke(self._to_langchain(messages, system_instruction))

        content = response.content if isinstance(response.content, str) else str(response.content)
        finish_reason = (response.response_metadata or {}).get("finish_reason") or "stop"

        logger.debug(
            "Generation completed",
            model=provider_config.model,
            reply_len=len(content),
            finish_reason=finish_reason,
        )
        return GenerationResult(reply=content.strip(), finish_reason=finish_reason)
