"""Application settings for the adaptive support assistant pipeline."""

from __future__ import annotations

from functools import lru_cache
from typing import Literal, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Pipeline settings, read from ``ASSISTANT_*`` environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="ASSISTANT_",
        env_file=None,
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Core application settings
    app_env: Literal["development", "test", "staging", "production"] = "development"
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    log_json: bool = True
    redis_url: Optional[str] = None

    # Generation provider
    generation_provider: str = "openai"
    generation_model: str = "gpt-4o-mini"
    generation_temperature: float = 0.3
    generation_max_output_tokens: int = 2048
    generation_timeout_seconds: float = 30.0
    openai_api_key: Optional[str] = None
    embedding_model: str = "text-embedding-3-small"

    # External rerank API (Cohere-compatible)
    rerank_api_key: Optional[str] = None
    rerank_url: str = "https://api.cohere.com/v1/rerank"
    rerank_model: str = "rerank-v3.5"
    rerank_timeout_seconds: float = 5.0

    # Retrieval
    vector_distance_threshold: float = 0.8
    rrf_k: int = 60
    min_rerank_score: float = 0.3
    max_rewrite_attempts: int = 2

    # Prompt token budgets
    core_memory_token_budget: int = 500
    recall_memory_token_budget: int = 1000
    graph_token_budget: int = 500
    evidence_token_budget: int = 2000

    # Quality
    low_quality_threshold: float = 0.5
    low_quality_handoff_threshold: int = 2

    # Embedding cache
    embedding_cache_size: int = 512
    embedding_cache_ttl_seconds: int = 3600

    # Feature switches
    memory_enabled: bool = True
    graph_enabled: bool = True

    fallback_reply: str = Field(
        default="Uzgunum, su anda yanit olusturamiyorum. Lutfen biraz sonra tekrar deneyin.",
        description="Reply used when the final generation call fails",
    )

    @field_validator(
        "core_memory_token_budget",
        "recall_memory_token_budget",
        "graph_token_budget",
        "evidence_token_budget",
        "generation_max_output_tokens",
        "embedding_cache_size",
        "rrf_k",
    )
    @classmethod
    def validate_positive(cls, v: int) -> int:
        """Budgets and sizes must be positive."""
        if v <= 0:
            raise ValueError("must be a positive integer")
        return v

    @field_validator("vector_distance_threshold", "min_rerank_score", "low_quality_threshold")
    @classmethod
    def validate_unit_interval(cls, v: float) -> float:
        """Thresholds are compared against scores in [0, 1]."""
        if not 0.0 <= v <= 1.0:
            raise ValueError("must be between 0 and 1")
        return v

    @field_validator("max_rewrite_attempts")
    @classmethod
    def validate_rewrite_attempts(cls, v: int) -> int:
        if v < 0:
            raise ValueError("max_rewrite_attempts cannot be negative")
        return v

    @property
    def is_test(self) -> bool:
        """Check if running under the test suite."""
        return self.app_env == "test"

    @property
    def is_production(self) -> bool:
        """Check if running in production mode."""
        return self.app_env == "production"

    def provider_config(self):
        """Build the provider configuration handed to every generation call."""
        from libs.llm.generation import ProviderConfig

        return ProviderConfig(
            provider=self.generation_provider,
            model=self.generation_model,
            temperature=self.generation_temperature,
            max_output_tokens=self.generation_max_output_tokens,
            timeout_seconds=self.generation_timeout_seconds,
            api_key=self.openai_api_key,
        )


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
