"""Pydantic models for the durable records kept by the assistant.

These models define the rows written to the profile, recall, quality,
reflexion and graph stores, and are used for validation and serialization.
"""
from datetime import datetime, timezone
from typing import Literal

from pydantic import BaseModel, Field

ErrorType = Literal["wrong_info", "incomplete", "irrelevant", "tone_issue"]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RecallEntry(BaseModel):
    """A searchable conversation summary kept per user."""
    id: str = Field(..., description="Entry identifier, rm-<8 hex>.")
    user_id: str = Field(..., description="Owner of the entry.")
    session_id: str = Field(..., description="Session the entry was written from.")
    type: str = Field("summary", description="Entry kind, rendered as a prompt tag.")
    content: str = Field(..., description="Free text content.")
    created_at: datetime = Field(default_factory=_utcnow, description="Creation timestamp.")


class QualityScore(BaseModel):
    """Quality grade of one generated answer."""
    session_id: str = Field(..., description="Session the answer belongs to.")
    message_id: str = Field(..., description="Message the answer was returned as.")
    faithfulness: float | None = Field(None, ge=0.0, le=1.0, description="Grounding in the evidence, None when not graded.")
    relevancy: float | None = Field(None, ge=0.0, le=1.0, description="Fit to the question, None when not graded.")
    confidence: float = Field(..., ge=0.0, le=1.0, description="Retrieval confidence from rerank scores.")
    rag_result_count: int = Field(0, ge=0, description="Number of evidence records used.")
    avg_rerank_score: float = Field(0.0, ge=0.0, le=1.0, description="Mean rerank score of the evidence.")
    is_low_quality: bool = Field(False, description="Whether the answer was judged low quality.")
    created_at: datetime = Field(default_factory=_utcnow, description="Scoring timestamp.")


class ReflexionLog(BaseModel):
    """A lesson recorded after explicit negative feedback."""
    id: str | None = Field(None, description="Store-assigned identifier.")
    session_id: str = Field(..., description="Session the feedback came from.")
    topic: str = Field("", description="Short topic label.")
    error_type: ErrorType = Field("incomplete", description="Classified failure kind.")
    analysis: str = Field("", description="One or two sentence diagnosis.")
    correct_info: str = Field("", description="Correction, empty when unknown.")
    original_query: str = Field("", description="The question that was answered badly.")
    wrong_answer: str = Field("", description="The answer the user rejected.")
    created_at: datetime = Field(default_factory=_utcnow, description="Analysis timestamp.")


class GraphEdge(BaseModel):
    """A typed relation between two entities."""
    source_name: str
    source_type: str = ""
    relation: str
    target_name: str
    target_type: str = ""
    weight: float = 1.0
