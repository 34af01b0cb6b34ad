"""Pipeline state schema for the adaptive support assistant.

This module defines the input, the per-turn state that flows through the
LangGraph pipeline, and the result returned to the caller. Retrieval
candidates keep their (question, answer) identity end to end; scores are
only ever added through copies.
"""

from __future__ import annotations

import uuid
from typing import Dict, List, Literal, Optional, Tuple

from pydantic import BaseModel, Field

from libs.llm.generation import ChatMessage, ProviderConfig
from libs.memory.coordinator import MemoryContext

Complexity = Literal["simple", "medium", "complex"]
Intent = Literal["greeting", "faq", "product_support", "complaint", "escalation", "chitchat"]
Route = Literal["FAST", "STANDARD", "DEEP"]

VALID_COMPLEXITIES = ("simple", "medium", "complex")
VALID_INTENTS = ("greeting", "faq", "product_support", "complaint", "escalation", "chitchat")


def determine_route(complexity: str, intent: str) -> Route:
    """complex -> DEEP; simple greeting/chitchat -> FAST; everything else -> STANDARD."""
    if complexity == "complex":
        return "DEEP"
    if complexity == "simple" and intent in ("greeting", "chitchat"):
        return "FAST"
    return "STANDARD"


class Analysis(BaseModel):
    """Classification of one user utterance."""

    complexity: Complexity = Field(default="medium", description="Query complexity")
    intent: Intent = Field(default="product_support", description="Classified intent")
    sub_queries: List[str] = Field(default_factory=list, description="Decomposed sub-questions, in order")
    requires_memory: bool = Field(default=False, description="Whether recall memory should be searched")
    requires_graph: bool = Field(default=False, description="Whether graph context should be loaded")
    standalone_query: str = Field(description="Coreference-resolved query")
    route: Route = Field(default="STANDARD", description="Derived from complexity and intent")


class KnowledgeEntry(BaseModel):
    """One question/answer record of the knowledge base."""

    question: str
    answer: str
    source: str = ""


class CandidateResult(BaseModel):
    """A retrieved knowledge record with the scores accumulated so far."""

    question: str
    answer: str
    source: str = ""
    text_score: Optional[float] = Field(default=None, description="Lexical match score")
    vector_distance: Optional[float] = Field(default=None, description="Vector distance, lower is closer")
    rrf_score: Optional[float] = Field(default=None, description="Reciprocal rank fusion score")
    rerank_score: Optional[float] = Field(default=None, ge=0.0, le=1.0, description="Reranker relevance in [0, 1]")

    @property
    def identity(self) -> Tuple[str, str]:
        return (self.question, self.answer)


class CragVerdict(BaseModel):
    """Per-candidate relevance partition of one retrieval round."""

    relevant: List[CandidateResult] = Field(default_factory=list)
    partial: List[CandidateResult] = Field(default_factory=list)
    irrelevant: List[CandidateResult] = Field(default_factory=list)

    @property
    def usable(self) -> List[CandidateResult]:
        return [*self.relevant, *self.partial]

    @property
    def insufficient(self) -> bool:
        return not self.relevant and not self.partial


class Citation(BaseModel):
    """Citation for an evidence record shown to the user."""

    index: int = Field(description="1-based position")
    title: str = Field(default="", description="Question of the cited record")
    source: str = Field(default="Bilgi Tabani", description="Origin of the record")
    snippet: str = Field(default="", description="Leading part of the answer")


class TopicDetail(BaseModel):
    """A support topic the assistant can be steered to."""

    key: str
    title: str = ""
    content: str = ""
    required_info: List[str] = Field(default_factory=list)
    requires_escalation: bool = False
    can_resolve_directly: bool = False


class AgentProfile(BaseModel):
    """Static persona, policy and topic configuration rendered into every prompt."""

    persona_text: str = ""
    policy_text: str = ""
    topic_index: str = ""
    topics: Dict[str, TopicDetail] = Field(default_factory=dict)
    required_fields: List[str] = Field(default_factory=lambda: ["branchCode", "issueSummary"])
    optional_fields: List[str] = Field(default_factory=lambda: ["companyName", "fullName", "phone"])
    field_labels: Dict[str, str] = Field(
        default_factory=lambda: {
            "branchCode": "Sube Kodu",
            "issueSummary": "Sorun Ozeti",
            "companyName": "Firma Adi",
            "fullName": "Ad Soyad",
            "phone": "Telefon",
        }
    )


class ConversationContext(BaseModel):
    """Structured conversation state maintained by the caller."""

    conversation_state: str = "welcome_or_greet"
    turn_count: int = 0
    current_topic: Optional[str] = None
    early_escalation: bool = False
    escalation_triggered: bool = False
    escalation_reason: str = ""


class PipelineOptions(BaseModel):
    """Per-call overrides."""

    max_output_tokens: Optional[int] = Field(default=None, gt=0)
    provider_config: Optional[ProviderConfig] = None


class PipelineInput(BaseModel):
    """Everything the caller hands to one pipeline invocation."""

    user_message: str
    chat_history: List[ChatMessage] = Field(default_factory=list)
    session_id: str
    user_id: str
    knowledge_base: List[KnowledgeEntry] = Field(default_factory=list)
    kb_size: Optional[int] = None
    memory: Dict[str, str] = Field(default_factory=dict, description="Fields collected so far in this conversation")
    conversation_context: ConversationContext = Field(default_factory=ConversationContext)
    options: PipelineOptions = Field(default_factory=PipelineOptions)


class PipelineResult(BaseModel):
    """The only return value of one pipeline invocation."""

    reply: str
    route: Route
    analysis: Analysis
    citations: List[Citation] = Field(default_factory=list)
    rag_results: List[CandidateResult] = Field(default_factory=list)
    finish_reason: str = "stop"
    message_id: str


class PipelineState(BaseModel):
    """State flowing through the LangGraph chat pipeline for one turn."""

    trace_id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    message_id: str = Field(default_factory=lambda: uuid.uuid4().hex)

    # Input
    request: PipelineInput
    history: List[ChatMessage] = Field(default_factory=list, description="Prior turns, current utterance excluded")

    # Analysis
    analysis: Optional[Analysis] = None

    # Retrieval
    search_query: str = ""
    search_rounds: int = Field(default=0, description="Number of search rounds run so far")
    rewrite_attempts: int = 0
    reranked: List[CandidateResult] = Field(default_factory=list)
    verdict: Optional[CragVerdict] = None
    rag_results: List[CandidateResult] = Field(default_factory=list)
    citations: List[Citation] = Field(default_factory=list)

    # Context
    memory_context: MemoryContext = Field(default_factory=MemoryContext)
    reflexion_warnings: str = ""
    graph_context: str = ""
    consecutive_low_count: int = 0

    # Generation
    system_prompt: str = ""
    reply: str = ""
    finish_reason: str = ""
    generation_failed: bool = False

    # Diagnostics
    node_timings: Dict[str, float] = Field(default_factory=dict)
    errors: List[str] = Field(default_factory=list)
