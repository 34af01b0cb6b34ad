"""
Prompt assembly for the final generation call.

Sections are concatenated in a fixed order:
persona/policy, topic index, detected topic detail, conversation state,
collected fields, core and recall memory, reflexion warnings, graph context,
retrieved evidence. Without evidence an explicit "do not guess" block takes
the evidence section's place; it is never skipped.
"""

from typing import Dict, List, Optional, Sequence

import structlog

from assistant.composer import prompts
from assistant.schemas.pipeline_state import AgentProfile, CandidateResult, ConversationContext
from libs.common.text import trim_to_token_budget

logger = structlog.get_logger(__name__)

EVIDENCE_TOKEN_BUDGET = 2000


class PromptAssembler:
    """
    Renders all per-turn context into one system instruction.

    Usage:
        assembler = PromptAssembler(agent_profile)
        system_prompt = assembler.build(conversation_context, collected, evidence, core_memory=...)
    """

    def __init__(self, agent_profile: Optional[AgentProfile] = None, evidence_token_budget: int = EVIDENCE_TOKEN_BUDGET):
        self.profile = agent_profile or AgentProfile()
        self.evidence_token_budget = evidence_token_budget

    def _persona_section(self) -> str:
        persona = self.profile.persona_text or prompts.DEFAULT_PERSONA
        policy = self.profile.policy_text or prompts.DEFAULT_POLICY
        return f"{persona}\n\n{policy}"

    def _topic_index_section(self) -> Optional[str]:
        if not self.profile.topic_index:
            return None
        return f"{prompts.TOPIC_INDEX_HEADER}\n{self.profile.topic_index}"

    def _topic_detail_sections(self, context: ConversationContext) -> List[str]:
        sections: List[str] = []
        topic = self.profile.topics.get(context.current_topic) if context.current_topic else None
        if topic and topic.content:
            sections.append(f"{prompts.TOPIC_DETAIL_HEADER}\nKonu: {topic.title or topic.key}\n{topic.content}")
            if topic.required_info:
                sections.append(f"{prompts.REQUIRED_INFO_HEADER}\n{', '.join(topic.required_info)}")
            if topic.requires_escalation:
                sections.append(prompts.REQUIRES_ESCALATION_NOTE)
            if topic.can_resolve_directly:
                sections.append(prompts.CAN_RESOLVE_DIRECTLY_NOTE)

        if context.early_escalation:
            sections.append(prompts.EARLY_ESCALATION_SECTION)
        if context.escalation_triggered:
            sections.append(prompts.ESCALATION_TRIGGERED_SECTION.format(reason=context.escalation_reason or "-"))
        return sections

    @staticmethod
    def _conversation_state_section(context: ConversationContext, low_quality_streak: int) -> str:
        lines = [
            prompts.CONVERSATION_STATE_HEADER,
            f"- Asama: {context.conversation_state}",
            f"- Tur sayisi: {context.turn_count}",
        ]
        if context.current_topic:
            lines.append(f"- Aktif konu: {context.current_topic}")
        if context.early_escalation:
            lines.append("- ERKEN ESCALATION: EVET")
        if context.escalation_triggered:
            lines.append("- ESCALATION TETIKLENDI")
        if low_quality_streak:
            lines.append(prompts.LOW_QUALITY_HANDOFF_LINE.format(count=low_quality_streak))
        return "\n".join(lines)

    def _collected_fields_section(self, collected: Dict[str, str]) -> str:
        required = set(self.profile.required_fields)
        lines = [prompts.COLLECTED_FIELDS_HEADER]
        for field in [*self.profile.required_fields, *self.profile.optional_fields]:
            label = self.profile.field_labels.get(field, field)
            tag = prompts.REQUIRED_TAG if field in required else ""
            lines.append(f"- {label}{tag}: {collected.get(field) or prompts.UNKNOWN_VALUE}")
        return "\n".join(lines)

    def _evidence_section(self, evidence: Sequence[CandidateResult]) -> str:
        if not evidence:
            return prompts.NO_EVIDENCE_SECTION

        lines = [prompts.EVIDENCE_HEADER]
        for item in evidence:
            lines.append(f"Soru: {item.question}")
            lines.append(f"Cevap: {item.answer}")
            lines.append("")
        return trim_to_token_budget("\n".join(lines), self.evidence_token_budget)

    def build(
        self,
        conversation_context: Optional[ConversationContext],
        collected_fields: Optional[Dict[str, str]],
        evidence: Sequence[CandidateResult],
        core_memory: str = "",
        recall_memory: str = "",
        reflexion_warnings: str = "",
        graph_context: str = "",
        low_quality_streak: int = 0,
    ) -> str:
        """
        Assemble the system instruction for one turn.

        Args:
            conversation_context: Structured conversation state from the caller
            collected_fields: Fields gathered so far in the conversation
            evidence: Final retrieval results, best first
            core_memory: Rendered core profile block
            recall_memory: Rendered recall block
            reflexion_warnings: Rendered lessons from past mistakes
            graph_context: Rendered entity relations
            low_quality_streak: Consecutive low-quality answers; > 0 adds a handoff notice

        Returns:
            The full system instruction
        """
        context = conversation_context or ConversationContext()
        parts: List[str] = [self._persona_section()]

        topic_index = self._topic_index_section()
        if topic_index:
            parts.append(topic_index)
        parts.extend(self._topic_detail_sections(context))
        parts.append(self._conversation_state_section(context, low_quality_streak))
        parts.append(self._collected_fields_section(collected_fields or {}))
        parts.append(prompts.CONFIRMATION_TEMPLATE)
        parts.append(prompts.QUICK_REPLIES_HINT)

        for block in (core_memory, recall_memory, reflexion_warnings, graph_context):
            if block:
                parts.append(block)

        parts.append(self._evidence_section(evidence))

        system_prompt = "\n\n".join(parts)
        logger.info(
            "System prompt assembled",
            state=context.conversation_state,
            turn_count=context.turn_count,
            topic=context.current_topic,
            evidence=len(evidence),
            has_core_memory=bool(core_memory),
            has_recall_memory=bool(recall_memory),
            has_reflexion=bool(reflexion_warnings),
            has_graph=bool(graph_context),
            prompt_len=len(system_prompt),
        )
        return system_prompt
