"""Chat pipeline using LangGraph for the adaptive support assistant.

This module implements the single entry point that routes each user turn
through a graph of nodes: query analysis, adaptive retrieval (FAST /
STANDARD / DEEP with corrective retries), context loading, prompt assembly
and generation. Quality scoring and memory write-back run afterwards as
supervised background tasks and only influence the next turn.
"""

import asyncio
import time
from typing import Any, Dict, List, Optional, Sequence

import structlog
from langchain_core.runnables import RunnableConfig
from langgraph.graph import END, StateGraph

from assistant.composer.prompt_assembler import PromptAssembler
from assistant.intelligence.graph_query import GRAPH_TOKEN_BUDGET, GraphQuery
from assistant.intelligence.quality_scorer import QualityScorer
from assistant.intelligence.reflexion import ReflexionEngine
from assistant.orchestrators.background import BackgroundTaskSupervisor
from assistant.schemas.pipeline_state import (
    CandidateResult,
    PipelineInput,
    PipelineResult,
    PipelineState,
)
from assistant.tools.crag_evaluator import MAX_REWRITE_ATTEMPTS, CragEvaluator
from assistant.tools.query_analyzer import QueryAnalyzer, fallback_analysis
from assistant.tools.reranker import Reranker
from assistant.tools.search_engine import SearchEngine
from libs.llm.generation import ChatMessage, Generator, ProviderConfig, generate_text
from libs.memory.coordinator import MemoryContext, MemoryEngine

logger = structlog.get_logger(__name__)

DEFAULT_MAX_OUTPUT_TOKENS = 2048
MIN_RERANK_SCORE = 0.3
LOW_QUALITY_HANDOFF_THRESHOLD = 2
SUMMARY_MAX_CHARS = 600
FEEDBACK_RATINGS = ("up", "down")
FALLBACK_REPLY = "Uzgunum, su anda yanit olusturamiyorum. Lutfen biraz sonra tekrar deneyin."


def _elapsed_ms(start_time: float) -> float:
    return round((time.time() - start_time) * 1000, 2)


def prior_history(request: PipelineInput) -> List[ChatMessage]:
    """Copy of the caller's history without the current utterance.

    Callers sometimes append the current message to the history before
    calling; a trailing user turn equal to it is dropped.
    """
    history = [message.model_copy() for message in request.chat_history]
    if history and history[-1].role == "user" and history[-1].content.strip() == request.user_message.strip():
        history = history[:-1]
    return history


class ChatPipeline:
    """
    Adaptive retrieval-and-generation pipeline.

    Usage:
        pipeline = ChatPipeline(analyzer, search_engine, reranker, crag, assembler, generator, config)
        result = await pipeline.process(PipelineInput(...))
    """

    def __init__(
        self,
        query_analyzer: QueryAnalyzer,
        search_engine: SearchEngine,
        reranker: Reranker,
        crag_evaluator: CragEvaluator,
        prompt_assembler: PromptAssembler,
        generator: Generator,
        provider_config: ProviderConfig,
        memory_engine: Optional[MemoryEngine] = None,
        quality_scorer: Optional[QualityScorer] = None,
        reflexion: Optional[ReflexionEngine] = None,
        graph_query: Optional[GraphQuery] = None,
        supervisor: Optional[BackgroundTaskSupervisor] = None,
        max_output_tokens: int = DEFAULT_MAX_OUTPUT_TOKENS,
        min_rerank_score: float = MIN_RERANK_SCORE,
        max_rewrite_attempts: int = MAX_REWRITE_ATTEMPTS,
        low_quality_handoff_threshold: int = LOW_QUALITY_HANDOFF_THRESHOLD,
        graph_token_budget: int = GRAPH_TOKEN_BUDGET,
        fallback_reply: str = FALLBACK_REPLY,
    ):
        self.analyzer = query_analyzer
        self.search_engine = search_engine
        self.reranker = reranker
        self.crag = crag_evaluator
        self.assembler = prompt_assembler
        self.generator = generator
        self.provider_config = provider_config
        self.memory = memory_engine
        self.quality_scorer = quality_scorer
        self.reflexion = reflexion
        self.graph_query = graph_query
        self.supervisor = supervisor or BackgroundTaskSupervisor()
        self.max_output_tokens = max_output_tokens
        self.min_rerank_score = min_rerank_score
        self.max_rewrite_attempts = max_rewrite_attempts
        self.low_quality_handoff_threshold = low_quality_handoff_threshold
        self.graph_token_budget = graph_token_budget
        self.fallback_reply = fallback_reply

        self.graph = self._build_graph()

    def _build_graph(self):
        """Build and compile the LangGraph state machine."""
        graph = StateGraph(PipelineState)

        graph.add_node("01_query_analyzer", self._query_analyzer_node)
        graph.add_node("02_standard_retrieval", self._standard_retrieval_node)
        graph.add_node("02_deep_search", self._deep_search_node)
        graph.add_node("03_crag_evaluate", self._crag_evaluate_node)
        graph.add_node("03b_crag_rewrite", self._crag_rewrite_node)
        graph.add_node("04_load_context", self._load_context_node)
        graph.add_node("05_prompt_assembly", self._prompt_assembly_node)
        graph.add_node("06_generation", self._generation_node)

        graph.set_entry_point("01_query_analyzer")

        graph.add_conditional_edges(
            "01_query_analyzer",
            self._decide_route,
            {
                "FAST": "04_load_context",
                "STANDARD": "02_standard_retrieval",
                "DEEP": "02_deep_search",
            },
        )

        # Corrective loop: search -> evaluate -> (rewrite -> search)*
        graph.add_edge("02_deep_search", "03_crag_evaluate")
        graph.add_conditional_edges(
            "03_crag_evaluate",
            self._decide_after_evaluation,
            {
                "rewrite": "03b_crag_rewrite",
                "done": "04_load_context",
            },
        )
        graph.add_edge("03b_crag_rewrite", "02_deep_search")

        graph.add_edge("02_standard_retrieval", "04_load_context")
        graph.add_edge("04_load_context", "05_prompt_assembly")
        graph.add_edge("05_prompt_assembly", "06_generation")
        graph.add_edge("06_generation", END)

        # No checkpointer: nothing survives between turns
        compiled_graph = graph.compile()
        logger.info("Chat pipeline graph compiled successfully")
        return compiled_graph

    # ---- routing -------------------------------------------------------

    def _decide_route(self, state: PipelineState) -> str:
        route = state.analysis.route if state.analysis else "STANDARD"
        logger.info("Route selected", route=route, trace_id=state.trace_id)
        return route

    def _decide_after_evaluation(self, state: PipelineState) -> str:
        verdict = state.verdict
        if verdict is not None and not verdict.insufficient:
            return "done"
        # Decomposed questions are searched once and never rewritten
        if state.analysis and state.analysis.sub_queries:
            return "done"
        if state.rewrite_attempts < self.max_rewrite_attempts:
            return "rewrite"
        logger.info(
            "Rewrite budget exhausted, using best available results",
            rewrite_attempts=state.rewrite_attempts,
            results=len(state.rag_results),
            trace_id=state.trace_id,
        )
        return "done"

    # ---- nodes ---------------------------------------------------------

    async def _query_analyzer_node(self, state: PipelineState) -> Dict[str, Any]:
        """01_query_analyzer: classify the turn and resolve the standalone query."""
        start_time = time.time()
        request = state.request
        history = prior_history(request)
        try:
            analysis = await self.analyzer.analyze(request.user_message, history)
        except Exception as e:
            logger.error("01_query_analyzer failed", error=str(e), trace_id=state.trace_id)
            analysis = fallback_analysis(request.user_message)

        duration_ms = _elapsed_ms(start_time)
        logger.info(
            "01_query_analyzer completed",
            route=analysis.route,
            complexity=analysis.complexity,
            intent=analysis.intent,
            sub_queries=len(analysis.sub_queries),
            duration_ms=duration_ms,
            trace_id=state.trace_id,
        )
        return {
            "analysis": analysis,
            "history": history,
            "search_query": analysis.standalone_query,
            "node_timings": {**state.node_timings, "01_query_analyzer": duration_ms},
        }

    async def _standard_retrieval_node(self, state: PipelineState) -> Dict[str, Any]:
        """02_standard_retrieval: one hybrid search, rerank, score threshold."""
        start_time = time.time()
        request = state.request
        try:
            candidates = await self.search_engine.hybrid_search(
                state.search_query, request.knowledge_base, request.kb_size
            )
            reranked = await self.reranker.rerank(state.search_query, candidates)

            selected = [r for r in reranked if (r.rerank_score or 0.0) >= self.min_rerank_score]
            if not selected and reranked:
                selected = reranked[:1]

            duration_ms = _elapsed_ms(start_time)
            logger.info(
                "02_standard_retrieval completed",
                candidates=len(candidates),
                selected=len(selected),
                min_rerank_score=self.min_rerank_score,
                duration_ms=duration_ms,
                trace_id=state.trace_id,
            )
            return {
                "search_rounds": state.search_rounds + 1,
                "reranked": reranked,
                "rag_results": selected,
                "node_timings": {**state.node_timings, "02_standard_retrieval": duration_ms},
            }
        except Exception as e:
            logger.error("02_standard_retrieval failed", error=str(e), trace_id=state.trace_id)
            return {
                "search_rounds": state.search_rounds + 1,
                "rag_results": [],
                "errors": [*state.errors, f"02_standard_retrieval: {e}"],
            }

    def _decomposed_queries(self, state: PipelineState) -> List[str]:
        """Standalone query first, then sub-queries, within the search round budget."""
        queries = [state.analysis.standalone_query]
        for sub_query in state.analysis.sub_queries:
            if sub_query not in queries:
                queries.append(sub_query)

        max_rounds = self.max_rewrite_attempts + 1
        if len(queries) > max_rounds:
            logger.info(
                "Sub-queries dropped over the search round budget",
                dropped=queries[max_rounds:],
                max_rounds=max_rounds,
                trace_id=state.trace_id,
            )
        return queries[:max_rounds]

    async def _search_sub_queries(self, state: PipelineState, queries: List[str]) -> List[CandidateResult]:
        request = state.request
        result_lists = []
        for query in queries:
            result_lists.append(
                await self.search_engine.hybrid_search(query, request.knowledge_base, request.kb_size)
            )
        return SearchEngine.merge_results(result_lists)

    async def _deep_search_node(self, state: PipelineState) -> Dict[str, Any]:
        """02_deep_search: one search round of the corrective loop."""
        start_time = time.time()
        request = state.request
        try:
            analysis = state.analysis
            if analysis and analysis.sub_queries and state.search_rounds == 0:
                queries = self._decomposed_queries(state)
                candidates = await self._search_sub_queries(state, queries)
                rounds = len(queries)
            else:
                candidates = await self.search_engine.hybrid_search(
                    state.search_query, request.knowledge_base, request.kb_size
                )
                rounds = 1

            reranked = await self.reranker.rerank(state.search_query, candidates)

            duration_ms = _elapsed_ms(start_time)
            logger.info(
                "02_deep_search completed",
                search_query=state.search_query[:80],
                search_round=state.search_rounds + rounds,
                candidates=len(candidates),
                duration_ms=duration_ms,
                trace_id=state.trace_id,
            )
            return {
                "search_rounds": state.search_rounds + rounds,
                "reranked": reranked,
                "node_timings": {**state.node_timings, f"02_deep_search_{state.search_rounds}": duration_ms},
            }
        except Exception as e:
            logger.error("02_deep_search failed", error=str(e), trace_id=state.trace_id)
            return {
                "search_rounds": state.search_rounds + 1,
                "reranked": [],
                "errors": [*state.errors, f"02_deep_search: {e}"],
            }

    async def _crag_evaluate_node(self, state: PipelineState) -> Dict[str, Any]:
        """03_crag_evaluate: partition the round's candidates by relevance."""
        start_time = time.time()
        verdict = await self.crag.evaluate(state.search_query, state.reranked)

        # Usable results, or everything reranked once the loop gives up
        rag_results = verdict.usable if not verdict.insufficient else list(state.reranked)

        duration_ms = _elapsed_ms(start_time)
        logger.info(
            "03_crag_evaluate completed",
            relevant=len(verdict.relevant),
            partial=len(verdict.partial),
            irrelevant=len(verdict.irrelevant),
            insufficient=verdict.insufficient,
            duration_ms=duration_ms,
            trace_id=state.trace_id,
        )
        return {
            "verdict": verdict,
            "rag_results": rag_results,
            "node_timings": {**state.node_timings, f"03_crag_evaluate_{state.search_rounds}": duration_ms},
        }

    async def _crag_rewrite_node(self, state: PipelineState) -> Dict[str, Any]:
        """03b_crag_rewrite: ask for a better search query."""
        start_time = time.time()
        rewritten = await self.crag.suggest_rewrite(state.search_query, state.history)

        duration_ms = _elapsed_ms(start_time)
        logger.info(
            "03b_crag_rewrite completed",
            attempt=state.rewrite_attempts + 1,
            original=state.search_query[:80],
            rewritten=rewritten[:80],
            duration_ms=duration_ms,
            trace_id=state.trace_id,
        )
        return {
            "search_query": rewritten,
            "rewrite_attempts": state.rewrite_attempts + 1,
        }

    async def _load_memory(self, state: PipelineState) -> MemoryContext:
        if not self.memory:
            return MemoryContext()
        return await self.memory.load_context(
            state.request.user_id, state.analysis.standalone_query, state.analysis
        )

    async def _load_reflexion(self, state: PipelineState) -> str:
        if not self.reflexion:
            return ""
        return await self.reflexion.get_warnings(
            state.analysis.intent, standalone_query=state.analysis.standalone_query
        )

    async def _load_graph(self, state: PipelineState) -> str:
        if not self.graph_query or not state.analysis.requires_graph:
            return ""
        return await self.graph_query.format_for_prompt(state.analysis.standalone_query, self.graph_token_budget)

    async def _load_low_quality_streak(self, state: PipelineState) -> int:
        if not self.quality_scorer:
            return 0
        return await self.quality_scorer.get_consecutive_low_count(state.request.session_id)

    async def _load_context_node(self, state: PipelineState) -> Dict[str, Any]:
        """04_load_context: memory, reflexion warnings, graph context and quality streak in parallel."""
        start_time = time.time()
        memory_context, warnings, graph_context, low_count = await asyncio.gather(
            self._load_memory(state),
            self._load_reflexion(state),
            self._load_graph(state),
            self._load_low_quality_streak(state),
            return_exceptions=True,
        )

        errors = list(state.errors)
        if isinstance(memory_context, Exception):
            logger.warning("Memory context failed", error=str(memory_context), trace_id=state.trace_id)
            errors.append(f"memory: {memory_context}")
            memory_context = MemoryContext()
        if isinstance(warnings, Exception):
            logger.warning("Reflexion warnings failed", error=str(warnings), trace_id=state.trace_id)
            errors.append(f"reflexion: {warnings}")
            warnings = ""
        if isinstance(graph_context, Exception):
            logger.warning("Graph context failed", error=str(graph_context), trace_id=state.trace_id)
            errors.append(f"graph: {graph_context}")
            graph_context = ""
        if isinstance(low_count, Exception):
            logger.warning("Quality streak lookup failed", error=str(low_count), trace_id=state.trace_id)
            errors.append(f"quality: {low_count}")
            low_count = 0

        citations = SearchEngine.format_citations(state.rag_results)

        duration_ms = _elapsed_ms(start_time)
        logger.info(
            "04_load_context completed",
            has_core_memory=bool(memory_context.core_memory),
            has_recall_memory=bool(memory_context.recall_memory),
            has_reflexion=bool(warnings),
            has_graph=bool(graph_context),
            consecutive_low_count=low_count,
            citations=len(citations),
            duration_ms=duration_ms,
            trace_id=state.trace_id,
        )
        return {
            "memory_context": memory_context,
            "reflexion_warnings": warnings,
            "graph_context": graph_context,
            "consecutive_low_count": low_count,
            "citations": citations,
            "errors": errors,
            "node_timings": {**state.node_timings, "04_load_context": duration_ms},
        }

    async def _prompt_assembly_node(self, state: PipelineState) -> Dict[str, Any]:
        """05_prompt_assembly: render the system instruction."""
        start_time = time.time()
        streak = state.consecutive_low_count
        if streak < self.low_quality_handoff_threshold:
            streak = 0

        system_prompt = self.assembler.build(
            state.request.conversation_context,
            state.request.memory,
            state.rag_results,
            core_memory=state.memory_context.core_memory,
            recall_memory=state.memory_context.recall_memory,
            reflexion_warnings=state.reflexion_warnings,
            graph_context=state.graph_context,
            low_quality_streak=streak,
        )

        duration_ms = _elapsed_ms(start_time)
        logger.info("05_prompt_assembly completed", prompt_len=len(system_prompt), duration_ms=duration_ms)
        return {
            "system_prompt": system_prompt,
            "node_timings": {**state.node_timings, "05_prompt_assembly": duration_ms},
        }

    async def _generation_node(self, state: PipelineState) -> Dict[str, Any]:
        """06_generation: the user-visible generation call."""
        start_time = time.time()
        options = state.request.options
        provider_config = options.provider_config or self.provider_config
        max_output_tokens = options.max_output_tokens or self.max_output_tokens

        # The resolved query stands in for the raw utterance on a fresh list
        messages = [*state.history, ChatMessage(role="user", content=state.analysis.standalone_query)]

        try:
            result = await generate_text(
                self.generator,
                messages,
                state.system_prompt,
                max_output_tokens,
                provider_config,
            )
            reply, finish_reason, failed = result.reply, result.finish_reason, False
        except Exception as e:
            logger.error("06_generation failed", error=str(e), trace_id=state.trace_id)
            reply, finish_reason, failed = self.fallback_reply, "error", True

        duration_ms = _elapsed_ms(start_time)
        logger.info(
            "06_generation completed",
            reply_len=len(reply),
            finish_reason=finish_reason,
            model=provider_config.model,
            duration_ms=duration_ms,
            trace_id=state.trace_id,
        )
        return {
            "reply": reply,
            "finish_reason": finish_reason,
            "generation_failed": failed,
            "node_timings": {**state.node_timings, "06_generation": duration_ms},
        }

    # ---- entry points --------------------------------------------------

    def _spawn_post_turn_work(self, state: PipelineState) -> None:
        request = state.request
        query = state.analysis.standalone_query

        if self.quality_scorer:
            self.supervisor.spawn(
                self.quality_scorer.score(query, state.reply, state.rag_results, request.session_id, state.message_id),
                name=f"quality_score:{state.message_id}",
            )

        if self.memory:
            turn_history = [
                *state.history,
                ChatMessage(role="user", content=request.user_message),
                ChatMessage(role="assistant", content=state.reply),
            ]
            summary = f"Soru: {query}\nCevap: {state.reply}"[:SUMMARY_MAX_CHARS]
            self.supervisor.spawn(
                self.memory.update_after_conversation(request.user_id, request.session_id, turn_history, summary),
                name=f"memory_update:{state.message_id}",
            )

    async def process(self, request: PipelineInput) -> PipelineResult:
        """
        Run one user turn through the pipeline.

        Args:
            request: The caller's input for this turn

        Returns:
            PipelineResult; a reply is produced even when every dependency fails
        """
        state = PipelineState(request=request)
        config = RunnableConfig(
            metadata={"trace_id": state.trace_id, "session_id": request.session_id},
            run_name="chat_pipeline",
        )

        logger.info(
            "Starting chat pipeline",
            trace_id=state.trace_id,
            session_id=request.session_id,
            user_id=request.user_id,
            query_preview=request.user_message[:50],
        )

        start_time = time.time()
        try:
            result = await self.graph.ainvoke(state, config=config)
            if isinstance(result, dict):
                state = state.model_copy(update=result)
            elif isinstance(result, PipelineState):
                state = result
        except Exception as e:
            logger.error("Chat pipeline failed", error=str(e), trace_id=state.trace_id)
            state = state.model_copy(
                update={
                    "analysis": state.analysis or fallback_analysis(request.user_message),
                    "reply": self.fallback_reply,
                    "finish_reason": "error",
                    "generation_failed": True,
                }
            )

        if not state.generation_failed:
            self._spawn_post_turn_work(state)

        logger.info(
            "Chat pipeline completed",
            trace_id=state.trace_id,
            route=state.analysis.route,
            search_rounds=state.search_rounds,
            rewrite_attempts=state.rewrite_attempts,
            rag_results=len(state.rag_results),
            finish_reason=state.finish_reason,
            total_ms=_elapsed_ms(start_time),
        )

        return PipelineResult(
            reply=state.reply,
            route=state.analysis.route,
            analysis=state.analysis,
            citations=state.citations,
            rag_results=state.rag_results,
            finish_reason=state.finish_reason,
            message_id=state.message_id,
        )

    async def record_feedback(
        self,
        session_id: str,
        rating: str,
        query: str,
        answer: str,
        rag_results: Sequence[CandidateResult] = (),
    ) -> Optional[asyncio.Task]:
        """
        Record explicit user feedback on an answer.

        A "down" rating schedules reflexion analysis in the background and
        returns its task; "up" is only logged.

        Raises:
            ValueError: rating is neither "up" nor "down"
        """
        if rating not in FEEDBACK_RATINGS:
            raise ValueError(f"rating must be one of {FEEDBACK_RATINGS}, got {rating!r}")

        logger.info("Feedback received", session_id=session_id, rating=rating)
        if rating == "up" or not self.reflexion:
            return None

        return self.supervisor.spawn(
            self.reflexion.analyze(session_id, query, answer, list(rag_results)),
            name=f"reflexion:{session_id}",
        )
