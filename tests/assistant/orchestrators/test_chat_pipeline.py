"""
Tests for the LangGraph chat pipeline.

Tests verify:
- Scenario A: greeting takes the FAST route with no retrieval
- Scenario B: the matching record is retrieved, kept and cited
- Scenario C: no evidence leads to the no-evidence instruction
- The DEEP loop never runs more than three search rounds
- The caller's history is never mutated
- Background scoring and memory write-back, feedback and handoff notice
"""

import json
from unittest.mock import AsyncMock

import pytest

from assistant.composer import prompts
from assistant.composer.prompt_assembler import PromptAssembler
from assistant.intelligence.graph_query import GraphQuery
from assistant.intelligence.quality_scorer import QualityScorer
from assistant.intelligence.reflexion import ReflexionEngine
from assistant.orchestrators.chat_pipeline import ChatPipeline, prior_history
from assistant.schemas.pipeline_state import KnowledgeEntry, PipelineInput, PipelineOptions
from assistant.tools.crag_evaluator import CragEvaluator
from assistant.tools.query_analyzer import QueryAnalyzer
from assistant.tools.reranker import Reranker
from assistant.tools.search_engine import SearchEngine
from libs.llm.generation import ChatMessage
from libs.memory import CoreMemory, MemoryEngine, RecallMemory
from libs.models.records import GraphEdge, QualityScore
from libs.stores import (
    RedisGraphStore,
    RedisProfileStore,
    RedisQualityStore,
    RedisRecallStore,
    RedisReflexionStore,
)

ANALYZE = "You analyze customer support messages"
RERANK = "You score knowledge base results"
CRAG = "You judge search results"
REWRITE = "You improve search queries"
QUALITY = "You grade a support answer"
EXTRACT = "You extract a customer profile"
REFLEXION = "You review customer support answers"
FINAL = "## Konusma Durumu"

FINAL_REPLY = "Yaziciyi kurmak icin once ayarlari kontrol edin."


def analysis_reply(complexity="medium", intent="faq", standalone="yazıcı kurulumu nasıl yapılır", **extra):
    payload = {
        "complexity": complexity,
        "intent": intent,
        "subQueries": [],
        "requiresMemory": False,
        "requiresGraph": False,
        "standaloneQuery": standalone,
    }
    payload.update(extra)
    return json.dumps(payload)


@pytest.fixture
def knowledge_base():
    return [
        KnowledgeEntry(question="Yazici nasil kurulur?", answer="Ayarlari kontrol edin"),
        KnowledgeEntry(question="Fatura nasil indirilir?", answer="Hesabim sayfasindan indirebilirsiniz"),
    ]


def make_input(user_message, knowledge_base, chat_history=None, **kwargs):
    return PipelineInput(
        user_message=user_message,
        chat_history=chat_history or [],
        session_id="s1",
        user_id="u1",
        knowledge_base=knowledge_base,
        **kwargs,
    )


def build_pipeline(generator, provider_config, redis_client=None, **kwargs):
    stores = {}
    if redis_client is not None:
        stores = {
            "memory_engine": MemoryEngine(
                CoreMemory(RedisProfileStore(redis_client), generator, provider_config),
                RecallMemory(RedisRecallStore(redis_client)),
            ),
            "quality_scorer": QualityScorer(generator, provider_config, RedisQualityStore(redis_client)),
            "reflexion": ReflexionEngine(generator, provider_config, RedisReflexionStore(redis_client)),
            "graph_query": GraphQuery(RedisGraphStore(redis_client)),
        }
    stores.update(kwargs)

    pipeline = ChatPipeline(
        query_analyzer=QueryAnalyzer(generator, provider_config),
        search_engine=SearchEngine(),
        reranker=Reranker(generator, provider_config),
        crag_evaluator=CragEvaluator(generator, provider_config),
        prompt_assembler=PromptAssembler(),
        generator=generator,
        provider_config=provider_config,
        **stores,
    )
    pipeline.search_engine.hybrid_search = AsyncMock(wraps=pipeline.search_engine.hybrid_search)
    return pipeline


def final_call(generator):
    return generator.calls_matching(FINAL)[-1]


def test_prior_history_drops_echoed_utterance(knowledge_base):
    history = [ChatMessage(role="assistant", content="Merhaba"), ChatMessage(role="user", content="Yazici ")]
    request = make_input("Yazici", knowledge_base, chat_history=history)

    assert [m.content for m in prior_history(request)] == ["Merhaba"]
    assert len(request.chat_history) == 2


@pytest.mark.asyncio
async def test_scenario_a_greeting_takes_fast_route(scripted_generator, provider_config, knowledge_base):
    generator = scripted_generator(
        {ANALYZE: analysis_reply("simple", "greeting", "Merhaba")},
        default="Merhaba! Size nasil yardimci olabilirim?",
    )
    pipeline = build_pipeline(generator, provider_config)

    result = await pipeline.process(make_input("Merhaba", knowledge_base))

    assert result.route == "FAST"
    assert result.rag_results == []
    assert result.citations == []
    assert result.reply == "Merhaba! Size nasil yardimci olabilirim?"
    assert result.finish_reason == "stop"
    assert result.message_id
    pipeline.search_engine.hybrid_search.assert_not_awaited()
    assert generator.calls_matching(RERANK) == []
    assert prompts.NO_EVIDENCE_SECTION in final_call(generator)["system_instruction"]


@pytest.mark.asyncio
async def test_scenario_b_standard_route_cites_match(scripted_generator, provider_config, knowledge_base):
    generator = scripted_generator(
        {ANALYZE: analysis_reply(), RERANK: '[{"index": 0, "score": 0.92}, {"index": 1, "score": 0.05}]'},
        default=FINAL_REPLY,
    )
    pipeline = build_pipeline(generator, provider_config)

    result = await pipeline.process(make_input("yazıcı kurulumu nasıl yapılır", knowledge_base))

    assert result.route == "STANDARD"
    assert [r.question for r in result.rag_results] == ["Yazici nasil kurulur?"]
    assert result.rag_results[0].rerank_score == 0.92
    assert result.citations[0].title == "Yazici nasil kurulur?"
    assert result.reply == FINAL_REPLY
    system_prompt = final_call(generator)["system_instruction"]
    assert "Soru: Yazici nasil kurulur?\nCevap: Ayarlari kontrol edin" in system_prompt
    assert prompts.NO_EVIDENCE_SECTION not in system_prompt


@pytest.mark.asyncio
async def test_standard_route_keeps_best_when_all_below_threshold(scripted_generator, provider_config, knowledge_base):
    generator = scripted_generator(
        {ANALYZE: analysis_reply(), RERANK: '[{"index": 0, "score": 0.2}, {"index": 1, "score": 0.1}]'},
        default=FINAL_REPLY,
    )
    pipeline = build_pipeline(generator, provider_config)

    result = await pipeline.process(make_input("yazici kurulumu", knowledge_base))

    assert [r.question for r in result.rag_results] == ["Yazici nasil kurulur?"]


@pytest.mark.asyncio
async def test_scenario_b_deep_route_marks_relevant(scripted_generator, provider_config, knowledge_base):
    generator = scripted_generator(
        {
            ANALYZE: analysis_reply("complex", "product_support"),
            RERANK: '[{"index": 0, "score": 0.9}]',
            CRAG: '[{"index": 0, "verdict": "RELEVANT"}, {"index": 1, "verdict": "IRRELEVANT"}]',
        },
        default=FINAL_REPLY,
    )
    pipeline = build_pipeline(generator, provider_config)

    result = await pipeline.process(make_input("yazıcı kurulumu nasıl yapılır", knowledge_base))

    assert result.route == "DEEP"
    assert [r.question for r in result.rag_results] == ["Yazici nasil kurulur?"]
    assert pipeline.search_engine.hybrid_search.await_count == 1
    assert generator.calls_matching(REWRITE) == []


@pytest.mark.asyncio
async def test_scenario_c_no_evidence(scripted_generator, provider_config, knowledge_base):
    generator = scripted_generator(
        {ANALYZE: analysis_reply(standalone="bitcoin fiyati nedir")},
        default="Bu konuda detayli bilgim yok.",
    )
    pipeline = build_pipeline(generator, provider_config)

    result = await pipeline.process(make_input("bitcoin fiyati nedir", knowledge_base))

    assert result.rag_results == []
    assert generator.calls_matching(RERANK) == []
    assert prompts.NO_EVIDENCE_SECTION in final_call(generator)["system_instruction"]


@pytest.mark.asyncio
async def test_deep_loop_is_bounded_and_permissive(scripted_generator, provider_config, knowledge_base):
    generator = scripted_generator(
        {
            ANALYZE: analysis_reply("complex", "product_support"),
            RERANK: '[{"index": 0, "score": 0.4}]',
            CRAG: '[{"index": 0, "verdict": "IRRELEVANT"}]',
            REWRITE: ['"yazici kurulum adimlari"', '"yazici ayarlari"'],
        },
        default=FINAL_REPLY,
    )
    pipeline = build_pipeline(generator, provider_config)

    result = await pipeline.process(make_input("yazici kurulumu", knowledge_base))

    assert pipeline.search_engine.hybrid_search.await_count == 3
    assert len(generator.calls_matching(REWRITE)) == 2
    assert len(generator.calls_matching(CRAG)) == 3
    searched = [call.args[0] for call in pipeline.search_engine.hybrid_search.await_args_list]
    assert searched == ["yazıcı kurulumu nasıl yapılır", "yazici kurulum adimlari", "yazici ayarlari"]
    # Later rounds are judged against the rewritten query
    crag_prompts = [c["messages"][0].content for c in generator.calls_matching(CRAG)]
    assert "Customer question: yazici kurulum adimlari" in crag_prompts[1]
    assert "Customer question: yazici ayarlari" in crag_prompts[2]
    rerank_prompts = [c["messages"][0].content for c in generator.calls_matching(RERANK)]
    assert 'Question: "yazici ayarlari"' in rerank_prompts[-1]
    # Rewrite budget exhausted: reranked candidates are used anyway
    assert result.rag_results
    assert result.reply == FINAL_REPLY


@pytest.mark.asyncio
async def test_deep_loop_with_no_results_stops_after_three_rounds(scripted_generator, provider_config):
    generator = scripted_generator(
        {ANALYZE: analysis_reply("complex", "faq", standalone="bitcoin")},
        default="Bu konuda detayli bilgim yok.",
    )
    pipeline = build_pipeline(generator, provider_config)

    result = await pipeline.process(make_input("bitcoin", []))

    assert pipeline.search_engine.hybrid_search.await_count == 3
    assert generator.calls_matching(CRAG) == []
    assert result.rag_results == []
    assert prompts.NO_EVIDENCE_SECTION in final_call(generator)["system_instruction"]


@pytest.mark.asyncio
async def test_deep_sub_queries_are_merged_without_rewrite(scripted_generator, provider_config, knowledge_base):
    generator = scripted_generator(
        {
            ANALYZE: analysis_reply("complex", "faq", standalone="yazici kurulumu ve fatura indirme",
                                    subQueries=["yazici kurulumu", "fatura indirme"]),
            RERANK: '[{"index": 0, "score": 0.7}, {"index": 1, "score": 0.6}]',
            CRAG: '[{"index": 0, "verdict": "IRRELEVANT"}]',
        },
        default=FINAL_REPLY,
    )
    pipeline = build_pipeline(generator, provider_config)

    result = await pipeline.process(make_input("Yazici nasil kurulur, fatura nasil indirilir?", knowledge_base))

    searched = [call.args[0] for call in pipeline.search_engine.hybrid_search.await_args_list]
    assert searched == ["yazici kurulumu ve fatura indirme", "yazici kurulumu", "fatura indirme"]
    assert generator.calls_matching(REWRITE) == []
    assert {r.question for r in result.rag_results} == {"Yazici nasil kurulur?", "Fatura nasil indirilir?"}


@pytest.mark.asyncio
async def test_deep_sub_queries_keep_the_standalone_query(scripted_generator, provider_config, knowledge_base):
    knowledge_base = [*knowledge_base, KnowledgeEntry(question="Iade kosullari nelerdir?", answer="14 gun icinde iade")]
    generator = scripted_generator(
        {
            ANALYZE: analysis_reply("complex", "faq", standalone="iade kosullari nelerdir",
                                    subQueries=["a farki", "b fiyati", "c garantisi", "iade kosullari"]),
            RERANK: '[{"index": 0, "score": 0.9}]',
            CRAG: '[{"index": 0, "verdict": "RELEVANT"}]',
        },
        default=FINAL_REPLY,
    )
    pipeline = build_pipeline(generator, provider_config)

    result = await pipeline.process(make_input("A ile B farki, fiyati, garantisi ve iade kosullari?", knowledge_base))

    searched = [call.args[0] for call in pipeline.search_engine.hybrid_search.await_args_list]
    assert searched == ["iade kosullari nelerdir", "a farki", "b fiyati"]
    assert [r.question for r in result.rag_results] == ["Iade kosullari nelerdir?"]
    assert prompts.NO_EVIDENCE_SECTION not in final_call(generator)["system_instruction"]


@pytest.mark.asyncio
async def test_history_is_never_mutated(scripted_generator, provider_config, knowledge_base):
    generator = scripted_generator(
        {ANALYZE: analysis_reply("simple", "chitchat", "iPhone 15'i sepete ekle")},
        default="Tamam.",
    )
    pipeline = build_pipeline(generator, provider_config)
    history = [
        ChatMessage(role="user", content="iPhone 15 fiyati ne kadar?"),
        ChatMessage(role="assistant", content="45000 TL"),
        ChatMessage(role="user", content="Bunu sepete ekle"),
    ]
    snapshot = [m.model_dump() for m in history]
    request = make_input("Bunu sepete ekle", knowledge_base, chat_history=history)

    await pipeline.process(request)

    assert [m.model_dump() for m in history] == snapshot
    assert [m.model_dump() for m in request.chat_history] == snapshot

    analyzer_messages = generator.calls_matching(ANALYZE)[0]["messages"]
    assert [m.content for m in analyzer_messages] == ["iPhone 15 fiyati ne kadar?", "45000 TL", "Bunu sepete ekle"]

    sent = final_call(generator)["messages"]
    assert [m.content for m in sent] == ["iPhone 15 fiyati ne kadar?", "45000 TL", "iPhone 15'i sepete ekle"]


@pytest.mark.asyncio
async def test_options_override_budget_and_provider(scripted_generator, provider_config, knowledge_base):
    generator = scripted_generator({ANALYZE: analysis_reply("simple", "greeting", "Selam")}, default="Selam!")
    pipeline = build_pipeline(generator, provider_config)
    override = provider_config.model_copy(update={"model": "other-model"})

    await pipeline.process(make_input("Selam", knowledge_base,
                                      options=PipelineOptions(max_output_tokens=128, provider_config=override)))

    call = final_call(generator)
    assert call["max_output_tokens"] == 128
    assert call["provider_config"].model == "other-model"


@pytest.mark.asyncio
async def test_generation_failure_returns_fallback_reply(
    redis_client, scripted_generator, provider_config, knowledge_base
):
    generator = scripted_generator(
        {ANALYZE: analysis_reply("simple", "greeting", "Merhaba")},
        default=RuntimeError("provider down"),
    )
    pipeline = build_pipeline(generator, provider_config, redis_client)

    result = await pipeline.process(make_input("Merhaba", knowledge_base))
    await pipeline.supervisor.drain()

    assert result.finish_reason == "error"
    assert result.reply == pipeline.fallback_reply
    assert result.route == "FAST"
    assert generator.calls_matching(QUALITY) == []
    assert await RedisQualityStore(redis_client).recent("s1", 5) == []


@pytest.mark.asyncio
async def test_background_scoring_and_memory_write_back(
    redis_client, scripted_generator, provider_config, knowledge_base
):
    generator = scripted_generator(
        {
            ANALYZE: analysis_reply(),
            RERANK: '[{"index": 0, "score": 0.9}]',
            QUALITY: '{"faithfulness": 0.9, "relevancy": 0.95}',
            EXTRACT: '{"name": "Ayse", "branch": "Kadikoy"}',
        },
        default=FINAL_REPLY,
    )
    pipeline = build_pipeline(generator, provider_config, redis_client)

    result = await pipeline.process(make_input("yazıcı kurulumu nasıl yapılır", knowledge_base))
    await pipeline.supervisor.drain()

    rows = await RedisQualityStore(redis_client).recent("s1", 5)
    assert [r.message_id for r in rows] == [result.message_id]
    assert rows[0].is_low_quality is False

    assert await RedisProfileStore(redis_client).get_profile("u1") == {"name": "Ayse", "branch": "Kadikoy"}

    recall = await RedisRecallStore(redis_client).search("yazici", "u1", 5)
    assert len(recall) == 1
    assert recall[0].content.startswith("Soru: yazıcı kurulumu nasıl yapılır\nCevap: ")
    assert len(recall[0].content) <= 600


@pytest.mark.asyncio
async def test_context_blocks_reach_the_prompt(redis_client, scripted_generator, provider_config, knowledge_base):
    await RecallMemory(RedisRecallStore(redis_client)).save("u1", "s0", "yazici kurulumu konusuldu")
    await RedisProfileStore(redis_client).upsert_fact("u1", "name", "Ayse")
    await RedisGraphStore(redis_client).add_edge(
        GraphEdge(source_name="Yazici", relation="requires", target_name="Surucu", target_type="software")
    )
    generator = scripted_generator(
        {
            ANALYZE: analysis_reply(standalone="yazici kurulumu", requiresMemory=True, requiresGraph=True),
            RERANK: '[{"index": 0, "score": 0.9}]',
        },
        default=FINAL_REPLY,
    )
    pipeline = build_pipeline(generator, provider_config, redis_client)

    await pipeline.process(make_input("yazici kurulumu", knowledge_base))

    system_prompt = final_call(generator)["system_instruction"]
    assert "name: Ayse" in system_prompt
    assert "[summary] yazici kurulumu konusuldu" in system_prompt
    assert "Yazici --[requires]--> Surucu (software)" in system_prompt
    await pipeline.supervisor.drain()


@pytest.mark.asyncio
async def test_low_quality_streak_adds_handoff_notice(
    redis_client, scripted_generator, provider_config, knowledge_base
):
    store = RedisQualityStore(redis_client)
    generator = scripted_generator({ANALYZE: analysis_reply("simple", "greeting", "Merhaba")}, default="Merhaba")
    pipeline = build_pipeline(generator, provider_config, redis_client)

    await store.append(QualityScore(session_id="s1", message_id="m1", faithfulness=0.1, confidence=0.1,
                                    is_low_quality=True))
    await pipeline.process(make_input("Merhaba", knowledge_base))
    assert "DUSUK KALITE UYARISI" not in final_call(generator)["system_instruction"]
    await pipeline.supervisor.drain()

    await store.append(QualityScore(session_id="s1", message_id="m2", faithfulness=0.1, confidence=0.1,
                                    is_low_quality=True))
    await store.append(QualityScore(session_id="s1", message_id="m3", faithfulness=0.2, confidence=0.1,
                                    is_low_quality=True))
    await pipeline.process(make_input("Merhaba", knowledge_base))
    assert "DUSUK KALITE UYARISI" in final_call(generator)["system_instruction"]
    await pipeline.supervisor.drain()


@pytest.mark.asyncio
async def test_record_feedback(redis_client, scripted_generator, provider_config):
    reply = json.dumps({"topic": "yazici", "errorType": "wrong_info", "analysis": "Yanlis adim.",
                        "correctInfo": "Surucu gerekli."})
    generator = scripted_generator({REFLEXION: reply})
    pipeline = build_pipeline(generator, provider_config, redis_client)

    assert await pipeline.record_feedback("s1", "up", "soru", "cevap") is None
    task = await pipeline.record_feedback("s1", "down", "Yazici nasil kurulur?", "Kablo takin.")
    await pipeline.supervisor.drain()

    log = task.result()
    assert log.topic == "yazici"
    assert len(await RedisReflexionStore(redis_client).search_by_topic("yazici", 5)) == 1

    with pytest.raises(ValueError):
        await pipeline.record_feedback("s1", "meh", "soru", "cevap")


@pytest.mark.asyncio
async def test_failing_dependencies_still_produce_a_reply(scripted_generator, provider_config, knowledge_base):
    generator = scripted_generator({ANALYZE: RuntimeError("analyzer down"), RERANK: "bozuk"}, default=FINAL_REPLY)
    memory = AsyncMock()
    memory.load_context.side_effect = ConnectionError("redis down")
    scorer = AsyncMock()
    scorer.get_consecutive_low_count.side_effect = ConnectionError("redis down")
    pipeline = build_pipeline(generator, provider_config, memory_engine=memory, quality_scorer=scorer)

    result = await pipeline.process(make_input("yazici nasil kurulur", knowledge_base))
    await pipeline.supervisor.drain()

    assert result.route == "STANDARD"
    assert result.reply == FINAL_REPLY
    assert result.rag_results[0].question == "Yazici nasil kurulur?"
