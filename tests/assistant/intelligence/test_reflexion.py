"""
Tests for the reflexion engine.

Tests verify:
- Lessons are stored with a validated error type
- Analysis failures drop the event
- Warnings search by topic and query, dedup, cap and render
"""

import json

import pytest

from assistant.intelligence.reflexion import ReflexionEngine
from assistant.schemas.pipeline_state import CandidateResult
from libs.models.records import ReflexionLog
from libs.stores import RedisReflexionStore


@pytest.mark.asyncio
async def test_analyze_records_lesson(redis_client, scripted_generator, provider_config):
    reply = json.dumps({"topic": "yazici kurulumu", "errorType": "wrong_info",
                        "analysis": "Surucu adimi atlandi.", "correctInfo": "Once surucuyu yukleyin."})
    generator = scripted_generator(default=reply)
    engine = ReflexionEngine(generator, provider_config, RedisReflexionStore(redis_client))

    log = await engine.analyze("s1", "Yazici nasil kurulur?", "Kablo takin.",
                               [CandidateResult(question="q", answer="Surucu yukleyin")])

    assert log.id == "rx-1"
    assert log.error_type == "wrong_info"
    assert log.original_query == "Yazici nasil kurulur?"
    assert log.wrong_answer == "Kablo takin."
    assert "Surucu yukleyin" in generator.calls[0]["messages"][0].content


@pytest.mark.asyncio
async def test_unknown_error_type_defaults_to_incomplete(redis_client, scripted_generator, provider_config):
    reply = json.dumps({"topic": "fatura", "errorType": "rude", "analysis": "Eksik."})
    engine = ReflexionEngine(scripted_generator(default=reply), provider_config, RedisReflexionStore(redis_client))

    log = await engine.analyze("s1", "q", "a")

    assert log.error_type == "incomplete"
    assert log.correct_info == ""


@pytest.mark.asyncio
@pytest.mark.parametrize("reply", ["bozuk", "[]", RuntimeError("down")])
async def test_analysis_failure_drops_event(redis_client, scripted_generator, provider_config, reply):
    store = RedisReflexionStore(redis_client)
    engine = ReflexionEngine(scripted_generator(default=reply), provider_config, store)

    assert await engine.analyze("s1", "q", "a") is None
    assert await store.search_by_topic("q", 5) == []


@pytest.mark.asyncio
async def test_get_warnings_renders_blocks(redis_client, scripted_generator, provider_config):
    store = RedisReflexionStore(redis_client)
    await store.append(ReflexionLog(session_id="s1", topic="product_support", analysis="Yanlis model onerildi.",
                                    correct_info="Dogru model X100."))
    await store.append(ReflexionLog(session_id="s1", topic="yazici", analysis="Adimlar eksikti."))
    engine = ReflexionEngine(scripted_generator(), provider_config, store)

    warnings = await engine.get_warnings("product_support", standalone_query="yazici kurulumu")

    assert warnings.startswith("--- GECMIS HATALAR ---\n")
    assert "DIKKAT: Yanlis model onerildi.\nDogru bilgi: Dogru model X100." in warnings
    assert "DIKKAT: Adimlar eksikti." in warnings
    assert warnings.endswith("\n---")


@pytest.mark.asyncio
async def test_get_warnings_dedups_and_caps(redis_client, scripted_generator, provider_config):
    store = RedisReflexionStore(redis_client)
    for i in range(4):
        await store.append(ReflexionLog(session_id="s1", topic="yazici", analysis=f"ders {i}"))
    engine = ReflexionEngine(scripted_generator(), provider_config, store)

    warnings = await engine.get_warnings("yazici", standalone_query="yazici nasil kurulur", limit=3)

    assert warnings.count("DIKKAT:") == 3
    assert await engine.get_warnings("kargo") == ""
