"""
Tests for the query analyzer.

Tests verify:
- Route determinism from (complexity, intent)
- Field-by-field validation with safe defaults
- Complete fallback on generation or parse failure
- History window sent to the model
"""

import json

import pytest

from assistant.schemas.pipeline_state import determine_route
from assistant.tools.query_analyzer import QueryAnalyzer, fallback_analysis, validate_analysis
from libs.llm.generation import ChatMessage


@pytest.mark.parametrize(
    "complexity,intent,expected",
    [
        ("simple", "greeting", "FAST"),
        ("simple", "chitchat", "FAST"),
        ("simple", "faq", "STANDARD"),
        ("medium", "greeting", "STANDARD"),
        ("complex", "greeting", "DEEP"),
        ("complex", "complaint", "DEEP"),
    ],
)
def test_determine_route(complexity, intent, expected):
    assert determine_route(complexity, intent) == expected


def test_validate_analysis_defaults_invalid_fields():
    analysis = validate_analysis(
        {
            "complexity": "extreme",
            "intent": "shopping",
            "subQueries": ["  ", "birinci soru", 42],
            "requiresMemory": "yes",
            "requiresGraph": True,
            "standaloneQuery": "",
        },
        "orijinal mesaj",
    )

    assert analysis.complexity == "medium"
    assert analysis.intent == "product_support"
    assert analysis.sub_queries == ["birinci soru"]
    assert analysis.requires_memory is False
    assert analysis.requires_graph is True
    assert analysis.standalone_query == "orijinal mesaj"
    assert analysis.route == "STANDARD"


def test_fallback_analysis():
    analysis = fallback_analysis("Kargom nerede?")
    assert analysis.route == "STANDARD"
    assert analysis.standalone_query == "Kargom nerede?"
    assert analysis.sub_queries == []


@pytest.mark.asyncio
async def test_greeting_routes_fast(scripted_generator, provider_config):
    reply = json.dumps({"complexity": "simple", "intent": "greeting", "subQueries": [],
                        "requiresMemory": False, "requiresGraph": False, "standaloneQuery": "Merhaba"})
    analyzer = QueryAnalyzer(scripted_generator(default=reply), provider_config)

    analysis = await analyzer.analyze("Merhaba")

    assert analysis.route == "FAST"
    assert analysis.intent == "greeting"


@pytest.mark.asyncio
async def test_complex_question_routes_deep_with_fenced_reply(scripted_generator, provider_config):
    payload = {"complexity": "complex", "intent": "faq",
               "subQueries": ["X yazicisinin fiyati", "Y yazicisinin fiyati"],
               "requiresMemory": False, "requiresGraph": True,
               "standaloneQuery": "X ve Y yazicilarini karsilastir"}
    reply = "```json\n" + json.dumps(payload) + "\n```"
    analyzer = QueryAnalyzer(scripted_generator(default=reply), provider_config)

    analysis = await analyzer.analyze("X ile Y'yi karsilastirir misin?")

    assert analysis.route == "DEEP"
    assert analysis.sub_queries == payload["subQueries"]
    assert analysis.requires_graph is True


@pytest.mark.asyncio
@pytest.mark.parametrize("reply", ["", "bu json degil", "[1, 2, 3]", RuntimeError("provider down")])
async def test_failures_yield_fallback(scripted_generator, provider_config, reply):
    analyzer = QueryAnalyzer(scripted_generator(default=reply), provider_config)

    analysis = await analyzer.analyze("Yazicim calismiyor")

    assert analysis == fallback_analysis("Yazicim calismiyor")


@pytest.mark.asyncio
async def test_history_window_is_six_turns(scripted_generator, provider_config):
    generator = scripted_generator(default="{}")
    analyzer = QueryAnalyzer(generator, provider_config)
    history = [ChatMessage(role="user" if i % 2 == 0 else "assistant", content=f"tur {i}") for i in range(10)]

    await analyzer.analyze("Bunu nasil yaparim?", history)

    sent = generator.calls[0]["messages"]
    assert [m.content for m in sent] == ["tur 4", "tur 5", "tur 6", "tur 7", "tur 8", "tur 9", "Bunu nasil yaparim?"]
