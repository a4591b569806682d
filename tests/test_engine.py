"""Tests for NLUEngine — keyword fallback, catalog matching and LLM JSON handling."""
import pytest
from unittest.mock import AsyncMock

from config.settings import LLMConfig
from core.engine import (
    APOLOGY, FALLBACK_REPLIES, NLUEngine, classify_intent, extract_order_entities, match_products,
)
from models.schemas import Intent, IntentType, Product

CATALOG = [
    Product(id=10, name="Espresso", price=2.50, category_id=1),
    Product(id=12, name="Latte", price=4.00, category_id=1),
    Product(id=20, name="Iced Americano", price=3.25, category_id=2),
    Product(id=22, name="Americano", price=3.00, category_id=1),
    Product(id=31, name="Blueberry Muffin", price=3.10, category_id=3),
]


@pytest.fixture
def llm_engine() -> NLUEngine:
    engine = NLUEngine(LLMConfig(provider="openai", api_key="sk-test"))
    engine._call_llm = AsyncMock()
    return engine


class TestKeywordClassification:
    @pytest.mark.parametrize("text,expected", [
        ("Hello!", IntentType.GREETING),
        ("can I see the menu", IntentType.MENU),
        ("I'd like 2 lattes", IntentType.ORDER),
        ("how much is a cold brew", IntentType.PRODUCT_INFO),
        ("help", IntentType.HELP),
        ("cancel", IntentType.CANCEL_ORDER),
        ("where is my order", IntentType.ORDER_STATUS),
        ("blorp", IntentType.UNKNOWN),
    ])
    def test_classify(self, text, expected):
        assert classify_intent(text).type == expected

    def test_keywords_match_whole_words(self):
        # "this" contains "hi" but is not a greeting
        assert classify_intent("this").type == IntentType.UNKNOWN

    def test_order_entities(self):
        entities = extract_order_entities("i want 2 lattes, a croissant and three espressos")
        assert entities.products == ["lattes", "croissant", "espressos"]
        assert entities.quantities == [2, 1, 3]

    def test_order_intent_carries_entities(self):
        intent = classify_intent("I'd like 2 lattes")
        assert intent.has_products
        assert intent.entities.quantities == [2]


class TestCatalogMatching:
    def test_quantities_and_plurals(self):
        items = match_products("2 lattes and an espresso please", CATALOG)
        assert {(i.product_name, i.quantity) for i in items} == {("Latte", 2), ("Espresso", 1)}

    def test_longest_name_wins(self):
        items = match_products("one iced americano", CATALOG)
        assert [(i.product_name, i.quantity) for i in items] == [("Iced Americano", 1)]

    def test_no_match(self):
        assert match_products("a unicorn frappe", CATALOG) == []


class TestWithoutLLM:
    @pytest.mark.asyncio
    async def test_detect_intent_falls_back_to_keywords(self, nlu):
        intent = await nlu.detect_intent("show me the menu")
        assert intent.type == IntentType.MENU

    @pytest.mark.asyncio
    async def test_generate_response_uses_canned_reply(self, nlu):
        reply = await nlu.generate_response(Intent(type=IntentType.HELP))
        assert reply == FALLBACK_REPLIES[IntentType.HELP]

    @pytest.mark.asyncio
    async def test_unmapped_intent_uses_unknown_reply(self, nlu):
        reply = await nlu.generate_response(Intent(type=IntentType.CANCEL_ORDER))
        assert reply == FALLBACK_REPLIES[IntentType.UNKNOWN]

    @pytest.mark.asyncio
    async def test_parse_order_matches_catalog(self, nlu):
        items = await nlu.parse_order("3 blueberry muffins", CATALOG)
        assert [(i.product_name, i.quantity) for i in items] == [("Blueberry Muffin", 3)]

    @pytest.mark.asyncio
    async def test_parse_order_with_empty_catalog(self, nlu):
        assert await nlu.parse_order("2 lattes", []) == []


class TestWithLLM:
    @pytest.mark.asyncio
    async def test_detect_intent_parses_json(self, llm_engine):
        llm_engine._call_llm.return_value = (
            '```json\n{"type": "order", "confidence": 0.92, '
            '"entities": {"products": ["latte"], "quantities": [2], "category": null, "order_id": null}}\n```'
        )
        intent = await llm_engine.detect_intent("two lattes", context_hint="greeting")

        assert intent.type == IntentType.ORDER
        assert intent.confidence == 0.92
        assert intent.entities.products == ["latte"]
        prompt = llm_engine._call_llm.call_args.kwargs["messages"][0]["content"]
        assert "Conversation state: greeting" in prompt

    @pytest.mark.asyncio
    async def test_detect_intent_bad_json_is_unknown(self, llm_engine):
        llm_engine._call_llm.return_value = "not json"
        intent = await llm_engine.detect_intent("hmm")
        assert intent.type == IntentType.UNKNOWN
        assert intent.confidence == 0.0

    @pytest.mark.asyncio
    async def test_generate_response(self, llm_engine):
        llm_engine._call_llm.return_value = "  Hi there! ☕  "
        assert await llm_engine.generate_response(Intent(type=IntentType.GREETING)) == "Hi there! ☕"

    @pytest.mark.asyncio
    async def test_generate_response_error_apologizes(self, llm_engine):
        llm_engine._call_llm.side_effect = RuntimeError("rate limited")
        assert await llm_engine.generate_response(Intent(type=IntentType.GREETING)) == APOLOGY

    @pytest.mark.asyncio
    async def test_parse_order_json(self, llm_engine):
        llm_engine._call_llm.return_value = (
            '{"items": [{"product_name": "Latte", "quantity": 2}, {"productName": "Espresso"}, {"quantity": 4}]}'
        )
        items = await llm_engine.parse_order("two lattes and an espresso", CATALOG)
        assert [(i.product_name, i.quantity) for i in items] == [("Latte", 2), ("Espresso", 1)]

    @pytest.mark.asyncio
    async def test_parse_order_error_returns_nothing(self, llm_engine):
        llm_engine._call_llm.side_effect = RuntimeError("down")
        assert await llm_engine.parse_order("two lattes", CATALOG) == []
