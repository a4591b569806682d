"""
NLU Engine — LLM-powered intent detection, replies and order parsing.

Three operations back the dialogue router:
- detect_intent:     classify a message into an IntentType with entities
- generate_response: turn an intent plus domain context into a short reply
- parse_order:       extract (product name, quantity) pairs against the menu

Without an LLM client (no API key, provider error) every operation degrades
to keyword matching so the bot stays usable.
"""
from __future__ import annotations

import json
import re
import structlog
from typing import Any, Optional

from config.settings import LLMConfig, get_settings
from models.schemas import Intent, IntentEntities, IntentType, ParsedOrderItem, Product

logger = structlog.get_logger()


# ──────────────────────────────────────────────────────
#  Keyword fallback
# ──────────────────────────────────────────────────────

INTENT_KEYWORDS: dict[IntentType, list[str]] = {
    IntentType.GREETING: ["hello", "hi", "hey", "good morning", "good afternoon", "start", "hola"],
    IntentType.MENU: ["menu", "categories", "what do you have", "what do you sell", "options"],
    IntentType.ORDER: ["i want", "i'd like", "i would like", "order", "get me", "can i have", "buy"],
    IntentType.PRODUCT_INFO: ["what is", "tell me about", "how much", "price", "ingredients"],
    IntentType.HELP: ["help", "how does", "how do i", "support", "assist"],
    IntentType.CANCEL_ORDER: ["cancel", "nevermind", "never mind", "stop order"],
    IntentType.ORDER_STATUS: ["status", "where is my order", "track", "ready yet"],
}

_NUMBER_WORDS = {
    "a": 1, "an": 1, "one": 1, "two": 2, "three": 3, "four": 4, "five": 5,
    "six": 6, "seven": 7, "eight": 8, "nine": 9, "ten": 10,
}

FALLBACK_REPLIES: dict[IntentType, str] = {
    IntentType.GREETING: "Hi there! ☕ How can I help you today?",
    IntentType.MENU: "Here's what we have on the menu today.",
    IntentType.HELP: (
        "I can show you our menu, add items to your cart and place your order. "
        "Tap a button below or tell me what you'd like, e.g. \"2 lattes\"."
    ),
    IntentType.ORDER_STATUS: "Let me check on your order.",
    IntentType.UNKNOWN: "Sorry, I didn't quite get that. Could you rephrase, or pick an option below?",
}

APOLOGY = "I apologize, but I'm having trouble processing your request. Please try again later."


def classify_intent(message: str) -> Intent:
    """Classify a message by keyword hits. Longest matching keyword wins ties."""
    text = message.lower().strip()
    best: Optional[IntentType] = None
    best_score = (0, 0)

    for intent_type, keywords in INTENT_KEYWORDS.items():
        hits = [kw for kw in keywords if re.search(rf"\b{re.escape(kw)}\b", text)]
        if not hits:
            continue
        score = (len(hits), max(len(h) for h in hits))
        if score > best_score:
            best, best_score = intent_type, score

    if best is None:
        return Intent(type=IntentType.UNKNOWN, confidence=0.0)
    entities = extract_order_entities(text) if best == IntentType.ORDER else IntentEntities()
    return Intent(
        type=best,
        confidence=min(1.0, 0.4 + 0.2 * best_score[0]),
        entities=entities,
    )


def extract_order_entities(message: str) -> IntentEntities:
    """Pull "<quantity> <item>" phrases out of an order message."""
    entities = IntentEntities()
    words = "|".join(_NUMBER_WORDS)
    for chunk in re.split(r",|\band\b|\+", message.lower()):
        match = re.search(rf"\b(\d+|{words})\s+([a-z][a-z ]*[a-z])", chunk)
        if not match:
            continue
        raw_qty, item = match.groups()
        entities.products.append(item.strip())
        entities.quantities.append(int(raw_qty) if raw_qty.isdigit() else _NUMBER_WORDS[raw_qty])
    return entities


def match_products(message: str, products: list[Product]) -> list[ParsedOrderItem]:
    """
    Find catalog product names mentioned in a message with an optional
    leading quantity ("2 lattes", "a croissant", "espresso").
    """
    text = message.lower()
    items: list[ParsedOrderItem] = []
    for product in sorted(products, key=lambda p: len(p.name), reverse=True):
        name = re.escape(product.name.lower())
        match = re.search(rf"(?:\b(\d+|{'|'.join(_NUMBER_WORDS)})\s+)?\b{name}(?:e?s)?\b", text)
        if not match:
            continue
        raw_qty = match.group(1)
        if raw_qty is None:
            quantity = 1
        elif raw_qty.isdigit():
            quantity = max(1, int(raw_qty))
        else:
            quantity = _NUMBER_WORDS[raw_qty]
        items.append(ParsedOrderItem(product_name=product.name, quantity=quantity))
        # blank the span so "Iced Americano" does not also count as "Americano"
        text = text[:match.start()] + " " * (match.end() - match.start()) + text[match.end():]
    return items


def _strip_json(result: str) -> str:
    result = result.strip()
    if result.startswith("```"):
        result = result.split("```")[1].strip()
        if result.startswith("json"):
            result = result[4:].strip()
    return result


# ──────────────────────────────────────────────────────
#  NLU Engine
# ──────────────────────────────────────────────────────

class NLUEngine:
    """
    Natural-language understanding for the ordering conversation.
    Supports both OpenAI and Anthropic LLM providers.
    """

    def __init__(self, config: LLMConfig = None):
        self.config = config or get_settings().llm
        self._client = None
        self._provider = self.config.provider

    @property
    def is_openai(self) -> bool:
        return self._provider == "openai"

    @property
    def is_configured(self) -> bool:
        return bool(self.config.api_key)

    async def _get_client(self):
        if self._client is None and self.is_configured:
            try:
                if self.is_openai:
                    from openai import AsyncOpenAI
                    self._client = AsyncOpenAI(api_key=self.config.api_key)
                else:
                    import anthropic
                    self._client = anthropic.AsyncAnthropic(api_key=self.config.api_key)
                logger.info("llm_client_initialized", provider=self._provider,
                            model=self.config.model)
            except Exception as e:
                logger.error("llm_client_init_failed", provider=self._provider, error=str(e))
                self._client = None
        return self._client

    async def _call_llm(
        self,
        system: str,
        messages: list[dict[str, str]],
        max_tokens: int = None,
        temperature: float = None,
    ) -> str:
        """Unified LLM call that handles both Anthropic and OpenAI APIs."""
        client = await self._get_client()
        if not client:
            return ""

        max_tokens = max_tokens or self.config.max_tokens
        temperature = temperature if temperature is not None else self.config.temperature

        if self.is_openai:
            oai_messages = [{"role": "system", "content": system}] + messages
            response = await client.chat.completions.create(
                model=self.config.model,
                max_tokens=max_tokens,
                temperature=temperature,
                messages=oai_messages,
            )
            return response.choices[0].message.content or ""
        else:
            response = await client.messages.create(
                model=self.config.model,
                max_tokens=max_tokens,
                temperature=temperature,
                system=system,
                messages=messages,
            )
            return response.content[0].text

    # ── Intent detection ──────────────────────────────────────

    async def detect_intent(self, text: str, context_hint: str = "") -> Intent:
        """
        Classify a customer message.

        Args:
            text:         The customer's message
            context_hint: Current conversation state, passed to the model
        """
        system = """You are an assistant for a coffee shop. Analyze the customer's message and determine their intent.
Possible intents:
- greeting: customer is greeting or saying hello
- menu: customer wants to see the menu or categories
- order: customer wants to order specific products
- product_info: customer wants information about a product
- help: customer needs assistance
- cancel_order: customer wants to cancel an order
- order_status: customer wants to check an order's status
- unknown: cannot determine intent

Also extract entities: product names, quantities, category, order id.

Return ONLY valid JSON:
{"type": "...", "confidence": 0.0-1.0,
 "entities": {"products": [], "quantities": [], "category": null, "order_id": null}}"""

        try:
            result = await self._call_llm(
                system=system,
                messages=[{"role": "user", "content": (
                    f"Conversation state: {context_hint or 'unknown'}\n\n"
                    f"Customer message: {text}"
                )}],
                max_tokens=300,
                temperature=0.3,
            )
            if not result:
                return classify_intent(text)
            data = json.loads(_strip_json(result))
            entities = data.get("entities") or {}
            return Intent(
                type=IntentType(data.get("type", "unknown")),
                confidence=float(data.get("confidence", 0.0)),
                entities=IntentEntities(
                    products=[str(p) for p in entities.get("products") or []],
                    quantities=[int(q) for q in entities.get("quantities") or []],
                    category=entities.get("category"),
                    order_id=str(entities["order_id"]) if entities.get("order_id") else None,
                ),
            )
        except Exception as e:
            logger.error("intent_detection_failed", error=str(e))
            return Intent(type=IntentType.UNKNOWN, confidence=0.0)

    # ── Reply generation ──────────────────────────────────────

    async def generate_response(self, intent: Intent, domain_context: dict[str, Any] = None) -> str:
        """
        Generate a short conversational reply.

        domain_context may carry: categories, products, order_status, error.
        """
        domain_context = domain_context or {}
        prompt = f"Intent: {intent.type.value}\n"

        if intent.type == IntentType.GREETING:
            prompt += "Generate a friendly greeting and ask how you can help."
        elif intent.type == IntentType.MENU and domain_context.get("categories"):
            names = ", ".join(c.name for c in domain_context["categories"])
            prompt += f"List the available categories: {names}"
        elif intent.type == IntentType.PRODUCT_INFO and domain_context.get("products"):
            products = [p.model_dump() for p in domain_context["products"]]
            prompt += f"Provide information about these products: {json.dumps(products)}"
        elif intent.type == IntentType.HELP:
            prompt += "Explain how to browse the menu and place an order with this bot."
        elif intent.type == IntentType.ORDER_STATUS:
            prompt += f"Order status: {domain_context.get('order_status', 'unknown')}"
        elif intent.type == IntentType.UNKNOWN:
            prompt += "The message was not understood. Ask for clarification politely."

        if domain_context.get("error"):
            prompt += f"\nAn error occurred: {domain_context['error']}. Apologize without technical details."

        try:
            result = await self._call_llm(
                system=(
                    "You are a friendly coffee shop assistant on WhatsApp. "
                    "Keep replies to 1-3 short sentences. Use emojis sparingly."
                ),
                messages=[{"role": "user", "content": prompt}],
                max_tokens=150,
            )
            return result.strip() if result else self._fallback_response(intent)
        except Exception as e:
            logger.error("response_generation_failed", error=str(e))
            return APOLOGY

    # ── Order parsing ─────────────────────────────────────────

    async def parse_order(self, text: str, catalog: list[Product]) -> list[ParsedOrderItem]:
        """
        Resolve a free-text order into catalog product names and quantities.
        Names are returned exactly as they appear in the catalog.
        """
        if not catalog:
            return []

        menu = [{"id": p.id, "name": p.name, "price": p.price} for p in catalog]
        system = f"""You are parsing a coffee shop order. Extract the products and quantities from the customer's message.

Available products:
{json.dumps(menu, indent=2)}

Match the customer's words to the closest product and use the product name EXACTLY as listed.
Return ONLY valid JSON: {{"items": [{{"product_name": "...", "quantity": 1}}]}}"""

        try:
            result = await self._call_llm(
                system=system,
                messages=[{"role": "user", "content": text}],
                max_tokens=300,
                temperature=0.2,
            )
            if not result:
                return match_products(text, catalog)
            data = json.loads(_strip_json(result))
            return [
                ParsedOrderItem(
                    product_name=str(item.get("product_name") or item.get("productName", "")),
                    quantity=max(1, int(item.get("quantity", 1))),
                )
                for item in data.get("items", [])
                if item.get("product_name") or item.get("productName")
            ]
        except Exception as e:
            logger.error("order_parsing_failed", error=str(e))
            return []

    def _fallback_response(self, intent: Intent) -> str:
        return FALLBACK_REPLIES.get(intent.type, FALLBACK_REPLIES[IntentType.UNKNOWN])
