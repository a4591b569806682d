"""Shared test fixtures for the coffee order agent."""
import pytest
import pytest_asyncio
from datetime import timedelta
from typing import Any

from backend.connector import MockCatalogConnector
from channels.base import ChannelError, MessagingChannel
from config.settings import LLMConfig, SpeechConfig
from context.cart import Cart
from context.state_machine import (
    ActionResult, CheckoutActions, CollectedInfo, ConversationMachine,
)
from core.engine import NLUEngine
from core.router import DialogueRouter, build_session_store
from models.schemas import (
    ButtonOption, Customer, InboundMessage, ListSection, MessageKind, Order, Product,
)
from voice.speech import SpeechService


# ── Catalog ───────────────────────────────────────────

@pytest.fixture
def latte() -> Product:
    return Product(id=12, name="Latte", price=4.00, category_id=1)


@pytest.fixture
def croissant() -> Product:
    return Product(id=30, name="Croissant", price=2.95, category_id=3)


@pytest.fixture
def customer() -> Customer:
    return Customer(id=7, first_name="Jane", last_name="Doe",
                    email="jane@example.com", phone="15550001111")


# ── Recording collaborators ───────────────────────────

class FakeChannel(MessagingChannel):
    """Records every outbound call instead of talking to WhatsApp."""

    channel_name = "fake"

    def __init__(self):
        super().__init__()
        self.sent: list[tuple[str, str, Any]] = []
        self.media: dict[str, tuple[bytes, str]] = {}
        self.fail_audio = False

    async def send_text(self, to: str, text: str) -> dict[str, Any]:
        self.sent.append(("text", to, text))
        return {"status": "sent"}

    async def send_buttons(self, to, body, buttons: list[ButtonOption], header=None, footer=None):
        self.sent.append(("buttons", to, {"body": body, "ids": [b.id for b in buttons]}))
        return {"status": "sent"}

    async def send_list(self, to, body, sections: list[ListSection], button_label, header=None, footer=None):
        ids = [row.id for section in sections for row in section.rows]
        self.sent.append(("list", to, {"body": body, "ids": ids}))
        return {"status": "sent"}

    async def send_audio(self, to: str, audio_path: str) -> dict[str, Any]:
        if self.fail_audio:
            raise ChannelError("upload failed", self.channel_name)
        self.sent.append(("audio", to, audio_path))
        return {"status": "sent"}

    async def download_media(self, media_id: str) -> tuple[bytes, str]:
        if media_id not in self.media:
            raise ChannelError(f"unknown media {media_id}", self.channel_name)
        return self.media[media_id]

    # ── Assertion helpers ─────────────────────────────

    def texts(self) -> list[str]:
        return [payload for kind, _, payload in self.sent if kind == "text"]

    def bodies(self) -> list[str]:
        return [payload["body"] for kind, _, payload in self.sent if kind in ("buttons", "list")]

    def last(self, kind: str) -> Any:
        return next(payload for k, _, payload in reversed(self.sent) if k == kind)

    def clear(self):
        self.sent.clear()


class StubActions(CheckoutActions):
    """Checkout actions with scripted outcomes."""

    def __init__(self, customer: Customer = None, order: Order = None):
        self.customer_result = ActionResult.success(customer) if customer else ActionResult.failure("no customer")
        self.order_result = ActionResult.success(order) if order else ActionResult.failure("no order")
        self.customer_calls: list[tuple[str, CollectedInfo]] = []
        self.order_calls: list[tuple[Customer, list[dict[str, int]]]] = []

    async def create_customer(self, phone: str, info: CollectedInfo) -> ActionResult:
        self.customer_calls.append((phone, CollectedInfo(info.first_name, info.last_name, info.email)))
        return self.customer_result

    async def place_order(self, customer: Customer, cart: Cart) -> ActionResult:
        self.order_calls.append((customer, cart.to_order_items()))
        return self.order_result


@pytest.fixture
def stub_actions(customer) -> StubActions:
    return StubActions(
        customer=customer,
        order=Order(id=1001, order_number="ORD-1001", total_amount=10.95, customer_id=customer.id),
    )


@pytest.fixture
def machine(stub_actions) -> ConversationMachine:
    return ConversationMachine("15550001111", stub_actions)


# ── Router wiring ─────────────────────────────────────

@pytest.fixture
def backend() -> MockCatalogConnector:
    return MockCatalogConnector()


@pytest.fixture
def channel() -> FakeChannel:
    return FakeChannel()


@pytest.fixture
def nlu() -> NLUEngine:
    # no API key: keyword classification and catalog matching
    return NLUEngine(LLMConfig(api_key=""))


@pytest.fixture
def speech(tmp_path) -> SpeechService:
    return SpeechService(SpeechConfig(api_key="", temp_dir=str(tmp_path)))


@pytest.fixture
def sessions(backend):
    return build_session_store(backend, idle_timeout=timedelta(minutes=30))


@pytest_asyncio.fixture
async def router(sessions, channel, backend, nlu, speech):
    yield DialogueRouter(sessions, channel, backend, nlu, speech)
    await backend.close()


def text_message(body: str, sender: str = "15550001111", message_id: str = "") -> InboundMessage:
    return InboundMessage(sender_key=sender, message_id=message_id, kind=MessageKind.TEXT, body=body)


def button_reply(reply_id: str, sender: str = "15550001111") -> InboundMessage:
    return InboundMessage(sender_key=sender, kind=MessageKind.INTERACTIVE, body=reply_id)
