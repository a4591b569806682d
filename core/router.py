"""
Dialogue Router — turns each inbound message into machine events and replies.

Flow:
  InboundMessage
    → session acquired for the sender (per-key lock held until done)
    → voice notes transcribed, unsupported kinds answered politely
    → global commands ("reset"/"start over", "speak"/"audio response")
    → turn resolved: button/list ids are used as-is, free text goes to NLU
    → handler for the machine's current leaf state sends events and replies

`handle_message` is the error boundary for a message: collaborator failures
become plain-language apologies and never reach the webhook.
"""
from __future__ import annotations

import re
import structlog
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Awaitable, Callable, Optional

from backend.connector import BackendError, CatalogBackend
from channels.base import ChannelError, MessagingChannel
from context.cart import Cart
from context.session import DEFAULT_IDLE_TIMEOUT, Session, SessionStore
from context.state_machine import (
    ActionResult, CheckoutActions, CollectedInfo, ConversationMachine,
    ConversationState, EventSink, EventType, MachineEvent, log_transition,
)
from core.engine import NLUEngine
from models.schemas import (
    ButtonOption, Customer, InboundMessage, Intent, IntentType,
    ListRow, ListSection, MessageKind, Product,
)
from voice.speech import SpeechError, SpeechService

logger = structlog.get_logger()

S = ConversationState
E = EventType


# ──────────────────────────────────────────────────────────────
#  Interactive ids
# ──────────────────────────────────────────────────────────────

START = "start"
VIEW_MENU = "view_menu"
VIEW_PROMOTIONS = "view_promotions"
VIEW_CART = "view_cart"
AUDIO_MODE = "audio_mode"
BACK = "back"
MAIN_MENU = "main_menu"
BACK_TO_MENU = "back_to_menu"
CHECKOUT = "checkout"
CLEAR_CART = "clear_cart"
CONFIRM_ORDER = "confirm_order"
CANCEL_ORDER = "cancel_order"
NEW_ORDER = "new_order"
ORDER_STATUS = "order_status"
HELP = "help"

CATEGORY_PREFIX = "category_"
PRODUCT_PREFIX = "product_"

COMMANDS = {
    START, VIEW_MENU, VIEW_PROMOTIONS, VIEW_CART, AUDIO_MODE, BACK, MAIN_MENU,
    BACK_TO_MENU, CHECKOUT, CLEAR_CART, CONFIRM_ORDER, CANCEL_ORDER, NEW_ORDER,
    ORDER_STATUS, HELP,
}
_PREFIXED_COMMAND = re.compile(rf"^(?:{CATEGORY_PREFIX}|{PRODUCT_PREFIX})\d+$")
_EMAIL = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")

RESET_PHRASES = ("reset", "start over")
SPEAK_PHRASES = ("speak", "audio response")
DISABLE_AUDIO_PHRASES = ("disable audio", "stop audio")


# ──────────────────────────────────────────────────────────────
#  Reply texts
# ──────────────────────────────────────────────────────────────

WELCOME = "☕ Welcome to Coffee Shop! I'm here to help you place your order.\n\nHow can I assist you today?"
RESTART = "🔄 Starting over! How can I help you today?"
APOLOGY = "I apologize, but I encountered an error processing your message. Please try again later. 🙏"
UNSUPPORTED = "Sorry, I can only process text and voice messages at the moment. 😊"
PROCESSING_VOICE = "🎵 Processing your voice message..."
VOICE_FAILED = "Sorry, I couldn't process your voice message. Could you type it instead?"
ORDER_NOT_UNDERSTOOD = (
    "I couldn't understand your order. "
    "Could you please be more specific about what you'd like to order?"
)
ORDER_PARSE_FAILED = "Sorry, I had trouble processing your order. Please try selecting items from the menu."
ASK_FIRST_NAME = "I need a few details to complete your order.\n\nWhat's your first name?"
INVALID_EMAIL = "Please provide a valid email address."
CUSTOMER_FAILED = (
    "Sorry, I couldn't create your customer profile right now. "
    "Please send your email address again to retry."
)
ORDER_FAILED = (
    "Sorry, we couldn't place your order right now. "
    "Your cart is saved, so you can try confirming again."
)
CHECKOUT_CANCELLED = "Order cancelled. Your cart has been saved."
CART_EMPTY = "🛒 Your cart is empty. Would you like to browse our menu?"
CART_CLEARED = "🗑️ Cart cleared!"


# ──────────────────────────────────────────────────────────────
#  Checkout actions backed by the catalog API
# ──────────────────────────────────────────────────────────────

class BackendCheckoutActions(CheckoutActions):
    """Creates customers and orders through the backend, reporting failures as results."""

    def __init__(self, backend: CatalogBackend):
        self.backend = backend

    async def create_customer(self, phone: str, info: CollectedInfo) -> ActionResult:
        try:
            customer = await self.backend.create_customer({
                "email": info.email,
                "first_name": info.first_name,
                "last_name": info.last_name,
                "phone": phone,
            })
        except (BackendError, ValueError) as e:
            logger.error("create_customer_failed", phone=phone, error=str(e))
            return ActionResult.failure(str(e))
        return ActionResult.success(customer)

    async def place_order(self, customer: Optional[Customer], cart: Cart) -> ActionResult:
        if customer is None:
            return ActionResult.failure("no customer for order")
        if cart.is_empty:
            return ActionResult.failure("cart is empty")
        try:
            order = await self.backend.create_order({
                "customer_id": customer.id,
                "items": cart.to_order_items(),
            })
        except (BackendError, ValueError) as e:
            logger.error("place_order_failed", customer_id=customer.id, error=str(e))
            return ActionResult.failure(str(e))
        logger.info("order_placed",
                    customer_id=customer.id,
                    order_id=order.id,
                    order_number=order.order_number)
        return ActionResult.success(order)


def build_session_store(
    backend: CatalogBackend,
    idle_timeout: timedelta = DEFAULT_IDLE_TIMEOUT,
    on_transition: Optional[EventSink] = log_transition,
) -> SessionStore:
    """Session store whose machines place customers and orders through `backend`."""
    actions = BackendCheckoutActions(backend)
    return SessionStore(
        machine_factory=lambda key: ConversationMachine(key, actions, on_transition=on_transition),
        idle_timeout=idle_timeout,
    )


# ──────────────────────────────────────────────────────────────
#  Turn
# ──────────────────────────────────────────────────────────────

@dataclass
class Turn:
    """One resolved customer input."""
    text: str
    intent: Intent
    command: str = ""                     # button/list id, or a typed command id

    def is_(self, *commands: str) -> bool:
        return self.command in commands

    def wants(self, intent_type: IntentType) -> bool:
        return not self.command and self.intent.type == intent_type

    @property
    def is_natural_order(self) -> bool:
        return self.wants(IntentType.ORDER) and self.intent.has_products

    def prefixed_id(self, prefix: str) -> Optional[int]:
        if self.command.startswith(prefix):
            try:
                return int(self.command[len(prefix):])
            except ValueError:
                return None
        return None


Handler = Callable[[Session, Turn], Awaitable[None]]


# ──────────────────────────────────────────────────────────────
#  Dialogue Router
# ──────────────────────────────────────────────────────────────

class DialogueRouter:
    """
    Per-state conversation policy.

    Each handler sends the machine event(s) for the customer's input and
    the matching replies. Failures inside the machine's checkout steps are
    read back from the landing state and `context.last_error`.
    """

    def __init__(
        self,
        sessions: SessionStore,
        channel: MessagingChannel,
        backend: CatalogBackend,
        nlu: NLUEngine,
        speech: SpeechService,
        currency_symbol: str = "$",
    ):
        self.sessions = sessions
        self.channel = channel
        self.backend = backend
        self.nlu = nlu
        self.speech = speech
        self.currency = currency_symbol

        self._handlers: dict[ConversationState, Handler] = {
            S.IDLE: self._handle_idle,
            S.GREETING: self._handle_greeting,
            S.VIEWING_MENU: self._handle_viewing_menu,
            S.SELECTING_PRODUCTS: self._handle_selecting_products,
            S.REVIEWING_CART: self._handle_reviewing_cart,
            S.COLLECTING_NAME: self._handle_collecting_name,
            S.COLLECTING_EMAIL: self._handle_collecting_email,
            S.CONFIRMING_ORDER: self._handle_confirming_order,
            S.ORDER_COMPLETED: self._handle_order_completed,
        }

    # ══════════════════════════════════════════════════════════
    #  ENTRY POINT
    # ══════════════════════════════════════════════════════════

    async def handle_message(self, message: InboundMessage) -> dict[str, Any]:
        """Process one inbound message to completion. Never raises."""
        to = message.sender_key
        async with self.sessions.session(to) as session:
            try:
                await self._process(session, message)
                return {"status": "processed", "state": session.state.value}
            except Exception as e:
                logger.error("message_processing_failed",
                             customer_key=to,
                             message_id=message.message_id,
                             machine=session.machine.snapshot(),
                             error=str(e),
                             exc_info=True)
                await self._send_quietly(to, APOLOGY)
                return {"status": "error", "state": session.state.value}

    async def _process(self, session: Session, message: InboundMessage):
        to = session.customer_key

        if message.kind == MessageKind.AUDIO:
            await self.channel.send_text(to, PROCESSING_VOICE)
            text = await self._transcribe(message)
            if not text:
                await self.channel.send_text(to, VOICE_FAILED)
                return
        elif message.kind in (MessageKind.TEXT, MessageKind.INTERACTIVE):
            text = message.body.strip()
        else:
            await self.channel.send_text(to, UNSUPPORTED)
            return

        if not text:
            await self._show_main_menu(to)
            return

        await self._route(session, text, interactive=message.kind == MessageKind.INTERACTIVE)

    async def _transcribe(self, message: InboundMessage) -> str:
        try:
            audio, mime_type = await self.channel.download_media(message.media_id)
            return await self.speech.transcribe(audio, message.mime_type or mime_type)
        except (ChannelError, SpeechError) as e:
            logger.warning("voice_message_failed",
                           customer_key=message.sender_key,
                           media_id=message.media_id,
                           error=str(e))
            return ""

    async def _route(self, session: Session, text: str, interactive: bool = False):
        to = session.customer_key
        lowered = text.lower()

        if lowered in RESET_PHRASES:
            await session.machine.send(MachineEvent(E.RESET))
            await self.sessions.reset(to)
            await self.channel.send_text(to, RESTART)
            await self._show_main_menu(to)
            return

        turn = await self._resolve_turn(session, text, interactive)

        if not turn.command and session.state not in (S.COLLECTING_NAME, S.COLLECTING_EMAIL):
            if any(p in lowered for p in DISABLE_AUDIO_PHRASES):
                await self.sessions.update(to, audio_mode=False)
                await self.channel.send_text(to, "🔇 Audio mode is off. I'll reply with text only.")
                return
            if any(p in lowered for p in SPEAK_PHRASES):
                reply = await self.nlu.generate_response(turn.intent, {})
                await self._speak(to, reply)
                return

        handler = self._handlers.get(session.state, self._handle_default)
        logger.info("routing_message",
                    customer_key=to,
                    state=session.state.value,
                    command=turn.command or None,
                    intent=turn.intent.type.value)
        await handler(session, turn)

    async def _resolve_turn(self, session: Session, text: str, interactive: bool) -> Turn:
        lowered = text.lower()
        if interactive:
            return Turn(text=text, intent=Intent(), command=text)
        if lowered in COMMANDS or _PREFIXED_COMMAND.match(lowered):
            return Turn(text=text, intent=Intent(), command=lowered)
        # collected data is not an intent
        if session.state in (S.COLLECTING_NAME, S.COLLECTING_EMAIL):
            return Turn(text=text, intent=Intent())
        intent = await self.nlu.detect_intent(text, context_hint=session.state.value)
        return Turn(text=text, intent=intent)

    # ══════════════════════════════════════════════════════════
    #  STATE HANDLERS
    # ══════════════════════════════════════════════════════════

    async def _handle_idle(self, session: Session, turn: Turn):
        machine, to = session.machine, session.customer_key

        if turn.is_(START) or turn.wants(IntentType.GREETING):
            await machine.send(MachineEvent(E.START))
            await self._welcome(session)

        elif turn.is_(VIEW_MENU) or turn.wants(IntentType.MENU):
            await machine.send(MachineEvent(E.VIEW_MENU))
            await self._show_categories(to)

        elif (turn.is_(VIEW_PROMOTIONS, VIEW_CART, AUDIO_MODE)
              or turn.prefixed_id(PRODUCT_PREFIX) is not None
              or turn.is_natural_order):
            # buttons from an expired conversation, or an order as the first message
            await machine.send(MachineEvent(E.START))
            await self._handle_greeting(session, turn)

        else:
            await self._handle_default(session, turn)

    async def _handle_greeting(self, session: Session, turn: Turn):
        machine, to = session.machine, session.customer_key

        if turn.is_(VIEW_MENU) or turn.wants(IntentType.MENU):
            await machine.send(MachineEvent(E.VIEW_MENU))
            await self._show_categories(to)
        elif turn.is_(VIEW_PROMOTIONS):
            await self._show_promotions(to)
        elif turn.is_(VIEW_CART):
            await self._show_cart(session)
        elif turn.is_(AUDIO_MODE):
            await self._toggle_audio_mode(session)
        elif turn.prefixed_id(PRODUCT_PREFIX) is not None:
            await self._add_product(session, turn.prefixed_id(PRODUCT_PREFIX))
        elif turn.is_natural_order:
            await self._process_natural_order(session, turn)
        elif turn.is_(HELP) or turn.wants(IntentType.HELP):
            await self._reply_with_nlu(session, Intent(type=IntentType.HELP))
            await self._show_main_menu(to)
        else:
            await self._show_main_menu(to)

    async def _handle_viewing_menu(self, session: Session, turn: Turn):
        machine, to = session.machine, session.customer_key

        category_id = turn.prefixed_id(CATEGORY_PREFIX)
        product_id = turn.prefixed_id(PRODUCT_PREFIX)

        if category_id is not None:
            await machine.send(MachineEvent(E.SELECT_CATEGORY, category_id=category_id))
            await self._show_products(to, category_id)
        elif product_id is not None:
            # picked from the promotions list: enter its category, then add
            product = await self._fetch_product(to, product_id)
            if product:
                await machine.send(MachineEvent(E.SELECT_CATEGORY, category_id=product.category_id))
                await self._add_product(session, product_id, product=product)
        elif turn.is_(VIEW_CART):
            await self._show_cart(session)
        elif turn.is_(BACK, MAIN_MENU):
            await machine.send(MachineEvent(E.BACK))
            await self._show_main_menu(to)
        elif turn.is_(VIEW_PROMOTIONS):
            await self._show_promotions(to)
        else:
            await self._show_categories(to)

    async def _handle_selecting_products(self, session: Session, turn: Turn):
        machine, to = session.machine, session.customer_key

        product_id = turn.prefixed_id(PRODUCT_PREFIX)
        category_id = turn.prefixed_id(CATEGORY_PREFIX)

        if product_id is not None:
            await self._add_product(session, product_id)
        elif turn.is_(VIEW_CART):
            await self._show_cart(session)
        elif turn.is_(BACK_TO_MENU, VIEW_MENU, BACK) or turn.wants(IntentType.MENU):
            await machine.send(MachineEvent(E.VIEW_MENU))
            await self._show_categories(to)
        elif category_id is not None:
            await machine.send(MachineEvent(E.VIEW_MENU))
            await machine.send(MachineEvent(E.SELECT_CATEGORY, category_id=category_id))
            await self._show_products(to, category_id)
        elif turn.is_(CHECKOUT):
            await self._begin_checkout(session)
        elif turn.is_natural_order:
            await self._process_natural_order(session, turn)
        elif session.context.selected_category:
            await self._show_products(to, session.context.selected_category)
        else:
            await self._show_categories(to)

    async def _handle_reviewing_cart(self, session: Session, turn: Turn):
        machine, to = session.machine, session.customer_key

        if turn.is_(CHECKOUT):
            await self._begin_checkout(session)
        elif turn.is_(BACK_TO_MENU, VIEW_MENU) or turn.wants(IntentType.MENU):
            await machine.send(MachineEvent(E.VIEW_MENU))
            await self._show_categories(to)
        elif turn.is_(CLEAR_CART):
            await machine.send(MachineEvent(E.CLEAR_CART))
            await self.channel.send_text(to, CART_CLEARED)
            await self._show_categories(to)
        elif turn.prefixed_id(PRODUCT_PREFIX) is not None:
            await self._add_product(session, turn.prefixed_id(PRODUCT_PREFIX))
        elif turn.is_natural_order:
            await self._process_natural_order(session, turn)
        else:
            await self._show_cart(session)

    async def _handle_collecting_name(self, session: Session, turn: Turn):
        machine, to = session.machine, session.customer_key

        if turn.is_(CANCEL_ORDER) or turn.text.lower() == "cancel":
            await self._cancel_checkout(session)
            return

        parts = turn.text.split() if not turn.command else []
        if not parts:
            await self._send_cancel_prompt(to, "Please tell me your first name.")
            return

        first_name = parts[0]
        last_name = " ".join(parts[1:]) or parts[0]
        await machine.send(MachineEvent(E.PROVIDE_NAME, first_name=first_name, last_name=last_name))
        await self.channel.send_text(to, f"Thanks {first_name}! What's your email address?")

    async def _handle_collecting_email(self, session: Session, turn: Turn):
        machine, to = session.machine, session.customer_key

        if turn.is_(CANCEL_ORDER) or turn.text.lower() == "cancel":
            await self._cancel_checkout(session)
            return

        email = turn.text.strip()
        if turn.command or not _EMAIL.match(email):
            await self._send_cancel_prompt(to, INVALID_EMAIL)
            return

        await self.channel.send_text(to, "Creating your customer profile...")
        result = await machine.send(MachineEvent(E.PROVIDE_EMAIL, email=email))

        if result.to_state == S.CONFIRMING_ORDER:
            await self._show_confirmation(session)
        else:
            logger.warning("customer_creation_reverted",
                           customer_key=to,
                           state=result.to_state.value,
                           error=session.context.last_error)
            await self._send_cancel_prompt(to, CUSTOMER_FAILED)

    async def _handle_confirming_order(self, session: Session, turn: Turn):
        machine, to = session.machine, session.customer_key

        if turn.is_(CONFIRM_ORDER):
            await self.channel.send_text(to, "⏳ Placing your order...")
            result = await machine.send(MachineEvent(E.CONFIRM_ORDER))
            if result.to_state == S.ORDER_COMPLETED:
                await self._show_order_placed(session)
            else:
                logger.warning("order_placement_reverted",
                               customer_key=to,
                               state=result.to_state.value,
                               error=session.context.last_error)
                await self.channel.send_text(to, ORDER_FAILED)
                await self._send_confirm_buttons(to)
        elif turn.is_(CANCEL_ORDER) or turn.wants(IntentType.CANCEL_ORDER):
            await self._cancel_checkout(session)
        else:
            await self._show_confirmation(session)

    async def _handle_order_completed(self, session: Session, turn: Turn):
        machine, to = session.machine, session.customer_key

        if turn.is_(NEW_ORDER, START) or turn.wants(IntentType.GREETING):
            await machine.send(MachineEvent(E.START))
            await self._show_main_menu(to)
        elif turn.is_(VIEW_MENU) or turn.wants(IntentType.MENU):
            await machine.send(MachineEvent(E.VIEW_MENU))
            await machine.send(MachineEvent(E.VIEW_MENU))
            await self._show_categories(to)
        elif turn.is_(ORDER_STATUS) or turn.wants(IntentType.ORDER_STATUS):
            await self._show_order_status(session)
        elif turn.is_(HELP) or turn.wants(IntentType.HELP):
            await self._reply_with_nlu(session, Intent(type=IntentType.HELP))
            await self._send_completed_buttons(to)
        else:
            await self._send_completed_buttons(to)

    async def _handle_default(self, session: Session, turn: Turn):
        intent = Intent(type=IntentType.HELP) if turn.is_(HELP) else turn.intent
        await self._reply_with_nlu(session, intent)
        await self._show_main_menu(session.customer_key)

    # ══════════════════════════════════════════════════════════
    #  CART & CHECKOUT
    # ══════════════════════════════════════════════════════════

    async def _add_product(self, session: Session, product_id: int, product: Product = None):
        to = session.customer_key
        product = product or await self._fetch_product(to, product_id)
        if not product:
            return

        result = await session.machine.send(MachineEvent(E.ADD_TO_CART, product=product, quantity=1))
        if not result and session.state != S.SELECTING_PRODUCTS:
            logger.warning("add_to_cart_refused", customer_key=to, state=session.state.value)
            await self._show_cart(session)
            return

        await self.channel.send_text(
            to, f"✅ Added {product.name} to your cart!\n\nWould you like to add more items?"
        )
        await self.channel.send_buttons(to, "What would you like to do next?", [
            ButtonOption(id=BACK_TO_MENU, title="📱 Continue Shopping"),
            ButtonOption(id=VIEW_CART, title="🛒 View Cart"),
            ButtonOption(id=CHECKOUT, title="💳 Checkout"),
        ])

    async def _process_natural_order(self, session: Session, turn: Turn):
        to = session.customer_key
        try:
            catalog = await self.backend.list_products()
        except BackendError as e:
            logger.error("natural_order_catalog_failed", customer_key=to, error=str(e))
            await self.channel.send_text(to, ORDER_PARSE_FAILED)
            return

        items = await self.nlu.parse_order(turn.text, catalog)
        by_name = {p.name: p for p in catalog}

        added = 0
        for item in items:
            product = by_name.get(item.product_name)
            if product is None:
                logger.info("order_item_unmatched", customer_key=to, name=item.product_name)
                continue
            result = await session.machine.send(
                MachineEvent(E.ADD_TO_CART, product=product, quantity=item.quantity)
            )
            if result or session.state == S.SELECTING_PRODUCTS:
                added += 1

        if not added:
            await self.channel.send_text(to, ORDER_NOT_UNDERSTOOD)
            if session.cart.is_empty:
                await self._show_main_menu(to)
            else:
                await self._show_cart(session)
            return

        await self._show_cart(session)

    async def _begin_checkout(self, session: Session):
        machine, to = session.machine, session.customer_key

        if not session.context.customer and not session.cart.is_empty:
            customer = await self.backend.find_customer_by_phone(to)
            if customer:
                await machine.send(MachineEvent(E.IDENTIFY_CUSTOMER, customer=customer))

        result = await machine.send(MachineEvent(E.CHECKOUT))
        if not result:
            await self._show_cart(session)
        elif session.state == S.CONFIRMING_ORDER:
            await self._show_confirmation(session)
        else:
            await self._send_cancel_prompt(to, ASK_FIRST_NAME)

    async def _cancel_checkout(self, session: Session):
        await session.machine.send(MachineEvent(E.CANCEL_ORDER))
        await self.channel.send_text(session.customer_key, CHECKOUT_CANCELLED)
        await self._show_cart(session)

    async def _refresh_prices(self, cart: Cart) -> dict[int, float]:
        """Current unit prices for the cart's products; snapshot prices on failure."""
        try:
            catalog = {p.id: p for p in await self.backend.list_products()}
        except BackendError as e:
            logger.warning("price_refresh_failed", error=str(e))
            return {}
        cart.refresh_products(catalog)
        return {pid: p.price for pid, p in catalog.items()}

    def _format_lines(self, cart: Cart, prices: dict[int, float]) -> str:
        rows = []
        for line in cart:
            subtotal = line.subtotal(prices.get(line.product_id))
            rows.append(f"{line.product.name} x{line.quantity} - {self._money(subtotal)}")
        return "\n".join(rows)

    def _money(self, amount: float) -> str:
        return f"{self.currency}{amount:.2f}"

    # ══════════════════════════════════════════════════════════
    #  REPLIES
    # ══════════════════════════════════════════════════════════

    async def _welcome(self, session: Session):
        await self.channel.send_text(session.customer_key, WELCOME)
        if session.audio_mode:
            await self._speak(session.customer_key, WELCOME)
        await self._show_main_menu(session.customer_key)

    async def _show_main_menu(self, to: str):
        await self.channel.send_buttons(to, "Would you like to:", [
            ButtonOption(id=VIEW_MENU, title="📱 View Menu"),
            ButtonOption(id=VIEW_PROMOTIONS, title="🎉 See Promotions"),
            ButtonOption(id=VIEW_CART, title="🛒 View Cart"),
            ButtonOption(id=AUDIO_MODE, title="🔊 Audio Replies"),
        ], header="Get Started")

    async def _show_categories(self, to: str):
        try:
            categories = await self.backend.list_categories()
        except BackendError as e:
            logger.error("show_categories_failed", customer_key=to, error=str(e))
            await self.channel.send_text(to, "Sorry, I couldn't load the menu categories. Please try again later.")
            return

        if not categories:
            await self.channel.send_text(to, "Sorry, no categories available at the moment.")
            return

        await self.channel.send_list(
            to,
            "Please select a category to view our products:",
            [ListSection(title="Categories", rows=[
                ListRow(id=f"{CATEGORY_PREFIX}{c.id}", title=c.name, description=c.description)
                for c in categories
            ])],
            button_label="View Categories",
            header="☕ Our Menu",
        )

    async def _show_products(self, to: str, category_id: int):
        try:
            products = await self.backend.list_products(category_id)
        except BackendError as e:
            logger.error("show_products_failed", customer_key=to, category_id=category_id, error=str(e))
            await self.channel.send_text(to, "Sorry, I couldn't load the products. Please try again later.")
            return

        if not products:
            await self.channel.send_text(to, "Sorry, no products available in this category.")
            return

        await self.channel.send_list(
            to,
            "Select a product to add to your cart:",
            [ListSection(title="Products", rows=[
                ListRow(
                    id=f"{PRODUCT_PREFIX}{p.id}",
                    title=p.name,
                    description=f"{self._money(p.price)} - {p.description or 'No description'}",
                )
                for p in products
            ])],
            button_label="View Products",
            header="📋 Products",
        )
        await self.channel.send_buttons(to, "Navigation:", [
            ButtonOption(id=BACK_TO_MENU, title="⬅️ Back to Menu"),
            ButtonOption(id=VIEW_CART, title="🛒 View Cart"),
        ])

    async def _show_promotions(self, to: str):
        try:
            products = await self.backend.get_promoted_products()
        except BackendError as e:
            logger.error("show_promotions_failed", customer_key=to, error=str(e))
            await self.channel.send_text(to, "Sorry, I couldn't load the promotions. Please try again later.")
            return

        if not products:
            await self.channel.send_text(to, "No special promotions available at the moment.")
            return

        await self.channel.send_list(
            to,
            "Check out our special promotions:",
            [ListSection(title="🎉 Special Offers", rows=[
                ListRow(
                    id=f"{PRODUCT_PREFIX}{p.id}",
                    title=f"⭐ {p.name}",
                    description=f"{self._money(p.price)} - {p.description or 'Special offer!'}",
                )
                for p in products
            ])],
            button_label="View Promotions",
            header="🎉 Promotions",
        )

    async def _show_cart(self, session: Session):
        machine, to = session.machine, session.customer_key

        if session.cart.is_empty:
            if session.state != S.VIEWING_MENU:
                await machine.send(MachineEvent(E.VIEW_MENU))
            await self.channel.send_text(to, CART_EMPTY)
            await self._show_categories(to)
            return

        if session.state == S.GREETING:
            await machine.send(MachineEvent(E.VIEW_MENU))
        if session.state != S.REVIEWING_CART:
            await machine.send(MachineEvent(E.VIEW_CART))

        prices = await self._refresh_prices(session.cart)
        text = (
            "🛒 *Your Cart:*\n\n"
            f"{self._format_lines(session.cart, prices)}\n\n"
            f"*Total: {self._money(session.cart.total(prices))}*"
        )
        await self.channel.send_text(to, text)
        await self.channel.send_buttons(to, "Ready to order?", [
            ButtonOption(id=CHECKOUT, title="💳 Checkout"),
            ButtonOption(id=BACK_TO_MENU, title="📱 Add More Items"),
            ButtonOption(id=CLEAR_CART, title="🗑️ Clear Cart"),
        ])

    async def _show_confirmation(self, session: Session):
        to, ctx = session.customer_key, session.context
        prices = await self._refresh_prices(ctx.cart)
        customer = ctx.customer

        text = "📋 *Order Confirmation*\n\n"
        if customer:
            text += f"Customer: {customer.full_name}\nEmail: {customer.email}\n\n"
        text += (
            f"*Items:*\n{self._format_lines(ctx.cart, prices)}\n\n"
            f"*Total: {self._money(ctx.cart.total(prices))}*\n\n"
            "Is this correct?"
        )
        await self.channel.send_text(to, text)
        await self._send_confirm_buttons(to)

    async def _show_order_placed(self, session: Session):
        order = session.context.pending_order
        await self.channel.send_text(
            session.customer_key,
            "🎉 Your order has been placed!\n\n"
            f"Order: {order.order_number or order.id}\n"
            f"Total: {self._money(order.total_amount)}\n"
            f"Status: {order.status}\n\n"
            "Thank you for ordering with us! ☕",
        )
        await self._send_completed_buttons(session.customer_key)

    async def _show_order_status(self, session: Session):
        to, order = session.customer_key, session.context.pending_order
        if not order:
            await self.channel.send_text(to, "I couldn't find a recent order for you.")
            await self._send_completed_buttons(to)
            return

        try:
            order = await self.backend.get_order(order.id)
            session.context.pending_order = order
        except BackendError as e:
            logger.warning("order_status_refresh_failed", order_id=order.id, error=str(e))

        await self.channel.send_text(
            to,
            f"📊 Order {order.order_number or order.id}\n"
            f"Status: {order.status}\n"
            f"Total: {self._money(order.total_amount)}",
        )

    async def _send_confirm_buttons(self, to: str):
        await self.channel.send_buttons(to, "Confirm your order:", [
            ButtonOption(id=CONFIRM_ORDER, title="✅ Confirm Order"),
            ButtonOption(id=CANCEL_ORDER, title="❌ Cancel"),
        ])

    async def _send_completed_buttons(self, to: str):
        await self.channel.send_buttons(to, "What would you like to do next?", [
            ButtonOption(id=NEW_ORDER, title="🛒 New Order"),
            ButtonOption(id=ORDER_STATUS, title="📊 Order Status"),
            ButtonOption(id=HELP, title="❓ Help"),
        ])

    async def _send_cancel_prompt(self, to: str, text: str):
        await self.channel.send_buttons(to, text, [
            ButtonOption(id=CANCEL_ORDER, title="❌ Cancel Checkout"),
        ])

    async def _reply_with_nlu(self, session: Session, intent: Intent):
        reply = await self.nlu.generate_response(intent, {})
        await self.channel.send_text(session.customer_key, reply)
        if session.audio_mode:
            await self._speak(session.customer_key, reply)

    # ══════════════════════════════════════════════════════════
    #  AUDIO
    # ══════════════════════════════════════════════════════════

    async def _toggle_audio_mode(self, session: Session):
        to = session.customer_key
        if not self.speech.is_tts_available:
            await self.channel.send_text(
                to, "❌ Sorry, audio mode is currently unavailable. The text-to-speech service is not ready."
            )
            return

        await self.sessions.update(to, audio_mode=True)
        await self.channel.send_text(
            to,
            "🔊 Audio mode is now enabled! I'll provide voice responses along with text. "
            "Say \"disable audio\" to turn it off.",
        )
        await self._speak(to, "Audio mode is now active! I can now speak my responses to you.")

    async def _speak(self, to: str, text: str):
        """Send `text` as a voice note, or as text when synthesis is not possible."""
        if not self.speech.is_tts_available:
            await self.channel.send_text(to, f"🔊 {text}")
            return

        audio_path = None
        try:
            audio_path = await self.speech.synthesize(text)
            await self.channel.send_audio(to, audio_path)
        except (SpeechError, ChannelError) as e:
            logger.warning("speech_reply_failed", customer_key=to, error=str(e))
            await self.channel.send_text(to, f"Sorry, audio generation failed. Here's the message: {text}")
        finally:
            if audio_path:
                self.speech.cleanup(audio_path)

    # ══════════════════════════════════════════════════════════
    #  HELPERS
    # ══════════════════════════════════════════════════════════

    async def _fetch_product(self, to: str, product_id: int) -> Optional[Product]:
        try:
            return await self.backend.get_product(product_id)
        except BackendError as e:
            logger.warning("product_lookup_failed", product_id=product_id, error=str(e))
            await self.channel.send_text(to, "Sorry, that item isn't available right now.")
            return None

    async def _send_quietly(self, to: str, text: str):
        try:
            await self.channel.send_text(to, text)
        except ChannelError as e:
            logger.error("apology_send_failed", customer_key=to, error=str(e))
