"""
Conversation State Machine — one instance per customer session.

Models the ordering conversation as an explicit state enum plus a
transition table. Each transition names the states it leaves, the event
that fires it, an optional guard, and an optional context assignment.
Transitions are evaluated in definition order (first match wins); "*"
matches every state.

Checkout is a nested flow. Its states are dotted ("checkout.collecting_name")
so the router can dispatch on the leaf name. Three of them are settled
immediately on entry instead of waiting for an event:

  checkout.checking_customer   → confirming_order if the customer is known,
                                 else collecting_name
  checkout.creating_customer   → invokes create_customer; success →
                                 confirming_order, failure → collecting_email
  checkout.placing_order       → invokes place_order; success →
                                 order_completed (cart cleared), failure →
                                 confirming_order (cart kept)

Checkout actions return an ActionResult instead of raising, so a backend
failure only ever moves the machine back to the previous interactive state
and records `last_error`.

Usage:
    machine = ConversationMachine("15551234567", actions=BackendCheckoutActions(backend))
    result = await machine.send(MachineEvent(EventType.START))
    # result → <Transition idle → greeting [1 steps]>
"""
from __future__ import annotations

import abc
import structlog
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

from context.cart import Cart
from models.schemas import Customer, Order, Product

logger = structlog.get_logger()


# ──────────────────────────────────────────────────────────────
#  States & Events
# ──────────────────────────────────────────────────────────────

class ConversationState(str, Enum):
    IDLE = "idle"
    GREETING = "greeting"
    VIEWING_MENU = "viewing_menu"
    SELECTING_PRODUCTS = "selecting_products"
    REVIEWING_CART = "reviewing_cart"
    CHECKING_CUSTOMER = "checkout.checking_customer"
    COLLECTING_NAME = "checkout.collecting_name"
    COLLECTING_EMAIL = "checkout.collecting_email"
    CREATING_CUSTOMER = "checkout.creating_customer"
    CONFIRMING_ORDER = "checkout.confirming_order"
    PLACING_ORDER = "checkout.placing_order"
    ORDER_COMPLETED = "order_completed"

    @property
    def in_checkout(self) -> bool:
        return self.value.startswith("checkout.")


class EventType(str, Enum):
    START = "START"
    VIEW_MENU = "VIEW_MENU"
    SELECT_CATEGORY = "SELECT_CATEGORY"
    ADD_TO_CART = "ADD_TO_CART"
    VIEW_CART = "VIEW_CART"
    CHECKOUT = "CHECKOUT"
    PROVIDE_NAME = "PROVIDE_NAME"
    PROVIDE_EMAIL = "PROVIDE_EMAIL"
    CONFIRM_ORDER = "CONFIRM_ORDER"
    CANCEL_ORDER = "CANCEL_ORDER"
    CLEAR_CART = "CLEAR_CART"
    BACK = "BACK"
    IDENTIFY_CUSTOMER = "IDENTIFY_CUSTOMER"
    ERROR = "ERROR"
    RESET = "RESET"


class MachineEvent:
    """
    An event sent to the machine. Payload fields by type:

      SELECT_CATEGORY   category_id
      ADD_TO_CART       product, quantity
      PROVIDE_NAME      first_name, last_name
      PROVIDE_EMAIL     email
      IDENTIFY_CUSTOMER customer
      ERROR             error
    """

    def __init__(self, type: EventType, **data: Any):
        self.type = type
        self.data = data

    def get(self, key: str, default: Any = None) -> Any:
        return self.data.get(key, default)

    def __repr__(self):
        return f"<MachineEvent {self.type.value}>"


# ──────────────────────────────────────────────────────────────
#  Context
# ──────────────────────────────────────────────────────────────

@dataclass
class CollectedInfo:
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    email: Optional[str] = None

    @property
    def is_empty(self) -> bool:
        return not (self.first_name or self.last_name or self.email)


@dataclass
class OrderContext:
    cart: Cart = field(default_factory=Cart)
    customer: Optional[Customer] = None
    pending_order: Optional[Order] = None
    selected_category: Optional[int] = None
    collected_info: CollectedInfo = field(default_factory=CollectedInfo)
    last_error: Optional[str] = None

    def reset(self):
        self.cart.clear()
        self.customer = None
        self.pending_order = None
        self.selected_category = None
        self.collected_info = CollectedInfo()
        self.last_error = None


# ──────────────────────────────────────────────────────────────
#  Checkout Actions
# ──────────────────────────────────────────────────────────────

@dataclass
class ActionResult:
    ok: bool
    value: Any = None
    error: str = ""

    @classmethod
    def success(cls, value: Any = None) -> "ActionResult":
        return cls(ok=True, value=value)

    @classmethod
    def failure(cls, error: str) -> "ActionResult":
        return cls(ok=False, error=error or "unknown error")


class CheckoutActions(abc.ABC):
    """Side effects invoked by the checkout flow. Must not raise."""

    @abc.abstractmethod
    async def create_customer(self, phone: str, info: CollectedInfo) -> ActionResult:
        """ActionResult.value is the created Customer."""
        ...

    @abc.abstractmethod
    async def place_order(self, customer: Customer, cart: Cart) -> ActionResult:
        """ActionResult.value is the created Order."""
        ...


# ──────────────────────────────────────────────────────────────
#  Transition Table
# ──────────────────────────────────────────────────────────────

Guard = Callable[[OrderContext, MachineEvent], bool]
Assign = Callable[[OrderContext, MachineEvent], None]


@dataclass
class Transition:
    from_states: list[str]
    event: EventType
    to_state: Optional[ConversationState] = None      # None = stay in place
    guard: Optional[Guard] = None
    assign: Optional[Assign] = None
    description: str = ""

    def applies_to(self, state: ConversationState) -> bool:
        return "*" in self.from_states or state.value in self.from_states


def _cart_not_empty(ctx: OrderContext, event: MachineEvent) -> bool:
    return not ctx.cart.is_empty


def _add_to_cart(ctx: OrderContext, event: MachineEvent):
    product: Product = event.get("product")
    ctx.cart.add(product, int(event.get("quantity", 1) or 1))


def _select_category(ctx: OrderContext, event: MachineEvent):
    ctx.selected_category = event.get("category_id")


def _clear_cart(ctx: OrderContext, event: MachineEvent):
    ctx.cart.clear()


def _record_name(ctx: OrderContext, event: MachineEvent):
    ctx.collected_info.first_name = event.get("first_name")
    ctx.collected_info.last_name = event.get("last_name")


def _record_email(ctx: OrderContext, event: MachineEvent):
    ctx.collected_info.email = event.get("email")


def _record_customer(ctx: OrderContext, event: MachineEvent):
    ctx.customer = event.get("customer")


def _record_error(ctx: OrderContext, event: MachineEvent):
    ctx.last_error = event.get("error")


def _full_reset(ctx: OrderContext, event: MachineEvent):
    ctx.reset()


S = ConversationState
E = EventType

TRANSITIONS: list[Transition] = [
    # Global
    Transition(["*"], E.RESET, S.IDLE, assign=_full_reset,
               description="Reset conversation"),
    Transition(["*"], E.ERROR, assign=_record_error,
               description="Record error without moving"),
    Transition(["*"], E.IDENTIFY_CUSTOMER, assign=_record_customer,
               description="Returning customer found by phone"),

    # Idle
    Transition([S.IDLE], E.START, S.GREETING),
    Transition([S.IDLE], E.VIEW_MENU, S.VIEWING_MENU),

    # Greeting
    Transition([S.GREETING], E.VIEW_MENU, S.VIEWING_MENU),
    Transition([S.GREETING], E.ADD_TO_CART, S.SELECTING_PRODUCTS, assign=_add_to_cart),

    # Viewing menu
    Transition([S.VIEWING_MENU], E.SELECT_CATEGORY, S.SELECTING_PRODUCTS,
               assign=_select_category),
    Transition([S.VIEWING_MENU], E.VIEW_CART, S.REVIEWING_CART),
    Transition([S.VIEWING_MENU], E.BACK, S.GREETING),

    # Selecting products
    Transition([S.SELECTING_PRODUCTS], E.ADD_TO_CART, S.SELECTING_PRODUCTS,
               assign=_add_to_cart),
    Transition([S.SELECTING_PRODUCTS], E.VIEW_CART, S.REVIEWING_CART),
    Transition([S.SELECTING_PRODUCTS], E.VIEW_MENU, S.VIEWING_MENU),
    Transition([S.SELECTING_PRODUCTS], E.CHECKOUT, S.CHECKING_CUSTOMER,
               guard=_cart_not_empty),

    # Reviewing cart
    Transition([S.REVIEWING_CART], E.CHECKOUT, S.CHECKING_CUSTOMER,
               guard=_cart_not_empty, description="Checkout requires items"),
    Transition([S.REVIEWING_CART], E.VIEW_MENU, S.VIEWING_MENU),
    Transition([S.REVIEWING_CART], E.CLEAR_CART, S.VIEWING_MENU, assign=_clear_cart),
    Transition([S.REVIEWING_CART], E.ADD_TO_CART, S.SELECTING_PRODUCTS,
               assign=_add_to_cart),

    # Checkout
    Transition([S.COLLECTING_NAME], E.PROVIDE_NAME, S.COLLECTING_EMAIL,
               assign=_record_name),
    Transition([S.COLLECTING_EMAIL], E.PROVIDE_EMAIL, S.CREATING_CUSTOMER,
               assign=_record_email),
    Transition([S.CONFIRMING_ORDER], E.CONFIRM_ORDER, S.PLACING_ORDER),
    Transition([S.COLLECTING_NAME, S.COLLECTING_EMAIL, S.CONFIRMING_ORDER],
               E.CANCEL_ORDER, S.REVIEWING_CART, description="Leave checkout"),

    # Order completed
    Transition([S.ORDER_COMPLETED], E.START, S.GREETING),
    Transition([S.ORDER_COMPLETED], E.VIEW_MENU, S.GREETING),
]


# ──────────────────────────────────────────────────────────────
#  Transition Result
# ──────────────────────────────────────────────────────────────

@dataclass
class TransitionRecord:
    from_state: ConversationState
    to_state: ConversationState
    event: str
    at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    note: str = ""


class TransitionResult:
    """Outcome of sending one event to the machine."""

    def __init__(
        self,
        transitioned: bool,
        event: MachineEvent,
        from_state: ConversationState,
        to_state: ConversationState = None,
        steps: list[TransitionRecord] = None,
    ):
        self.transitioned = transitioned
        self.event = event
        self.from_state = from_state
        self.to_state = to_state or from_state
        self.steps = steps or []

    def __bool__(self):
        return self.transitioned

    def __repr__(self):
        if self.transitioned:
            return (f"<Transition {self.from_state.value} → {self.to_state.value} "
                    f"[{len(self.steps)} steps]>")
        return "<NoTransition>"


# ──────────────────────────────────────────────────────────────
#  Conversation Machine
# ──────────────────────────────────────────────────────────────

EventSink = Callable[[str, TransitionRecord], None]

_HISTORY_LIMIT = 50


def log_transition(customer_key: str, record: TransitionRecord):
    """Default event sink: one structured log line per transition."""
    logger.info("state_transition",
                customer_key=customer_key,
                transition=f"{record.from_state.value} → {record.to_state.value}",
                trigger=record.event,
                note=record.note or None)


class ConversationMachine:
    """
    The per-session state machine.

    `send` never raises for unknown or refused events: it returns a
    non-transition result and leaves state and context untouched.
    """

    def __init__(
        self,
        customer_key: str,
        actions: CheckoutActions,
        on_transition: Optional[EventSink] = None,
        transitions: list[Transition] = None,
    ):
        self.customer_key = customer_key
        self.actions = actions
        self.on_transition = on_transition
        self.transitions = transitions or TRANSITIONS
        self.state = ConversationState.IDLE
        self.context = OrderContext()
        self.history: list[TransitionRecord] = []

    @property
    def cart(self) -> Cart:
        return self.context.cart

    # ── Event handling ────────────────────────────────────────

    async def send(self, event: MachineEvent) -> TransitionResult:
        from_state = self.state
        transition = self._find_transition(event)

        if not transition:
            logger.debug("no_matching_transition",
                         customer_key=self.customer_key,
                         state=self.state.value,
                         trigger=event.type.value)
            return TransitionResult(transitioned=False, event=event, from_state=from_state)

        if transition.assign:
            transition.assign(self.context, event)

        if transition.to_state is None:
            return TransitionResult(transitioned=False, event=event, from_state=from_state)

        steps = [self._move(transition.to_state, event.type.value, transition.description)]
        steps.extend(await self._settle())

        return TransitionResult(
            transitioned=True,
            event=event,
            from_state=from_state,
            to_state=self.state,
            steps=steps,
        )

    def _find_transition(self, event: MachineEvent) -> Optional[Transition]:
        refused = False
        for t in self.transitions:
            if t.event != event.type or not t.applies_to(self.state):
                continue
            if t.guard and not t.guard(self.context, event):
                refused = True
                continue
            return t

        if refused:
            logger.info("transition_refused",
                        customer_key=self.customer_key,
                        state=self.state.value,
                        trigger=event.type.value)
        return None

    # ── Entry settling ────────────────────────────────────────

    async def _settle(self) -> list[TransitionRecord]:
        steps: list[TransitionRecord] = []
        while True:
            if self.state == ConversationState.CHECKING_CUSTOMER:
                if self.context.customer:
                    steps.append(self._move(ConversationState.CONFIRMING_ORDER,
                                            "customer_known"))
                else:
                    steps.append(self._move(ConversationState.COLLECTING_NAME,
                                            "customer_unknown"))

            elif self.state == ConversationState.CREATING_CUSTOMER:
                result = await self._invoke(
                    "create_customer",
                    self.actions.create_customer,
                    self.customer_key,
                    self.context.collected_info,
                )
                if result.ok:
                    self.context.customer = result.value
                    self.context.last_error = None
                    steps.append(self._move(ConversationState.CONFIRMING_ORDER, "customer_created"))
                else:
                    self.context.last_error = result.error
                    steps.append(self._move(ConversationState.COLLECTING_EMAIL,
                                            "customer_creation_failed", result.error))

            elif self.state == ConversationState.PLACING_ORDER:
                result = await self._invoke(
                    "place_order",
                    self.actions.place_order,
                    self.context.customer,
                    self.context.cart,
                )
                if result.ok:
                    self.context.pending_order = result.value
                    self.context.cart.clear()
                    self.context.last_error = None
                    steps.append(self._move(ConversationState.ORDER_COMPLETED, "order_placed"))
                else:
                    self.context.last_error = result.error
                    steps.append(self._move(ConversationState.CONFIRMING_ORDER,
                                            "order_failed", result.error))
            else:
                return steps

    async def _invoke(
        self,
        name: str,
        action: Callable[..., Awaitable[ActionResult]],
        *args: Any,
    ) -> ActionResult:
        try:
            result = await action(*args)
        except Exception as e:
            logger.error("checkout_action_raised",
                         action=name,
                         customer_key=self.customer_key,
                         error=str(e))
            return ActionResult.failure(str(e))
        if not isinstance(result, ActionResult):
            return ActionResult.failure(f"{name} returned no result")
        return result

    def _move(self, to_state: ConversationState, event: str, note: str = "") -> TransitionRecord:
        record = TransitionRecord(from_state=self.state, to_state=to_state, event=event, note=note)
        self.state = to_state
        self.history.append(record)
        if len(self.history) > _HISTORY_LIMIT:
            self.history = self.history[-_HISTORY_LIMIT:]

        if self.on_transition:
            try:
                self.on_transition(self.customer_key, record)
            except Exception as e:
                logger.warning("transition_sink_failed", error=str(e))
        return record

    # ── Introspection ─────────────────────────────────────────

    def available_events(self) -> list[EventType]:
        """Events with a transition out of the current state (guards not evaluated)."""
        seen: list[EventType] = []
        for t in self.transitions:
            if t.applies_to(self.state) and t.event not in seen:
                seen.append(t.event)
        return seen

    def snapshot(self) -> dict[str, Any]:
        ctx = self.context
        return {
            "customer_key": self.customer_key,
            "state": self.state.value,
            "available_events": [e.value for e in self.available_events()],
            "cart": ctx.cart.to_order_items(),
            "customer_id": ctx.customer.id if ctx.customer else None,
            "pending_order_id": ctx.pending_order.id if ctx.pending_order else None,
            "selected_category": ctx.selected_category,
            "last_error": ctx.last_error,
        }
