"""
Core data models for the coffee order agent.
These are the universal types shared across all modules.
"""
from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field


# ──────────────────────────────────────────────────────────────
#  Enums
# ──────────────────────────────────────────────────────────────

class IntentType(str, Enum):
    GREETING = "greeting"
    MENU = "menu"
    ORDER = "order"
    PRODUCT_INFO = "product_info"
    HELP = "help"
    CANCEL_ORDER = "cancel_order"
    ORDER_STATUS = "order_status"
    UNKNOWN = "unknown"


class MessageKind(str, Enum):
    TEXT = "text"
    AUDIO = "audio"
    INTERACTIVE = "interactive"
    UNSUPPORTED = "unsupported"


# ──────────────────────────────────────────────────────────────
#  Catalog — categories and products served by the backend
# ──────────────────────────────────────────────────────────────

class Category(BaseModel):
    id: int
    name: str
    description: str = ""


class Product(BaseModel):
    id: int
    name: str
    price: float
    description: str = ""
    category_id: Optional[int] = None
    is_promoted: bool = False
    is_available: bool = True


# ──────────────────────────────────────────────────────────────
#  Customer & Order — externally-assigned identities
# ──────────────────────────────────────────────────────────────

class Customer(BaseModel):
    """A backend customer. `phone` is the WhatsApp sender id."""
    id: int
    first_name: str = ""
    last_name: str = ""
    email: str = ""
    phone: str = ""

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()


class OrderLine(BaseModel):
    product_id: int
    quantity: int
    unit_price: Optional[float] = None
    subtotal: Optional[float] = None


class Order(BaseModel):
    id: int
    order_number: str = ""
    status: str = "pending"
    total_amount: float = 0.0
    customer_id: Optional[int] = None
    items: list[OrderLine] = []


# ──────────────────────────────────────────────────────────────
#  NLU — intents and parsed order items
# ──────────────────────────────────────────────────────────────

class IntentEntities(BaseModel):
    products: list[str] = []
    quantities: list[int] = []
    category: Optional[str] = None
    order_id: Optional[str] = None


class Intent(BaseModel):
    type: IntentType = IntentType.UNKNOWN
    confidence: float = 0.0
    entities: IntentEntities = Field(default_factory=IntentEntities)

    @property
    def has_products(self) -> bool:
        return bool(self.entities.products)


class ParsedOrderItem(BaseModel):
    product_name: str
    quantity: int = 1


# ──────────────────────────────────────────────────────────────
#  Messaging — inbound message and outbound interactive payloads
# ──────────────────────────────────────────────────────────────

class InboundMessage(BaseModel):
    """A normalized inbound message from the messaging transport."""
    sender_key: str                           # WhatsApp sender id (digits only)
    message_id: str = ""
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    kind: MessageKind = MessageKind.TEXT
    body: str = ""                            # text, or button/list reply id
    media_id: str = ""                        # audio media reference
    mime_type: str = ""
    sender_name: str = ""
    metadata: dict[str, Any] = {}


class ButtonOption(BaseModel):
    id: str
    title: str


class ListRow(BaseModel):
    id: str
    title: str
    description: str = ""


class ListSection(BaseModel):
    title: str
    rows: list[ListRow] = []
