"""
Backend Connector — catalog, customer and order API client.

The coffee shop backend exposes a small REST API:

  GET   /api/v1/categories
  GET   /api/v1/products                 ?category_id= &search= &is_promoted=
  GET   /api/v1/products/{id}
  GET   /api/v1/customers                ?phone=
  POST  /api/v1/customers
  POST  /api/v1/orders
  GET   /api/v1/orders/{id}
  PATCH /api/v1/orders/{id}
  POST  /api/v1/orders/{id}/cancel

List endpoints may answer with a bare list or a `{"items": [...]}` page.
A MockCatalogConnector with an in-memory menu is used when no base_url is
configured.
"""
from __future__ import annotations

import abc
import itertools
import structlog
from typing import Any, Optional

import httpx
from tenacity import retry, retry_if_exception, stop_after_attempt, wait_exponential

from config.settings import BackendConfig, get_settings
from models.schemas import Category, Customer, Order, OrderLine, Product

logger = structlog.get_logger()


class BackendError(Exception):
    """Raised when a backend call fails after retries."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)


def _is_retryable(exc: BaseException) -> bool:
    # 4xx answers are final; transport errors and 5xx are retried
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code >= 500
    return isinstance(exc, httpx.TransportError)


def _items(result: Any) -> list[dict[str, Any]]:
    if isinstance(result, list):
        return result
    if isinstance(result, dict):
        return result.get("items", result.get("data", []))
    return []


class CatalogBackend(abc.ABC):
    """Abstract base for all catalog & order backends."""

    @abc.abstractmethod
    async def list_categories(self) -> list[Category]:
        ...

    @abc.abstractmethod
    async def list_products(self, category_id: Optional[int] = None) -> list[Product]:
        ...

    @abc.abstractmethod
    async def search_products(self, query: str) -> list[Product]:
        ...

    @abc.abstractmethod
    async def get_promoted_products(self) -> list[Product]:
        ...

    @abc.abstractmethod
    async def get_product(self, product_id: int) -> Product:
        ...

    @abc.abstractmethod
    async def find_customer_by_phone(self, phone: str) -> Optional[Customer]:
        """Returns None when no customer exists or the lookup fails."""
        ...

    @abc.abstractmethod
    async def create_customer(self, fields: dict[str, Any]) -> Customer:
        ...

    @abc.abstractmethod
    async def create_order(self, payload: dict[str, Any]) -> Order:
        """payload = {"customer_id": int, "items": [{"product_id", "quantity"}]}"""
        ...

    @abc.abstractmethod
    async def get_order(self, order_id: int) -> Order:
        ...

    @abc.abstractmethod
    async def update_order_status(self, order_id: int, status: str) -> Order:
        ...

    @abc.abstractmethod
    async def cancel_order(self, order_id: int) -> Order:
        ...

    async def close(self):
        pass


class RESTCatalogConnector(CatalogBackend):
    """
    REST API backend connector.
    Every call raises BackendError on failure; callers decide how to degrade.
    """

    def __init__(self, config: BackendConfig = None, transport: httpx.AsyncBaseTransport = None):
        self.config = config or get_settings().backend
        self.client: Optional[httpx.AsyncClient] = None
        self._transport = transport

    async def _get_client(self) -> httpx.AsyncClient:
        if self.client is None or self.client.is_closed:
            headers = {"Content-Type": "application/json"}
            if self.config.api_key:
                headers["X-API-Key"] = self.config.api_key

            self.client = httpx.AsyncClient(
                base_url=self.config.base_url,
                headers=headers,
                timeout=self.config.timeout_seconds,
                transport=self._transport,
            )
        return self.client

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, max=10),
        retry=retry_if_exception(_is_retryable),
        reraise=True,
    )
    async def _send(self, method: str, url: str, **kwargs) -> Any:
        client = await self._get_client()
        response = await client.request(method, url, **kwargs)
        response.raise_for_status()
        if not response.content:
            return {}
        return response.json()

    async def _request(self, method: str, url: str, **kwargs) -> Any:
        try:
            return await self._send(method, url, **kwargs)
        except httpx.HTTPStatusError as e:
            logger.error("backend_request_failed",
                         method=method, url=url,
                         status=e.response.status_code)
            raise BackendError(
                f"{method} {url} returned {e.response.status_code}",
                status_code=e.response.status_code,
            ) from e
        except (httpx.HTTPError, ValueError) as e:
            logger.error("backend_request_failed", method=method, url=url, error=str(e))
            raise BackendError(f"{method} {url} failed: {e}") from e

    # ── Catalog ───────────────────────────────────────────────

    async def list_categories(self) -> list[Category]:
        result = await self._request("GET", "/api/v1/categories")
        return [Category(**c) for c in _items(result)]

    async def list_products(self, category_id: Optional[int] = None) -> list[Product]:
        params = {"category_id": category_id} if category_id else {}
        result = await self._request("GET", "/api/v1/products", params=params)
        return [Product(**p) for p in _items(result)]

    async def search_products(self, query: str) -> list[Product]:
        result = await self._request("GET", "/api/v1/products", params={"search": query})
        return [Product(**p) for p in _items(result)]

    async def get_promoted_products(self) -> list[Product]:
        result = await self._request("GET", "/api/v1/products", params={"is_promoted": "true"})
        return [Product(**p) for p in _items(result)]

    async def get_product(self, product_id: int) -> Product:
        result = await self._request("GET", f"/api/v1/products/{product_id}")
        return Product(**result)

    # ── Customers ─────────────────────────────────────────────

    async def find_customer_by_phone(self, phone: str) -> Optional[Customer]:
        try:
            result = await self._request("GET", "/api/v1/customers", params={"phone": phone})
        except BackendError as e:
            logger.warning("customer_lookup_failed", phone=phone, error=str(e))
            return None
        if isinstance(result, dict) and "id" in result:
            return Customer(**result)
        items = _items(result)
        return Customer(**items[0]) if items else None

    async def create_customer(self, fields: dict[str, Any]) -> Customer:
        result = await self._request("POST", "/api/v1/customers", json=fields)
        logger.info("customer_created", customer_id=result.get("id"))
        return Customer(**result)

    # ── Orders ────────────────────────────────────────────────

    async def create_order(self, payload: dict[str, Any]) -> Order:
        result = await self._request("POST", "/api/v1/orders", json=payload)
        logger.info("order_created",
                    order_id=result.get("id"),
                    order_number=result.get("order_number"))
        return Order(**result)

    async def get_order(self, order_id: int) -> Order:
        result = await self._request("GET", f"/api/v1/orders/{order_id}")
        return Order(**result)

    async def update_order_status(self, order_id: int, status: str) -> Order:
        result = await self._request("PATCH", f"/api/v1/orders/{order_id}", json={"status": status})
        return Order(**result)

    async def cancel_order(self, order_id: int) -> Order:
        result = await self._request("POST", f"/api/v1/orders/{order_id}/cancel")
        return Order(**result)

    async def close(self):
        if self.client:
            await self.client.aclose()


class MockCatalogConnector(CatalogBackend):
    """
    Mock backend for development and testing.
    Serves a small coffee shop menu and keeps customers/orders in memory.
    """

    def __init__(self):
        self._categories = {
            1: Category(id=1, name="Hot Drinks", description="Espresso bar classics"),
            2: Category(id=2, name="Cold Drinks", description="Iced and blended"),
            3: Category(id=3, name="Pastries", description="Baked fresh every morning"),
        }
        self._products = {
            10: Product(id=10, name="Espresso", price=2.50, category_id=1),
            11: Product(id=11, name="Cappuccino", price=3.75, category_id=1,
                        description="Espresso with steamed milk foam"),
            12: Product(id=12, name="Latte", price=4.00, category_id=1, is_promoted=True,
                        description="Double shot, silky milk"),
            20: Product(id=20, name="Iced Americano", price=3.25, category_id=2),
            21: Product(id=21, name="Cold Brew", price=4.25, category_id=2, is_promoted=True),
            30: Product(id=30, name="Croissant", price=2.95, category_id=3),
            31: Product(id=31, name="Blueberry Muffin", price=3.10, category_id=3),
        }
        self._customers: dict[int, Customer] = {}
        self._orders: dict[int, Order] = {}
        self._customer_ids = itertools.count(1)
        self._order_ids = itertools.count(1001)

    async def list_categories(self) -> list[Category]:
        return list(self._categories.values())

    async def list_products(self, category_id: Optional[int] = None) -> list[Product]:
        return [p for p in self._products.values()
                if category_id is None or p.category_id == category_id]

    async def search_products(self, query: str) -> list[Product]:
        q = query.lower()
        return [p for p in self._products.values() if q in p.name.lower()]

    async def get_promoted_products(self) -> list[Product]:
        return [p for p in self._products.values() if p.is_promoted]

    async def get_product(self, product_id: int) -> Product:
        product = self._products.get(product_id)
        if not product:
            raise BackendError(f"Product {product_id} not found", status_code=404)
        return product

    async def find_customer_by_phone(self, phone: str) -> Optional[Customer]:
        return next((c for c in self._customers.values() if c.phone == phone), None)

    async def create_customer(self, fields: dict[str, Any]) -> Customer:
        customer = Customer(id=next(self._customer_ids), **fields)
        self._customers[customer.id] = customer
        logger.info("mock_backend_customer_created", customer_id=customer.id)
        return customer

    async def create_order(self, payload: dict[str, Any]) -> Order:
        lines = []
        for item in payload.get("items", []):
            product = await self.get_product(item["product_id"])
            lines.append(OrderLine(
                product_id=product.id,
                quantity=item["quantity"],
                unit_price=product.price,
                subtotal=round(product.price * item["quantity"], 2),
            ))
        order_id = next(self._order_ids)
        order = Order(
            id=order_id,
            order_number=f"ORD-{order_id}",
            status="pending",
            total_amount=round(sum(l.subtotal for l in lines), 2),
            customer_id=payload.get("customer_id"),
            items=lines,
        )
        self._orders[order.id] = order
        logger.info("mock_backend_order_created", order_id=order.id)
        return order

    async def get_order(self, order_id: int) -> Order:
        order = self._orders.get(order_id)
        if not order:
            raise BackendError(f"Order {order_id} not found", status_code=404)
        return order

    async def update_order_status(self, order_id: int, status: str) -> Order:
        order = await self.get_order(order_id)
        order.status = status
        return order

    async def cancel_order(self, order_id: int) -> Order:
        return await self.update_order_status(order_id, "cancelled")


def create_backend_connector(config: BackendConfig = None) -> CatalogBackend:
    """Factory function to create the appropriate backend connector."""
    config = config or get_settings().backend
    if config.type == "rest" and config.base_url:
        return RESTCatalogConnector(config)
    logger.warning("using_mock_backend", reason="backend type is mock or base_url empty")
    return MockCatalogConnector()
