"""Tests for the catalog backend connectors (REST over httpx, and the mock)."""
import json
import pytest
import httpx

from backend.connector import (
    BackendError, MockCatalogConnector, RESTCatalogConnector, create_backend_connector,
)
from config.settings import BackendConfig


def rest(handler) -> RESTCatalogConnector:
    config = BackendConfig(type="rest", base_url="https://shop.test", api_key="key-1", timeout_seconds=5)
    return RESTCatalogConnector(config, transport=httpx.MockTransport(handler))


class TestFactory:
    def test_rest_when_configured(self):
        connector = create_backend_connector(BackendConfig(type="rest", base_url="https://shop.test"))
        assert isinstance(connector, RESTCatalogConnector)

    def test_mock_without_base_url(self):
        assert isinstance(create_backend_connector(BackendConfig(type="rest", base_url="")), MockCatalogConnector)

    def test_mock_when_requested(self):
        connector = create_backend_connector(BackendConfig(type="mock", base_url="https://shop.test"))
        assert isinstance(connector, MockCatalogConnector)


class TestRESTConnector:
    @pytest.mark.asyncio
    async def test_list_categories_sends_api_key(self):
        seen = []

        def handler(request: httpx.Request):
            seen.append(request)
            return httpx.Response(200, json={"items": [{"id": 1, "name": "Hot Drinks"}]})

        connector = rest(handler)
        categories = await connector.list_categories()
        await connector.close()

        assert [c.name for c in categories] == ["Hot Drinks"]
        assert seen[0].url.path == "/api/v1/categories"
        assert seen[0].headers["x-api-key"] == "key-1"

    @pytest.mark.asyncio
    async def test_products_by_category_and_promoted(self):
        seen = []

        def handler(request: httpx.Request):
            seen.append(dict(request.url.params))
            return httpx.Response(200, json=[{"id": 12, "name": "Latte", "price": 4.0, "category_id": 1}])

        connector = rest(handler)
        products = await connector.list_products(category_id=1)
        await connector.get_promoted_products()

        assert products[0].price == 4.0
        assert seen == [{"category_id": "1"}, {"is_promoted": "true"}]

    @pytest.mark.asyncio
    async def test_create_order_posts_payload(self):
        bodies = []

        def handler(request: httpx.Request):
            bodies.append(json.loads(request.content))
            return httpx.Response(201, json={
                "id": 77, "order_number": "ORD-77", "status": "pending", "total_amount": 8.0,
            })

        connector = rest(handler)
        order = await connector.create_order({"customer_id": 5, "items": [{"product_id": 12, "quantity": 2}]})

        assert order.order_number == "ORD-77"
        assert bodies == [{"customer_id": 5, "items": [{"product_id": 12, "quantity": 2}]}]

    @pytest.mark.asyncio
    async def test_client_error_raises_backend_error(self):
        calls = []

        def handler(request: httpx.Request):
            calls.append(request)
            return httpx.Response(404, json={"detail": "not found"})

        connector = rest(handler)
        with pytest.raises(BackendError) as exc:
            await connector.get_product(999)
        assert exc.value.status_code == 404
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_server_error_is_retried(self):
        responses = [
            httpx.Response(503),
            httpx.Response(200, json={"id": 3, "order_number": "ORD-3", "status": "ready"}),
        ]

        connector = rest(lambda request: responses.pop(0))
        order = await connector.get_order(3)
        assert order.status == "ready"
        assert responses == []

    @pytest.mark.asyncio
    async def test_customer_lookup_failure_returns_none(self):
        connector = rest(lambda request: httpx.Response(400))
        assert await connector.find_customer_by_phone("15550001111") is None

    @pytest.mark.asyncio
    async def test_customer_lookup_accepts_list_or_object(self):
        payloads = [
            {"data": [{"id": 9, "first_name": "Ana", "phone": "15550001111"}]},
            {"id": 9, "first_name": "Ana", "phone": "15550001111"},
            [],
        ]
        connector = rest(lambda request: httpx.Response(200, json=payloads.pop(0)))

        assert (await connector.find_customer_by_phone("15550001111")).id == 9
        assert (await connector.find_customer_by_phone("15550001111")).id == 9
        assert await connector.find_customer_by_phone("15550001111") is None


class TestMockConnector:
    @pytest.mark.asyncio
    async def test_catalog(self, backend):
        assert len(await backend.list_categories()) == 3
        assert {p.name for p in await backend.list_products(2)} == {"Iced Americano", "Cold Brew"}
        assert [p.name for p in await backend.search_products("brew")] == ["Cold Brew"]

    @pytest.mark.asyncio
    async def test_order_lifecycle(self, backend):
        customer = await backend.create_customer({
            "first_name": "Ana", "last_name": "Lopez", "email": "ana@x.com", "phone": "15550001111",
        })
        assert await backend.find_customer_by_phone("15550001111") == customer

        order = await backend.create_order({
            "customer_id": customer.id,
            "items": [{"product_id": 12, "quantity": 2}, {"product_id": 30, "quantity": 1}],
        })
        assert order.order_number == "ORD-1001"
        assert order.total_amount == 10.95

        cancelled = await backend.cancel_order(order.id)
        assert cancelled.status == "cancelled"

    @pytest.mark.asyncio
    async def test_missing_product(self, backend):
        with pytest.raises(BackendError):
            await backend.get_product(404)
