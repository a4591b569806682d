"""Tests for Cart — line merging and price-at-render totals."""
import pytest

from context.cart import Cart
from models.schemas import Product


@pytest.fixture
def flat_white() -> Product:
    return Product(id=42, name="Flat White", price=4.50, category_id=1)


class TestCartLines:
    def test_empty_cart(self):
        cart = Cart()
        assert cart.is_empty
        assert len(cart) == 0
        assert cart.total() == 0

    def test_add_creates_line(self, flat_white):
        cart = Cart()
        line = cart.add(flat_white)
        assert line.quantity == 1
        assert cart.get_line(42) is line
        assert not cart.is_empty

    def test_repeated_adds_merge_into_one_line(self, flat_white):
        cart = Cart()
        cart.add(flat_white, 2)
        cart.add(flat_white, 3)
        assert len(cart) == 1
        assert cart.get_line(42).quantity == 5

    def test_merge_keeps_insertion_order(self, flat_white, latte, croissant):
        cart = Cart()
        cart.add(latte)
        cart.add(croissant)
        cart.add(latte, 2)
        assert [l.product_id for l in cart] == [12, 30]
        assert cart.item_count == 4

    def test_remove_and_clear(self, latte, croissant):
        cart = Cart()
        cart.add(latte)
        cart.add(croissant)
        cart.remove(12)
        assert [l.product_id for l in cart] == [30]
        cart.clear()
        assert cart.is_empty

    def test_to_order_items(self, latte, croissant):
        cart = Cart()
        cart.add(latte, 2)
        cart.add(croissant)
        assert cart.to_order_items() == [
            {"product_id": 12, "quantity": 2},
            {"product_id": 30, "quantity": 1},
        ]


class TestCartTotal:
    def test_total_from_snapshot_prices(self, flat_white):
        cart = Cart()
        cart.add(flat_white, 2)
        cart.add(flat_white, 3)
        assert cart.total() == 22.50

    def test_total_uses_current_prices(self, latte, croissant):
        cart = Cart()
        cart.add(latte, 2)
        cart.add(croissant)
        # latte repriced, croissant missing from lookup keeps its snapshot
        assert cart.total({12: 4.25}) == round(2 * 4.25 + 2.95, 2)

    def test_refresh_products_replaces_snapshot(self, latte):
        cart = Cart()
        cart.add(latte)
        repriced = latte.model_copy(update={"price": 5.0})
        cart.refresh_products({12: repriced})
        assert cart.get_line(12).product.price == 5.0
        assert cart.total() == 5.0

    def test_total_rounds_to_cents(self):
        cart = Cart()
        cart.add(Product(id=1, name="Shot", price=0.1), 3)
        assert cart.total() == 0.3
