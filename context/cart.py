"""
Cart — product → quantity mapping for one conversation.

Lines are unique per product: adding a product that is already in the cart
merges into its line. Prices are never cached on the line; `total()` reads
them when it runs, optionally from a fresh price lookup.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Iterator, Mapping, Optional

from models.schemas import Product


@dataclass
class CartLine:
    product: Product
    quantity: int

    @property
    def product_id(self) -> int:
        return self.product.id

    def subtotal(self, unit_price: Optional[float] = None) -> float:
        price = self.product.price if unit_price is None else unit_price
        return price * self.quantity


class Cart:
    def __init__(self):
        self._lines: list[CartLine] = []

    def add(self, product: Product, quantity: int = 1) -> CartLine:
        line = self.get_line(product.id)
        if line:
            line.quantity += quantity
            line.product = product
            return line
        line = CartLine(product=product, quantity=quantity)
        self._lines.append(line)
        return line

    def remove(self, product_id: int):
        self._lines = [l for l in self._lines if l.product_id != product_id]

    def clear(self):
        self._lines = []

    def total(self, price_lookup: Mapping[int, float] = None) -> float:
        """
        Sum of line subtotals.

        `price_lookup` maps product id → current unit price; lines missing
        from it fall back to the product snapshot's price.
        """
        price_lookup = price_lookup or {}
        return round(
            sum(l.subtotal(price_lookup.get(l.product_id)) for l in self._lines), 2
        )

    def get_line(self, product_id: int) -> Optional[CartLine]:
        return next((l for l in self._lines if l.product_id == product_id), None)

    @property
    def lines(self) -> list[CartLine]:
        return list(self._lines)

    @property
    def is_empty(self) -> bool:
        return not self._lines

    @property
    def item_count(self) -> int:
        return sum(l.quantity for l in self._lines)

    def refresh_products(self, products: Mapping[int, Product]):
        """Swap line snapshots for freshly fetched products."""
        for line in self._lines:
            if line.product_id in products:
                line.product = products[line.product_id]

    def to_order_items(self) -> list[dict[str, int]]:
        return [{"product_id": l.product_id, "quantity": l.quantity} for l in self._lines]

    def __iter__(self) -> Iterator[CartLine]:
        return iter(list(self._lines))

    def __len__(self) -> int:
        return len(self._lines)

    def __repr__(self):
        return f"<Cart lines={len(self._lines)} items={self.item_count}>"
