from __future__ import annotations
from typing import Iterable, Iterator, Optional

from errors import ValidationError
from schemas import CartItem


class Cart:
    """Cart lines keyed by product and size.

    Adding a product+size that is already in the cart sums the quantities
    and keeps the most recent name/price snapshot.
    """

    def __init__(self, items: Optional[Iterable[CartItem]] = None):
        self._lines: dict[tuple[str, str], CartItem] = {}
        for item in items or []:
            self.add(item)

    @staticmethod
    def key(product_id: str, size: str) -> tuple[str, str]:
        return (product_id, size)

    def add(self, item: CartItem) -> CartItem:
        if item.quantity <= 0:
            raise ValidationError(
                f"Quantity for {item.name or item.product_id} ({item.size}) must be at least 1.",
                product_id=item.product_id,
                size=item.size,
            )
        key = self.key(item.product_id, item.size)
        existing = self._lines.get(key)
        quantity = item.quantity + (existing.quantity if existing else 0)
        line = item.model_copy(update={"quantity": quantity})
        self._lines[key] = line
        return line

    def remove(self, product_id: str, size: str) -> bool:
        return self._lines.pop(self.key(product_id, size), None) is not None

    def clear(self) -> None:
        self._lines.clear()

    def __iter__(self) -> Iterator[CartItem]:
        return iter(list(self._lines.values()))

    def __len__(self) -> int:
        return len(self._lines)

    @property
    def count(self) -> int:
        return sum(line.quantity for line in self._lines.values())

    @property
    def subtotal(self) -> float:
        return round(sum(line.price * line.quantity for line in self._lines.values()), 2)
