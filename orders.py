"""
Order placement, tracking and admin order management.

``place_order`` is the only operation with a consistency guarantee: stock
checks, stock decrements and the order insert run in one store transaction,
so either every line is reserved and the order exists, or nothing changed.
"""

from __future__ import annotations
import logging
import re
from datetime import datetime, timedelta, timezone
from typing import Any, Iterable, Optional

from cart import Cart
from database import settings
from errors import (
    CommitOutcomeUnknown,
    InsufficientStock,
    OrderIdTaken,
    OrderNotFound,
    PlacementError,
    ProductUnavailable,
    TransactionConflict,
    ValidationError,
)
from schemas import CartItem, OrderItem, OrderMeta
from store import Store

logger = logging.getLogger(__name__)


def generate_order_id(phone: str, now: Optional[datetime] = None, prefix: Optional[str] = None) -> str:
    """``TJ`` + last six digits of the millisecond clock + last three phone characters."""
    now = now or datetime.now(timezone.utc)
    prefix = prefix or settings.ORDER_ID_PREFIX
    millis = str(int(now.timestamp() * 1000))[-6:]
    tail = re.sub(r"[^0-9A-Za-z]", "", phone or "")[-3:]
    return f"{prefix}{millis}{tail}".upper()


def is_order_id(query: str, prefix: Optional[str] = None) -> bool:
    prefix = prefix or settings.ORDER_ID_PREFIX
    return query.strip().upper().startswith(prefix.upper())


async def place_order(
    store: Store,
    items: Iterable[CartItem],
    meta: OrderMeta,
    order_id: Optional[str] = None,
    *,
    reprice: Optional[bool] = None,
    attempts: Optional[int] = None,
) -> dict[str, Any]:
    items = list(items)
    if not items:
        raise ValidationError("Cart is empty.")
    cart = Cart(items)

    reprice = settings.REPRICE_FROM_CATALOG if reprice is None else reprice
    attempts = attempts or settings.ORDER_ID_ATTEMPTS
    requested_id = order_id.strip().upper() if order_id else None
    issued = datetime.now(timezone.utc)

    for attempt in range(attempts):
        candidate = requested_id or generate_order_id(meta.phone, issued + timedelta(milliseconds=attempt))
        try:
            order = await _commit_order(store, cart, meta, candidate, reprice)
        except OrderIdTaken:
            if requested_id:
                raise TransactionConflict(f"Order {requested_id} already exists.", order_id=requested_id)
            logger.warning("Order id %s already taken, generating another", candidate)
            continue
        except PlacementError as exc:
            logger.warning("Order rejected for %s: %s", meta.phone, exc.message)
            raise
        except CommitOutcomeUnknown as exc:
            exc.context["order_id"] = candidate
            logger.error("Order %s may or may not have been placed: %s", candidate, exc.message)
            raise
        logger.info("Order %s placed: %d line(s), total %s", candidate, len(order["items"]), order["total_amount"])
        return order

    raise TransactionConflict("Could not allocate a unique order id. Please try again.")


async def _commit_order(store: Store, cart: Cart, meta: OrderMeta, order_id: str, reprice: bool) -> dict[str, Any]:
    async with store.transaction() as txn:
        lines = []
        for item in cart:
            label = item.name or item.product_id
            product = await txn.get_product(item.product_id)
            if product is None:
                raise ProductUnavailable(
                    f"Product {label} unavailable.",
                    product_id=item.product_id,
                    name=item.name or None,
                )
            available = int((product.get("stock") or {}).get(item.size, 0))
            if available < item.quantity:
                raise InsufficientStock(
                    f"Insufficient stock for {product.get('name') or label} ({item.size}).",
                    requested=item.quantity,
                    available=available,
                    product_id=item.product_id,
                    size=item.size,
                    name=product.get("name") or item.name or None,
                )
            if reprice:
                price, name = float(product.get("price", 0)), product.get("name") or item.name
            else:
                price, name = item.price, item.name or product.get("name", "")
            lines.append(OrderItem(product_id=item.product_id, name=name, size=item.size, quantity=item.quantity, price=price))

        for line in lines:
            await txn.decrement_stock(line.product_id, line.size, line.quantity)

        subtotal = round(sum(line.price * line.quantity for line in lines), 2)
        order = {
            **meta.model_dump(),
            "order_id": order_id,
            "items": [line.model_dump() for line in lines],
            "subtotal": subtotal,
            "total_amount": round(subtotal + meta.delivery_charge, 2),
            "status": "Confirmed",
        }
        await txn.create_order(order_id, order)
    return order


async def track_orders(store: Store, query: str) -> list[dict[str, Any]]:
    query = (query or "").strip()
    if not query:
        return []
    if is_order_id(query):
        return await store.find_orders({"order_id": query.upper()})
    return await store.find_orders({"phone": query})


async def list_orders(store: Store) -> list[dict[str, Any]]:
    return await store.find_orders()


async def update_order_status(store: Store, order_id: str, status: str) -> None:
    if not await store.set_order_status(order_id, status):
        raise OrderNotFound(order_id)
    logger.info("Order %s status set to %s", order_id, status)


async def delete_order(store: Store, order_id: str) -> None:
    if not await store.delete_order(order_id):
        raise OrderNotFound(order_id)
    logger.info("Order %s deleted", order_id)
