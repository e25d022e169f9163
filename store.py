"""
Document store interface

Two collections back the storefront, named after the lowercased schema class
as the rest of the backend does:
- "product": catalog records keyed by a store-assigned ObjectId string
- "order": order records keyed by their human-readable order id

Order placement only touches the direct read/write surface through
``Store.transaction()``. ``subscribe`` pushes full collection snapshots to
listeners (admin dashboard, live catalog) and is never used by the core.

``MemoryStore`` keeps everything in process and is what the tests run on.
"""

from __future__ import annotations
import asyncio
import copy
import logging
import re
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import Any, AsyncIterator, Callable, Optional, Protocol

from bson import ObjectId

from errors import OrderIdTaken, TransactionConflict

logger = logging.getLogger(__name__)

PRODUCTS = "product"
ORDERS = "order"
COLLECTIONS = (PRODUCTS, ORDERS)

Snapshot = list[dict[str, Any]]
Listener = Callable[[Snapshot], None]
ErrorListener = Callable[[BaseException], None]
Unsubscribe = Callable[[], None]


class Transaction(Protocol):
    async def get_product(self, product_id: str) -> Optional[dict[str, Any]]: ...

    async def decrement_stock(self, product_id: str, size: str, quantity: int) -> None: ...

    async def create_order(self, order_id: str, data: dict[str, Any]) -> None: ...


class Store(Protocol):
    def transaction(self) -> Any:
        """Async context manager yielding a ``Transaction``; commits on clean exit."""

    async def get_product(self, product_id: str) -> Optional[dict[str, Any]]: ...

    async def list_products(self, category: Optional[str] = None, q: Optional[str] = None) -> Snapshot: ...

    async def count_products(self) -> int: ...

    async def create_product(self, data: dict[str, Any]) -> dict[str, Any]: ...

    async def update_product(self, product_id: str, data: dict[str, Any]) -> Optional[dict[str, Any]]: ...

    async def delete_product(self, product_id: str) -> bool: ...

    async def get_order(self, order_id: str) -> Optional[dict[str, Any]]: ...

    async def find_orders(self, filter_dict: Optional[dict[str, Any]] = None) -> Snapshot: ...

    async def set_order_status(self, order_id: str, status: str) -> bool: ...

    async def delete_order(self, order_id: str) -> bool: ...

    async def collection_names(self) -> list[str]: ...

    def subscribe(self, collection: str, listener: Listener, on_error: Optional[ErrorListener] = None) -> Unsubscribe: ...


def newest_first(orders: Snapshot) -> Snapshot:
    epoch = datetime.min.replace(tzinfo=timezone.utc)
    return sorted(orders, key=lambda o: o.get("timestamp") or epoch, reverse=True)


def name_matches(product: dict[str, Any], q: Optional[str]) -> bool:
    if not q:
        return True
    return re.search(re.escape(q), product.get("name") or "", re.IGNORECASE) is not None


class MemoryTransaction:
    """Optimistic transaction: reads record versions, writes are staged."""

    def __init__(self, store: "MemoryStore"):
        self._store = store
        self.reads: dict[str, int] = {}
        self.decrements: dict[tuple[str, str], int] = {}
        self.creates: dict[str, dict[str, Any]] = {}

    async def get_product(self, product_id: str) -> Optional[dict[str, Any]]:
        self.reads[product_id] = self._store.version(PRODUCTS, product_id)
        doc = copy.deepcopy(self._store.docs[PRODUCTS].get(product_id))
        # yield like a network round-trip so concurrent placements interleave
        await asyncio.sleep(0)
        return doc

    async def decrement_stock(self, product_id: str, size: str, quantity: int) -> None:
        if product_id not in self.reads:
            raise RuntimeError(f"product {product_id} must be read before it is written")
        key = (product_id, size)
        self.decrements[key] = self.decrements.get(key, 0) + quantity

    async def create_order(self, order_id: str, data: dict[str, Any]) -> None:
        self.creates[order_id] = copy.deepcopy(data)


class MemoryStore:
    def __init__(self):
        self.docs: dict[str, dict[str, dict[str, Any]]] = {name: {} for name in COLLECTIONS}
        self._versions: dict[tuple[str, str], int] = {}
        self._listeners: dict[str, list[Listener]] = {name: [] for name in COLLECTIONS}
        self._last_timestamp: Optional[datetime] = None

    # Bookkeeping

    def version(self, collection: str, key: str) -> int:
        return self._versions.get((collection, key), 0)

    def _touch(self, collection: str, key: str) -> None:
        self._versions[(collection, key)] = self.version(collection, key) + 1

    def _now(self) -> datetime:
        now = datetime.now(timezone.utc)
        if self._last_timestamp is not None and now <= self._last_timestamp:
            now = self._last_timestamp + timedelta(microseconds=1)
        self._last_timestamp = now
        return now

    # Transactions

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[MemoryTransaction]:
        txn = MemoryTransaction(self)
        yield txn
        self._commit(txn)

    def _commit(self, txn: MemoryTransaction) -> None:
        # Runs without awaiting, so validation and apply are one step on the event loop.
        for product_id, seen in txn.reads.items():
            if self.version(PRODUCTS, product_id) != seen:
                logger.warning("Commit rejected, product %s changed since read", product_id)
                raise TransactionConflict(
                    "Stock changed while the order was being placed. Please try again.",
                    product_id=product_id,
                )
        for order_id in txn.creates:
            if order_id in self.docs[ORDERS]:
                raise OrderIdTaken(order_id)

        now = self._now()
        touched = set()
        for (product_id, size), quantity in txn.decrements.items():
            product = self.docs[PRODUCTS][product_id]
            stock = product.setdefault("stock", {})
            stock[size] = int(stock.get(size, 0)) - quantity
            product["updated_at"] = now
            touched.add(product_id)
        for product_id in touched:
            self._touch(PRODUCTS, product_id)
        for order_id, data in txn.creates.items():
            self.docs[ORDERS][order_id] = {**data, "order_id": order_id, "timestamp": now}
            self._touch(ORDERS, order_id)

        if touched:
            self._notify(PRODUCTS)
        if txn.creates:
            self._notify(ORDERS)

    # Products

    async def get_product(self, product_id: str) -> Optional[dict[str, Any]]:
        return copy.deepcopy(self.docs[PRODUCTS].get(product_id))

    async def list_products(self, category: Optional[str] = None, q: Optional[str] = None) -> Snapshot:
        return [
            copy.deepcopy(p)
            for p in self.docs[PRODUCTS].values()
            if (not category or p.get("category") == category) and name_matches(p, q)
        ]

    async def count_products(self) -> int:
        return len(self.docs[PRODUCTS])

    async def create_product(self, data: dict[str, Any]) -> dict[str, Any]:
        product_id = str(ObjectId())
        now = self._now()
        self.docs[PRODUCTS][product_id] = {**copy.deepcopy(data), "id": product_id, "created_at": now, "updated_at": now}
        self._touch(PRODUCTS, product_id)
        self._notify(PRODUCTS)
        return await self.get_product(product_id)

    async def update_product(self, product_id: str, data: dict[str, Any]) -> Optional[dict[str, Any]]:
        product = self.docs[PRODUCTS].get(product_id)
        if product is None:
            return None
        changes = {k: copy.deepcopy(v) for k, v in data.items() if k not in ("id", "created_at")}
        product.update(changes, updated_at=self._now())
        self._touch(PRODUCTS, product_id)
        self._notify(PRODUCTS)
        return await self.get_product(product_id)

    async def delete_product(self, product_id: str) -> bool:
        if self.docs[PRODUCTS].pop(product_id, None) is None:
            return False
        self._touch(PRODUCTS, product_id)
        self._notify(PRODUCTS)
        return True

    # Orders

    async def get_order(self, order_id: str) -> Optional[dict[str, Any]]:
        return copy.deepcopy(self.docs[ORDERS].get(order_id))

    async def find_orders(self, filter_dict: Optional[dict[str, Any]] = None) -> Snapshot:
        filter_dict = filter_dict or {}
        matches = [
            copy.deepcopy(o)
            for o in self.docs[ORDERS].values()
            if all(o.get(k) == v for k, v in filter_dict.items())
        ]
        return newest_first(matches)

    async def set_order_status(self, order_id: str, status: str) -> bool:
        order = self.docs[ORDERS].get(order_id)
        if order is None:
            return False
        order["status"] = status
        self._touch(ORDERS, order_id)
        self._notify(ORDERS)
        return True

    async def delete_order(self, order_id: str) -> bool:
        if self.docs[ORDERS].pop(order_id, None) is None:
            return False
        self._touch(ORDERS, order_id)
        self._notify(ORDERS)
        return True

    async def collection_names(self) -> list[str]:
        return sorted(name for name, docs in self.docs.items() if docs)

    # Realtime

    def snapshot(self, collection: str) -> Snapshot:
        docs = [copy.deepcopy(d) for d in self.docs[collection].values()]
        if collection == ORDERS:
            return newest_first(docs)
        return docs

    def subscribe(self, collection: str, listener: Listener, on_error: Optional[ErrorListener] = None) -> Unsubscribe:
        # on_error is accepted for parity with MongoStore; snapshots here cannot fail
        if collection not in self._listeners:
            raise ValueError(f"Unknown collection {collection!r}")
        self._listeners[collection].append(listener)
        listener(self.snapshot(collection))

        def unsubscribe() -> None:
            if listener in self._listeners[collection]:
                self._listeners[collection].remove(listener)

        return unsubscribe

    def _notify(self, collection: str) -> None:
        for listener in list(self._listeners[collection]):
            try:
                listener(self.snapshot(collection))
            except Exception:
                # writes are already applied; a broken listener must not fail them
                logger.exception("Listener for %s failed", collection)
