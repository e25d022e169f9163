from __future__ import annotations
import asyncio
import logging
import re
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Optional

from bson import ObjectId
from bson.errors import InvalidId
from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorClientSession, AsyncIOMotorDatabase
from pydantic_settings import BaseSettings, SettingsConfigDict
from pymongo.errors import DuplicateKeyError, PyMongoError

from errors import CommitOutcomeUnknown, OrderIdTaken, TransactionConflict
from store import ORDERS, PRODUCTS, ErrorListener, Listener, MemoryStore, Unsubscribe

logger = logging.getLogger(__name__)

WRITE_CONFLICT = 112
COMMIT_ATTEMPTS = 3


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    DATABASE_URL: str = "mongodb://localhost:27017"
    DATABASE_NAME: str = "trendy_jamakapor"
    STORE_BACKEND: str = "mongo"
    ADMIN_EMAIL: str = "admin@trendy-jamakapor.com"
    ORDER_ID_PREFIX: str = "TJ"
    ORDER_ID_ATTEMPTS: int = 3
    REPRICE_FROM_CATALOG: bool = False
    DELIVERY_CHARGES: dict[str, float] = {"Inside Dhaka": 110, "Outside Dhaka": 130}
    LOG_LEVEL: str = "INFO"
    PORT: int = 8000

settings = Settings()

_client: Optional[AsyncIOMotorClient] = None
_db: Optional[AsyncIOMotorDatabase] = None
_store = None

async def get_db() -> AsyncIOMotorDatabase:
    global _client, _db
    if _db is None:
        # transactions need a replica set; tz_aware keeps timestamps comparable
        _client = AsyncIOMotorClient(settings.DATABASE_URL, tz_aware=True)
        _db = _client[settings.DATABASE_NAME]
    return _db

async def create_document(collection_name: str, data: dict[str, Any]) -> dict[str, Any]:
    db = await get_db()
    now = datetime.now(timezone.utc)
    data_with_meta = {**data, "created_at": now, "updated_at": now}
    result = await db[collection_name].insert_one(data_with_meta)
    inserted = await db[collection_name].find_one({"_id": result.inserted_id})
    if inserted and "_id" in inserted:
        inserted["id"] = str(inserted.pop("_id"))
    return inserted or {}

async def get_documents(collection_name: str, filter_dict: dict[str, Any] | None = None, limit: int = 100) -> list[dict[str, Any]]:
    db = await get_db()
    cursor = db[collection_name].find(filter_dict or {}).limit(limit)
    docs = []
    async for d in cursor:
        d["id"] = str(d.pop("_id"))
        docs.append(d)
    return docs

# Utils

def to_object_id(id_str: str) -> Optional[ObjectId]:
    if not id_str:
        return None
    try:
        return ObjectId(id_str)
    except (InvalidId, TypeError):
        return None

def product_out(doc: Optional[dict[str, Any]]) -> Optional[dict[str, Any]]:
    if not doc:
        return None
    doc["id"] = str(doc.pop("_id"))
    return doc

def order_out(doc: Optional[dict[str, Any]]) -> Optional[dict[str, Any]]:
    if not doc:
        return None
    doc["order_id"] = doc.pop("_id")
    return doc

def is_transaction_conflict(exc: PyMongoError) -> bool:
    if getattr(exc, "code", None) == WRITE_CONFLICT:
        return True
    return exc.has_error_label("TransientTransactionError")

async def commit_with_retry(session: AsyncIOMotorClientSession, attempts: int = COMMIT_ATTEMPTS) -> None:
    # Only an unknown commit result is safe to retry: commitTransaction is idempotent.
    for attempt in range(1, attempts + 1):
        try:
            await session.commit_transaction()
            return
        except PyMongoError as exc:
            if not exc.has_error_label("UnknownTransactionCommitResult"):
                raise
            if attempt == attempts:
                logger.error("Commit outcome still unknown after %d attempts: %s", attempts, exc)
                raise CommitOutcomeUnknown(
                    "The order may have been placed. Check order tracking before trying again."
                ) from exc
            logger.warning("Commit outcome unknown, retrying commit (%d/%d): %s", attempt, attempts, exc)


class MongoTransaction:
    def __init__(self, db: AsyncIOMotorDatabase, session: AsyncIOMotorClientSession):
        self._db = db
        self._session = session

    async def get_product(self, product_id: str) -> Optional[dict[str, Any]]:
        oid = to_object_id(product_id)
        if oid is None:
            return None
        return product_out(await self._db[PRODUCTS].find_one({"_id": oid}, session=self._session))

    async def decrement_stock(self, product_id: str, size: str, quantity: int) -> None:
        field = f"stock.{size}"
        res = await self._db[PRODUCTS].update_one(
            {"_id": ObjectId(product_id), field: {"$gte": quantity}},
            {"$inc": {field: -quantity}, "$currentDate": {"updated_at": True}},
            session=self._session,
        )
        if res.matched_count == 0:
            raise TransactionConflict(
                "Stock changed while the order was being placed. Please try again.",
                product_id=product_id,
                size=size,
            )

    async def create_order(self, order_id: str, data: dict[str, Any]) -> None:
        doc = {**data, "_id": order_id, "order_id": order_id}
        try:
            await self._db[ORDERS].insert_one(doc, session=self._session)
        except DuplicateKeyError as exc:
            raise OrderIdTaken(order_id) from exc
        # timestamp comes from the database clock, not this process
        await self._db[ORDERS].update_one(
            {"_id": order_id}, {"$currentDate": {"timestamp": True}}, session=self._session
        )


class MongoStore:
    """Store backed by MongoDB; placements run as multi-document transactions."""

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[MongoTransaction]:
        db = await get_db()
        try:
            async with await db.client.start_session() as session:
                session.start_transaction()
                try:
                    yield MongoTransaction(db, session)
                except Exception:
                    await session.abort_transaction()
                    raise
                await commit_with_retry(session)
        except PyMongoError as exc:
            if is_transaction_conflict(exc):
                logger.warning("Transaction aborted by a concurrent write: %s", exc)
                raise TransactionConflict(
                    "Stock changed while the order was being placed. Please try again."
                ) from exc
            raise

    async def get_product(self, product_id: str) -> Optional[dict[str, Any]]:
        oid = to_object_id(product_id)
        if oid is None:
            return None
        db = await get_db()
        return product_out(await db[PRODUCTS].find_one({"_id": oid}))

    async def list_products(self, category: Optional[str] = None, q: Optional[str] = None) -> list[dict[str, Any]]:
        filter_dict: dict[str, Any] = {}
        if category:
            filter_dict["category"] = category
        if q:
            filter_dict["name"] = {"$regex": re.escape(q), "$options": "i"}
        return await get_documents(PRODUCTS, filter_dict, limit=500)

    async def count_products(self) -> int:
        db = await get_db()
        return await db[PRODUCTS].count_documents({})

    async def create_product(self, data: dict[str, Any]) -> dict[str, Any]:
        return await create_document(PRODUCTS, data)

    async def update_product(self, product_id: str, data: dict[str, Any]) -> Optional[dict[str, Any]]:
        oid = to_object_id(product_id)
        if oid is None:
            return None
        changes = {k: v for k, v in data.items() if k not in ("id", "_id", "created_at")}
        db = await get_db()
        res = await db[PRODUCTS].update_one({"_id": oid}, {"$set": changes, "$currentDate": {"updated_at": True}})
        if res.matched_count == 0:
            return None
        return await self.get_product(product_id)

    async def delete_product(self, product_id: str) -> bool:
        oid = to_object_id(product_id)
        if oid is None:
            return False
        db = await get_db()
        res = await db[PRODUCTS].delete_one({"_id": oid})
        return res.deleted_count > 0

    async def get_order(self, order_id: str) -> Optional[dict[str, Any]]:
        db = await get_db()
        return order_out(await db[ORDERS].find_one({"_id": order_id}))

    async def find_orders(self, filter_dict: Optional[dict[str, Any]] = None) -> list[dict[str, Any]]:
        db = await get_db()
        cursor = db[ORDERS].find(filter_dict or {}).sort("timestamp", -1)
        return [order_out(d) async for d in cursor]

    async def set_order_status(self, order_id: str, status: str) -> bool:
        db = await get_db()
        res = await db[ORDERS].update_one({"_id": order_id}, {"$set": {"status": status}})
        return res.matched_count > 0

    async def delete_order(self, order_id: str) -> bool:
        db = await get_db()
        res = await db[ORDERS].delete_one({"_id": order_id})
        return res.deleted_count > 0

    async def collection_names(self) -> list[str]:
        db = await get_db()
        return await db.list_collection_names()

    async def snapshot(self, collection: str) -> list[dict[str, Any]]:
        if collection == ORDERS:
            return await self.find_orders()
        return await get_documents(PRODUCTS, {}, limit=500)

    def subscribe(self, collection: str, listener: Listener, on_error: Optional[ErrorListener] = None) -> Unsubscribe:
        async def watch() -> None:
            db = await get_db()
            listener(await self.snapshot(collection))
            async with db[collection].watch() as stream:
                async for _ in stream:
                    listener(await self.snapshot(collection))

        def done(task: asyncio.Future) -> None:
            if task.cancelled():
                return
            exc = task.exception()
            if exc is None:
                return
            logger.error("Change stream on %s stopped", collection, exc_info=exc)
            if on_error is not None:
                on_error(exc)

        task = asyncio.ensure_future(watch())
        task.add_done_callback(done)
        return task.cancel


def get_store():
    global _store
    if _store is None:
        _store = MemoryStore() if settings.STORE_BACKEND == "memory" else MongoStore()
        logger.info("Using %s store", settings.STORE_BACKEND)
    return _store
