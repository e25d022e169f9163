import asyncio
import logging
from typing import List, Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request, WebSocket, WebSocketDisconnect, status
from fastapi.encoders import jsonable_encoder
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from database import get_store, settings
from errors import StoreError
from orders import delete_order, list_orders, place_order, track_orders, update_order_status
from schemas import CATEGORIES, Order, OrderCreate, OrderMeta, OrderPlaced, Product, ProductOut, ProductUpdate, StatusUpdate
from store import ORDERS, PRODUCTS, Store

logging.basicConfig(level=settings.LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger(__name__)

app = FastAPI(title="Trendy Jamakapor API")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

@app.exception_handler(StoreError)
async def store_error_handler(request: Request, exc: StoreError):
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.to_dict()})

# Admin

def is_admin(email: Optional[str]) -> bool:
    return bool(email) and email.strip().lower() == settings.ADMIN_EMAIL.strip().lower()

def require_admin(x_admin_email: Optional[str] = Header(None)):
    if not x_admin_email:
        raise HTTPException(status_code=401, detail="Missing admin email")
    if not is_admin(x_admin_email):
        raise HTTPException(status_code=403, detail="Not an admin account")
    return True

@app.get("/")
async def root():
    return {"message": "Trendy Jamakapor Backend Running"}

@app.get("/test")
async def test(store: Store = Depends(get_store)):
    try:
        colls = await store.collection_names()
        return {
            "backend": "✅ Running",
            "database": "✅ Available",
            "store_backend": settings.STORE_BACKEND,
            "database_name": settings.DATABASE_NAME,
            "connection_status": "Connected",
            "collections": colls,
        }
    except Exception as e:
        logger.exception("Store health check failed")
        return {"backend": "✅ Running", "database": "❌ Not Available", "error": str(e)[:80]}

# Seed data: a few storefront staples across categories
SEED_PRODUCTS: list[dict] = [
    {"name": "Classic Cotton Panjabi", "slug": "classic-cotton-panjabi", "description": "Breathable cotton panjabi with embroidered placket.", "price": 1850.0, "old_price": 2200.0, "category": "Panjabi", "stock": {"M": 8, "L": 10, "XL": 5}, "images": ["https://images.unsplash.com/photo-1597983073493-88cd35cf93b0?q=80&w=1200&auto=format&fit=crop"]},
    {"name": "Oxford Button-Down Shirt", "slug": "oxford-button-down-shirt", "description": "Everyday oxford shirt, regular fit.", "price": 1450.0, "category": "Shirt", "stock": {"M": 12, "L": 12, "XL": 6}, "images": ["https://images.unsplash.com/photo-1596755094514-f87e34085b2c?q=80&w=1200&auto=format&fit=crop"]},
    {"name": "Drop Shoulder Tee", "slug": "drop-shoulder-tee", "description": "Heavyweight cotton tee with a relaxed drop shoulder.", "price": 650.0, "old_price": 800.0, "category": "T-Shirt", "stock": {"S": 15, "M": 20, "L": 20, "XL": 10}, "images": ["https://images.unsplash.com/photo-1521572163474-6864f9cf17ab?q=80&w=1200&auto=format&fit=crop"]},
    {"name": "Linen Summer Shirt", "slug": "linen-summer-shirt", "description": "Light linen blend for hot and humid days.", "price": 1650.0, "category": "Summer", "stock": {"M": 6, "L": 6}, "images": ["https://images.unsplash.com/photo-1602810318383-e386cc2a3ccf?q=80&w=1200&auto=format&fit=crop"]},
    {"name": "Fleece Zip Hoodie", "slug": "fleece-zip-hoodie", "description": "Brushed fleece hoodie for winter evenings.", "price": 2450.0, "category": "Winter", "stock": {"M": 4, "L": 7, "XL": 3}, "images": ["https://images.unsplash.com/photo-1556821840-3a63f95609a7?q=80&w=1200&auto=format&fit=crop"]},
]

class SeedResponse(BaseModel):
    inserted: int

@app.post("/seed", response_model=SeedResponse)
async def seed_products(store: Store = Depends(get_store)):
    # Insert only if products collection is empty
    if await store.count_products() == 0:
        for p in SEED_PRODUCTS:
            await store.create_product(Product(**p).model_dump())
        return SeedResponse(inserted=len(SEED_PRODUCTS))
    return SeedResponse(inserted=0)

# Products

@app.get("/api/products", response_model=List[ProductOut])
async def list_products(category: Optional[str] = Query(None), q: Optional[str] = Query(None), store: Store = Depends(get_store)):
    if category and category not in CATEGORIES:
        raise HTTPException(status_code=400, detail=f"Unknown category {category}")
    return await store.list_products(category=category, q=q)

@app.get("/api/products/{product_id}", response_model=ProductOut)
async def get_product(product_id: str, store: Store = Depends(get_store)):
    doc = await store.get_product(product_id)
    if not doc:
        raise HTTPException(status_code=404, detail="Product not found")
    return doc

@app.post("/api/admin/products", response_model=ProductOut, status_code=201)
async def create_product(payload: Product, authorized: bool = Depends(require_admin), store: Store = Depends(get_store)):
    return await store.create_product(payload.model_dump())

@app.put("/api/admin/products/{product_id}", response_model=ProductOut)
async def update_product(product_id: str, payload: ProductUpdate, authorized: bool = Depends(require_admin), store: Store = Depends(get_store)):
    data = payload.model_dump(exclude_none=True)
    if not data:
        raise HTTPException(status_code=400, detail="No fields to update")
    doc = await store.update_product(product_id, data)
    if not doc:
        raise HTTPException(status_code=404, detail="Product not found")
    return doc

@app.delete("/api/admin/products/{product_id}")
async def delete_product(product_id: str, authorized: bool = Depends(require_admin), store: Store = Depends(get_store)):
    if not await store.delete_product(product_id):
        raise HTTPException(status_code=404, detail="Product not found")
    return {"success": True}

# Checkout

@app.get("/api/delivery-charges")
async def delivery_charges():
    return settings.DELIVERY_CHARGES

@app.post("/api/orders", response_model=OrderPlaced, status_code=201)
async def create_order(payload: OrderCreate, store: Store = Depends(get_store)):
    charge = payload.delivery_charge
    if charge is None:
        charge = settings.DELIVERY_CHARGES.get(payload.location)
        if charge is None:
            raise HTTPException(status_code=400, detail=f"Unknown delivery location {payload.location}")
    meta = OrderMeta(**payload.model_dump(exclude={"items", "order_id", "delivery_charge"}), delivery_charge=charge)
    order = await place_order(store, payload.items, meta, order_id=payload.order_id)
    return OrderPlaced(order_id=order["order_id"], total_amount=order["total_amount"])

@app.get("/api/track", response_model=List[Order])
async def track(query: str = Query(""), store: Store = Depends(get_store)):
    if not query.strip():
        raise HTTPException(status_code=400, detail="Query parameter is required.")
    return await track_orders(store, query)

# Order management

@app.get("/api/admin/orders", response_model=List[Order])
async def admin_orders(authorized: bool = Depends(require_admin), store: Store = Depends(get_store)):
    return await list_orders(store)

@app.put("/api/admin/orders/{order_id}/status")
async def admin_update_status(order_id: str, body: StatusUpdate, authorized: bool = Depends(require_admin), store: Store = Depends(get_store)):
    await update_order_status(store, order_id, body.status)
    return {"status": "updated"}

@app.delete("/api/admin/orders/{order_id}")
async def admin_delete_order(order_id: str, authorized: bool = Depends(require_admin), store: Store = Depends(get_store)):
    await delete_order(store, order_id)
    return {"success": True}

# Realtime snapshots

async def stream_snapshots(websocket: WebSocket, store: Store, collection: str):
    await websocket.accept()
    queue: asyncio.Queue = asyncio.Queue()
    # None marks a failed subscription
    unsubscribe = store.subscribe(collection, queue.put_nowait, on_error=lambda exc: queue.put_nowait(None))

    async def pump():
        while True:
            snapshot = await queue.get()
            if snapshot is None:
                await websocket.close(code=status.WS_1011_INTERNAL_ERROR)
                return
            await websocket.send_json(jsonable_encoder(snapshot))

    sender = asyncio.ensure_future(pump())
    try:
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        pass
    finally:
        sender.cancel()
        unsubscribe()

@app.websocket("/ws/products")
async def watch_products(websocket: WebSocket, store: Store = Depends(get_store)):
    await stream_snapshots(websocket, store, PRODUCTS)

@app.websocket("/ws/orders")
async def watch_orders(websocket: WebSocket, admin_email: Optional[str] = None, store: Store = Depends(get_store)):
    if not is_admin(admin_email):
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return
    await stream_snapshots(websocket, store, ORDERS)

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=settings.PORT)
