import pytest
from fastapi import WebSocketDisconnect
from fastapi.testclient import TestClient

from database import get_store, settings
from main import app
from store import MemoryStore

ADMIN = {"X-Admin-Email": settings.ADMIN_EMAIL}

PRODUCT = {
    "name": "Classic Cotton Panjabi",
    "slug": "classic-cotton-panjabi",
    "description": "Cotton panjabi",
    "price": 1850.0,
    "old_price": 2200.0,
    "images": ["https://example.com/a.jpg", "  ", ""],
    "stock": {"M": 2, "L": 0},
    "category": "Panjabi",
}


def checkout(product_id, size="M", quantity=1, **overrides):
    body = {
        "items": [{"product_id": product_id, "size": size, "quantity": quantity, "name": "Classic Cotton Panjabi", "price": 1850.0}],
        "customer_name": "Rahim Uddin",
        "phone": "01711000000",
        "address": "House 4, Road 7, Dhanmondi",
        "location": "Inside Dhaka",
        "transaction_id": "9C4A7XK2QD",
    }
    body.update(overrides)
    return body


@pytest.fixture
def product(client):
    res = client.post("/api/admin/products", json=PRODUCT, headers=ADMIN)
    assert res.status_code == 201
    return res.json()


def test_root_and_health(client):
    assert client.get("/").json() == {"message": "Trendy Jamakapor Backend Running"}
    body = client.get("/test").json()
    assert body["backend"] == "✅ Running"
    assert body["collections"] == []


def test_admin_routes_need_admin_email(client):
    assert client.post("/api/admin/products", json=PRODUCT).status_code == 401
    res = client.post("/api/admin/products", json=PRODUCT, headers={"X-Admin-Email": "someone@example.com"})
    assert res.status_code == 403
    assert client.get("/api/admin/orders").status_code == 401


def test_product_crud(client, product):
    assert product["images"] == ["https://example.com/a.jpg"]
    assert client.get(f"/api/products/{product['id']}").json()["stock"] == {"M": 2, "L": 0}

    res = client.put(f"/api/admin/products/{product['id']}", json={"price": 1700, "stock": {"M": 5}}, headers=ADMIN)
    assert res.status_code == 200
    assert res.json()["price"] == 1700
    assert res.json()["stock"] == {"M": 5}
    assert res.json()["name"] == PRODUCT["name"]

    assert client.put(f"/api/admin/products/{product['id']}", json={}, headers=ADMIN).status_code == 400
    assert client.put("/api/admin/products/missing", json={"price": 1}, headers=ADMIN).status_code == 404

    assert client.delete(f"/api/admin/products/{product['id']}", headers=ADMIN).json() == {"success": True}
    assert client.get(f"/api/products/{product['id']}").status_code == 404
    assert client.delete(f"/api/admin/products/{product['id']}", headers=ADMIN).status_code == 404


def test_product_validation(client):
    res = client.post("/api/admin/products", json={**PRODUCT, "stock": {"M": -1}}, headers=ADMIN)
    assert res.status_code == 422
    res = client.post("/api/admin/products", json={**PRODUCT, "category": "Shoes"}, headers=ADMIN)
    assert res.status_code == 422


@pytest.mark.parametrize("size", ["7.5", "$where", "stock.M"])
def test_size_labels_cannot_be_field_paths(client, size):
    res = client.post("/api/admin/products", json={**PRODUCT, "stock": {size: 3}}, headers=ADMIN)
    assert res.status_code == 422
    res = client.get("/api/products")
    assert res.json() == []


def test_list_products_by_category(client, product):
    client.post("/api/admin/products", json={**PRODUCT, "name": "Fleece Hoodie", "slug": "fleece-hoodie", "category": "Winter"}, headers=ADMIN)

    assert [p["name"] for p in client.get("/api/products", params={"category": "Winter"}).json()] == ["Fleece Hoodie"]
    assert len(client.get("/api/products").json()) == 2
    assert [p["name"] for p in client.get("/api/products", params={"q": "cotton"}).json()] == [PRODUCT["name"]]
    assert client.get("/api/products", params={"category": "Shoes"}).status_code == 400


def test_seed_only_fills_empty_catalog(client):
    first = client.post("/seed").json()
    assert first["inserted"] == 5
    assert client.post("/seed").json() == {"inserted": 0}
    assert len(client.get("/api/products").json()) == 5


def test_delivery_charges(client):
    assert client.get("/api/delivery-charges").json() == {"Inside Dhaka": 110, "Outside Dhaka": 130}


def test_checkout_and_tracking_flow(client, product):
    res = client.post("/api/orders", json=checkout(product["id"], quantity=2))
    assert res.status_code == 201
    placed = res.json()
    assert placed["order_id"].startswith("TJ")
    assert placed["total_amount"] == 2 * 1850.0 + 110

    assert client.get(f"/api/products/{product['id']}").json()["stock"] == {"M": 0, "L": 0}

    by_phone = client.get("/api/track", params={"query": "01711000000"}).json()
    by_id = client.get("/api/track", params={"query": placed["order_id"].lower()}).json()
    assert by_phone == by_id
    assert by_id[0]["status"] == "Confirmed"
    assert by_id[0]["subtotal"] == 3700.0
    assert by_id[0]["items"][0]["quantity"] == 2

    res = client.post("/api/orders", json=checkout(product["id"], quantity=1))
    assert res.status_code == 409
    assert res.json()["detail"]["error"] == "InsufficientStock"


def test_outside_dhaka_charge_and_unknown_location(client, product):
    res = client.post("/api/orders", json=checkout(product["id"], location="Outside Dhaka"))
    assert res.json()["total_amount"] == 1850.0 + 130

    res = client.post("/api/orders", json=checkout(product["id"], location="Mars"))
    assert res.status_code == 400

    res = client.post("/api/orders", json=checkout(product["id"], location="Mars", delivery_charge=200))
    assert res.json()["total_amount"] == 1850.0 + 200


def test_insufficient_stock_names_the_item(client, product):
    res = client.post("/api/orders", json=checkout(product["id"], size="L"))

    assert res.status_code == 409
    detail = res.json()["detail"]
    assert detail["error"] == "InsufficientStock"
    assert detail["product_id"] == product["id"]
    assert detail["size"] == "L"
    assert detail["available"] == 0
    assert "Classic Cotton Panjabi (L)" in detail["message"]


def test_placement_errors(client, product):
    res = client.post("/api/orders", json=checkout(product["id"], items=[]))
    assert res.status_code == 400
    assert res.json()["detail"]["error"] == "ValidationError"

    res = client.post("/api/orders", json=checkout(product["id"], quantity=0))
    assert res.status_code == 400

    res = client.post("/api/orders", json=checkout("5f1d7f4e9b1e8b3a2c4d6e8f"))
    assert res.status_code == 404
    assert res.json()["detail"]["error"] == "ProductUnavailable"

    res = client.post("/api/orders", json=checkout(product["id"], order_id="TJ000ABC"))
    assert res.status_code == 201
    res = client.post("/api/orders", json=checkout(product["id"], order_id="TJ000ABC"))
    assert res.status_code == 409
    assert res.json()["detail"]["error"] == "TransactionConflict"


def test_track_requires_query(client):
    assert client.get("/api/track").status_code == 400
    assert client.get("/api/track", params={"query": "TJXYZ999"}).json() == []


def test_admin_order_management(client, product):
    order_id = client.post("/api/orders", json=checkout(product["id"])).json()["order_id"]

    orders = client.get("/api/admin/orders", headers=ADMIN).json()
    assert [o["order_id"] for o in orders] == [order_id]

    res = client.put(f"/api/admin/orders/{order_id}/status", json={"status": "Out for delivery"}, headers=ADMIN)
    assert res.json() == {"status": "updated"}
    res = client.put(f"/api/admin/orders/{order_id}/status", json={"status": "Picked"}, headers=ADMIN)
    assert res.status_code == 200
    assert client.get("/api/track", params={"query": order_id}).json()[0]["status"] == "Picked"

    assert client.put(f"/api/admin/orders/{order_id}/status", json={"status": "Lost"}, headers=ADMIN).status_code == 422
    res = client.put("/api/admin/orders/TJ404/status", json={"status": "Picked"}, headers=ADMIN)
    assert res.status_code == 404
    assert res.json()["detail"]["error"] == "OrderNotFound"

    assert client.delete(f"/api/admin/orders/{order_id}", headers=ADMIN).json() == {"success": True}
    assert client.get("/api/admin/orders", headers=ADMIN).json() == []


def test_product_snapshots_over_websocket(client, product):
    with client.websocket_connect("/ws/products") as ws:
        snapshot = ws.receive_json()
    assert [p["id"] for p in snapshot] == [product["id"]]


def test_order_snapshots_need_admin(client):
    with pytest.raises(WebSocketDisconnect):
        with client.websocket_connect("/ws/orders") as ws:
            ws.receive_json()

    with client.websocket_connect(f"/ws/orders?admin_email={settings.ADMIN_EMAIL}") as ws:
        assert ws.receive_json() == []


class BrokenFeedStore(MemoryStore):
    def subscribe(self, collection, listener, on_error=None):
        unsubscribe = super().subscribe(collection, listener, on_error)
        on_error(ConnectionError("change stream closed"))
        return unsubscribe


def test_socket_closed_when_feed_fails():
    app.dependency_overrides[get_store] = BrokenFeedStore
    try:
        with TestClient(app) as client:
            with client.websocket_connect("/ws/products") as ws:
                assert ws.receive_json() == []
                with pytest.raises(WebSocketDisconnect) as excinfo:
                    ws.receive_json()
        assert excinfo.value.code == 1011
    finally:
        app.dependency_overrides.clear()
