import pytest
from fastapi.testclient import TestClient

from database import get_store
from main import app
from schemas import OrderMeta
from store import MemoryStore


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def make_product(store):
    async def make(**overrides):
        data = {
            "name": "Drop Shoulder Tee",
            "slug": "drop-shoulder-tee",
            "description": "",
            "price": 500.0,
            "images": [],
            "stock": {"M": 2, "L": 0},
            "category": "T-Shirt",
        }
        data.update(overrides)
        return await store.create_product(data)

    return make


@pytest.fixture
def meta():
    return OrderMeta(
        customer_name="Rahim Uddin",
        phone="01711000000",
        address="House 4, Road 7, Dhanmondi",
        location="Inside Dhaka",
        delivery_charge=110,
        transaction_id="9C4A7XK2QD",
    )


@pytest.fixture
def client(store):
    app.dependency_overrides[get_store] = lambda: store
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()
