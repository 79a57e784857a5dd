import os
from contextlib import contextmanager

import mongomock
import pytest
from bson import ObjectId

os.environ.setdefault("BCRYPT_ROUNDS", "4")
os.environ.setdefault("JWT_SECRET", "test-secret")

import database  # noqa: E402

# In-memory store, installed before the app modules bind ``db``
database.client = mongomock.MongoClient()
database.db = database.client["storefront_test"]


@contextmanager
def snapshot_transaction():
    """
    Stand-in for a MongoDB transaction on mongomock, which has no sessions.

    Copies every collection on entry and puts the copies back if the block
    raises, so a failed write sequence leaves nothing behind.
    """
    store = database.db
    saved = {name: list(store[name].find()) for name in store.list_collection_names()}
    try:
        yield None
    except Exception:
        for name in store.list_collection_names():
            store[name].delete_many({})
            if saved.get(name):
                store[name].insert_many(saved[name])
        raise


database.transaction = snapshot_transaction

from fastapi.testclient import TestClient  # noqa: E402

from auth import create_token  # noqa: E402
from main import app  # noqa: E402

API = "/api/v1"


@pytest.fixture
def db():
    return database.db


@pytest.fixture
def client(db):
    for name in db.list_collection_names():
        db[name].delete_many({})
    with TestClient(app) as c:
        yield c


@pytest.fixture
def register(client, db):
    def _register(name="Alice", email="alice@shop.io", password="secret123", role="user"):
        resp = client.post(f"{API}/auth/register", json={"name": name, "email": email, "password": password})
        assert resp.status_code == 201, resp.text
        client.cookies.clear()
        user_id = resp.json()["data"]["id"]
        if role != "user":
            db["user"].update_one({"_id": ObjectId(user_id)}, {"$set": {"role": role}})
        user = db["user"].find_one({"_id": ObjectId(user_id)})
        return {"id": user_id, "email": email, "headers": {"Authorization": f"Bearer {create_token(user)}"}}

    return _register


@pytest.fixture
def user(register):
    return register()


@pytest.fixture
def other_user(register):
    return register(name="Bob", email="bob@shop.io")


@pytest.fixture
def admin(register):
    return register(name="Admin", email="admin@shop.io", role="admin")


@pytest.fixture
def catalog(client, admin):
    headers = admin["headers"]
    category = client.post(f"{API}/categories", json={"name": "Laptops"}, headers=headers).json()["data"]
    brand = client.post(f"{API}/brands", json={"name": "Dell"}, headers=headers).json()["data"]
    supplier = client.post(
        f"{API}/suppliers",
        json={"name": "Acme", "email": "sales@acme.io", "phone": "555-0100", "company": "Acme Ltd"},
        headers=headers,
    ).json()["data"]

    def make_product(name="XPS 13", price=100.0, stock=5, **extra):
        body = {
            "name": name,
            "description": f"{name} description",
            "price": price,
            "stock": stock,
            "category_id": category["id"],
            "brand_id": brand["id"],
            "images": [f"https://img.example.com/{name}.png"],
            **extra,
        }
        resp = client.post(f"{API}/products", json=body, headers=headers)
        assert resp.status_code == 201, resp.text
        return resp.json()["data"]

    return {
        "category_id": category["id"],
        "brand_id": brand["id"],
        "supplier_id": supplier["id"],
        "make_product": make_product,
    }


@pytest.fixture
def stock_of(db):
    def _stock_of(product_id):
        return db["product"].find_one({"_id": ObjectId(product_id)})["stock"]

    return _stock_of


SHIPPING = {"street": "1 Main St", "city": "Springfield", "zip_code": "12345", "country": "US"}


@pytest.fixture
def place_order(client):
    def _place_order(owner, lines, **extra):
        body = {
            "items": [{"product_id": pid, "quantity": qty} for pid, qty in lines],
            "shipping_address": SHIPPING,
            "payment_method": "PayPal",
            **extra,
        }
        return client.post(f"{API}/orders", json=body, headers=owner["headers"])

    return _place_order


@pytest.fixture
def intercept(monkeypatch):
    """Route one collection method through ``replacement(original, collection, *args, **kwargs)``"""
    def _intercept(method, collection_name, replacement):
        original = getattr(mongomock.Collection, method)

        def patched(self, *args, **kwargs):
            if self.name == collection_name:
                return replacement(original, self, *args, **kwargs)
            return original(self, *args, **kwargs)

        monkeypatch.setattr(mongomock.Collection, method, patched)

    return _intercept
