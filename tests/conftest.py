import os
from datetime import timedelta

import mongomock

os.environ["DATABASE_URL"] = "mongodb://localhost:27017"
os.environ["DATABASE_NAME"] = "storefront_test"

# Every MongoClient built after this talks to an in-memory server
mongomock.patch(servers=(("localhost", 27017),)).start()

import pytest  # noqa: E402
from fastapi.testclient import TestClient

from auth import create_token
from database import db, ensure_indexes, now_utc
from main import app


@pytest.fixture(autouse=True)
def clean_db():
    for name in db.list_collection_names():
        db.drop_collection(name)
    ensure_indexes()
    yield


@pytest.fixture
def client():
    with TestClient(app) as c:
        yield c


@pytest.fixture
def make_user():
    counter = {"n": 0}

    def _make(is_admin=False, **overrides):
        counter["n"] += 1
        doc = {
            "name": f"User {counter['n']}",
            "email": f"user{counter['n']}@example.com",
            "hashed_password": "x",
            "is_active": True,
            "is_admin": is_admin,
            "addresses": [],
            "created_at": now_utc(),
        }
        doc.update(overrides)
        doc["_id"] = db["user"].insert_one(doc).inserted_id
        return doc

    return _make


@pytest.fixture
def user(make_user):
    return make_user()


@pytest.fixture
def admin(make_user):
    return make_user(is_admin=True)


def auth_header(user):
    return {"Authorization": f"Bearer {create_token(user)}"}


@pytest.fixture
def make_product():
    counter = {"n": 0}

    def _make(**overrides):
        counter["n"] += 1
        doc = {
            "title": f"Product {counter['n']}",
            "slug": f"product-{counter['n']}",
            "sku": f"SKU-{counter['n']:04d}",
            "price": 10.0,
            "images": [f"https://img.example.com/{counter['n']}.jpg"],
            "category_ids": [],
            "inventory": 10,
            "track_inventory": True,
            "is_active": True,
            "created_at": now_utc(),
        }
        doc.update(overrides)
        doc["_id"] = db["product"].insert_one(doc).inserted_id
        return doc

    return _make


@pytest.fixture
def make_coupon():
    def _make(**overrides):
        now = now_utc()
        doc = {
            "code": "SAVE10",
            "description": "Ten percent off",
            "discount_type": "percentage",
            "value": 10,
            "minimum_amount": 0,
            "maximum_discount": None,
            "usage_limit": None,
            "used_count": 0,
            "user_limit": 1,
            "valid_from": now - timedelta(days=1),
            "valid_until": now + timedelta(days=30),
            "is_active": True,
            "applicable_products": [],
            "applicable_categories": [],
            "excluded_products": [],
            "used_by": [],
            "version": 0,
        }
        doc.update(overrides)
        doc["_id"] = db["coupon"].insert_one(doc).inserted_id
        return doc

    return _make


@pytest.fixture
def make_discount():
    def _make(**overrides):
        now = now_utc()
        doc = {
            "name": "Rule",
            "discount_type": "percentage",
            "value": 10,
            "buy_quantity": None,
            "get_quantity": None,
            "conditions": {
                "min_order_amount": 0,
                "max_order_amount": None,
                "applicable_products": [],
                "applicable_categories": [],
                "customer_segments": [],
                "first_time_only": False,
                "max_usage_per_customer": None,
            },
            "stackable": False,
            "priority": 0,
            "is_active": True,
            "start_date": now - timedelta(days=1),
            "end_date": now + timedelta(days=30),
            "usage_count": 0,
            "max_usage": None,
        }
        conditions = overrides.pop("conditions", {})
        doc.update(overrides)
        doc["conditions"].update(conditions)
        doc["_id"] = db["discount"].insert_one(doc).inserted_id
        return doc

    return _make


ADDRESS = {
    "full_name": "Ada Lovelace",
    "line1": "12 Analytical Row",
    "city": "London",
    "postal_code": "N1 9GU",
    "country": "UK",
}
