import mongomock
import pytest

import database

# Route every module at an in-memory database before they bind `db`.
database.db = mongomock.MongoClient()["storefront_test"]

from fastapi.testclient import TestClient  # noqa: E402

from auth import create_access_token, hash_password  # noqa: E402
from main import app, limiter  # noqa: E402


@pytest.fixture(autouse=True)
def clean_db():
    for name in database.db.list_collection_names():
        database.db.drop_collection(name)
    database.ensure_indexes()
    limiter.reset()
    yield


@pytest.fixture
def db():
    return database.db


@pytest.fixture
def client():
    return TestClient(app)


def _insert_user(username, role="user", password="secret123", is_active=True):
    user_id = database.create_document("user", {
        "username": username,
        "email": f"{username}@example.com",
        "password_hash": hash_password(password),
        "first_name": username.capitalize(),
        "last_name": "Tester",
        "role": role,
        "is_active": is_active,
    })
    return {"id": user_id, "username": username, "headers": {"Authorization": f"Bearer {create_access_token({'sub': user_id})}"}}


@pytest.fixture
def make_user():
    return _insert_user


@pytest.fixture
def customer():
    return _insert_user("alice")


@pytest.fixture
def other_customer():
    return _insert_user("bob")


@pytest.fixture
def admin():
    return _insert_user("root", role="admin")


@pytest.fixture
def make_product(admin):
    def _make(name="Laptop", price=1000.0, stock=10, category="electronics", brand="Acme", is_active=True, **extra):
        return database.create_document("product", {
            "name": name,
            "description": f"{name} description",
            "price": price,
            "category": category,
            "brand": brand,
            "stock": stock,
            "images": [],
            "tags": extra.pop("tags", []),
            "specifications": {},
            "is_active": is_active,
            "created_by": admin["id"],
            **extra,
        })
    return _make


@pytest.fixture
def address():
    return {"street": "1 Main St", "city": "Springfield", "postal_code": "12345", "country": "US"}


@pytest.fixture
def checkout_payload(address):
    return {"shipping_address": address, "billing_address": address, "payment_method": "credit_card"}
