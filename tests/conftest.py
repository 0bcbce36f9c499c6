"""Pytest fixtures for the storefront API tests."""

import hashlib
import hmac
import json
import time

import mongomock
import pytest
from fastapi.testclient import TestClient

import database
from config import settings
from database import create_document, ensure_indexes, to_object_id
from schemas import Category, Product, User
from security import create_access_token, hash_password

WEBHOOK_SECRET = "whsec_test_secret"
PASSWORD = "Secret123"


@pytest.fixture(autouse=True)
def test_settings(monkeypatch):
    """Fast hashing, fixed pricing rules and fake Stripe credentials."""
    monkeypatch.setattr(settings, "bcrypt_rounds", 4)
    monkeypatch.setattr(settings, "use_transactions", False)
    monkeypatch.setattr(settings, "stripe_secret_key", "sk_test_123")
    monkeypatch.setattr(settings, "stripe_webhook_secret", WEBHOOK_SECRET)
    monkeypatch.setattr(settings, "resend_api_key", None)
    monkeypatch.setattr(settings, "enable_email_verification", False)
    monkeypatch.setattr(settings, "currency", "usd")
    monkeypatch.setattr(settings, "tax_rate_bps", 1000)
    monkeypatch.setattr(settings, "free_shipping_threshold_cents", 10000)
    monkeypatch.setattr(settings, "flat_shipping_cents", 1000)
    monkeypatch.setattr(settings, "low_stock_threshold", 10)
    return settings


@pytest.fixture
def db(monkeypatch):
    """An in-memory database patched in place of the real one."""
    mock_db = mongomock.MongoClient()["storefront_test"]
    ensure_indexes(mock_db)
    monkeypatch.setattr(database, "db", mock_db)
    return mock_db


@pytest.fixture
def client(db):
    from main import app

    return TestClient(app)


def auth_headers(user_id: str) -> dict:
    return {"Authorization": f"Bearer {create_access_token(user_id)}"}


@pytest.fixture
def make_user(db):
    """Factory: insert a user and return (user_id, auth headers)."""
    counter = {"n": 0}

    def _make(role="user", email=None, name="Test User"):
        counter["n"] += 1
        user = User(
            name=name,
            email=email or f"user{counter['n']}@example.com",
            password_hash=hash_password(PASSWORD),
            role=role,
        )
        user_id = create_document("user", user)
        return user_id, auth_headers(user_id)

    return _make


@pytest.fixture
def user(make_user):
    return make_user()


@pytest.fixture
def admin(make_user):
    return make_user(role="admin", email="admin@example.com", name="Admin User")


@pytest.fixture
def category(db):
    return create_document("category", Category(name="Gear", slug="gear"))


@pytest.fixture
def make_product(db, category):
    """Factory: insert an active product and return its id."""

    def _make(name="Widget", price_cents=1000, stock=10, **extra):
        product = Product(
            name=name,
            slug=name.lower().replace(" ", "-"),
            description=f"{name} description",
            category_id=category,
            price_cents=price_cents,
            stock=stock,
            **extra,
        )
        return create_document("product", product)

    return _make


def get_product(db, product_id: str) -> dict:
    return db["product"].find_one({"_id": to_object_id(product_id)})


def get_order(db, order_id: str) -> dict:
    return db["order"].find_one({"_id": to_object_id(order_id)})


SHIPPING = {
    "first_name": "Ada",
    "last_name": "Lovelace",
    "address1": "1 Main St",
    "city": "London",
    "state": "LDN",
    "zip_code": "N1 1AA",
    "country": "GB",
}


def place_order(client, headers, items, **extra) -> dict:
    body = {"items": items, "shipping_address": SHIPPING, **extra}
    response = client.post("/api/orders", json=body, headers=headers)
    assert response.status_code == 201, response.text
    return response.json()["data"]


def signed_webhook(client, event: dict, secret: str = WEBHOOK_SECRET):
    """POST an event with a Stripe-Signature computed the way Stripe does."""
    payload = json.dumps(event)
    timestamp = int(time.time())
    signature = hmac.new(
        secret.encode("utf-8"), f"{timestamp}.{payload}".encode("utf-8"), hashlib.sha256
    ).hexdigest()
    return client.post(
        "/api/payments/webhook",
        content=payload.encode("utf-8"),
        headers={"Stripe-Signature": f"t={timestamp},v1={signature}", "Content-Type": "application/json"},
    )
