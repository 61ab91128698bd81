"""Pytest fixtures for the storefront tests."""

from datetime import datetime, timedelta, timezone

import mongomock
import pytest
from bson import ObjectId
from fastapi.testclient import TestClient

from auth import Authenticator
from config import Settings
from database import ensure_indexes
from gateway import MockGateway
from main import build_services, create_app
from payments import payment_signature, webhook_signature

KEY_SECRET = "test-key-secret"
WEBHOOK_SECRET = "test-webhook-secret"
ADMIN_KEY = "test-admin-key"
JWT_SECRET = "test-jwt-secret"

SHIPPING = {
    "address": "12 MG Road",
    "city": "Bengaluru",
    "postalCode": "560001",
    "country": "India",
    "phone": "9999999999",
}


class RecordingNotifier:
    def __init__(self, fail: bool = False):
        self.sent = []
        self.fail = fail

    def send(self, to, subject, text):
        if self.fail:
            raise RuntimeError("smtp down")
        self.sent.append({"to": to, "subject": subject, "text": text})


class FixedClock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


@pytest.fixture
def clock():
    return FixedClock(datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def db():
    database = mongomock.MongoClient().storefront
    ensure_indexes(database)
    return database


@pytest.fixture
def settings():
    return Settings(
        _env_file=None,
        ADMIN_KEY=ADMIN_KEY,
        JWT_SECRET=JWT_SECRET,
        RAZORPAY_KEY_SECRET=KEY_SECRET,
        RAZORPAY_WEBHOOK_SECRET=WEBHOOK_SECRET,
    )


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def gateway():
    return MockGateway()


@pytest.fixture
def users(db):
    docs = {
        "customer": {"_id": ObjectId(), "name": "Asha", "email": "asha@example.com", "is_admin": False},
        "other": {"_id": ObjectId(), "name": "Ravi", "email": "ravi@example.com", "is_admin": False},
        "admin": {"_id": ObjectId(), "name": "Ops", "email": "ops@example.com", "is_admin": True},
    }
    for doc in docs.values():
        doc["is_active"] = True
        db["user"].insert_one(doc)
    return {name: str(doc["_id"]) for name, doc in docs.items()}


@pytest.fixture
def products(db):
    docs = {
        "tee": {
            "name": "Oversized Tee",
            "brand": "Luxor",
            "category": "t-shirts",
            "price": 500.0,
            "images": ["https://img.example.com/tee.jpg"],
            "variants": [
                {"size": "M", "color": "Black", "stock": 5},
                {"size": "L", "color": "White", "stock": 1},
            ],
            "count_in_stock": 0,
            "active": True,
        },
        "jacket": {
            "name": "Denim Jacket",
            "brand": "Luxor",
            "category": "shirts",
            "price": 1500.0,
            "images": ["https://img.example.com/jacket.jpg"],
            "variants": [{"size": "M", "color": "Blue", "stock": 10}],
            "count_in_stock": 0,
            "active": True,
        },
        "mug": {
            "name": "Logo Mug",
            "brand": "Luxor",
            "category": "t-shirts",
            "price": 250.0,
            "image": "https://img.example.com/mug.jpg",
            "images": [],
            "variants": [],
            "count_in_stock": 3,
            "active": True,
        },
    }
    return {name: str(db["product"].insert_one(doc).inserted_id) for name, doc in docs.items()}


@pytest.fixture
def coupons(db):
    far = datetime.now(timezone.utc) + timedelta(days=365)
    rows = [
        {"code": "SAVE10", "discount_type": "percent", "discount_value": 10, "min_purchase": 1000,
         "expiry_date": far, "is_active": True, "used_by": []},
        {"code": "FLAT5000", "discount_type": "flat", "discount_value": 5000, "min_purchase": 0,
         "expiry_date": far, "is_active": True, "used_by": []},
        {"code": "OLD", "discount_type": "flat", "discount_value": 100, "min_purchase": 0,
         "expiry_date": datetime.now(timezone.utc) - timedelta(days=1), "is_active": True, "used_by": []},
        {"code": "PAUSED", "discount_type": "flat", "discount_value": 100, "min_purchase": 0,
         "expiry_date": far, "is_active": False, "used_by": []},
    ]
    db["coupon"].insert_many(rows)
    return {row["code"] for row in rows}


@pytest.fixture
def services(settings, db, gateway, notifier):
    return build_services(settings, db, gateway, notifier)


@pytest.fixture
def api_client(settings, db, gateway, notifier):
    app = create_app(settings, db=db, gateway=gateway, notifier=notifier)
    return TestClient(app)


@pytest.fixture
def auth_headers(db, users):
    authenticator = Authenticator(db, ADMIN_KEY, JWT_SECRET)

    def _headers(who: str = "customer"):
        return {"Authorization": f"Bearer {authenticator.issue_token(users[who])}"}
    return _headers


@pytest.fixture
def admin_headers():
    return {"X-Admin-Key": ADMIN_KEY}


def sign_payment(order_ref: str, payment_ref: str) -> str:
    return payment_signature(order_ref, payment_ref, KEY_SECRET)


def sign_webhook(raw_body: bytes) -> str:
    return webhook_signature(raw_body, WEBHOOK_SECRET)
