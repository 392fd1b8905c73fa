"""Pytest fixtures for storefront tests."""

import copy
import hashlib
import hmac
import json
import smtplib
import threading
import time
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional, TypeVar

import pytest
from bson import ObjectId
from fastapi.testclient import TestClient

from config import ConfigProvider
from database import Store, Transaction
from notifications import Mailer, NotificationDispatcher
from orders import OrderService
from schemas import CustomerInfo
from webhooks import PaymentWebhookReconciler

T = TypeVar("T")

RAZORPAY_KEY_ID = "rzp_test_key"
RAZORPAY_KEY_SECRET = "rzp_test_secret"
RAZORPAY_WEBHOOK_SECRET = "rzp_webhook_secret"
STRIPE_SECRET_KEY = "sk_test_123"
STRIPE_WEBHOOK_SECRET = "whsec_test_secret"
OWNER_EMAIL = "owner@example.com"

NOW = datetime(2024, 3, 15, 10, 30, tzinfo=timezone.utc)


# --------------------- In-memory store ---------------------

class MemoryTransaction(Transaction):
    """Stages writes; the store applies them only when the callback returns."""

    def __init__(self, store: "MemoryStore"):
        self.store = store
        self.orders: Dict[str, Dict[str, Any]] = {}
        self.stock: Dict[str, int] = {}

    def get_product(self, product_id: str) -> Optional[Dict[str, Any]]:
        doc = self.store.get_product(product_id)
        if doc is not None and product_id in self.stock:
            doc["stock"] = self.stock[product_id]
        return doc

    def find_customer_by_email(self, email: str) -> Optional[Dict[str, Any]]:
        user = self.store.find_user_by_email(email)
        return user if user and user.get("role") == "customer" else None

    def insert_order(self, doc: Dict[str, Any]) -> str:
        new_id = str(ObjectId())
        self.orders[new_id] = {**copy.deepcopy(doc), "_id": new_id}
        return new_id

    def set_product_stock(self, product_id: str, stock: int) -> None:
        self.stock[product_id] = stock


class MemoryStore(Store):
    def __init__(self):
        self.lock = threading.RLock()
        self.products: Dict[str, Dict[str, Any]] = {}
        self.orders: Dict[str, Dict[str, Any]] = {}
        self.users: Dict[str, Dict[str, Any]] = {}
        self.settings: Dict[str, Dict[str, Any]] = {}
        self.transaction_factory: Callable[["MemoryStore"], Transaction] = MemoryTransaction

    def run_transaction(self, callback: Callable[[Transaction], T]) -> T:
        with self.lock:
            txn = self.transaction_factory(self)
            result = callback(txn)
            for order_id, doc in txn.orders.items():
                self.orders[order_id] = doc
            for product_id, stock in txn.stock.items():
                self.products[product_id]["stock"] = stock
            return result

    def get_product(self, product_id: str) -> Optional[Dict[str, Any]]:
        with self.lock:
            return copy.deepcopy(self.products.get(product_id))

    def list_products(self, q: Optional[str] = None, limit: int = 50) -> List[Dict[str, Any]]:
        with self.lock:
            docs = list(self.products.values())
        if q:
            needle = q.lower()
            docs = [
                d for d in docs
                if needle in d.get("title", "").lower() or needle in (d.get("description") or "").lower()
            ]
        return copy.deepcopy(docs[:limit])

    def insert_product(self, doc: Dict[str, Any]) -> str:
        product_id = str(ObjectId())
        with self.lock:
            self.products[product_id] = {**copy.deepcopy(doc), "_id": product_id}
        return product_id

    def update_product(self, product_id: str, fields: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        with self.lock:
            doc = self.products.get(product_id)
            if doc is None:
                return None
            doc.update(copy.deepcopy(fields))
            return copy.deepcopy(doc)

    def get_order(self, order_id: str) -> Optional[Dict[str, Any]]:
        with self.lock:
            return copy.deepcopy(self.orders.get(order_id))

    def list_orders(self, status: Optional[str] = None, customer_id: Optional[str] = None, limit: int = 100) -> List[Dict[str, Any]]:
        with self.lock:
            docs = [
                d for d in self.orders.values()
                if (not status or d.get("status") == status) and (not customer_id or d.get("customer_id") == customer_id)
            ]
        docs.sort(key=lambda d: d.get("created_at") or NOW, reverse=True)
        if limit:
            docs = docs[:limit]
        return copy.deepcopy(docs)

    def compare_and_set_order(
        self, order_id: str, expected: Dict[str, Iterable[str]], fields: Dict[str, Any]
    ) -> Optional[Dict[str, Any]]:
        with self.lock:
            doc = self.orders.get(order_id)
            if doc is None:
                return None
            for key, values in expected.items():
                if doc.get(key) not in list(values):
                    return None
            before = copy.deepcopy(doc)
            doc.update(copy.deepcopy(fields))
            return before

    def get_user(self, user_id: str) -> Optional[Dict[str, Any]]:
        with self.lock:
            return copy.deepcopy(self.users.get(user_id))

    def find_user_by_email(self, email: str) -> Optional[Dict[str, Any]]:
        with self.lock:
            for doc in self.users.values():
                if doc.get("email") == email:
                    return copy.deepcopy(doc)
        return None

    def insert_user(self, doc: Dict[str, Any]) -> str:
        user_id = str(ObjectId())
        with self.lock:
            self.users[user_id] = {**copy.deepcopy(doc), "_id": user_id}
        return user_id

    def get_setting(self, name: str) -> Optional[Dict[str, Any]]:
        with self.lock:
            return copy.deepcopy(self.settings.get(name))


# --------------------- Mailers ---------------------

class RecordingMailer(Mailer):
    def __init__(self):
        self.sent: List[Dict[str, str]] = []

    def send(self, sender_name: str, to: str, subject: str, html: str) -> str:
        self.sent.append({"sender_name": sender_name, "to": to, "subject": subject, "html": html})
        return f"<msg-{len(self.sent)}@test>"

    def subjects(self) -> List[str]:
        return [m["subject"] for m in self.sent]


class FailingMailer(Mailer):
    def __init__(self):
        self.attempts = 0

    def send(self, sender_name: str, to: str, subject: str, html: str) -> str:
        self.attempts += 1
        raise smtplib.SMTPAuthenticationError(535, b"Authentication failed")


# --------------------- Webhook payloads ---------------------

def razorpay_signature(body: bytes, secret: str = RAZORPAY_WEBHOOK_SECRET) -> str:
    return hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


def stripe_signature_header(body: bytes, secret: str = STRIPE_WEBHOOK_SECRET, timestamp: Optional[int] = None) -> str:
    timestamp = timestamp or int(time.time())
    signed = f"{timestamp}.{body.decode()}".encode()
    return f"t={timestamp},v1={hmac.new(secret.encode(), signed, hashlib.sha256).hexdigest()}"


def razorpay_event(
    event: str,
    order_id: Optional[str],
    amount: int = 57500,
    payment_id: str = "pay_123",
    status: str = "captured",
    error_description: Optional[str] = None,
) -> bytes:
    entity = {
        "id": payment_id,
        "entity": "payment",
        "amount": amount,
        "currency": "INR",
        "status": status,
        "order_id": "order_rzp_1",
        "method": "upi",
        "email": "asha@example.com",
        "notes": {"order_id": order_id} if order_id else [],
        "error_description": error_description,
    }
    return json.dumps({"entity": "event", "event": event, "payload": {"payment": {"entity": entity}}}).encode()


def stripe_event(
    event_type: str,
    order_id: Optional[str],
    amount_total: int = 57500,
    payment_status: str = "paid",
    error_message: Optional[str] = None,
) -> bytes:
    obj: Dict[str, Any] = {
        "id": "cs_test_1",
        "object": "checkout.session",
        "amount_total": amount_total,
        "currency": "inr",
        "payment_intent": "pi_test_1",
        "payment_method_types": ["card"],
        "payment_status": payment_status,
        "customer_email": "asha@example.com",
        "metadata": {"order_id": order_id} if order_id else {},
    }
    if error_message:
        obj = {
            "id": "pi_test_1",
            "object": "payment_intent",
            "metadata": obj["metadata"],
            "last_payment_error": {"message": error_message},
        }
    return json.dumps({"id": "evt_1", "object": "event", "type": event_type, "data": {"object": obj}}).encode()


# --------------------- Fixtures ---------------------

@pytest.fixture
def store():
    s = MemoryStore()
    s.settings["store_info"] = {
        "store_name": "Test Store",
        "currency_symbol": "₹",
        "tax_percentage": 5,
        "shipping_cost": 50,
        "website": "https://shop.example.com",
    }
    s.settings["payment_settings"] = {
        "currency": "INR",
        "razorpay": {
            "key_id": RAZORPAY_KEY_ID,
            "key_secret": RAZORPAY_KEY_SECRET,
            "webhook_secret": RAZORPAY_WEBHOOK_SECRET,
        },
        "stripe": {"secret_key": STRIPE_SECRET_KEY, "webhook_secret": STRIPE_WEBHOOK_SECRET},
    }
    s.settings["email_settings"] = {
        "smtp": {"user": "shop@example.com", "password": "app-password"},
        "store_owner_email": OWNER_EMAIL,
    }
    return s


@pytest.fixture
def config(store):
    return ConfigProvider(store)


@pytest.fixture
def mailer():
    return RecordingMailer()


@pytest.fixture
def dispatcher(config, mailer):
    return NotificationDispatcher(config, mailer)


@pytest.fixture
def clock():
    return lambda: NOW


@pytest.fixture
def orders(store, config, dispatcher, clock):
    return OrderService(store, config, dispatcher, clock=clock)


@pytest.fixture
def reconciler(store, config, dispatcher, clock):
    return PaymentWebhookReconciler(store, config, dispatcher, clock=clock)


@pytest.fixture
def add_product(store):
    def _add(title: str = "Kurta", price: float = 250.0, stock: int = 10, **extra) -> str:
        return store.insert_product({"title": title, "price": price, "stock": stock, "images": [], **extra})

    return _add


@pytest.fixture
def customer():
    return CustomerInfo(
        name="Asha Rao",
        phone="9999999999",
        email="asha@example.com",
        address="12 MG Road, Bengaluru",
        postal_code="560001",
    )


@pytest.fixture
def api_client(store, mailer):
    """Test client wired to the in-memory store and recording mailer."""
    from database import get_store
    from main import app, get_mailer

    app.dependency_overrides[get_store] = lambda: store
    app.dependency_overrides[get_mailer] = lambda: mailer
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def admin_headers():
    from main import create_token

    token = create_token({"id": "admin-1", "email": "admin@example.com", "name": "Admin", "role": "admin"})
    return {"Authorization": f"Bearer {token}"}
