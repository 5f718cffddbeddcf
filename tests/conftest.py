# tests/conftest.py
import hashlib
import hmac
import json
import os
import time
from itertools import count

import pytest
from fastapi.testclient import TestClient

# Point tests at a throwaway local database and fake Stripe keys
os.environ.setdefault("DATABASE_URL", "sqlite:///./reconciler_test.db")
os.environ.setdefault("STRIPE_SECRET_KEY", "sk_test_reconciler")
os.environ.setdefault("STRIPE_WEBHOOK_SECRET", "whsec_test_reconciler")

from reconciler.main import app  # noqa
from reconciler.config import settings  # noqa
from reconciler.db import engine, SessionLocal  # noqa
from reconciler.models import Base  # noqa
from reconciler.services import notifications, outbound_webhooks, stripe_gateway  # noqa

WEBHOOK_URL = "/webhooks/stripe"

_event_ids = count(1)


@pytest.fixture(autouse=True)
def create_schema_and_clean_db():
    Base.metadata.create_all(bind=engine)
    # Wipe between tests so they don't interfere
    with engine.begin() as conn:
        for table in reversed(Base.metadata.sorted_tables):
            conn.execute(table.delete())
    yield


@pytest.fixture
def client():
    with TestClient(app) as c:
        yield c


@pytest.fixture
def db():
    with SessionLocal() as session:
        yield session


class Outbox:
    """Records what the reconciler asked collaborators to do."""

    def __init__(self):
        self.emails = []
        self.webhooks = []
        self.intent_status = "succeeded"
        self.multibanco = {"entity": "11249", "reference": "123 456 789", "amount": "50.00", "currency": "EUR"}
        self.failing = set()

    def _maybe_fail(self, kind):
        if kind in self.failing:
            raise RuntimeError(f"{kind} is down")

    def emails_of(self, kind):
        return [e for e in self.emails if e["kind"] == kind]


@pytest.fixture(autouse=True)
def outbox(monkeypatch):
    box = Outbox()

    def send_purchase_confirmation(customer_email, customer_name, product_name, order_id, amount, currency):
        box._maybe_fail("purchase_confirmation")
        box.emails.append({"kind": "purchase_confirmation", "to": customer_email, "product_name": product_name,
                           "order_id": order_id, "amount": amount, "currency": currency})
        return True

    def send_seller_sale_notification(seller_email, seller_name, product_name, order_id,
                                      customer_name, amount, currency):
        box.emails.append({"kind": "seller_sale", "to": seller_email, "order_id": order_id,
                           "amount": amount, "currency": currency})
        return True

    def send_member_access(student_email, student_name, member_area_name, member_area_url,
                           seller_name, temporary_password=None):
        box._maybe_fail("member_access")
        box.emails.append({"kind": "member_access", "to": student_email, "area": member_area_name,
                           "url": member_area_url, "seller_name": seller_name,
                           "temporary_password": temporary_password})
        return True

    def send_multibanco_instructions(customer_email, customer_name, product_name, entity, reference,
                                     amount, currency, payment_intent_id):
        box.emails.append({"kind": "multibanco", "to": customer_email, "product_name": product_name,
                           "entity": entity, "reference": reference, "amount": amount,
                           "currency": currency, "payment_intent_id": payment_intent_id})
        return True

    def trigger(db, event, data, user_id=None, order_id=None, product_id=None):
        box._maybe_fail("webhooks")
        box.webhooks.append({"event": event, "data": data, "user_id": user_id,
                             "order_id": order_id, "product_id": product_id})
        return {"triggered": 0, "successful": 0, "failed": 0, "skipped": 0}

    def retrieve_payment_intent_status(payment_intent_id):
        return box.intent_status

    def get_multibanco_details(payment_intent_id):
        box._maybe_fail("multibanco")
        return box.multibanco

    monkeypatch.setattr(notifications, "send_purchase_confirmation", send_purchase_confirmation)
    monkeypatch.setattr(notifications, "send_seller_sale_notification", send_seller_sale_notification)
    monkeypatch.setattr(notifications, "send_member_access", send_member_access)
    monkeypatch.setattr(notifications, "send_multibanco_instructions", send_multibanco_instructions)
    monkeypatch.setattr(outbound_webhooks, "trigger", trigger)
    monkeypatch.setattr(stripe_gateway, "retrieve_payment_intent_status", retrieve_payment_intent_status)
    monkeypatch.setattr(stripe_gateway, "get_multibanco_details", get_multibanco_details)
    return box


def sign(payload: str, secret: str = None, timestamp: int = None) -> str:
    """Stripe-Signature header: HMAC-SHA256 over '<timestamp>.<payload>'."""
    ts = timestamp or int(time.time())
    secret = secret or settings.stripe_webhook_secret
    digest = hmac.new(secret.encode(), f"{ts}.{payload}".encode(), hashlib.sha256).hexdigest()
    return f"t={ts},v1={digest}"


@pytest.fixture
def stripe_event():
    def build(event_type, obj, event_id=None):
        return {
            "id": event_id or f"evt_test_{next(_event_ids)}",
            "object": "event",
            "type": event_type,
            "created": int(time.time()),
            "livemode": False,
            "data": {"object": obj},
        }
    return build


@pytest.fixture
def post_event(client):
    def post(event, signature=None):
        body = json.dumps(event)
        headers = {"Content-Type": "application/json",
                   "stripe-signature": signature if signature is not None else sign(body)}
        return client.post(WEBHOOK_URL, content=body, headers=headers)
    return post
