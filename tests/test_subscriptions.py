# tests/test_subscriptions.py
from datetime import datetime
from decimal import Decimal

from sqlalchemy import select

from reconciler.models import (
    BalanceTransaction, CustomerSubscription, ProcessedEvent, Product, SubscriptionEvent,
    SubscriptionEventType
)


def subscription(sub_id="sub_1", status="active", **extra):
    obj = {
        "id": sub_id,
        "object": "subscription",
        "customer": "cus_1",
        "status": status,
        "current_period_start": 1700000000,
        "current_period_end": 1702592000,
        "trial_start": None,
        "trial_end": None,
        "cancel_at_period_end": False,
        "canceled_at": None,
        "metadata": {"product_id": "P1", "customer_email": "maria@buyer.test"},
    }
    obj.update(extra)
    return obj


def seed_subscription(db, sub_id="S1", owner="user123"):
    db.add(Product(id="P1", user_id=owner, name="Clube Mensal", price="2,000 KZ"))
    db.add(CustomerSubscription(stripe_subscription_id=sub_id, product_id="P1", status="active"))
    db.commit()


def load(db, sub_id):
    db.expire_all()
    return db.execute(
        select(CustomerSubscription).where(CustomerSubscription.stripe_subscription_id == sub_id)
    ).scalar_one()


def event_types(db, sub):
    return [e.event_type for e in db.execute(
        select(SubscriptionEvent).where(SubscriptionEvent.subscription_id == sub.id)
        .order_by(SubscriptionEvent.created_at)
    ).scalars()]


def test_subscription_created_inserts_row_and_audit_event(db, client, post_event, stripe_event):
    db.add(Product(id="P1", user_id="user123", name="Clube Mensal"))
    db.commit()

    r = post_event(stripe_event("customer.subscription.created", subscription(status="trialing"),
                                event_id="evt_sub_created"))
    assert r.status_code == 200

    sub = load(db, "sub_1")
    assert sub.status == "trialing"
    assert sub.product_id == "P1"
    assert sub.customer_email == "maria@buyer.test"
    assert sub.renewal_type == "automatic"
    assert sub.current_period_start.replace(tzinfo=None) == datetime(2023, 11, 14, 22, 13, 20)

    events = client.get("/subscriptions/sub_1/events").json()
    assert [(e["event_type"], e["stripe_event_id"]) for e in events] == [("created", "evt_sub_created")]


def test_subscription_created_upserts_existing_row(db, post_event, stripe_event):
    db.add(Product(id="P1", user_id="user123", name="Clube Mensal"))
    db.add(CustomerSubscription(stripe_subscription_id="sub_1", product_id="P1",
                                status="incomplete", renewal_type="manual"))
    db.commit()

    post_event(stripe_event("customer.subscription.created", subscription()))

    db.expire_all()
    rows = db.execute(select(CustomerSubscription)).scalars().all()
    assert len(rows) == 1
    assert rows[0].renewal_type == "automatic"
    assert rows[0].status == "active"


def test_subscription_updated(db, post_event, stripe_event):
    seed_subscription(db, sub_id="sub_1")

    r = post_event(stripe_event("customer.subscription.updated",
                                subscription(status="past_due", cancel_at_period_end=True)))
    assert r.status_code == 200

    sub = load(db, "sub_1")
    assert sub.status == "past_due"
    assert sub.cancel_at_period_end is True
    assert event_types(db, sub) == [SubscriptionEventType.UPDATED]


def test_subscription_updated_for_unknown_subscription_fails(db, post_event, stripe_event):
    r = post_event(stripe_event("customer.subscription.updated", subscription("sub_ghost"),
                                event_id="evt_ghost"))
    assert r.status_code == 400
    assert "sub_ghost" in r.json()["error"]
    # the claim is released so Stripe's retry is processed
    db.expire_all()
    assert db.get(ProcessedEvent, "evt_ghost") is None


def test_subscription_deleted_is_a_soft_cancel(db, post_event, stripe_event):
    seed_subscription(db, sub_id="sub_1")

    r = post_event(stripe_event("customer.subscription.deleted",
                                subscription(status="canceled", canceled_at=1702592000)))
    assert r.status_code == 200

    sub = load(db, "sub_1")
    assert sub.status == "canceled"
    assert sub.canceled_at is not None
    assert event_types(db, sub) == [SubscriptionEventType.CANCELED]


def test_subscription_deleted_for_unknown_subscription_is_skipped(post_event, stripe_event):
    r = post_event(stripe_event("customer.subscription.deleted", subscription("sub_ghost")))
    assert r.status_code == 200


def test_renewal_writes_balanced_ledger_pair(db, post_event, stripe_event):
    seed_subscription(db)
    invoice = {"id": "in_1", "object": "invoice", "subscription": "S1",
               "amount_paid": 200000, "currency": "kz"}

    r = post_event(stripe_event("invoice.payment_succeeded", invoice))
    assert r.status_code == 200

    db.expire_all()
    rows = {t.type: t for t in db.execute(select(BalanceTransaction)).scalars()}
    assert set(rows) == {"subscription_renewal", "platform_fee"}
    credit, fee = rows["subscription_renewal"], rows["platform_fee"]
    assert credit.amount == Decimal("1820.2")
    assert fee.amount == Decimal("-179.8")
    assert credit.amount + abs(fee.amount) == Decimal("2000")
    assert credit.user_id == fee.user_id == "user123"
    assert credit.order_id == fee.order_id == "S1-in_1"

    sub = load(db, "S1")
    [renewed] = db.execute(select(SubscriptionEvent).where(SubscriptionEvent.subscription_id == sub.id)).scalars()
    assert renewed.event_type == SubscriptionEventType.RENEWED
    assert renewed.amount == Decimal("2000")


def test_renewal_reads_subscription_from_invoice_parent(db, post_event, stripe_event):
    seed_subscription(db)
    invoice = {"id": "in_2", "object": "invoice", "amount_paid": 100000, "currency": "kz",
               "parent": {"type": "subscription_details", "subscription_details": {"subscription": "S1"}}}

    post_event(stripe_event("invoice.payment_succeeded", invoice))

    db.expire_all()
    assert len(db.execute(select(BalanceTransaction)).scalars().all()) == 2


def test_renewal_for_unknown_subscription_is_swallowed(db, post_event, stripe_event):
    invoice = {"id": "in_1", "object": "invoice", "subscription": "S_unknown",
               "amount_paid": 200000, "currency": "kz"}

    r = post_event(stripe_event("invoice.payment_succeeded", invoice))
    assert r.status_code == 200
    assert db.execute(select(BalanceTransaction)).scalars().all() == []


def test_invoice_payment_failed_marks_past_due(db, post_event, stripe_event):
    seed_subscription(db)
    invoice = {"id": "in_3", "object": "invoice", "subscription": "S1", "amount_due": 200000, "currency": "kz"}

    r = post_event(stripe_event("invoice.payment_failed", invoice))
    assert r.status_code == 200

    sub = load(db, "S1")
    assert sub.status == "past_due"
    assert event_types(db, sub) == [SubscriptionEventType.PAYMENT_FAILED]


def test_invoice_payment_failed_for_unknown_subscription_fails(post_event, stripe_event):
    invoice = {"id": "in_3", "object": "invoice", "subscription": "S_unknown", "currency": "kz"}

    r = post_event(stripe_event("invoice.payment_failed", invoice))
    assert r.status_code == 400
