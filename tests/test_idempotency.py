# tests/test_idempotency.py
from datetime import timedelta

from sqlalchemy import select

from reconciler.models import Order, OrderStatus, ProcessedEvent, now_utc


def pending_order(db):
    db.add(Order(order_id="O1", status=OrderStatus.PENDING, amount="1000", currency="KZ"))
    db.commit()


def expired_session(event_id, stripe_event):
    return stripe_event("checkout.session.expired",
                        {"id": "cs_1", "object": "checkout.session", "metadata": {"order_id": "O1"}},
                        event_id=event_id)


def test_event_locked_by_another_delivery_is_rejected(db, post_event, stripe_event):
    pending_order(db)
    db.add(ProcessedEvent(event_id="evt_busy", event_type="checkout.session.expired",
                          locked_until=now_utc() + timedelta(minutes=5)))
    db.commit()

    r = post_event(expired_session("evt_busy", stripe_event))
    assert r.status_code == 400
    assert "already being processed" in r.json()["error"]

    db.expire_all()
    assert db.execute(select(Order.status)).scalar_one() == OrderStatus.PENDING


def test_stale_lock_is_reclaimed(db, post_event, stripe_event):
    pending_order(db)
    db.add(ProcessedEvent(event_id="evt_stale", event_type="checkout.session.expired",
                          locked_until=now_utc() - timedelta(minutes=5)))
    db.commit()

    r = post_event(expired_session("evt_stale", stripe_event))
    assert r.status_code == 200

    db.expire_all()
    assert db.execute(select(Order.status)).scalar_one() == OrderStatus.CANCELLED
    row = db.get(ProcessedEvent, "evt_stale")
    assert row.processed_at is not None
    assert row.locked_until is None


def test_failed_handler_can_be_retried(db, post_event, stripe_event):
    event = stripe_event("payment_intent.succeeded", {
        "id": "pi_1", "object": "payment_intent", "amount": 100000, "currency": "kz",
        "status": "succeeded", "metadata": {"order_id": "O_LATER"},
    }, event_id="evt_retry")

    # order row not written yet
    assert post_event(event).status_code == 400

    db.add(Order(order_id="O_LATER", status=OrderStatus.PENDING))
    db.commit()

    assert post_event(event).status_code == 200
    db.expire_all()
    order = db.execute(select(Order).where(Order.order_id == "O_LATER")).scalar_one()
    assert order.status == OrderStatus.COMPLETED
    assert order.amount == "1000"
