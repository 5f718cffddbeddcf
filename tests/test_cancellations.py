# tests/test_cancellations.py
import pytest
from sqlalchemy import func, select

from reconciler.models import Order, OrderStatus

CANCELLATIONS = [
    ("payment_intent.payment_failed", "payment_failed"),
    ("payment_intent.canceled", "payment_failed"),
    ("checkout.session.expired", "expired_payment_session"),
]


def cancel_object(event_type, order_id):
    if event_type == "checkout.session.expired":
        return {"id": "cs_1", "object": "checkout.session", "metadata": {"order_id": order_id}}
    return {"id": "pi_1", "object": "payment_intent", "amount": 1000, "currency": "eur",
            "status": "canceled", "metadata": {"order_id": order_id}}


@pytest.mark.parametrize("event_type,reason", CANCELLATIONS)
def test_pending_order_is_cancelled_with_reason(db, post_event, stripe_event, event_type, reason):
    db.add(Order(order_id="O1", status=OrderStatus.PENDING, amount="1000", currency="KZ"))
    db.commit()

    r = post_event(stripe_event(event_type, cancel_object(event_type, "O1")))
    assert r.status_code == 200

    db.expire_all()
    order = db.execute(select(Order).where(Order.order_id == "O1")).scalar_one()
    assert order.status == OrderStatus.CANCELLED
    assert order.cancellation_reason == reason


@pytest.mark.parametrize("event_type,reason", CANCELLATIONS)
def test_unknown_order_is_a_no_op(db, post_event, stripe_event, event_type, reason):
    db.add(Order(order_id="O1", status=OrderStatus.PENDING))
    db.commit()

    r = post_event(stripe_event(event_type, cancel_object(event_type, "DOES_NOT_EXIST")))
    assert r.status_code == 200
    assert r.json() == {"received": True}

    db.expire_all()
    assert db.execute(select(func.count()).select_from(Order)).scalar_one() == 1
    assert db.execute(select(Order.status)).scalar_one() == OrderStatus.PENDING


def test_late_cancellation_does_not_undo_a_completed_order(db, post_event, stripe_event):
    db.add(Order(order_id="O1", status=OrderStatus.COMPLETED, amount="5000", currency="KZ"))
    db.commit()

    r = post_event(stripe_event("payment_intent.canceled", cancel_object("payment_intent.canceled", "O1")))
    assert r.status_code == 200

    db.expire_all()
    order = db.execute(select(Order).where(Order.order_id == "O1")).scalar_one()
    assert order.status == OrderStatus.COMPLETED
    assert order.cancellation_reason is None


def test_unhandled_event_types_are_acknowledged(post_event, stripe_event):
    r = post_event(stripe_event("charge.refunded", {"id": "ch_1", "object": "charge"}))
    assert r.status_code == 200
    assert r.json() == {"received": True}
