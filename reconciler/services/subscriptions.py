# reconciler/services/subscriptions.py
import logging
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from reconciler.config import settings
from reconciler.errors import SubscriptionNotFound
from reconciler.metrics import renewals_recorded
from reconciler.models import (
    BalanceTransaction, CustomerSubscription, Product, SubscriptionEvent,
    SubscriptionEventType, now_utc
)
from reconciler.schemas import InvoiceObject, StripeEvent, SubscriptionObject
from reconciler.services.money import from_minor_units, platform_fee_rate, split_platform_fee
from reconciler.services.registry import handles

logger = logging.getLogger("reconciler.subscriptions")


def _ts(epoch: Optional[int]) -> Optional[datetime]:
    return datetime.fromtimestamp(epoch, tz=timezone.utc) if epoch else None


def _find(db: Session, stripe_subscription_id: str) -> Optional[CustomerSubscription]:
    return db.execute(
        select(CustomerSubscription)
        .where(CustomerSubscription.stripe_subscription_id == stripe_subscription_id)
        .with_for_update()
    ).scalar_one_or_none()


def _record(db: Session, row: CustomerSubscription, event: StripeEvent,
            kind: SubscriptionEventType, amount=None, currency=None) -> None:
    db.add(SubscriptionEvent(
        subscription_id=row.id,
        stripe_event_id=event.id,
        event_type=kind,
        amount=amount,
        currency=currency,
        payload=event.data.object,
    ))


@handles("customer.subscription.created", SubscriptionObject)
def subscription_created(db: Session, event: StripeEvent, sub: SubscriptionObject) -> None:
    start, end = sub.period_bounds()
    with db.begin():
        row = _find(db, sub.id)
        if row is None:
            product_id = sub.meta("product_id")
            if product_id and db.get(Product, product_id) is None:
                logger.warning("Subscription references unknown product",
                               extra={"subscription_id": sub.id, "product_id": product_id})
                product_id = None
            row = CustomerSubscription(
                stripe_subscription_id=sub.id,
                product_id=product_id,
                customer_email=sub.meta("customer_email"),
            )
            db.add(row)
        row.renewal_type = "automatic"
        row.stripe_customer_id = sub.customer
        row.status = sub.status
        row.current_period_start = _ts(start)
        row.current_period_end = _ts(end)
        row.trial_start = _ts(sub.trial_start)
        row.trial_end = _ts(sub.trial_end)
        row.cancel_at_period_end = sub.cancel_at_period_end
        row.metadata_ = sub.metadata
        row.updated_at = now_utc()
        db.flush()
        _record(db, row, event, SubscriptionEventType.CREATED)
    logger.info("Subscription created", extra={"subscription_id": sub.id, "status": sub.status})


@handles("customer.subscription.updated", SubscriptionObject)
def subscription_updated(db: Session, event: StripeEvent, sub: SubscriptionObject) -> None:
    start, end = sub.period_bounds()
    with db.begin():
        row = _find(db, sub.id)
        if row is None:
            raise SubscriptionNotFound(sub.id)
        row.status = sub.status
        row.current_period_start = _ts(start)
        row.current_period_end = _ts(end)
        row.cancel_at_period_end = sub.cancel_at_period_end
        row.canceled_at = _ts(sub.canceled_at)
        row.updated_at = now_utc()
        _record(db, row, event, SubscriptionEventType.UPDATED)
    logger.info("Subscription updated", extra={"subscription_id": sub.id, "status": sub.status})


@handles("customer.subscription.deleted", SubscriptionObject)
def subscription_deleted(db: Session, event: StripeEvent, sub: SubscriptionObject) -> None:
    with db.begin():
        row = _find(db, sub.id)
        if row is None:
            logger.warning("Deleted subscription not found", extra={"subscription_id": sub.id})
            return
        row.status = "canceled"
        row.canceled_at = _ts(sub.canceled_at) or now_utc()
        row.updated_at = now_utc()
        _record(db, row, event, SubscriptionEventType.CANCELED)
    logger.info("Subscription canceled", extra={"subscription_id": sub.id})


@handles("invoice.payment_succeeded", InvoiceObject)
def invoice_paid(db: Session, event: StripeEvent, invoice: InvoiceObject) -> None:
    """
    Renewal: credit the seller's net and debit the platform fee, both
    tagged with `<subscription>-<invoice>` so renewals never collide.
    """
    subscription_id = invoice.subscription_id()
    if not subscription_id:
        return

    gross = from_minor_units(invoice.amount_paid)
    net, fee = split_platform_fee(gross)
    currency = (invoice.currency or settings.base_currency).upper()

    with db.begin():
        found = db.execute(
            select(CustomerSubscription, Product)
            .join(Product, CustomerSubscription.product_id == Product.id)
            .where(CustomerSubscription.stripe_subscription_id == subscription_id)
        ).first()
        if found is None or not found[1].user_id:
            logger.warning("Invoice for unknown subscription", extra={"subscription_id": subscription_id})
            return
        row, product = found

        ledger_order_id = f"{subscription_id}-{invoice.id or event.id}"
        db.add_all([
            BalanceTransaction(
                user_id=product.user_id,
                type="subscription_renewal",
                amount=net,
                currency=currency,
                description=f"Renovação - {product.name}",
                order_id=ledger_order_id,
            ),
            BalanceTransaction(
                user_id=product.user_id,
                type="platform_fee",
                amount=-fee,
                currency=currency,
                description=f"Taxa plataforma ({(platform_fee_rate() * 100).normalize()}%) - Renovação {product.name}",
                order_id=ledger_order_id,
            ),
        ])
        _record(db, row, event, SubscriptionEventType.RENEWED, amount=gross, currency=currency)

    renewals_recorded.inc()
    logger.info("Subscription renewed", extra={
        "subscription_id": subscription_id, "gross": str(gross), "seller_net": str(net), "platform_fee": str(fee),
    })


@handles("invoice.payment_failed", InvoiceObject)
def invoice_failed(db: Session, event: StripeEvent, invoice: InvoiceObject) -> None:
    subscription_id = invoice.subscription_id()
    if not subscription_id:
        return
    with db.begin():
        row = _find(db, subscription_id)
        if row is None:
            raise SubscriptionNotFound(subscription_id)
        row.status = "past_due"
        row.updated_at = now_utc()
        _record(db, row, event, SubscriptionEventType.PAYMENT_FAILED)
    logger.info("Subscription payment failed", extra={"subscription_id": subscription_id})
