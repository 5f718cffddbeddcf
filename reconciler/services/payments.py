# reconciler/services/payments.py
import json
import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import List, Optional

from pydantic import ValidationError
from sqlalchemy import select, update
from sqlalchemy.orm import Session

from reconciler.config import settings
from reconciler.errors import OrderNotFound
from reconciler.metrics import orders_completed, side_effect_failures
from reconciler.models import Order, OrderStatus, Product, Profile, now_utc
from reconciler.schemas import CheckoutSessionObject, OrderBump, PaymentIntentObject, StripeEvent
from reconciler.services import access, notifications, outbound_webhooks, stripe_gateway
from reconciler.services.money import (
    from_minor_units, parse_list_price, seller_commission, to_base_currency
)
from reconciler.services.rates import settlement_rate
from reconciler.services.registry import handles

logger = logging.getLogger("reconciler.payments")

DEFAULT_PRODUCT_NAME = "Produto Digital"


@dataclass
class Settlement:
    """What a completed order looked like right after commit."""
    order_id: str
    payment_intent_id: Optional[str]
    payment_method: Optional[str]
    product_id: Optional[str]
    product_name: str
    seller_id: Optional[str]
    member_area_id: Optional[str]
    customer_email: Optional[str]
    customer_name: Optional[str]
    amount_in_kz: Decimal
    seller_commission: Decimal
    display_amount: str
    display_currency: str
    bumps: List[OrderBump] = field(default_factory=list)


def _best_effort(db: Session, kind: str, fn, *args, **kwargs):
    """
    Run a side effect as fn(db, ...); a failure is logged and counted, never
    raised. The session is rolled back before the next step runs.
    """
    try:
        return fn(db, *args, **kwargs)
    except Exception:
        db.rollback()
        side_effect_failures.labels(kind).inc()
        logger.exception("Side effect failed", extra={"kind": kind})
        return None


def parse_order_bumps(raw) -> List[OrderBump]:
    """order_bump_data arrives as a JSON string, a single object or a list."""
    if not raw:
        return []
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except ValueError:
            logger.warning("Unparseable order_bump_data", extra={"order_bump_data": raw[:200]})
            return []
    items = raw if isinstance(raw, list) else [raw]
    bumps = []
    for item in items:
        if not isinstance(item, dict):
            continue
        try:
            bumps.append(OrderBump.model_validate(item))
        except ValidationError as e:
            logger.warning("Skipping malformed order bump", extra={"order_bump": item, "error": str(e)})
    return bumps


# payment_intent.succeeded

def complete_order(db: Session, intent: PaymentIntentObject, order_id: str) -> Settlement:
    """
    Settle one order in a single transaction:
      - lock the order row
      - convert the charged amount to the settlement currency
      - commission base: converted charge (custom prices) or product list price
      - mark the order completed and bump the product's sales counter
    """
    with db.begin():
        order = db.execute(
            select(Order).where(Order.order_id == order_id).with_for_update()
        ).scalar_one_or_none()
        if order is None:
            raise OrderNotFound(order_id)

        product_id = order.product_id or intent.meta("product_id")
        product = db.get(Product, product_id) if product_id else None

        custom_prices = (intent.meta("has_custom_prices") or "").lower() == "true"
        paid_currency = intent.currency.upper()
        paid_amount = from_minor_units(intent.amount)
        rate, rate_source = settlement_rate(db, paid_currency)
        amount_in_kz = to_base_currency(paid_amount, paid_currency, rate)

        if custom_prices:
            base = amount_in_kz
        else:
            base = parse_list_price(product.price) if product is not None else None
            if base is None:
                logger.warning("No list price, commission taken from the charge",
                               extra={"order_id": order_id, "product_id": product_id})
                base = amount_in_kz
        commission = seller_commission(base)

        order.status = OrderStatus.COMPLETED
        order.amount = str(amount_in_kz)
        order.currency = settings.base_currency
        order.seller_commission = commission
        order.exchange_rate = rate
        order.stripe_payment_intent_id = intent.id
        order.cancellation_reason = None
        order.updated_at = now_utc()

        if product is not None:
            db.execute(
                update(Product)
                .where(Product.id == product.id)
                .values(sales=Product.sales + 1, updated_at=now_utc())
            )

        settlement = Settlement(
            order_id=order_id,
            payment_intent_id=intent.id,
            payment_method=intent.payment_method_types[0] if intent.payment_method_types else None,
            product_id=product.id if product is not None else None,
            product_name=product.name if product is not None else DEFAULT_PRODUCT_NAME,
            seller_id=product.user_id if product is not None else order.user_id,
            member_area_id=product.member_area_id if product is not None else None,
            customer_email=order.customer_email,
            customer_name=order.customer_name,
            amount_in_kz=amount_in_kz,
            seller_commission=commission,
            display_amount=intent.meta("original_amount") or str(paid_amount),
            display_currency=(intent.meta("original_currency") or paid_currency).upper(),
        )
        raw_bumps = intent.meta("order_bump_data") or order.order_bump_data

    # Parsed after commit: a malformed bump never blocks settlement
    settlement.bumps = parse_order_bumps(raw_bumps)

    logger.info("Order completed", extra={
        "order_id": order_id, "amount": str(amount_in_kz), "paid_currency": paid_currency,
        "rate": str(rate), "rate_source": rate_source, "seller_commission": str(commission),
        "custom_prices": custom_prices,
    })
    return settlement


@handles("payment_intent.succeeded", PaymentIntentObject)
def payment_succeeded(db: Session, event: StripeEvent, intent: PaymentIntentObject) -> None:
    order_id = intent.meta("order_id")
    if not order_id:
        logger.warning("No order_id found in payment intent metadata", extra={"payment_intent_id": intent.id})
        return

    settlement = complete_order(db, intent, order_id)
    orders_completed.inc()

    _best_effort(db, "purchase_confirmation", send_confirmations, settlement)
    _best_effort(db, "member_access", grant_main_access, settlement)
    for bump in settlement.bumps:
        _best_effort(db, "bump_access", grant_bump_access, settlement, bump)
    _best_effort(db, "outbound_webhooks", notify_integrations, settlement)
    for bump in settlement.bumps:
        if bump.bump_product_id:
            _best_effort(db, "outbound_webhooks", notify_bump_integrations, settlement, bump)


def send_confirmations(db: Session, s: Settlement) -> None:
    if s.customer_email:
        notifications.send_purchase_confirmation(
            s.customer_email, s.customer_name, s.product_name,
            s.order_id, s.display_amount, s.display_currency,
        )
    if settings.notify_seller_on_sale and s.seller_id:
        seller = db.get(Profile, s.seller_id)
        if seller is not None and seller.email:
            notifications.send_seller_sale_notification(
                seller.email, seller.full_name, s.product_name, s.order_id,
                s.customer_name, s.display_amount, s.display_currency,
            )


def _seller_name(db: Session, user_id: Optional[str]) -> Optional[str]:
    seller = db.get(Profile, user_id) if user_id else None
    return seller.full_name if seller is not None else None


def record_access(db: Session, s: Settlement, product_id: Optional[str]) -> Optional[Product]:
    """Access row for one purchased product; returns the product when granted."""
    if not product_id or not s.customer_email:
        return None
    product = db.get(Product, product_id)
    if product is None:
        logger.warning("Access not granted, unknown product", extra={"order_id": s.order_id, "product_id": product_id})
        return None
    access.grant_access(db, s.customer_email, s.customer_name, product_id, s.order_id)
    return product


def grant_main_access(db: Session, s: Settlement) -> None:
    product = record_access(db, s, s.product_id)
    if product is None or product.member_area is None:
        return
    area = product.member_area
    # Only first-time customers get a password; returning ones log in as before
    password = access.issue_credential(db, s.customer_email)
    notifications.send_member_access(
        s.customer_email, s.customer_name, area.name, access.member_area_url(area),
        _seller_name(db, s.seller_id), temporary_password=password,
    )


def grant_bump_access(db: Session, s: Settlement, bump: OrderBump) -> None:
    product = record_access(db, s, bump.bump_product_id)
    if product is None or product.member_area is None:
        return
    notifications.send_member_access(
        s.customer_email, s.customer_name, product.member_area.name,
        access.member_area_url(product.member_area), _seller_name(db, product.user_id),
    )


def notify_integrations(db: Session, s: Settlement) -> None:
    timestamp = now_utc().isoformat()
    outbound_webhooks.trigger(db, "payment.success", {
        "order_id": s.order_id,
        "payment_intent_id": s.payment_intent_id,
        "amount": s.display_amount,
        "currency": s.display_currency,
        "customer_email": s.customer_email,
        "customer_name": s.customer_name,
        "product_id": s.product_id,
        "product_name": s.product_name,
        "payment_method": s.payment_method,
        "timestamp": timestamp,
    }, user_id=s.seller_id, order_id=s.order_id, product_id=s.product_id)
    outbound_webhooks.trigger(db, "product.purchased", {
        "order_id": s.order_id,
        "product_id": s.product_id,
        "product_name": s.product_name,
        "customer_email": s.customer_email,
        "customer_name": s.customer_name,
        "price": s.display_amount,
        "currency": s.display_currency,
        "timestamp": timestamp,
    }, user_id=s.seller_id, order_id=s.order_id, product_id=s.product_id)


def bump_order_id(order_id: str, bump_product_id: str) -> str:
    return f"{order_id}-BUMP-{bump_product_id}"


def notify_bump_integrations(db: Session, s: Settlement, bump: OrderBump) -> None:
    bump_order = bump_order_id(s.order_id, bump.bump_product_id)
    timestamp = now_utc().isoformat()
    product = db.get(Product, bump.bump_product_id)
    name = bump.bump_product_name or (product.name if product is not None else DEFAULT_PRODUCT_NAME)
    seller_id = product.user_id if product is not None and product.user_id else s.seller_id
    common = {
        "order_id": bump_order,
        "product_id": bump.bump_product_id,
        "product_name": name,
        "customer_email": s.customer_email,
        "customer_name": s.customer_name,
        "currency": s.display_currency,
        "is_order_bump": True,
        "parent_order_id": s.order_id,
        "timestamp": timestamp,
    }
    outbound_webhooks.trigger(db, "payment.success", {
        **common, "amount": bump.price(), "payment_intent_id": s.payment_intent_id,
        "payment_method": s.payment_method,
    }, user_id=seller_id, order_id=bump_order, product_id=bump.bump_product_id)
    outbound_webhooks.trigger(db, "product.purchased", {
        **common, "price": bump.price(),
    }, user_id=seller_id, order_id=bump_order, product_id=bump.bump_product_id)


# Multibanco (deferred payment)

@handles("payment_intent.created", PaymentIntentObject)
@handles("payment_intent.requires_action", PaymentIntentObject)
def payment_requires_action(db: Session, event: StripeEvent, intent: PaymentIntentObject) -> None:
    if "multibanco" not in intent.payment_method_types or intent.status != "requires_action":
        return
    order_id = intent.meta("order_id")
    if not order_id:
        return
    _best_effort(db, "multibanco_instructions", send_multibanco_instructions, intent, order_id)


def send_multibanco_instructions(db: Session, intent: PaymentIntentObject, order_id: str) -> None:
    order = db.execute(select(Order).where(Order.order_id == order_id)).scalar_one_or_none()
    if order is None:
        logger.warning("Order for Multibanco intent not found", extra={"order_id": order_id})
        return
    if not order.customer_email:
        return
    product = db.get(Product, order.product_id) if order.product_id else None

    details = stripe_gateway.get_multibanco_details(intent.id)
    if not details:
        logger.info("Multibanco details not available yet", extra={"payment_intent_id": intent.id})
        return

    notifications.send_multibanco_instructions(
        order.customer_email, order.customer_name,
        product.name if product is not None else DEFAULT_PRODUCT_NAME,
        details["entity"], details["reference"], details["amount"], details["currency"],
        intent.id,
    )


# Cancellations

def cancel_order(db: Session, order_id: Optional[str], reason: str) -> int:
    """
    Cancel a non-completed order. Returns the number of rows changed; an
    unknown order id changes nothing and is not an error.
    """
    if not order_id:
        logger.info("Cancellation event without order_id", extra={"reason": reason})
        return 0
    with db.begin():
        result = db.execute(
            update(Order)
            .where(Order.order_id == order_id, Order.status != OrderStatus.COMPLETED)
            .values(status=OrderStatus.CANCELLED, cancellation_reason=reason, updated_at=now_utc())
        )
    if result.rowcount == 0:
        logger.info("No cancellable order", extra={"order_id": order_id, "reason": reason})
    return result.rowcount


@handles("payment_intent.payment_failed", PaymentIntentObject)
def payment_failed(db: Session, event: StripeEvent, intent: PaymentIntentObject) -> None:
    cancel_order(db, intent.meta("order_id"), "payment_failed")


@handles("payment_intent.canceled", PaymentIntentObject)
def payment_canceled(db: Session, event: StripeEvent, intent: PaymentIntentObject) -> None:
    cancel_order(db, intent.meta("order_id"), "payment_failed")


@handles("checkout.session.expired", CheckoutSessionObject)
def checkout_expired(db: Session, event: StripeEvent, session: CheckoutSessionObject) -> None:
    cancel_order(db, session.meta("order_id"), "expired_payment_session")
