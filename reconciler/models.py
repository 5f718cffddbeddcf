# reconciler/models.py
from datetime import datetime, timezone
import enum
from uuid import uuid4

from sqlalchemy import (
    Boolean, CheckConstraint, Column, DateTime, Enum, ForeignKey, Integer,
    Numeric, String, Text, JSON, UniqueConstraint
)
from sqlalchemy.orm import declarative_base, relationship

Base = declarative_base()


def now_utc():
    return datetime.now(timezone.utc)


def new_id():
    return str(uuid4())


def _values(enum_cls):
    return [member.value for member in enum_cls]


class OrderStatus(str, enum.Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"
    EXPIRED = "expired"


class SubscriptionEventType(str, enum.Enum):
    CREATED = "created"
    UPDATED = "updated"
    CANCELED = "canceled"
    RENEWED = "renewed"
    PAYMENT_FAILED = "payment_failed"


class Profile(Base):
    __tablename__ = "profiles"

    user_id = Column(String(36), primary_key=True, default=new_id)
    full_name = Column(String, nullable=True)
    email = Column(String, nullable=True)


class MemberArea(Base):
    __tablename__ = "member_areas"

    id = Column(String(36), primary_key=True, default=new_id)
    user_id = Column(String(36), nullable=True)
    name = Column(String, nullable=False)
    url = Column(String, nullable=True)


class Product(Base):
    __tablename__ = "products"

    id = Column(String(36), primary_key=True, default=new_id)
    user_id = Column(String(36), nullable=True)  # seller
    name = Column(String, nullable=False)
    price = Column(String, nullable=True)  # formatted, e.g. "5,000 KZ"
    sales = Column(Integer, nullable=False, default=0)
    member_area_id = Column(String(36), ForeignKey("member_areas.id"), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=now_utc)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=now_utc)

    __table_args__ = (
        CheckConstraint("sales >= 0", name="products_sales_nonneg"),
    )

    member_area = relationship("MemberArea")


class Order(Base):
    __tablename__ = "orders"

    id = Column(String(36), primary_key=True, default=new_id)
    order_id = Column(String, nullable=False, unique=True)
    product_id = Column(String(36), ForeignKey("products.id"), nullable=True)
    user_id = Column(String(36), nullable=True)
    customer_email = Column(String, nullable=True)
    customer_name = Column(String, nullable=True)
    amount = Column(String, nullable=True)
    currency = Column(String(8), nullable=True)
    original_amount = Column(String, nullable=True)
    original_currency = Column(String(8), nullable=True)
    seller_commission = Column(Numeric(14, 4), nullable=True)
    exchange_rate = Column(Numeric(14, 6), nullable=True)
    status = Column(
        Enum(OrderStatus, values_callable=_values, native_enum=False, length=16),
        nullable=False, default=OrderStatus.PENDING,
    )
    cancellation_reason = Column(String, nullable=True)
    affiliate_code = Column(String, nullable=True)
    order_bump_data = Column(JSON, nullable=True)
    payment_method = Column(String, nullable=True)
    stripe_payment_intent_id = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=now_utc)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=now_utc)

    product = relationship("Product")


class CustomerAccess(Base):
    __tablename__ = "customer_access"

    id = Column(String(36), primary_key=True, default=new_id)
    customer_email = Column(String, nullable=False)  # stored lower-cased
    customer_name = Column(String, nullable=True)
    product_id = Column(String(36), ForeignKey("products.id"), nullable=False)
    order_id = Column(String, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)
    access_granted_at = Column(DateTime(timezone=True), nullable=False, default=now_utc)
    created_at = Column(DateTime(timezone=True), nullable=False, default=now_utc)

    __table_args__ = (
        UniqueConstraint("customer_email", "product_id", name="customer_access_email_product_unique"),
    )


class CustomerCredential(Base):
    """First-login password issued to a customer when access is granted."""
    __tablename__ = "customer_credentials"

    customer_email = Column(String, primary_key=True)
    password_hash = Column(String, nullable=False)  # pbkdf2 "salt$hash"
    must_reset = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=now_utc)


class CustomerSubscription(Base):
    __tablename__ = "customer_subscriptions"

    id = Column(String(36), primary_key=True, default=new_id)
    stripe_subscription_id = Column(String, nullable=False)
    stripe_customer_id = Column(String, nullable=True)
    product_id = Column(String(36), ForeignKey("products.id"), nullable=True)
    customer_email = Column(String, nullable=True)
    status = Column(String, nullable=False)
    current_period_start = Column(DateTime(timezone=True), nullable=True)
    current_period_end = Column(DateTime(timezone=True), nullable=True)
    trial_start = Column(DateTime(timezone=True), nullable=True)
    trial_end = Column(DateTime(timezone=True), nullable=True)
    cancel_at_period_end = Column(Boolean, nullable=False, default=False)
    canceled_at = Column(DateTime(timezone=True), nullable=True)
    renewal_type = Column(String, nullable=True)
    metadata_ = Column("metadata", JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=now_utc)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=now_utc)

    __table_args__ = (
        UniqueConstraint("stripe_subscription_id", name="customer_subscriptions_stripe_id_unique"),
    )

    product = relationship("Product")
    events = relationship("SubscriptionEvent", back_populates="subscription")


class SubscriptionEvent(Base):
    __tablename__ = "subscription_events"

    id = Column(String(36), primary_key=True, default=new_id)
    subscription_id = Column(String(36), ForeignKey("customer_subscriptions.id", ondelete="CASCADE"), nullable=False)
    stripe_event_id = Column(String, nullable=True)
    event_type = Column(
        Enum(SubscriptionEventType, values_callable=_values, native_enum=False, length=16),
        nullable=False,
    )
    amount = Column(Numeric(14, 4), nullable=True)
    currency = Column(String(8), nullable=True)
    payload = Column(JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=now_utc)

    __table_args__ = (
        UniqueConstraint("stripe_event_id", name="subscription_events_stripe_event_unique"),
    )

    subscription = relationship("CustomerSubscription", back_populates="events")


class BalanceTransaction(Base):
    __tablename__ = "balance_transactions"

    id = Column(String(36), primary_key=True, default=new_id)
    user_id = Column(String(36), nullable=False)
    type = Column(String, nullable=False)  # 'subscription_renewal' or 'platform_fee'
    amount = Column(Numeric(14, 4), nullable=False)
    currency = Column(String(8), nullable=False)
    description = Column(String, nullable=True)
    order_id = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=now_utc)

    __table_args__ = (
        CheckConstraint("type IN ('subscription_renewal','platform_fee')", name="balance_type_valid"),
    )


class ProcessedEvent(Base):
    __tablename__ = "processed_events"

    event_id = Column(String, primary_key=True)
    event_type = Column(String, nullable=False)
    verified = Column(Boolean, nullable=False, default=True)
    locked_until = Column(DateTime(timezone=True), nullable=True)
    processed_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=now_utc)


class ExchangeRate(Base):
    __tablename__ = "exchange_rates"

    id = Column(Integer, primary_key=True, autoincrement=True)
    currency = Column(String(8), nullable=False)
    rate = Column(Numeric(14, 6), nullable=False)
    effective_at = Column(DateTime(timezone=True), nullable=False, default=now_utc)
    source = Column(String, nullable=True)

    __table_args__ = (
        CheckConstraint("rate > 0", name="exchange_rates_rate_positive"),
    )


class WebhookSetting(Base):
    __tablename__ = "webhook_settings"

    id = Column(String(36), primary_key=True, default=new_id)
    user_id = Column(String(36), nullable=False)
    product_id = Column(String(36), nullable=True)
    url = Column(String, nullable=False)
    secret = Column(String, nullable=True)
    events = Column(JSON, nullable=False, default=list)
    headers = Column(JSON, nullable=True)
    timeout = Column(Integer, nullable=True)
    active = Column(Boolean, nullable=False, default=True)


class WebhookLog(Base):
    __tablename__ = "webhook_logs"

    id = Column(String(36), primary_key=True, default=new_id)
    user_id = Column(String(36), nullable=True)
    webhook_id = Column(String(36), nullable=True)
    event_type = Column(String, nullable=False)
    payload = Column(JSON, nullable=True)
    response_status = Column(Integer, nullable=False, default=0)
    response_body = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=now_utc)
