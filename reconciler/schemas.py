from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from reconciler.models import OrderStatus, SubscriptionEventType


# Stripe payloads
# Only the fields the reconciler reads are declared; Stripe adds fields freely.

class StripeObject(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)

    def meta(self, key: str) -> Optional[str]:
        value = self.metadata.get(key)
        if value is None or value == "":
            return None
        return str(value)


class EventData(BaseModel):
    model_config = ConfigDict(extra="allow")

    object: Dict[str, Any] = Field(default_factory=dict)


class StripeEvent(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: Optional[str] = None
    type: str
    created: Optional[int] = None
    livemode: bool = False
    data: EventData = Field(default_factory=EventData)


class PaymentIntentObject(StripeObject):
    amount: int = 0
    currency: str = ""
    status: Optional[str] = None
    payment_method_types: List[str] = Field(default_factory=list)


class CheckoutSessionObject(StripeObject):
    payment_intent: Optional[str] = None
    status: Optional[str] = None


class SubscriptionItem(BaseModel):
    model_config = ConfigDict(extra="allow")

    current_period_start: Optional[int] = None
    current_period_end: Optional[int] = None


class SubscriptionItems(BaseModel):
    model_config = ConfigDict(extra="allow")

    data: List[SubscriptionItem] = Field(default_factory=list)


class SubscriptionObject(StripeObject):
    customer: Optional[str] = None
    status: str = "incomplete"
    current_period_start: Optional[int] = None
    current_period_end: Optional[int] = None
    trial_start: Optional[int] = None
    trial_end: Optional[int] = None
    cancel_at_period_end: bool = False
    canceled_at: Optional[int] = None
    items: SubscriptionItems = Field(default_factory=SubscriptionItems)

    def period_bounds(self):
        """Subscription-level bounds, or the first item's on newer API versions."""
        start, end = self.current_period_start, self.current_period_end
        if (start is None or end is None) and self.items.data:
            item = self.items.data[0]
            start = start if start is not None else item.current_period_start
            end = end if end is not None else item.current_period_end
        return start, end


class InvoiceObject(StripeObject):
    subscription: Optional[str] = None
    customer: Optional[str] = None
    amount_paid: int = 0
    amount_due: int = 0
    currency: str = ""
    parent: Optional[Dict[str, Any]] = None

    def subscription_id(self) -> Optional[str]:
        if self.subscription:
            return self.subscription
        # API 2025-03+: invoice.parent.subscription_details.subscription
        details = (self.parent or {}).get("subscription_details") or {}
        return details.get("subscription")


class OrderBump(BaseModel):
    model_config = ConfigDict(extra="allow")

    bump_product_id: Optional[str] = None
    bump_product_name: Optional[str] = None
    bump_product_price: Optional[str] = None
    discounted_price: Optional[str] = None

    @field_validator("bump_product_id", "bump_product_price", "discounted_price", mode="before")
    @classmethod
    def _as_text(cls, value):
        # the checkout stores prices (and sometimes ids) as JSON numbers
        if isinstance(value, bool):
            return value
        if isinstance(value, float) and value.is_integer():
            return str(int(value))
        if isinstance(value, (int, float, Decimal)):
            return str(value)
        return value

    def price(self) -> str:
        return self.discounted_price or self.bump_product_price or "0"


# API responses

class WebhookAck(BaseModel):
    received: bool = True


class WebhookError(BaseModel):
    error: str
    timestamp: datetime


class OrderOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    order_id: str
    status: OrderStatus
    amount: Optional[str] = None
    currency: Optional[str] = None
    seller_commission: Optional[Decimal] = None
    exchange_rate: Optional[Decimal] = None
    cancellation_reason: Optional[str] = None
    product_id: Optional[str] = None
    updated_at: Optional[datetime] = None


class SubscriptionEventOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    stripe_event_id: Optional[str] = None
    event_type: SubscriptionEventType
    amount: Optional[Decimal] = None
    currency: Optional[str] = None
    created_at: Optional[datetime] = None
