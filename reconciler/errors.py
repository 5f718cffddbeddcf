"""Errors raised while reconciling a Stripe event.

Anything that escapes the reconciler is answered with ``400`` so that Stripe
redelivers the event later.
"""


class ReconcilerError(Exception):
    """Base class for reconciliation failures."""


class ConfigurationError(ReconcilerError):
    """Stripe keys are missing from the environment."""


class SignatureError(ReconcilerError):
    """The request could not be authenticated as coming from Stripe."""


class EventInFlight(ReconcilerError):
    """Another delivery of the same event is still being processed."""


class OrderNotFound(ReconcilerError):
    def __init__(self, order_id: str):
        super().__init__(f"Order not found: {order_id}")
        self.order_id = order_id


class SubscriptionNotFound(ReconcilerError):
    def __init__(self, subscription_id: str):
        super().__init__(f"Subscription not found: {subscription_id}")
        self.subscription_id = subscription_id


class NotificationError(ReconcilerError):
    """An email could not be handed to the provider."""
