# reconciler/services/signature.py
import json
import logging
from typing import Optional, Tuple

import stripe
from pydantic import ValidationError

from reconciler.config import settings
from reconciler.errors import ConfigurationError, SignatureError
from reconciler.metrics import signature_failures, unverified_bypass
from reconciler.schemas import StripeEvent
from reconciler.services import stripe_gateway

logger = logging.getLogger("reconciler.signature")

# The only event type accepted when the signature does not match
BYPASS_EVENT_TYPE = "payment_intent.succeeded"


def require_configuration() -> str:
    if not settings.stripe_secret_key or not settings.stripe_webhook_secret:
        logger.error("Missing Stripe configuration")
        raise ConfigurationError("Missing Stripe configuration")
    return settings.stripe_webhook_secret


def authenticate(payload: bytes, sig_header: Optional[str]) -> Tuple[StripeEvent, bool]:
    """
    Turn a raw webhook body into an event.

    Returns (event, verified). A bad signature is only tolerated for
    payment_intent.succeeded, when the bypass is enabled and Stripe confirms
    the intent really succeeded; the caller then processes it as unverified.
    """
    secret = require_configuration()
    if not sig_header:
        logger.error("Missing Stripe signature")
        raise SignatureError("Missing Stripe signature")

    text = payload.decode("utf-8")
    try:
        stripe_gateway.verify_signature(text, sig_header, secret)
    except stripe.SignatureVerificationError as e:
        signature_failures.inc()
        logger.warning("Webhook signature verification failed", extra={"error": str(e)})
        return _unverified_event(text), False

    return _parse(text), True


def _parse(text: str) -> StripeEvent:
    try:
        return StripeEvent.model_validate(json.loads(text))
    except (ValueError, ValidationError) as e:
        raise SignatureError(f"Invalid webhook payload: {e}") from e


def _unverified_event(text: str) -> StripeEvent:
    try:
        event = _parse(text)
    except SignatureError:
        unverified_bypass.labels("unparseable").inc()
        raise SignatureError("Invalid webhook signature and unparseable body")

    if event.type != BYPASS_EVENT_TYPE:
        unverified_bypass.labels("type_refused").inc()
        raise SignatureError(f"Event type not supported for bypass: {event.type}")

    if not settings.stripe_allow_unverified_bypass:
        unverified_bypass.labels("disabled").inc()
        raise SignatureError("Invalid webhook signature")

    intent_id = event.data.object.get("id")
    status = stripe_gateway.retrieve_payment_intent_status(intent_id) if intent_id else None
    if status != "succeeded":
        unverified_bypass.labels("not_confirmed").inc()
        logger.warning("Unverified event not confirmed by Stripe",
                       extra={"event_id": event.id, "payment_intent_id": intent_id, "stripe_status": status})
        raise SignatureError("Invalid webhook signature")

    unverified_bypass.labels("accepted").inc()
    logger.warning("Processing event without signature verification",
                   extra={"event_id": event.id, "payment_intent_id": intent_id})
    return event
