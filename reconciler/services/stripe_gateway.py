# reconciler/services/stripe_gateway.py
import logging
from typing import Dict, Optional

import stripe

from reconciler.config import settings

logger = logging.getLogger("reconciler.stripe")


def _client_ready() -> None:
    stripe.api_key = settings.stripe_secret_key


def verify_signature(payload: str, sig_header: str, secret: str) -> None:
    """Raises stripe.SignatureVerificationError when the header does not match."""
    stripe.WebhookSignature.verify_header(
        payload, sig_header, secret, settings.stripe_signature_tolerance
    )


def retrieve_payment_intent_status(payment_intent_id: str) -> Optional[str]:
    """Status Stripe itself reports for an intent, or None if it cannot be read."""
    _client_ready()
    try:
        intent = stripe.PaymentIntent.retrieve(payment_intent_id)
    except stripe.StripeError as e:
        logger.warning("Could not retrieve payment intent",
                       extra={"payment_intent_id": payment_intent_id, "error": str(e)})
        return None
    return getattr(intent, "status", None)


def get_multibanco_details(payment_intent_id: str) -> Optional[Dict[str, str]]:
    """
    Multibanco entity/reference for a pending intent:
      - next_action.multibanco_display_details while the intent awaits payment
      - otherwise the latest charge's payment_method_details.multibanco
    Returns None when Stripe has not issued a reference yet.
    """
    _client_ready()
    intent = stripe.PaymentIntent.retrieve(
        payment_intent_id,
        expand=["latest_charge", "latest_charge.payment_method_details"],
    )
    amount = f"{intent.amount / 100:.2f}"
    currency = str(intent.currency).upper()

    next_action = getattr(intent, "next_action", None)
    details = getattr(next_action, "multibanco_display_details", None) if next_action else None
    if details is not None:
        entity = getattr(details, "entity", None)
        reference = getattr(details, "reference", None)
        if entity and reference:
            return {"entity": str(entity), "reference": str(reference),
                    "amount": amount, "currency": currency}

    charge = getattr(intent, "latest_charge", None)
    method_details = getattr(charge, "payment_method_details", None) if charge else None
    multibanco = getattr(method_details, "multibanco", None) if method_details else None
    if multibanco is not None:
        entity = getattr(multibanco, "entity", None)
        reference = getattr(multibanco, "reference", None)
        if entity and reference:
            return {"entity": str(entity), "reference": str(reference),
                    "amount": amount, "currency": currency}
    return None
