# reconciler/services/events.py
import logging
from datetime import datetime, timedelta, timezone
from time import perf_counter
from typing import Dict, Optional

from sqlalchemy import delete, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from reconciler.config import settings
from reconciler.errors import EventInFlight
from reconciler.metrics import duplicate_events, events_total, webhook_latency
from reconciler.models import ProcessedEvent, now_utc
from reconciler.schemas import StripeEvent
from reconciler.services import signature
from reconciler.services.registry import HANDLERS

# Handlers register themselves on import
from reconciler.services import payments, subscriptions  # noqa: F401

logger = logging.getLogger("reconciler.events")


def _aware(value: datetime) -> datetime:
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


def handle_stripe_webhook(db: Session, payload: bytes, sig_header: Optional[str]) -> Dict:
    """
    Reconcile one Stripe delivery:
      - authenticate the raw body (see signature.authenticate)
      - claim the event id; an already processed id is acknowledged as-is
      - run the handler registered for the event type
      - mark the event processed, or release the claim if the handler failed
    Returns the acknowledgement body; anything raised becomes a 400.
    """
    start = perf_counter()
    try:
        event, verified = signature.authenticate(payload, sig_header)
        logger.info("Processing webhook event",
                    extra={"event_id": event.id, "event_type": event.type, "verified": verified})

        if not claim_event(db, event, verified):
            return {"received": True}

        try:
            dispatch(db, event)
        except Exception:
            db.rollback()
            release_event(db, event)
            events_total.labels(event.type, "error").inc()
            raise

        mark_processed(db, event)
        return {"received": True}
    finally:
        webhook_latency.observe(perf_counter() - start)


def claim_event(db: Session, event: StripeEvent, verified: bool) -> bool:
    """
    Idempotency row keyed by the provider event id.
    False when the event was already fully processed; raises EventInFlight
    while another delivery of it holds the lock.
    """
    if not event.id:
        return True

    now = now_utc()
    row = db.get(ProcessedEvent, event.id)

    if row and row.processed_at is not None:
        duplicate_events.labels(event.type).inc()
        logger.info("Duplicate delivery acknowledged", extra={"event_id": event.id, "event_type": event.type})
        db.commit()
        return False

    if row and row.locked_until and _aware(row.locked_until) > now:
        raise EventInFlight(f"Event {event.id} is already being processed")

    lock_until = now + timedelta(seconds=settings.event_lock_seconds)
    if not row:
        db.add(ProcessedEvent(event_id=event.id, event_type=event.type,
                              verified=verified, locked_until=lock_until))
    else:
        row.locked_until = lock_until
        row.verified = verified
    try:
        db.commit()
    except IntegrityError as e:
        db.rollback()
        raise EventInFlight(f"Event {event.id} is already being processed") from e
    return True


def release_event(db: Session, event: StripeEvent) -> None:
    if not event.id:
        return
    db.execute(
        delete(ProcessedEvent)
        .where(ProcessedEvent.event_id == event.id, ProcessedEvent.processed_at.is_(None))
    )
    db.commit()


def mark_processed(db: Session, event: StripeEvent) -> None:
    if not event.id:
        return
    db.execute(
        update(ProcessedEvent)
        .where(ProcessedEvent.event_id == event.id)
        .values(processed_at=now_utc(), locked_until=None)
    )
    db.commit()


def dispatch(db: Session, event: StripeEvent) -> None:
    entry = HANDLERS.get(event.type)
    if entry is None:
        events_total.labels(event.type, "ignored").inc()
        logger.info("Webhook event type not handled", extra={"event_type": event.type})
        return

    handler, model = entry
    obj = model.model_validate(event.data.object)
    handler(db, event, obj)
    events_total.labels(event.type, "processed").inc()
