import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import List

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse, PlainTextResponse, Response
from sqlalchemy import select
from starlette.concurrency import run_in_threadpool

from reconciler.config import settings
from reconciler.db import engine, SessionLocal, ping_db
from reconciler.logging_config import configure_logging
from reconciler.models import Base, CustomerSubscription, Order, SubscriptionEvent
from reconciler.schemas import OrderOut, SubscriptionEventOut, WebhookAck, WebhookError
from reconciler.services.events import handle_stripe_webhook
from reconciler.metrics import metrics_asgi_app

logger = logging.getLogger("reconciler.api")

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Headers": "authorization, x-client-info, apikey, content-type, stripe-signature",
}


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging(settings.log_level, settings.log_json)
    Base.metadata.create_all(bind=engine)
    yield

app = FastAPI(title="Kambafy Payment Reconciler", lifespan=lifespan)


app.mount("/metrics", metrics_asgi_app)


@app.get("/")
def root():
    return {"service": "kambafy-reconciler", "docs": "/docs"}

@app.get("/healthz")
def healthz():
    try:
        ping_db()
        return {"ok": True, "db": "up"}
    except Exception:
        logger.exception("Database ping failed")
        return {"ok": False, "db": "down"}


def _reconcile(payload: bytes, sig_header):
    with SessionLocal() as db:
        return handle_stripe_webhook(db, payload, sig_header)


@app.post("/webhooks/stripe", tags=["webhooks"],
          responses={200: {"model": WebhookAck}, 400: {"model": WebhookError}})
async def stripe_webhook(request: Request):
    # Signature covers the raw bytes; never re-serialize before verifying
    payload = await request.body()
    sig_header = request.headers.get("stripe-signature")
    try:
        body = await run_in_threadpool(_reconcile, payload, sig_header)
    except Exception as e:
        logger.exception("Webhook error")
        return JSONResponse(
            status_code=400,
            content={"error": str(e), "timestamp": datetime.now(timezone.utc).isoformat()},
            headers=CORS_HEADERS,
        )
    return JSONResponse(status_code=200, content=body, headers=CORS_HEADERS)

@app.options("/webhooks/stripe", include_in_schema=False)
def stripe_webhook_preflight():
    return Response(status_code=204, headers=CORS_HEADERS)

@app.api_route("/webhooks/stripe", methods=["GET", "PUT", "PATCH", "DELETE"], include_in_schema=False)
def stripe_webhook_method_not_allowed():
    return PlainTextResponse("Method not allowed", status_code=405, headers=CORS_HEADERS)


@app.get("/orders/{order_id}", response_model=OrderOut, tags=["orders"])
def get_order(order_id: str):
    with SessionLocal() as db:
        order = db.execute(select(Order).where(Order.order_id == order_id)).scalar_one_or_none()
        if not order:
            raise HTTPException(status_code=404, detail="Order not found")
        return order

@app.get("/subscriptions/{stripe_subscription_id}/events",
         response_model=List[SubscriptionEventOut], tags=["subscriptions"])
def get_subscription_events(stripe_subscription_id: str):
    with SessionLocal() as db:
        sub = db.execute(
            select(CustomerSubscription)
            .where(CustomerSubscription.stripe_subscription_id == stripe_subscription_id)
        ).scalar_one_or_none()
        if not sub:
            raise HTTPException(status_code=404, detail="Subscription not found")

        rows = db.execute(
            select(SubscriptionEvent)
            .where(SubscriptionEvent.subscription_id == sub.id)
            .order_by(SubscriptionEvent.created_at)
        ).scalars().all()
        return rows
