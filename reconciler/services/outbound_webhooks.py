# reconciler/services/outbound_webhooks.py
"""Fan-out of platform events to the webhooks sellers register."""
import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import requests
from sqlalchemy import select
from sqlalchemy.orm import Session

from reconciler.config import settings
from reconciler.models import WebhookLog, WebhookSetting

logger = logging.getLogger("reconciler.webhooks")

USER_AGENT = "Kambafy-Webhook/1.0"


def _subscribers(db: Session, user_id: Optional[str], product_id: Optional[str]):
    query = select(WebhookSetting).where(WebhookSetting.active.is_(True))
    if product_id:
        query = query.where(WebhookSetting.product_id == product_id)
    elif user_id:
        # seller-wide hooks carry no product
        query = query.where(WebhookSetting.user_id == user_id, WebhookSetting.product_id.is_(None))
    else:
        return []
    return db.execute(query).scalars().all()


def trigger(db: Session, event: str, data: Dict[str, Any], user_id: Optional[str] = None,
            order_id: Optional[str] = None, product_id: Optional[str] = None) -> Dict[str, int]:
    """
    POST `event` to every active hook of the product (or of the seller when
    there is no product) that subscribes to it, logging each attempt in
    webhook_logs. Delivery failures are logged, never raised.
    """
    summary = {"triggered": 0, "successful": 0, "failed": 0, "skipped": 0}
    hooks = _subscribers(db, user_id, product_id)
    if not hooks:
        logger.debug("No active webhooks", extra={"event": event, "user_id": user_id, "product_id": product_id})
        return summary

    body = {
        "event": event,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "email": data.get("email") or data.get("customer_email"),
        "name": data.get("name") or data.get("customer_name"),
        "data": {**data, "order_id": order_id, "product_id": product_id},
        "version": "1.0",
    }

    for hook in hooks:
        summary["triggered"] += 1
        if event not in (hook.events or []):
            summary["skipped"] += 1
            continue

        payload = {**body, "webhook_id": hook.id}
        headers = {"Content-Type": "application/json", "User-Agent": USER_AGENT, **(hook.headers or {})}
        if hook.secret:
            headers["X-Webhook-Secret"] = hook.secret
            headers["Authorization"] = f"Bearer {hook.secret}"
        timeout = hook.timeout or settings.webhook_timeout_seconds

        try:
            resp = requests.post(hook.url, data=json.dumps(payload, default=str),
                                 headers=headers, timeout=timeout)
            status, text = resp.status_code, resp.text
        except requests.Timeout:
            status, text = 0, f"Timeout after {timeout} seconds"
        except requests.RequestException as e:
            status, text = 0, str(e)

        ok = 200 <= status < 300
        summary["successful" if ok else "failed"] += 1
        if not ok:
            logger.warning("Webhook delivery failed",
                           extra={"webhook_id": hook.id, "event": event, "status": status})

        db.add(WebhookLog(
            user_id=hook.user_id, webhook_id=hook.id, event_type=event,
            payload=json.loads(json.dumps(payload, default=str)),
            response_status=status, response_body=(text or "")[:1000],
        ))
    db.commit()
    return summary
