# reconciler/services/rates.py
import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Tuple

from sqlalchemy import select
from sqlalchemy.orm import Session

from reconciler.config import settings
from reconciler.metrics import fallback_rates
from reconciler.models import ExchangeRate
from reconciler.services.money import is_base_currency

logger = logging.getLogger("reconciler.rates")


def settlement_rate(db: Session, currency: str) -> Tuple[Decimal, str]:
    """
    Rate that converts one unit of `currency` into the settlement currency,
    and where it came from ("base", "table", "config" or "fallback").

    The newest `exchange_rates` row already in effect wins; configured
    defaults cover currencies without rows. Unknown currencies settle 1:1.
    """
    code = (currency or "").upper()
    if is_base_currency(code):
        return Decimal(1), "base"

    row = db.execute(
        select(ExchangeRate)
        .where(ExchangeRate.currency == code, ExchangeRate.effective_at <= datetime.now(timezone.utc))
        .order_by(ExchangeRate.effective_at.desc())
        .limit(1)
    ).scalar_one_or_none()
    if row is not None:
        return Decimal(row.rate), "table"

    configured = {k.upper(): v for k, v in settings.exchange_rates.items()}
    if code in configured:
        return Decimal(configured[code]), "config"

    fallback_rates.labels(code or "unknown").inc()
    logger.warning("No exchange rate for currency, settling 1:1", extra={"currency": code})
    return Decimal(1), "fallback"
