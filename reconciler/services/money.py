# reconciler/services/money.py
"""Settlement arithmetic.

Amounts are Decimals end to end; Stripe integers are minor units (cents).
Rounding follows the checkout's half-up convention, not banker's rounding.
"""
import re
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional, Tuple

from reconciler.config import settings

# Currency codes that already denote the settlement currency
BASE_CURRENCY_ALIASES = {"KZ", "AOA"}

_NON_DIGITS = re.compile(r"[^0-9]")


def platform_fee_rate() -> Decimal:
    return Decimal(settings.platform_fee_rate)


def seller_share_rate() -> Decimal:
    return Decimal(1) - platform_fee_rate()


def from_minor_units(amount: int) -> Decimal:
    return Decimal(amount) / Decimal(100)


def round_half_up(value: Decimal) -> Decimal:
    return value.quantize(Decimal(1), rounding=ROUND_HALF_UP)


def is_base_currency(currency: str) -> bool:
    code = (currency or "").upper()
    return code == settings.base_currency.upper() or code in BASE_CURRENCY_ALIASES


def to_base_currency(amount: Decimal, currency: str, rate: Decimal) -> Decimal:
    """Whole settlement units for a charged amount."""
    if is_base_currency(currency):
        return round_half_up(amount)
    return round_half_up(amount * rate)


def parse_list_price(price: Optional[str]) -> Optional[Decimal]:
    """'5,000 KZ' -> Decimal('5000'). Every non-digit is dropped."""
    if not price:
        return None
    digits = _NON_DIGITS.sub("", str(price))
    if not digits:
        return None
    return Decimal(digits)


def seller_commission(base: Decimal) -> Decimal:
    return base * seller_share_rate()


def split_platform_fee(gross: Decimal) -> Tuple[Decimal, Decimal]:
    """(seller_net, platform_fee); the two always add back up to gross."""
    fee = gross * platform_fee_rate()
    return gross - fee, fee
