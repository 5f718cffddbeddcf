from decimal import Decimal
from typing import Dict, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    database_url: str = Field(alias="DATABASE_URL")

    # Stripe; absence is reported per request, not at import time
    stripe_secret_key: Optional[str] = Field(default=None, alias="STRIPE_SECRET_KEY")
    stripe_webhook_secret: Optional[str] = Field(default=None, alias="STRIPE_WEBHOOK_SECRET")
    stripe_signature_tolerance: int = Field(default=300, alias="STRIPE_SIGNATURE_TOLERANCE")
    stripe_allow_unverified_bypass: bool = Field(default=True, alias="STRIPE_ALLOW_UNVERIFIED_BYPASS")

    # Settlement
    platform_fee_rate: Decimal = Field(default=Decimal("0.0899"), alias="PLATFORM_FEE_RATE")
    base_currency: str = Field(default="KZ", alias="BASE_CURRENCY")
    exchange_rates: Dict[str, Decimal] = Field(
        default_factory=lambda: {"EUR": Decimal("1100"), "MZN": Decimal("14.3")},
        alias="EXCHANGE_RATES",
    )

    # Seconds a claimed provider event stays "in flight"
    event_lock_seconds: int = Field(default=15, alias="EVENT_LOCK_SECONDS")

    # Notifications
    resend_api_key: Optional[str] = Field(default=None, alias="RESEND_API_KEY")
    email_from: str = Field(default="Kambafy <noreply@kambafy.com>", alias="EMAIL_FROM")
    member_area_base_url: str = Field(default="https://kambafy.com/members/area", alias="MEMBER_AREA_BASE_URL")
    notify_seller_on_sale: bool = Field(default=True, alias="NOTIFY_SELLER_ON_SALE")
    webhook_timeout_seconds: int = Field(default=30, alias="WEBHOOK_TIMEOUT_SECONDS")

    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    log_json: bool = Field(default=True, alias="LOG_JSON")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",  # the platform shares its .env with other functions
    )

settings = Settings()
