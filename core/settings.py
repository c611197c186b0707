"""
Payment-related settings using pydantic-settings v2 with nested env keys.

Credentials come from the environment; mutable per-provider flags and
prices live in the admin_settings table (see domain.payment.pricing).
"""
from __future__ import annotations

from decimal import Decimal
from typing import Optional
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import BaseModel, Field


class PaymentTimeouts(BaseModel):
    connect: float = 3.0
    read: float = 10.0
    write: float = 10.0
    total: float = 15.0


class PaymentRetry(BaseModel):
    max: int = 2
    base_backoff: float = 0.2


class WebhookSettings(BaseModel):
    ip_allowlist: list[str] | None = None  # Optional IPs/CIDRs allowed to post webhooks


class TBankSettings(BaseModel):
    terminal_key: Optional[str] = None
    password: Optional[str] = None
    api_url: str = "https://securepay.tinkoff.ru/v2"
    app_url: str = "https://pinglass.ru"
    notification_url: Optional[str] = None
    receipt_email: str = "noreply@pinglass.ru"
    init_taxation: str = "usn_income"
    refund_taxation: str = "usn_income_outcome"

    @property
    def is_test_mode(self) -> bool:
        key = self.terminal_key or ""
        return "DEMO" in key or "test" in key.lower()


class TelegramSettings(BaseModel):
    bot_token: Optional[str] = None
    api_url: str = "https://api.telegram.org"


class TonSettings(BaseModel):
    wallet_address: Optional[str] = None
    required_confirmations: int = 10
    payment_ttl_minutes: int = 30
    amount_tolerance: Decimal = Decimal("0.01")
    comment_prefix: str = "PG"


class RateSettings(BaseModel):
    lock_minutes: int = 15
    market_cache_seconds: int = 300
    coingecko_url: str = (
        "https://api.coingecko.com/api/v3/simple/price"
        "?ids=the-open-network&vs_currencies=rub"
    )
    emergency_ton_rub: Decimal = Decimal("300")
    manual_rate_hours: int = 24


class ReconcileSettings(BaseModel):
    tbank_stale_minutes: int = 5
    batch_size: int = 100


class PaymentSettings(BaseSettings):
    timeouts: PaymentTimeouts = Field(default_factory=PaymentTimeouts)
    retry: PaymentRetry = Field(default_factory=PaymentRetry)
    webhook: WebhookSettings = Field(default_factory=WebhookSettings)

    tbank: TBankSettings = Field(default_factory=TBankSettings)
    telegram: TelegramSettings = Field(default_factory=TelegramSettings)
    ton: TonSettings = Field(default_factory=TonSettings)
    rates: RateSettings = Field(default_factory=RateSettings)
    reconcile: ReconcileSettings = Field(default_factory=ReconcileSettings)

    model_config = SettingsConfigDict(
        env_prefix="PAYMENT__",
        env_file=".env",
        case_sensitive=False,
        extra="allow",
        env_nested_delimiter="__",
    )


payment_settings = PaymentSettings()
