"""
Payment DTOs (Pydantic v2) used at application boundaries.
"""
from __future__ import annotations

import json
from datetime import datetime
from decimal import Decimal
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.types import condecimal

from domain.payment.entity import Currency, Payment
from domain.payment.pricing import TierId


class CreatePayment(BaseModel):
    user_id: int
    tier_id: TierId
    provider: str = "tbank"
    avatar_id: Optional[int] = None
    email: Optional[str] = None

    @field_validator("provider")
    @classmethod
    def _lower_provider(cls, v: str) -> str:
        return (v or "").strip().lower()

    @field_validator("email")
    @classmethod
    def _normalize_email(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return None
        v = v.strip()
        if not v:
            return None
        if "@" not in v:
            raise ValueError("invalid email")
        return v


class PaymentCreated(BaseModel):
    """
    Uniform creation result. Exactly one of redirect_url / invoice_target /
    wallet_address is populated depending on the rail.
    """

    payment_id: int
    provider: str
    provider_ref: Optional[str] = None
    amount: Decimal
    currency: str
    settlement_amount: Decimal
    settlement_currency: str = Currency.RUB.value
    exchange_rate: Optional[Decimal] = None
    expires_at: Optional[datetime] = None

    redirect_url: Optional[str] = None
    invoice_target: Optional[int] = None
    wallet_address: Optional[str] = None
    comment: Optional[str] = None


class PaymentStatusView(BaseModel):
    payment_id: int
    status: str
    provider: str
    amount_rub: Decimal
    original_amount: Optional[Decimal] = None
    original_currency: str
    exchange_rate: Optional[Decimal] = None
    refund_status: str
    telegram_charge_id: Optional[str] = None
    ton_tx_hash: Optional[str] = None
    ton_confirmations: int = 0
    updated_at: Optional[datetime] = None

    @classmethod
    def from_entity(cls, payment: Payment) -> "PaymentStatusView":
        return cls(
            payment_id=payment.id,
            status=payment.status.value,
            provider=payment.provider.value,
            amount_rub=payment.amount,
            original_amount=payment.original_amount,
            original_currency=payment.original_currency.value,
            exchange_rate=payment.exchange_rate,
            refund_status=payment.refund_status.value,
            telegram_charge_id=payment.telegram_charge_id,
            ton_tx_hash=payment.ton_tx_hash,
            ton_confirmations=payment.ton_confirmations,
            updated_at=payment.updated_at,
        )


class WebhookResult(BaseModel):
    success: bool
    payment_id: Optional[int] = None
    status: Optional[str] = None
    error: Optional[str] = None
    duplicate: bool = False


class RefundResult(BaseModel):
    """
    ``success`` means the dispatcher completed its own work correctly,
    independent of whether money moved automatically.
    """

    success: bool
    provider: Optional[str] = None
    refund_id: Optional[str] = None
    manual_refund: bool = False
    manual_instructions: Optional[str] = None
    already_in_progress: bool = False
    refund_amount: Optional[Decimal] = None
    error: Optional[str] = None


# ---- inbound webhook shapes ----

class TBankNotification(BaseModel):
    """Only the fields the core relies on; the raw dict is kept for signing."""

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    terminal_key: str = Field(alias="TerminalKey")
    order_id: str = Field(alias="OrderId")
    success: bool = Field(alias="Success")
    status: str = Field(alias="Status")
    payment_id: str | int = Field(alias="PaymentId")
    amount: int = Field(alias="Amount")
    token: str = Field(alias="Token")
    error_code: Optional[str] = Field(default=None, alias="ErrorCode")


class InvoicePayload(BaseModel):
    payment_id: int
    user_id: Optional[int] = None
    avatar_id: Optional[int] = None
    tier_id: Optional[str] = None

    @classmethod
    def parse(cls, raw: str) -> "InvoicePayload":
        return cls.model_validate(json.loads(raw))


class StarsPreCheckout(BaseModel):
    query_id: str
    payer_id: int
    currency: str
    total_amount: int
    invoice_payload: str


class StarsSuccessfulPayment(BaseModel):
    charge_id: str
    provider_charge_id: Optional[str] = None
    payer_id: Optional[int] = None
    currency: str
    total_amount: int
    invoice_payload: str


class TonConfirmation(BaseModel):
    tx_hash: str = Field(min_length=1)
    amount: condecimal(gt=0)  # type: ignore[valid-type]
    sender_address: Optional[str] = None
    comment: Optional[str] = None
    confirmations: int = Field(ge=0)


# ---- admin commands ----

class RefundCommand(BaseModel):
    reason: str = Field(default="Admin refund", min_length=1)


class PartialRefundCommand(BaseModel):
    failed_units: int = Field(ge=0)
    total_units: int = Field(gt=0)
    reason: Optional[str] = None


class ConfirmManualRefund(BaseModel):
    tx_hash: Optional[str] = None


class ManualRate(BaseModel):
    from_currency: Currency
    to_currency: Currency = Currency.RUB
    rate: condecimal(gt=0)  # type: ignore[valid-type]


class ExchangeRateView(BaseModel):
    from_currency: str
    to_currency: str
    rate: Decimal
    source: str
    fetched_at: datetime
    expires_at: Optional[datetime] = None


class PaymentMethodView(BaseModel):
    provider: str
    currency: str
    prices: dict[str, Any]
    wallet_address: Optional[str] = None
