"""
Payment provider port (application/ports) exposing a replaceable protocol.

Application services depend on this Protocol; the three rail variants in
application.services.providers implement it.
"""
from __future__ import annotations

from decimal import Decimal
from typing import Any, Optional, Protocol, runtime_checkable

from application.dtos.payments import (
    PaymentCreated,
    PaymentStatusView,
    RefundResult,
    WebhookResult,
)
from domain.payment.entity import Payment, PaymentProvider, RateConversion


@runtime_checkable
class PaymentProviderPort(Protocol):
    """Capability interface shared by every payment rail."""

    provider: PaymentProvider
    automatic_refund: bool
    supports_partial_refund: bool

    async def create_payment(
        self,
        user_id: int,
        tier_id: str,
        avatar_id: Optional[int] = None,
        email: Optional[str] = None,
    ) -> PaymentCreated: ...

    async def get_status(self, payment_id: int) -> PaymentStatusView: ...

    async def process_webhook(self, payload: Any) -> WebhookResult: ...

    async def refund(self, payment_id: int, reason: str) -> RefundResult: ...

    async def convert_to_rub(self, amount: Decimal) -> RateConversion: ...

    async def is_enabled(self) -> bool: ...

    # refund hooks driven by the dispatcher
    async def execute_refund(
        self,
        payment: Payment,
        *,
        amount: Decimal,
        reason: str,
        partial: bool,
    ) -> Optional[str]: ...

    def manual_refund_instructions(self, payment: Payment, amount: Decimal) -> str: ...
