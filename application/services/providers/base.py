"""
Shared behaviour of the three payment rails.
"""
from __future__ import annotations

from decimal import Decimal
from typing import Any, Optional

from application.dtos.payments import PaymentStatusView, RefundResult
from application.services.rate_service import Clock, RateService, utc_now
from application.services.refund_dispatcher import RefundDispatcher
from core.logging_config import get_logger
from core.settings import PaymentSettings, payment_settings
from domain.common.exceptions import PaymentNotFoundException, UnknownProviderError
from domain.common.unit_of_work import UnitOfWorkFactory, run_in_transaction
from domain.payment.entity import Currency, Payment, PaymentProvider, RateConversion
from domain.payment.pricing import PaymentMethodsConfig


logger = get_logger(__name__)

PAYMENT_METHODS_KEY = "payment_methods"


class ProviderBase:
    provider: PaymentProvider
    currency: Currency
    automatic_refund: bool = True
    supports_partial_refund: bool = False

    def __init__(
        self,
        *,
        uow_factory: UnitOfWorkFactory,
        rate_service: RateService,
        settings: Optional[PaymentSettings] = None,
        clock: Clock = utc_now,
    ) -> None:
        self._uow_factory = uow_factory
        self._rates = rate_service
        self._settings = settings or payment_settings
        self._clock = clock

    # ---- persistence helpers ----

    async def _load(self, payment_id: int) -> Payment:
        payment = await run_in_transaction(
            self._uow_factory, lambda uow: uow.payment_repository.get_by_id(payment_id)
        )
        if payment is None:
            raise PaymentNotFoundException(f"id={payment_id}")
        return payment

    async def methods_config(self) -> PaymentMethodsConfig:
        raw = await run_in_transaction(
            self._uow_factory, lambda uow: uow.admin_settings_repository.get(PAYMENT_METHODS_KEY)
        )
        return PaymentMethodsConfig.from_dict(raw)

    # ---- capability interface ----

    async def is_enabled(self) -> bool:
        config = await self.methods_config()
        return config.for_provider(self.provider.value).enabled

    async def convert_to_rub(self, amount: Decimal) -> RateConversion:
        return await self._rates.convert_to_rub(amount, self.currency)

    async def get_status(self, payment_id: int) -> PaymentStatusView:
        payment = await self._load(payment_id)
        return PaymentStatusView.from_entity(payment)

    async def refund(self, payment_id: int, reason: str) -> RefundResult:
        payment = await self._load(payment_id)
        dispatcher = RefundDispatcher(self._uow_factory, resolver=self._resolve_self, clock=self._clock)
        return await dispatcher.refund(payment, reason)

    def _resolve_self(self, provider: Any) -> "ProviderBase":
        if provider != self.provider:
            raise UnknownProviderError(provider)
        return self

    def manual_refund_instructions(self, payment: Payment, amount: Decimal) -> str:
        return (
            f"{self.provider.value} refund of {amount} RUB for payment {payment.id} "
            "must be completed manually."
        )

    def _log(self, event: str, **kwargs) -> None:
        logger.info(event, provider=self.provider.value, **kwargs)
