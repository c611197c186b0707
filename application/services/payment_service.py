"""
Application service orchestrating payment use-cases.

Rails, the rate service and the refund dispatcher are injected from the
composition root (API/tasks); this module never builds infrastructure
clients itself.
"""
from __future__ import annotations

from decimal import Decimal
from typing import Optional

from application.dtos.payments import (
    CreatePayment,
    ExchangeRateView,
    PaymentCreated,
    PaymentMethodView,
    PaymentStatusView,
    RefundResult,
)
from application.services.providers import Providers, get_provider
from application.services.rate_service import RateService
from application.services.refund_dispatcher import RefundDispatcher
from core.logging_config import get_logger
from domain.common.exceptions import PaymentNotFoundException, ProviderDisabledError
from domain.common.unit_of_work import UnitOfWorkFactory, run_in_transaction
from domain.payment.entity import Currency, Payment, PaymentProvider, RefundContext
from domain.payment.pricing import TIERS, PaymentMethodsConfig


logger = get_logger(__name__)


class PaymentService:
    def __init__(
        self,
        uow_factory: UnitOfWorkFactory,
        *,
        providers: Providers,
        rate_service: RateService,
        dispatcher: RefundDispatcher,
    ) -> None:
        self._uow_factory = uow_factory
        self._providers = providers
        self._rates = rate_service
        self._dispatcher = dispatcher

    async def create_payment(self, req: CreatePayment) -> PaymentCreated:
        provider = get_provider(req.provider, self._providers)
        if not await provider.is_enabled():
            raise ProviderDisabledError(provider.provider.value)
        logger.info(
            "payment_create_request",
            provider=provider.provider.value,
            user_id=req.user_id,
            tier_id=req.tier_id.value,
        )
        created = await provider.create_payment(
            req.user_id, req.tier_id.value, avatar_id=req.avatar_id, email=req.email
        )
        logger.info(
            "payment_create_response",
            provider=created.provider,
            payment_id=created.payment_id,
            amount=str(created.amount),
            currency=created.currency,
        )
        return created

    async def _load(self, payment_id: int) -> Payment:
        payment = await run_in_transaction(
            self._uow_factory, lambda uow: uow.payment_repository.get_by_id(payment_id)
        )
        if payment is None:
            raise PaymentNotFoundException(f"id={payment_id}")
        return payment

    async def get_status(self, payment_id: int) -> PaymentStatusView:
        payment = await self._load(payment_id)
        provider = get_provider(payment.provider, self._providers)
        return await provider.get_status(payment_id)

    async def list_methods(self) -> list[PaymentMethodView]:
        raw = await run_in_transaction(
            self._uow_factory, lambda uow: uow.admin_settings_repository.get("payment_methods")
        )
        config = PaymentMethodsConfig.from_dict(raw)
        methods: list[PaymentMethodView] = []
        if config.tbank.enabled:
            methods.append(
                PaymentMethodView(
                    provider=PaymentProvider.TBANK.value,
                    currency=Currency.RUB.value,
                    prices={tier.value: str(t.price_rub) for tier, t in TIERS.items()},
                )
            )
        if config.stars.enabled:
            methods.append(
                PaymentMethodView(
                    provider=PaymentProvider.STARS.value,
                    currency=Currency.XTR.value,
                    prices={tier.value: int(v) for tier, v in config.stars.pricing.items()},
                )
            )
        if config.ton.enabled:
            methods.append(
                PaymentMethodView(
                    provider=PaymentProvider.TON.value,
                    currency=Currency.TON.value,
                    prices={tier.value: str(v) for tier, v in config.ton.pricing.items()},
                    wallet_address=config.ton.wallet_address or None,
                )
            )
        return methods

    async def refund(self, payment_id: int, reason: str, admin_id: Optional[int] = None) -> RefundResult:
        payment = await self._load(payment_id)
        return await self._dispatcher.dispatch(
            RefundContext(payment=payment, reason=reason, admin_id=admin_id)
        )

    async def partial_refund(
        self,
        payment_id: int,
        failed_units: int,
        total_units: int,
        reason: Optional[str] = None,
    ) -> RefundResult:
        payment = await self._load(payment_id)
        return await self._dispatcher.partial_refund(payment, failed_units, total_units, reason)

    async def confirm_manual_refund(self, payment_id: int, tx_hash: Optional[str] = None) -> bool:
        return await self._dispatcher.confirm_manual_refund(payment_id, tx_hash)

    async def recent_rates(self, limit: int = 50) -> list[ExchangeRateView]:
        rates = await self._rates.get_recent_rates(limit)
        return [
            ExchangeRateView(
                from_currency=r.from_currency.value,
                to_currency=r.to_currency.value,
                rate=r.rate,
                source=r.source.value,
                fetched_at=r.fetched_at,
                expires_at=r.expires_at,
            )
            for r in rates
        ]

    async def set_manual_rate(self, from_currency: Currency, to_currency: Currency, rate: Decimal) -> ExchangeRateView:
        saved = await self._rates.set_manual_rate(from_currency, to_currency, rate)
        return ExchangeRateView(
            from_currency=saved.from_currency.value,
            to_currency=saved.to_currency.value,
            rate=saved.rate,
            source=saved.source.value,
            fetched_at=saved.fetched_at,
            expires_at=saved.expires_at,
        )
