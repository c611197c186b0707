"""
Telegram Stars rail: bot invoice with pre-checkout and successful-payment events.
"""
from __future__ import annotations

import json
from decimal import Decimal
from typing import Any, Optional, Union

from pydantic import ValidationError

from application.dtos.payments import (
    InvoicePayload,
    PaymentCreated,
    StarsPreCheckout,
    StarsSuccessfulPayment,
    WebhookResult,
)
from application.ports.rails import TelegramBotApi
from application.services.providers.base import ProviderBase
from domain.common.exceptions import (
    PaymentConfigurationError,
    PaymentValidationError,
    RefundPreconditionError,
)
from domain.common.unit_of_work import run_in_transaction
from domain.payment.entity import Currency, Payment, PaymentProvider, PaymentStatus
from domain.payment.pricing import get_tier

StarsEvent = Union[StarsPreCheckout, StarsSuccessfulPayment]


class StarsProvider(ProviderBase):
    provider = PaymentProvider.STARS
    currency = Currency.XTR
    automatic_refund = True
    supports_partial_refund = False

    def __init__(self, *, client: TelegramBotApi, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self._client = client

    async def create_payment(
        self,
        user_id: int,
        tier_id: str,
        avatar_id: Optional[int] = None,
        email: Optional[str] = None,
    ) -> PaymentCreated:
        tier = get_tier(tier_id)
        config = await self.methods_config()
        stars_amount = int(config.stars.pricing[tier.id])

        telegram_user_id = await run_in_transaction(
            self._uow_factory,
            lambda uow: uow.user_identity_repository.get_telegram_user_id(user_id),
        )
        if not telegram_user_id:
            raise PaymentValidationError(
                "User does not have a Telegram account linked", field="user_id"
            )
        if not self._client.has_token:
            raise PaymentConfigurationError("Telegram bot token not configured", provider=self.provider.value)

        conversion = await self.convert_to_rub(Decimal(stars_amount))
        payment = await run_in_transaction(
            self._uow_factory,
            lambda uow: uow.payment_repository.create(
                Payment(
                    id=None,
                    user_id=user_id,
                    provider=self.provider,
                    amount=tier.price_rub,
                    original_currency=Currency.XTR,
                    original_amount=Decimal(stars_amount),
                    exchange_rate=conversion.rate,
                    rate_locked_at=conversion.rate_locked_at,
                    rate_expires_at=conversion.rate_expires_at,
                    tier_id=tier.id.value,
                    photo_count=tier.photos,
                    avatar_id=avatar_id,
                    stars_amount=stars_amount,
                )
            ),
        )

        payload = json.dumps(
            {
                "payment_id": payment.id,
                "user_id": user_id,
                "avatar_id": avatar_id,
                "tier_id": tier.id.value,
            }
        )
        message = await self._client.send_invoice(
            chat_id=telegram_user_id,
            title=f"PinGlass Pro - {tier.photos} AI photos",
            description=f"Get {tier.photos} professional AI portraits in different styles",
            payload=payload,
            label=f"{tier.photos} AI Photos",
            amount=stars_amount,
        )
        message_id = message.get("message_id")
        if message_id is not None:
            await run_in_transaction(
                self._uow_factory,
                lambda uow: uow.payment_repository.update_fields(
                    payment.id, provider_payment_id=str(message_id)
                ),
            )
        self._log("invoice_sent", payment_id=payment.id, stars_amount=stars_amount)
        return PaymentCreated(
            payment_id=payment.id,
            provider=self.provider.value,
            provider_ref=str(message_id) if message_id is not None else None,
            amount=Decimal(stars_amount),
            currency=Currency.XTR.value,
            settlement_amount=tier.price_rub,
            exchange_rate=conversion.rate,
            invoice_target=telegram_user_id,
        )

    async def process_webhook(self, payload: StarsEvent) -> WebhookResult:
        if isinstance(payload, StarsPreCheckout):
            return await self._answer_pre_checkout(payload)
        if isinstance(payload, StarsSuccessfulPayment):
            return await self._settle(payload)
        raise PaymentValidationError("Unsupported Stars event", field="payload")

    async def _answer_pre_checkout(self, event: StarsPreCheckout) -> WebhookResult:
        # Always accept here; business validation happens at settlement
        if not self._client.has_token:
            return WebhookResult(success=False, error="Bot token not configured")
        await self._client.answer_pre_checkout_query(event.query_id, ok=True)
        self._log("pre_checkout_answered", query_id=event.query_id, payer_id=event.payer_id)
        return WebhookResult(success=True)

    async def _settle(self, event: StarsSuccessfulPayment) -> WebhookResult:
        existing = await run_in_transaction(
            self._uow_factory,
            lambda uow: uow.payment_repository.get_by_telegram_charge_id(event.charge_id),
        )
        if existing is not None:
            return WebhookResult(
                success=True, payment_id=existing.id, status=existing.status.value, duplicate=True
            )

        try:
            invoice = InvoicePayload.parse(event.invoice_payload)
        except (ValueError, ValidationError):
            return WebhookResult(success=False, error="Invalid invoice payload")

        payment = await self._load(invoice.payment_id)
        if payment.provider != self.provider:
            return WebhookResult(success=False, payment_id=payment.id, error="Payment is not a Stars payment")
        if payment.stars_amount is not None and event.total_amount != payment.stars_amount:
            self._log(
                "stars_amount_mismatch",
                payment_id=payment.id,
                expected=payment.stars_amount,
                received=event.total_amount,
            )

        changed = await run_in_transaction(
            self._uow_factory,
            lambda uow: uow.payment_repository.transition_status(
                payment.id,
                from_statuses=(PaymentStatus.PENDING,),
                to_status=PaymentStatus.SUCCEEDED,
                telegram_charge_id=event.charge_id,
            ),
        )
        if not changed:
            current = await self._load(payment.id)
            return WebhookResult(success=True, payment_id=payment.id, status=current.status.value, duplicate=True)
        self._log("stars_payment_succeeded", payment_id=payment.id, charge_id=event.charge_id)
        return WebhookResult(success=True, payment_id=payment.id, status=PaymentStatus.SUCCEEDED.value)

    async def execute_refund(
        self,
        payment: Payment,
        *,
        amount: Decimal,
        reason: str,
        partial: bool,
    ) -> Optional[str]:
        if not payment.telegram_charge_id:
            raise RefundPreconditionError("Missing Telegram charge ID. Contact @BotFather support.")
        telegram_user_id = await run_in_transaction(
            self._uow_factory,
            lambda uow: uow.user_identity_repository.get_telegram_user_id(payment.user_id),
        )
        if not telegram_user_id:
            raise RefundPreconditionError("User missing Telegram ID. Manual refund via @BotFather.")
        if not self._client.has_token:
            raise RefundPreconditionError("Bot token not configured. Admin must refund via @BotFather.")

        await self._client.refund_star_payment(user_id=telegram_user_id, charge_id=payment.telegram_charge_id)
        self._log("refund_api_succeeded", payment_id=payment.id, charge_id=payment.telegram_charge_id)
        return payment.telegram_charge_id

    def manual_refund_instructions(self, payment: Payment, amount: Decimal) -> str:
        return (
            f"Refund {payment.stars_amount} Stars (charge {payment.telegram_charge_id}) "
            f"via @BotFather; settlement value {amount} RUB."
        )
