"""
TON rail: direct wallet transfer matched by comment, confirmed by depth.

Refunds on this rail are never automatic; the operator sends funds back and
confirms through ``confirm_manual_refund``.
"""
from __future__ import annotations

from datetime import timedelta
from decimal import Decimal
from typing import Optional

from application.dtos.payments import PaymentCreated, TonConfirmation, WebhookResult
from application.services.providers.base import ProviderBase
from application.services.refund_dispatcher import RefundDispatcher
from domain.common.exceptions import PaymentConfigurationError
from domain.common.unit_of_work import run_in_transaction
from domain.payment.entity import (
    Currency,
    OrphanPayment,
    Payment,
    PaymentProvider,
    PaymentStatus,
)
from domain.payment.pricing import get_tier
from domain.payment.service import (
    amount_within_tolerance,
    build_ton_comment,
    parse_ton_comment,
    ton_manual_refund_instructions,
    ton_status_for_confirmations,
)

TON_PRECISION = Decimal("0.000000001")


class TonProvider(ProviderBase):
    provider = PaymentProvider.TON
    currency = Currency.TON
    automatic_refund = False
    supports_partial_refund = False

    @property
    def _cfg(self):
        return self._settings.ton

    async def wallet_address(self) -> str:
        config = await self.methods_config()
        address = config.ton.wallet_address or self._cfg.wallet_address
        if not address:
            raise PaymentConfigurationError("TON wallet address not configured", provider=self.provider.value)
        return address

    async def create_payment(
        self,
        user_id: int,
        tier_id: str,
        avatar_id: Optional[int] = None,
        email: Optional[str] = None,
    ) -> PaymentCreated:
        tier = get_tier(tier_id)
        wallet = await self.wallet_address()
        config = await self.methods_config()
        ton_amount = Decimal(config.ton.pricing[tier.id])

        conversion = await self.convert_to_rub(ton_amount)
        now = self._clock()
        expires_at = now + timedelta(minutes=self._cfg.payment_ttl_minutes)

        payment = await run_in_transaction(
            self._uow_factory,
            lambda uow: uow.payment_repository.create(
                Payment(
                    id=None,
                    user_id=user_id,
                    provider=self.provider,
                    amount=tier.price_rub,
                    original_currency=Currency.TON,
                    original_amount=ton_amount,
                    exchange_rate=conversion.rate,
                    rate_locked_at=now,
                    rate_expires_at=expires_at,
                    tier_id=tier.id.value,
                    photo_count=tier.photos,
                    avatar_id=avatar_id,
                    ton_amount=ton_amount,
                )
            ),
        )
        comment = build_ton_comment(payment.id, self._cfg.comment_prefix)
        await run_in_transaction(
            self._uow_factory,
            lambda uow: uow.payment_repository.update_fields(payment.id, provider_payment_id=comment),
        )
        self._log("ton_payment_created", payment_id=payment.id, ton_amount=str(ton_amount), comment=comment)
        return PaymentCreated(
            payment_id=payment.id,
            provider=self.provider.value,
            provider_ref=comment,
            amount=ton_amount,
            currency=Currency.TON.value,
            settlement_amount=tier.price_rub,
            exchange_rate=conversion.rate,
            expires_at=expires_at,
            wallet_address=wallet,
            comment=comment,
        )

    async def process_webhook(self, payload: TonConfirmation) -> WebhookResult:
        """
        Match an observed transfer to a pending payment.

        A tx hash that is already recorded only updates its confirmation depth.
        Transfers that cannot be matched are stored as orphans.
        """
        required = self._cfg.required_confirmations
        existing = await run_in_transaction(
            self._uow_factory,
            lambda uow: uow.payment_repository.get_by_ton_tx_hash(payload.tx_hash),
        )
        if existing is not None:
            return await self._update_confirmations(existing, payload.confirmations, required)

        payment_id = parse_ton_comment(payload.comment, self._cfg.comment_prefix)
        if payment_id is None:
            return await self._orphan(payload, reason="no_payment_id")

        payment = await run_in_transaction(
            self._uow_factory, lambda uow: uow.payment_repository.get_by_id(payment_id)
        )
        if payment is None or payment.provider != self.provider:
            return await self._orphan(payload, reason="payment_not_found")
        if payment.status != PaymentStatus.PENDING:
            return await self._orphan(payload, reason=f"payment_{payment.status.value}", payment_id=payment.id)

        if payment.is_rate_expired(self._clock()):
            await run_in_transaction(
                self._uow_factory,
                lambda uow: uow.payment_repository.transition_status(
                    payment.id,
                    from_statuses=(PaymentStatus.PENDING,),
                    to_status=PaymentStatus.EXPIRED,
                ),
            )
            self._log("ton_payment_expired", payment_id=payment.id, tx_hash=payload.tx_hash)
            return await self._orphan(payload, reason="rate_expired", payment_id=payment.id)

        expected = payment.ton_amount or payment.original_amount
        if not amount_within_tolerance(payload.amount, expected, self._cfg.amount_tolerance):
            self._log(
                "ton_amount_mismatch",
                payment_id=payment.id,
                expected=str(expected),
                received=str(payload.amount),
            )
            return await self._orphan(payload, reason="amount_mismatch", payment_id=payment.id)

        target = ton_status_for_confirmations(payload.confirmations, required)
        changed = await run_in_transaction(
            self._uow_factory,
            lambda uow: uow.payment_repository.transition_status(
                payment.id,
                from_statuses=(PaymentStatus.PENDING,),
                to_status=target,
                ton_tx_hash=payload.tx_hash,
                ton_sender_address=payload.sender_address,
                ton_confirmations=payload.confirmations,
            ),
        )
        if not changed:
            current = await self._load(payment.id)
            return WebhookResult(success=True, payment_id=payment.id, status=current.status.value, duplicate=True)
        self._log(
            "ton_payment_matched",
            payment_id=payment.id,
            tx_hash=payload.tx_hash,
            confirmations=payload.confirmations,
            status=target.value,
        )
        return WebhookResult(success=True, payment_id=payment.id, status=target.value)

    async def _update_confirmations(self, payment: Payment, confirmations: int, required: int) -> WebhookResult:
        if confirmations <= payment.ton_confirmations:
            return WebhookResult(success=True, payment_id=payment.id, status=payment.status.value, duplicate=True)

        if payment.status == PaymentStatus.PROCESSING and confirmations >= required:
            changed = await run_in_transaction(
                self._uow_factory,
                lambda uow: uow.payment_repository.transition_status(
                    payment.id,
                    from_statuses=(PaymentStatus.PROCESSING,),
                    to_status=PaymentStatus.SUCCEEDED,
                    ton_confirmations=confirmations,
                ),
            )
            if changed:
                self._log("ton_payment_confirmed", payment_id=payment.id, confirmations=confirmations)
                return WebhookResult(success=True, payment_id=payment.id, status=PaymentStatus.SUCCEEDED.value)
            current = await self._load(payment.id)
            return WebhookResult(success=True, payment_id=payment.id, status=current.status.value, duplicate=True)

        await run_in_transaction(
            self._uow_factory,
            lambda uow: uow.payment_repository.update_fields(payment.id, ton_confirmations=confirmations),
        )
        return WebhookResult(success=True, payment_id=payment.id, status=payment.status.value)

    async def _orphan(
        self,
        payload: TonConfirmation,
        *,
        reason: str,
        payment_id: Optional[int] = None,
    ) -> WebhookResult:
        wallet = self._cfg.wallet_address
        orphan = OrphanPayment(
            tx_hash=payload.tx_hash,
            amount=payload.amount,
            wallet_address=payload.sender_address or wallet,
            comment=payload.comment,
            reason=reason,
            matched_payment_id=payment_id,
        )
        inserted = await run_in_transaction(
            self._uow_factory, lambda uow: uow.orphan_payment_repository.add_if_absent(orphan)
        )
        return WebhookResult(
            success=False,
            payment_id=payment_id,
            error=f"Unmatched TON transaction: {reason}",
            duplicate=not inserted,
        )

    async def expire_old_payments(self) -> int:
        """Mark pending TON payments whose locked rate has lapsed as expired."""
        now = self._clock()
        count = await run_in_transaction(
            self._uow_factory,
            lambda uow: uow.payment_repository.expire_pending(self.provider, now),
        )
        if count:
            self._log("ton_payments_expired", count=count)
        return count

    async def execute_refund(
        self,
        payment: Payment,
        *,
        amount: Decimal,
        reason: str,
        partial: bool,
    ) -> Optional[str]:
        raise PaymentConfigurationError("TON refunds are processed manually", provider=self.provider.value)

    def manual_refund_instructions(self, payment: Payment, amount: Decimal) -> str:
        ton_amount = payment.ton_amount
        if ton_amount is not None and amount != payment.amount:
            ton_amount = (ton_amount * Decimal(amount) / payment.amount).quantize(TON_PRECISION)
        return ton_manual_refund_instructions(payment, ton_amount)

    async def confirm_manual_refund(self, payment_id: int, tx_hash: Optional[str] = None) -> bool:
        dispatcher = RefundDispatcher(self._uow_factory, resolver=self._resolve_self, clock=self._clock)
        return await dispatcher.confirm_manual_refund(payment_id, tx_hash)

