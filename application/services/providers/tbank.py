"""
T-Bank acquiring rail: synchronous redirect plus signed webhook, RUB only.
"""
from __future__ import annotations

from decimal import Decimal
from typing import Any, Mapping, Optional

from application.dtos.payments import PaymentCreated, PaymentStatusView, WebhookResult
from application.ports.rails import TBankApi
from application.services.providers.base import ProviderBase
from domain.common.exceptions import (
    PaymentConfigurationError,
    PaymentValidationError,
    RefundPreconditionError,
)
from domain.common.unit_of_work import run_in_transaction
from domain.payment.entity import Currency, Payment, PaymentProvider, PaymentStatus
from domain.payment.pricing import get_tier
from domain.payment.service import map_provider_status, to_minor_units
from infrastructure.external.payments.exceptions import (
    PaymentProviderError,
    PaymentRecoverableError,
    PaymentSignatureError,
)
from infrastructure.external.payments.tbank_client import build_receipt

ORDER_PREFIX = "order_"


def order_id_for(payment_id: int) -> str:
    return f"{ORDER_PREFIX}{payment_id}"


def payment_id_from_order(order_id: str) -> Optional[int]:
    if not order_id or not order_id.startswith(ORDER_PREFIX):
        return None
    tail = order_id[len(ORDER_PREFIX):]
    return int(tail) if tail.isdigit() else None


class TBankProvider(ProviderBase):
    provider = PaymentProvider.TBANK
    currency = Currency.RUB
    automatic_refund = True
    supports_partial_refund = True

    def __init__(self, *, client: TBankApi, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self._client = client

    @property
    def _cfg(self):
        return self._settings.tbank

    async def create_payment(
        self,
        user_id: int,
        tier_id: str,
        avatar_id: Optional[int] = None,
        email: Optional[str] = None,
    ) -> PaymentCreated:
        tier = get_tier(tier_id)
        if not self._client.has_credentials:
            raise PaymentConfigurationError("T-Bank credentials not configured", provider=self.provider.value)

        # The row exists before Init so a crash after the call still leaves a correlation key
        payment = await run_in_transaction(
            self._uow_factory,
            lambda uow: uow.payment_repository.create(
                Payment(
                    id=None,
                    user_id=user_id,
                    provider=self.provider,
                    amount=tier.price_rub,
                    original_currency=Currency.RUB,
                    original_amount=tier.price_rub,
                    tier_id=tier.id.value,
                    photo_count=tier.photos,
                    avatar_id=avatar_id,
                )
            ),
        )

        base_url = self._cfg.app_url.rstrip("/")
        data = await self._client.init(
            amount_kopeks=to_minor_units(tier.price_rub),
            order_id=order_id_for(payment.id),
            description=f"PinGlass Pro - {tier.photos} AI photos",
            success_url=f"{base_url}/payment/callback?payment_id={payment.id}",
            fail_url=f"{base_url}/payment/callback?payment_id={payment.id}&status=failed",
            notification_url=self._cfg.notification_url,
            customer_email=email,
        )
        external_id = str(data.get("PaymentId") or "")
        if not external_id:
            raise PaymentProviderError("T-Bank Init returned no PaymentId", provider=self.provider.value)

        await run_in_transaction(
            self._uow_factory,
            lambda uow: uow.payment_repository.update_fields(
                payment.id, tbank_payment_id=external_id, provider_payment_id=external_id
            ),
        )
        self._log("payment_initialized", payment_id=payment.id, tbank_payment_id=external_id)
        return PaymentCreated(
            payment_id=payment.id,
            provider=self.provider.value,
            provider_ref=external_id,
            amount=tier.price_rub,
            currency=Currency.RUB.value,
            settlement_amount=tier.price_rub,
            redirect_url=data.get("PaymentURL"),
        )

    async def get_status(self, payment_id: int) -> PaymentStatusView:
        payment = await self._load(payment_id)
        if payment.status == PaymentStatus.PENDING and payment.tbank_payment_id:
            payment = await self.reconcile(payment)
        return PaymentStatusView.from_entity(payment)

    async def reconcile(self, payment: Payment) -> Payment:
        """Poll GetState for a pending payment and apply any allowed transition."""
        try:
            state = await self._client.get_state(payment.tbank_payment_id)
        except (PaymentProviderError, PaymentRecoverableError) as exc:
            self._log("payment_reconcile_failed", payment_id=payment.id, error=exc.message)
            return payment
        target = map_provider_status(self.provider.value, state.get("Status"))
        if target == payment.status or not payment.can_transition_to(target):
            return payment
        changed = await run_in_transaction(
            self._uow_factory,
            lambda uow: uow.payment_repository.transition_status(
                payment.id, from_statuses=(payment.status,), to_status=target
            ),
        )
        if changed:
            self._log("payment_reconciled", payment_id=payment.id, status=target.value)
        return await self._load(payment.id)

    def verify_webhook(self, payload: Mapping[str, Any]) -> None:
        if not self._client.verify_notification(payload):
            raise PaymentSignatureError("Invalid T-Bank notification token", provider=self.provider.value)

    async def process_webhook(self, payload: Mapping[str, Any]) -> WebhookResult:
        """
        Apply a verified notification. Repeats of an already applied status are
        acknowledged without any write.
        """
        self.verify_webhook(payload)

        payment_id = payment_id_from_order(str(payload.get("OrderId", "")))
        if payment_id is None:
            raise PaymentValidationError(f"Unknown OrderId: {payload.get('OrderId')}", field="OrderId")
        payment = await self._load(payment_id)
        if payment.provider != self.provider:
            raise PaymentValidationError("Order does not belong to T-Bank", field="OrderId")

        target = map_provider_status(self.provider.value, payload.get("Status"))
        external_id = str(payload.get("PaymentId") or payment.tbank_payment_id or "")

        if target == payment.status:
            return WebhookResult(success=True, payment_id=payment.id, status=payment.status.value, duplicate=True)
        if target == PaymentStatus.PENDING:
            # Intermediate states (NEW, AUTHORIZED, ...) carry no transition
            return WebhookResult(success=True, payment_id=payment.id, status=payment.status.value)
        if not payment.can_transition_to(target):
            self._log(
                "webhook_transition_ignored",
                payment_id=payment.id,
                current=payment.status.value,
                target=target.value,
            )
            return WebhookResult(success=True, payment_id=payment.id, status=payment.status.value, duplicate=True)

        if target == PaymentStatus.SUCCEEDED:
            expected = to_minor_units(payment.amount)
            if int(payload.get("Amount") or 0) != expected:
                self._log("webhook_amount_mismatch", payment_id=payment.id, expected=expected, received=payload.get("Amount"))
                return WebhookResult(success=False, payment_id=payment.id, status=payment.status.value, error="Amount mismatch")

        changed = await run_in_transaction(
            self._uow_factory,
            lambda uow: uow.payment_repository.transition_status(
                payment.id,
                from_statuses=(payment.status,),
                to_status=target,
                tbank_payment_id=external_id or None,
            ),
        )
        if not changed:
            current = await self._load(payment.id)
            return WebhookResult(success=True, payment_id=payment.id, status=current.status.value, duplicate=True)
        self._log("webhook_applied", payment_id=payment.id, status=target.value)
        return WebhookResult(success=True, payment_id=payment.id, status=target.value)

    async def execute_refund(
        self,
        payment: Payment,
        *,
        amount: Decimal,
        reason: str,
        partial: bool,
    ) -> Optional[str]:
        if not payment.tbank_payment_id:
            raise RefundPreconditionError("Payment missing T-Bank ID. Manual refund required.")
        if not self._client.has_credentials:
            raise RefundPreconditionError("T-Bank credentials not configured. Manual refund required.")

        kopeks = to_minor_units(amount)
        if partial:
            name = f"Partial refund - PinGlass AI ({reason})"
        else:
            name = f"Refund - PinGlass AI ({reason})"
        receipt = build_receipt(
            email=self._cfg.receipt_email,
            taxation=self._cfg.refund_taxation,
            name=name,
            amount_kopeks=kopeks,
        )
        result = await self._client.cancel(
            payment.tbank_payment_id,
            amount_kopeks=kopeks if partial else None,
            receipt=receipt,
        )
        self._log("refund_api_succeeded", payment_id=payment.id, status=result.get("Status"))
        return str(result.get("PaymentId") or payment.tbank_payment_id)
