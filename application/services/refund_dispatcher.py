"""
退款调度：按支付渠道路由退款，并在任何外部调用前后执行退款锁协议

自动退款渠道的协议：
1. ``acquire_refund_lock``：单条条件 UPDATE，单独提交。
   未更新任何行 -> 已有调用方持有锁，或退款已完成。
2. 加锁后前置条件不满足 -> 释放锁（refund_status=none），返回人工退款说明。
3. 调用外部退款接口。成功 -> refunded/completed（部分退款为 partial/partial）；
   失败 -> refund_status=failed，返回附带错误信息的人工退款说明。

返回前锁一定已被释放或落定。链上退款不加锁，始终生成人工退款说明，
但只对仍可退款的支付生成。
"""
from __future__ import annotations

from decimal import Decimal
from typing import Any, Callable, Optional

from application.dtos.payments import RefundResult
from application.ports.payment_gateway import PaymentProviderPort
from core.logging_config import get_logger
from domain.common.exceptions import (
    PaymentConfigurationError,
    PaymentNotFoundException,
    RefundPreconditionError,
)
from domain.common.unit_of_work import UnitOfWorkFactory, run_in_transaction
from domain.payment.entity import (
    Payment,
    PaymentStatus,
    RefundContext,
    RefundStatus,
)
from domain.payment.service import MIN_PARTIAL_REFUND, calculate_partial_refund
from infrastructure.external.payments.exceptions import (
    PaymentProviderError,
    PaymentRecoverableError,
)


logger = get_logger(__name__)

ProviderResolver = Callable[[Any], PaymentProviderPort]

ALREADY_IN_PROGRESS = "Payment already refunded or refund in progress"
REFUNDED_STATUSES = (PaymentStatus.REFUNDED, PaymentStatus.REFUNDING, PaymentStatus.PARTIAL)
GENERATION_FAILED = "Generation failed"


class RefundDispatcher:
    def __init__(
        self,
        uow_factory: UnitOfWorkFactory,
        *,
        resolver: ProviderResolver,
        clock: Callable,
    ) -> None:
        self._uow_factory = uow_factory
        self._resolve = resolver
        self._clock = clock

    async def dispatch(self, context: RefundContext) -> RefundResult:
        payment = context.payment
        logger.info(
            "refund_dispatch",
            payment_id=payment.id,
            provider=getattr(payment.provider, "value", payment.provider),
            amount=str(payment.amount),
            reason=context.reason,
            admin_id=context.admin_id,
        )
        return await self.refund(payment, context.reason)

    async def refund(self, payment: Payment, reason: str) -> RefundResult:
        """全额退款；未知渠道抛出 UnknownProviderError"""
        provider = self._resolve(payment.provider)
        if not provider.automatic_refund:
            current = await self._reload(payment.id)
            refusal = self._refusal(provider, current)
            if refusal is not None:
                return refusal
            return await self._manual_refund(provider, current, current.amount, reason)
        return await self._locked_refund(provider, payment, reason, amount=payment.amount, partial=False)

    async def partial_refund(
        self,
        payment: Payment,
        failed_units: int,
        total_units: int,
        reason: Optional[str] = None,
    ) -> RefundResult:
        provider = self._resolve(payment.provider)
        amount = calculate_partial_refund(payment.amount, failed_units, total_units)
        if amount < MIN_PARTIAL_REFUND:
            logger.info("partial_refund_too_small", payment_id=payment.id, refund_amount=str(amount))
            return RefundResult(
                success=True,
                provider=provider.provider.value,
                refund_amount=Decimal("0"),
                error="Refund amount too small",
            )

        reason = reason or f"Partial: {failed_units}/{total_units} failed"
        if not provider.supports_partial_refund:
            refusal = self._refusal(provider, await self._reload(payment.id))
            if refusal is not None:
                return refusal
            instructions = (
                f"{provider.provider.value} doesn't support partial refunds. "
                f"Manual refund needed: {amount} of {payment.amount} RUB. "
                f"{provider.manual_refund_instructions(payment, amount)}"
            )
            logger.info(
                "partial_refund_manual",
                payment_id=payment.id,
                provider=provider.provider.value,
                refund_amount=str(amount),
            )
            return RefundResult(
                success=True,
                provider=provider.provider.value,
                manual_refund=True,
                manual_instructions=instructions,
                refund_amount=amount,
            )
        return await self._locked_refund(provider, payment, reason, amount=amount, partial=True)

    async def _manual_refund(
        self,
        provider: PaymentProviderPort,
        payment: Payment,
        amount: Decimal,
        reason: str,
    ) -> RefundResult:
        instructions = provider.manual_refund_instructions(payment, amount)
        await run_in_transaction(
            self._uow_factory,
            lambda uow: uow.payment_repository.set_refund_status(
                payment.id, RefundStatus.PENDING, reason=reason
            ),
        )
        logger.info(
            "refund_manual_required",
            payment_id=payment.id,
            provider=provider.provider.value,
            ton_amount=str(payment.ton_amount) if payment.ton_amount is not None else None,
        )
        return RefundResult(
            success=True,
            provider=provider.provider.value,
            manual_refund=True,
            manual_instructions=instructions,
            refund_amount=amount,
        )

    async def _reload(self, payment_id: int) -> Payment:
        """人工退款不加锁，按库中最新状态判断，调用方传入的对象可能已过期"""
        payment = await run_in_transaction(
            self._uow_factory, lambda uow: uow.payment_repository.get_by_id(payment_id)
        )
        if payment is None:
            raise PaymentNotFoundException(f"id={payment_id}")
        return payment

    @staticmethod
    def _refusal(provider: PaymentProviderPort, payment: Payment) -> Optional[RefundResult]:
        """不可退款时的结果；可退款返回 None。判断条件与退款锁一致"""
        if payment.is_refundable():
            return None
        name = provider.provider.value
        if payment.status in REFUNDED_STATUSES or payment.refund_status in (
            RefundStatus.PROCESSING,
            RefundStatus.COMPLETED,
        ):
            logger.warning("refund_manual_already_done", payment_id=payment.id, provider=name)
            return RefundResult(
                success=False,
                provider=name,
                manual_refund=False,
                manual_instructions=ALREADY_IN_PROGRESS,
                already_in_progress=True,
            )
        logger.warning(
            "refund_manual_not_refundable",
            payment_id=payment.id,
            provider=name,
            status=payment.status.value,
        )
        return RefundResult(
            success=False,
            provider=name,
            error=f"Payment is not refundable (status={payment.status.value})",
        )

    async def _acquire(self, payment_id: int) -> Optional[Payment]:
        async def _lock(uow) -> Optional[Payment]:
            repo = uow.payment_repository
            if not await repo.acquire_refund_lock(payment_id):
                return None
            return await repo.get_by_id(payment_id)

        return await run_in_transaction(self._uow_factory, _lock)

    async def _set_refund_status(self, payment_id: int, status: RefundStatus) -> None:
        await run_in_transaction(
            self._uow_factory,
            lambda uow: uow.payment_repository.set_refund_status(payment_id, status),
        )

    async def _locked_refund(
        self,
        provider: PaymentProviderPort,
        payment: Payment,
        reason: str,
        *,
        amount: Decimal,
        partial: bool,
    ) -> RefundResult:
        name = provider.provider.value
        locked = await self._acquire(payment.id)
        if locked is None:
            logger.warning("refund_lock_not_acquired", payment_id=payment.id, provider=name)
            return RefundResult(
                success=False,
                provider=name,
                manual_refund=False,
                manual_instructions=ALREADY_IN_PROGRESS,
                already_in_progress=True,
            )

        try:
            refund_id = await provider.execute_refund(locked, amount=amount, reason=reason, partial=partial)
        except RefundPreconditionError as exc:
            await self._set_refund_status(payment.id, RefundStatus.NONE)
            logger.error("refund_precondition_failed", payment_id=payment.id, provider=name, error=exc.message)
            return RefundResult(
                success=False,
                provider=name,
                manual_refund=True,
                manual_instructions=exc.instructions,
            )
        except PaymentConfigurationError as exc:
            await self._set_refund_status(payment.id, RefundStatus.NONE)
            logger.error("refund_not_configured", payment_id=payment.id, provider=name, error=exc.message)
            return RefundResult(
                success=False,
                provider=name,
                manual_refund=True,
                manual_instructions=f"{exc.message}. Manual refund required.",
            )
        except (PaymentProviderError, PaymentRecoverableError) as exc:
            await self._set_refund_status(payment.id, RefundStatus.FAILED)
            logger.error("refund_api_failed", payment_id=payment.id, provider=name, error=exc.message)
            return RefundResult(
                success=False,
                provider=name,
                manual_refund=True,
                manual_instructions=f"{name} API error: {exc.message}",
                error=exc.message,
            )
        except Exception:
            await self._set_refund_status(payment.id, RefundStatus.FAILED)
            logger.exception("refund_unexpected_error", payment_id=payment.id, provider=name)
            raise

        now = self._clock()
        final_status = PaymentStatus.PARTIAL if partial else PaymentStatus.REFUNDED
        final_refund = RefundStatus.PARTIAL if partial else RefundStatus.COMPLETED
        await run_in_transaction(
            self._uow_factory,
            lambda uow: uow.payment_repository.complete_refund(
                payment.id,
                status=final_status,
                refund_status=final_refund,
                amount=amount,
                reason=reason,
                refunded_at=now,
            ),
        )
        logger.info(
            "refund_completed",
            payment_id=payment.id,
            provider=name,
            refund_amount=str(amount),
            partial=partial,
        )
        return RefundResult(
            success=True,
            provider=name,
            refund_id=refund_id,
            manual_refund=False,
            refund_amount=amount,
        )

    # ---- operator / automation entry points ----

    async def _find_payment(
        self,
        user_id: int,
        payment_id: Optional[int],
        avatar_id: Optional[int],
    ) -> Optional[Payment]:
        async def _find(uow) -> Optional[Payment]:
            repo = uow.payment_repository
            if payment_id is not None:
                return await repo.get_by_id(payment_id)
            found = None
            if avatar_id is not None:
                found = await repo.get_latest_succeeded(user_id, avatar_id=avatar_id)
            return found or await repo.get_latest_succeeded(user_id)

        return await run_in_transaction(self._uow_factory, _find)

    async def auto_refund(
        self,
        user_id: int,
        *,
        avatar_id: Optional[int] = None,
        payment_id: Optional[int] = None,
    ) -> RefundResult:
        """生成失败后全额退款：优先指定支付，其次同头像、再次用户最近一笔成功支付"""
        payment = await self._find_payment(user_id, payment_id, avatar_id)
        if payment is None:
            logger.warning("auto_refund_no_payment", user_id=user_id, avatar_id=avatar_id)
            return RefundResult(success=False, error="No payment found")
        return await self.dispatch(RefundContext(payment=payment, reason=GENERATION_FAILED))

    async def partial_refund_for_generation(
        self,
        user_id: int,
        failed_units: int,
        total_units: int,
        *,
        avatar_id: Optional[int] = None,
        payment_id: Optional[int] = None,
    ) -> RefundResult:
        payment = await self._find_payment(user_id, payment_id, avatar_id)
        if payment is None:
            logger.warning("partial_refund_no_payment", user_id=user_id, avatar_id=avatar_id)
            return RefundResult(success=False, error="No payment found")
        return await self.partial_refund(payment, failed_units, total_units)

    async def confirm_manual_refund(self, payment_id: int, tx_hash: Optional[str] = None) -> bool:
        """运营确认线下退款已完成；自动退款持有锁期间不允许确认"""
        now = self._clock()

        async def _confirm(uow) -> bool:
            repo = uow.payment_repository
            payment = await repo.get_by_id(payment_id)
            if payment is None:
                raise PaymentNotFoundException(f"id={payment_id}")
            return await repo.transition_status(
                payment_id,
                from_statuses=(PaymentStatus.SUCCEEDED, PaymentStatus.REFUNDING, PaymentStatus.PARTIAL),
                to_status=PaymentStatus.REFUNDED,
                unless_refund_in=(RefundStatus.PROCESSING,),
                refund_status=RefundStatus.COMPLETED,
                refund_at=now,
                refund_amount=payment.refund_amount or payment.amount,
            )

        confirmed = await run_in_transaction(self._uow_factory, _confirm)
        logger.info("manual_refund_confirmed", payment_id=payment_id, tx_hash=tx_hash, confirmed=confirmed)
        return confirmed
