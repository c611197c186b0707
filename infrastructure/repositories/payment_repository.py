"""
支付仓储实现 - 使用SQLAlchemy实现数据访问
"""
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, List, Optional, Sequence

from sqlalchemy import func, select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession

from core.logging_config import get_logger
from domain.payment.entity import (
    Currency,
    OrphanPayment,
    Payment,
    PaymentProvider,
    PaymentStatus,
    RefundStatus,
)
from domain.payment.repository import OrphanPaymentRepository, PaymentRepository
from infrastructure.models.payment import OrphanPaymentModel, PaymentModel


logger = get_logger(__name__)


def _dec(value: Any) -> Optional[Decimal]:
    return Decimal(str(value)) if value is not None else None


def _column_values(fields: dict) -> dict:
    """枚举转为存储值"""
    return {k: (v.value if isinstance(v, Enum) else v) for k, v in fields.items()}


def _refund_status_not_in(statuses: Sequence[RefundStatus]) -> list:
    """NULL 视为 none"""
    if not statuses:
        return []
    return [func.coalesce(PaymentModel.refund_status, RefundStatus.NONE.value).not_in([s.value for s in statuses])]


class SQLAlchemyPaymentRepository(PaymentRepository):
    """支付仓储的SQLAlchemy实现"""

    def __init__(self, session: AsyncSession):
        self.session = session

    def _to_entity(self, model: PaymentModel) -> Payment:
        """将数据库模型转换为领域实体"""
        return Payment(
            id=model.id,
            user_id=model.user_id,
            provider=PaymentProvider(model.provider),
            provider_payment_id=model.provider_payment_id,
            amount=_dec(model.amount),
            currency=model.currency,
            status=PaymentStatus(model.status),
            original_currency=Currency(model.original_currency),
            original_amount=_dec(model.original_amount),
            exchange_rate=_dec(model.exchange_rate),
            rate_locked_at=model.rate_locked_at,
            rate_expires_at=model.rate_expires_at,
            tier_id=model.tier_id,
            photo_count=model.photo_count,
            avatar_id=model.avatar_id,
            tbank_payment_id=model.tbank_payment_id,
            telegram_charge_id=model.telegram_charge_id,
            stars_amount=model.stars_amount,
            ton_tx_hash=model.ton_tx_hash,
            ton_amount=_dec(model.ton_amount),
            ton_sender_address=model.ton_sender_address,
            ton_confirmations=model.ton_confirmations or 0,
            refund_amount=_dec(model.refund_amount),
            refund_status=RefundStatus(model.refund_status or RefundStatus.NONE.value),
            refund_reason=model.refund_reason,
            refund_at=model.refund_at,
            created_at=model.created_at,
            updated_at=model.updated_at,
        )

    def _to_model(self, entity: Payment) -> PaymentModel:
        """将领域实体转换为数据库模型"""
        now = datetime.now(timezone.utc)
        return PaymentModel(
            id=entity.id,
            user_id=entity.user_id,
            provider=entity.provider.value,
            provider_payment_id=entity.provider_payment_id,
            amount=entity.amount,
            currency=entity.currency,
            status=entity.status.value,
            original_currency=entity.original_currency.value,
            original_amount=entity.original_amount,
            exchange_rate=entity.exchange_rate,
            rate_locked_at=entity.rate_locked_at,
            rate_expires_at=entity.rate_expires_at,
            tier_id=entity.tier_id,
            photo_count=entity.photo_count,
            avatar_id=entity.avatar_id,
            tbank_payment_id=entity.tbank_payment_id,
            telegram_charge_id=entity.telegram_charge_id,
            stars_amount=entity.stars_amount,
            ton_tx_hash=entity.ton_tx_hash,
            ton_amount=entity.ton_amount,
            ton_sender_address=entity.ton_sender_address,
            ton_confirmations=entity.ton_confirmations,
            refund_amount=entity.refund_amount,
            refund_status=entity.refund_status.value,
            refund_reason=entity.refund_reason,
            refund_at=entity.refund_at,
            created_at=entity.created_at or now,
            updated_at=entity.updated_at or now,
        )

    async def create(self, payment: Payment) -> Payment:
        """创建支付记录"""
        db_payment = self._to_model(payment)
        self.session.add(db_payment)
        await self.session.flush()
        await self.session.refresh(db_payment)
        logger.info(
            "payment_created",
            payment_id=db_payment.id,
            provider=db_payment.provider,
            amount=str(db_payment.amount),
        )
        return self._to_entity(db_payment)

    async def _get_one(self, *criteria) -> Optional[Payment]:
        result = await self.session.execute(select(PaymentModel).where(*criteria))
        db_payment = result.scalar_one_or_none()
        return self._to_entity(db_payment) if db_payment else None

    async def get_by_id(self, payment_id: int) -> Optional[Payment]:
        """根据ID获取支付"""
        return await self._get_one(PaymentModel.id == payment_id)

    async def get_by_telegram_charge_id(self, charge_id: str) -> Optional[Payment]:
        return await self._get_one(PaymentModel.telegram_charge_id == charge_id)

    async def get_by_ton_tx_hash(self, tx_hash: str) -> Optional[Payment]:
        return await self._get_one(PaymentModel.ton_tx_hash == tx_hash)

    async def _update(self, *criteria, **fields: Any) -> int:
        values = _column_values(fields)
        values["updated_at"] = datetime.now(timezone.utc)
        stmt = (
            update(PaymentModel)
            .where(*criteria)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        return result.rowcount or 0

    async def update_fields(self, payment_id: int, **fields: Any) -> None:
        await self._update(PaymentModel.id == payment_id, **fields)

    async def transition_status(
        self,
        payment_id: int,
        *,
        from_statuses: Sequence[PaymentStatus],
        to_status: PaymentStatus,
        unless_refund_in: Sequence[RefundStatus] = (),
        **fields: Any,
    ) -> bool:
        updated = await self._update(
            PaymentModel.id == payment_id,
            PaymentModel.status.in_([s.value for s in from_statuses]),
            *_refund_status_not_in(unless_refund_in),
            status=to_status,
            **fields,
        )
        if updated:
            logger.info("payment_status_changed", payment_id=payment_id, status=to_status.value)
        return updated == 1

    async def acquire_refund_lock(self, payment_id: int) -> bool:
        """
        退款锁：单条条件 UPDATE 是唯一的并发原语

        影响行数为 1 即获得锁；为 0 说明已有调用方在退款或退款已完成
        """
        updated = await self._update(
            PaymentModel.id == payment_id,
            PaymentModel.status == PaymentStatus.SUCCEEDED.value,
            *_refund_status_not_in((RefundStatus.PROCESSING, RefundStatus.COMPLETED)),
            refund_status=RefundStatus.PROCESSING,
        )
        return updated == 1

    async def set_refund_status(
        self,
        payment_id: int,
        refund_status: RefundStatus,
        *,
        reason: Optional[str] = None,
    ) -> None:
        fields: dict[str, Any] = {"refund_status": refund_status}
        if reason is not None:
            fields["refund_reason"] = reason
        await self._update(PaymentModel.id == payment_id, **fields)

    async def complete_refund(
        self,
        payment_id: int,
        *,
        status: PaymentStatus,
        refund_status: RefundStatus,
        amount: Decimal,
        reason: str,
        refunded_at: datetime,
    ) -> None:
        await self._update(
            PaymentModel.id == payment_id,
            status=status,
            refund_status=refund_status,
            refund_amount=amount,
            refund_reason=reason,
            refund_at=refunded_at,
        )

    async def expire_pending(self, provider: PaymentProvider, now: datetime) -> int:
        return await self._update(
            PaymentModel.provider == provider.value,
            PaymentModel.status == PaymentStatus.PENDING.value,
            PaymentModel.rate_expires_at.is_not(None),
            PaymentModel.rate_expires_at < now,
            status=PaymentStatus.EXPIRED,
        )

    async def list_pending_before(
        self,
        provider: PaymentProvider,
        before: datetime,
        limit: int = 100,
    ) -> List[Payment]:
        query = (
            select(PaymentModel)
            .where(
                PaymentModel.provider == provider.value,
                PaymentModel.status == PaymentStatus.PENDING.value,
                PaymentModel.created_at < before,
            )
            .order_by(PaymentModel.created_at.asc())
            .limit(limit)
        )
        result = await self.session.execute(query)
        return [self._to_entity(p) for p in result.scalars().all()]

    async def get_latest_succeeded(
        self,
        user_id: int,
        *,
        avatar_id: Optional[int] = None,
    ) -> Optional[Payment]:
        query = select(PaymentModel).where(
            PaymentModel.user_id == user_id,
            PaymentModel.status == PaymentStatus.SUCCEEDED.value,
        )
        if avatar_id is not None:
            query = query.where(PaymentModel.avatar_id == avatar_id)
        query = query.order_by(PaymentModel.created_at.desc(), PaymentModel.id.desc()).limit(1)
        result = await self.session.execute(query)
        db_payment = result.scalars().first()
        return self._to_entity(db_payment) if db_payment else None


class SQLAlchemyOrphanPaymentRepository(OrphanPaymentRepository):
    """孤儿交易仓储"""

    def __init__(self, session: AsyncSession):
        self.session = session

    def _insert(self):
        dialect = self.session.bind.dialect.name if self.session.bind is not None else "postgresql"
        if dialect == "sqlite":
            return sqlite.insert(OrphanPaymentModel)
        return postgresql.insert(OrphanPaymentModel)

    async def add_if_absent(self, orphan: OrphanPayment) -> bool:
        stmt = (
            self._insert()
            .values(
                tx_hash=orphan.tx_hash,
                amount=orphan.amount,
                wallet_address=orphan.wallet_address,
                comment=orphan.comment,
                reason=orphan.reason,
                status=orphan.status,
                created_at=datetime.now(timezone.utc),
            )
            .on_conflict_do_nothing(index_elements=["tx_hash"])
        )
        result = await self.session.execute(stmt)
        inserted = (result.rowcount or 0) > 0
        if inserted:
            logger.warning(
                "ton_orphan_payment_saved",
                tx_hash=orphan.tx_hash,
                amount=str(orphan.amount),
                reason=orphan.reason,
            )
        return inserted

    async def get_by_tx_hash(self, tx_hash: str) -> Optional[OrphanPayment]:
        result = await self.session.execute(
            select(OrphanPaymentModel).where(OrphanPaymentModel.tx_hash == tx_hash)
        )
        model = result.scalar_one_or_none()
        if model is None:
            return None
        return OrphanPayment(
            id=model.id,
            tx_hash=model.tx_hash,
            amount=_dec(model.amount),
            wallet_address=model.wallet_address,
            comment=model.comment,
            reason=model.reason,
            status=model.status,
            matched_payment_id=model.matched_payment_id,
            created_at=model.created_at,
        )
