"""
支付仓储接口 - 定义支付数据访问的抽象接口
"""
from abc import ABC, abstractmethod
from datetime import datetime
from decimal import Decimal
from typing import Any, List, Mapping, Optional, Sequence

from .entity import (
    Currency,
    ExchangeRate,
    OrphanPayment,
    Payment,
    PaymentProvider,
    PaymentStatus,
    RefundStatus,
)


class PaymentRepository(ABC):
    """支付仓储抽象接口 - 只定义能做什么，不管怎么做"""

    @abstractmethod
    async def create(self, payment: Payment) -> Payment:
        """创建支付记录"""
        pass

    @abstractmethod
    async def get_by_id(self, payment_id: int) -> Optional[Payment]:
        """根据ID获取支付"""
        pass

    @abstractmethod
    async def get_by_telegram_charge_id(self, charge_id: str) -> Optional[Payment]:
        """根据 Telegram charge id 获取支付（幂等键）"""
        pass

    @abstractmethod
    async def get_by_ton_tx_hash(self, tx_hash: str) -> Optional[Payment]:
        """根据链上交易哈希获取支付（幂等键）"""
        pass

    @abstractmethod
    async def update_fields(self, payment_id: int, **fields: Any) -> None:
        """无条件更新字段，同时刷新 updated_at"""
        pass

    @abstractmethod
    async def transition_status(
        self,
        payment_id: int,
        *,
        from_statuses: Sequence[PaymentStatus],
        to_status: PaymentStatus,
        unless_refund_in: Sequence[RefundStatus] = (),
        **fields: Any,
    ) -> bool:
        """
        条件状态转换：仅当当前状态属于 from_statuses 时更新

        unless_refund_in 非空时，退款状态属于其中的行不更新（例如退款锁被持有时）

        返回是否有行被更新（并发的重复回调只有一个能成功）
        """
        pass

    @abstractmethod
    async def acquire_refund_lock(self, payment_id: int) -> bool:
        """
        原子获取退款锁

        UPDATE ... SET refund_status='processing'
        WHERE id=? AND status='succeeded' AND refund_status NOT IN ('processing','completed')
        """
        pass

    @abstractmethod
    async def set_refund_status(
        self,
        payment_id: int,
        refund_status: RefundStatus,
        *,
        reason: Optional[str] = None,
    ) -> None:
        """设置退款状态（释放锁/标记失败/等待人工）"""
        pass

    @abstractmethod
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
        """退款完成：写入金额/原因/时间并切换状态"""
        pass

    @abstractmethod
    async def expire_pending(
        self,
        provider: PaymentProvider,
        now: datetime,
    ) -> int:
        """将汇率已过期的待支付记录标记为 expired，返回受影响的行数"""
        pass

    @abstractmethod
    async def list_pending_before(
        self,
        provider: PaymentProvider,
        before: datetime,
        limit: int = 100,
    ) -> List[Payment]:
        """获取在 before 之前创建、仍处于 pending 的支付"""
        pass

    @abstractmethod
    async def get_latest_succeeded(
        self,
        user_id: int,
        *,
        avatar_id: Optional[int] = None,
    ) -> Optional[Payment]:
        """获取用户最近一笔成功支付；给定 avatar_id 时只在该头像的支付中查找"""
        pass


class ExchangeRateRepository(ABC):
    """汇率仓储：只追加，不修改"""

    @abstractmethod
    async def add(self, rate: ExchangeRate) -> ExchangeRate:
        pass

    @abstractmethod
    async def get_latest_valid(
        self,
        from_currency: Currency,
        to_currency: Currency,
        now: datetime,
    ) -> Optional[ExchangeRate]:
        """最近一条未过期的汇率"""
        pass

    @abstractmethod
    async def get_latest(
        self,
        from_currency: Currency,
        to_currency: Currency,
    ) -> Optional[ExchangeRate]:
        """最近一条汇率（无论是否过期），用于降级"""
        pass

    @abstractmethod
    async def list_recent(self, limit: int = 50) -> List[ExchangeRate]:
        pass


class OrphanPaymentRepository(ABC):

    @abstractmethod
    async def add_if_absent(self, orphan: OrphanPayment) -> bool:
        """按 tx_hash 去重写入；已存在时返回 False"""
        pass

    @abstractmethod
    async def get_by_tx_hash(self, tx_hash: str) -> Optional[OrphanPayment]:
        pass


class AdminSettingsRepository(ABC):

    @abstractmethod
    async def get(self, key: str) -> Optional[Mapping[str, Any]]:
        pass

    @abstractmethod
    async def set(self, key: str, value: Mapping[str, Any]) -> None:
        pass


class UserIdentityRepository(ABC):
    """用户在聊天渠道的身份（Telegram user id）"""

    @abstractmethod
    async def get_telegram_user_id(self, user_id: int) -> Optional[int]:
        pass

    @abstractmethod
    async def link_telegram_user(self, user_id: int, telegram_user_id: int) -> None:
        pass
