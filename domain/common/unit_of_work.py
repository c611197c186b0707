"""Unit of Work 抽象定义"""
from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Awaitable, Callable, TypeVar

from domain.payment.repository import (
    AdminSettingsRepository,
    ExchangeRateRepository,
    OrphanPaymentRepository,
    PaymentRepository,
    UserIdentityRepository,
)

T = TypeVar("T")


class AbstractUnitOfWork(ABC):
    """应用层事务边界控制抽象"""

    payment_repository: PaymentRepository
    exchange_rate_repository: ExchangeRateRepository
    orphan_payment_repository: OrphanPaymentRepository
    admin_settings_repository: AdminSettingsRepository
    user_identity_repository: UserIdentityRepository

    def __init__(self, *, readonly: bool = False) -> None:
        self._committed = False
        self._readonly = readonly
        self.payment_repository = None  # type: ignore[assignment]
        self.exchange_rate_repository = None  # type: ignore[assignment]
        self.orphan_payment_repository = None  # type: ignore[assignment]
        self.admin_settings_repository = None  # type: ignore[assignment]
        self.user_identity_repository = None  # type: ignore[assignment]

    async def __aenter__(self) -> "AbstractUnitOfWork":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        if exc:
            await self.rollback()
        else:
            # 只在非只读且未显式提交时自动提交
            if not self._readonly and not self._committed:
                await self.commit()

    @abstractmethod
    async def commit(self) -> None:
        """提交事务"""
        ...

    @abstractmethod
    async def rollback(self) -> None:
        """回滚事务"""


UnitOfWorkFactory = Callable[[], AbstractUnitOfWork]


async def run_in_transaction(
    uow_factory: UnitOfWorkFactory,
    fn: Callable[[AbstractUnitOfWork], Awaitable[T]],
) -> T:
    """
    作用域事务：开启 -> 执行回调中的一组写操作 -> 成功提交 / 异常回滚

    调用方不再成对地手写 begin/commit。
    """
    async with uow_factory() as uow:
        return await fn(uow)
