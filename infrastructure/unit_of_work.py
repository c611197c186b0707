"""SQLAlchemy Unit of Work：一个事务内共享同一会话的全部支付仓储"""
from __future__ import annotations

from typing import Optional, Callable

from sqlalchemy.ext.asyncio import AsyncSession

from domain.common.unit_of_work import AbstractUnitOfWork
from infrastructure.database import AsyncSessionLocal
from infrastructure.repositories.exchange_rate_repository import SQLAlchemyExchangeRateRepository
from infrastructure.repositories.payment_repository import (
    SQLAlchemyOrphanPaymentRepository,
    SQLAlchemyPaymentRepository,
)
from infrastructure.repositories.settings_repository import (
    SQLAlchemyAdminSettingsRepository,
    SQLAlchemyUserIdentityRepository,
)


class SQLAlchemyUnitOfWork(AbstractUnitOfWork):
    """基于SQLAlchemy的Unit of Work"""

    def __init__(
        self,
        session_factory: Callable[[], AsyncSession] = AsyncSessionLocal,
        session: Optional[AsyncSession] = None,
        *,
        readonly: bool = False,
    ) -> None:
        super().__init__(readonly=readonly)
        self._session_factory = session_factory
        self._external_session = session
        self.session: Optional[AsyncSession] = session

    def _bind_repositories(self, session: Optional[AsyncSession]) -> None:
        if session is None:
            self.payment_repository = None
            self.exchange_rate_repository = None
            self.orphan_payment_repository = None
            self.admin_settings_repository = None
            self.user_identity_repository = None
            return
        self.payment_repository = SQLAlchemyPaymentRepository(session)
        self.exchange_rate_repository = SQLAlchemyExchangeRateRepository(session)
        self.orphan_payment_repository = SQLAlchemyOrphanPaymentRepository(session)
        self.admin_settings_repository = SQLAlchemyAdminSettingsRepository(session)
        self.user_identity_repository = SQLAlchemyUserIdentityRepository(session)

    async def __aenter__(self) -> "SQLAlchemyUnitOfWork":
        if self.session is None:
            self.session = self._session_factory()
        self._bind_repositories(self.session)
        # 只读模式不显式开启事务，autobegin 即可
        if not self._readonly:
            await self.session.begin()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        try:
            await super().__aexit__(exc_type, exc, tb)
        finally:
            # close() 会回滚仍未结束的事务；外部传入的会话由调用方负责关闭
            if self._external_session is None and self.session is not None:
                await self.session.close()
                self.session = None
            self._bind_repositories(None)

    async def commit(self) -> None:
        if self._readonly:
            # 只读情况下不提交
            self._committed = True
            return
        if self.session and self.session.in_transaction():
            await self.session.commit()
        self._committed = True

    async def rollback(self) -> None:
        if self.session and self.session.in_transaction():
            await self.session.rollback()
        self._committed = False
