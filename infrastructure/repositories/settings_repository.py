"""
后台配置与用户身份仓储实现
"""
from datetime import datetime, timezone
from typing import Any, Mapping, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from domain.payment.repository import AdminSettingsRepository, UserIdentityRepository
from infrastructure.models.payment import AdminSettingModel, UserIdentityModel


class SQLAlchemyAdminSettingsRepository(AdminSettingsRepository):

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get(self, key: str) -> Optional[Mapping[str, Any]]:
        result = await self.session.execute(
            select(AdminSettingModel.value).where(AdminSettingModel.key == key)
        )
        return result.scalar_one_or_none()

    async def set(self, key: str, value: Mapping[str, Any]) -> None:
        await self.session.merge(
            AdminSettingModel(key=key, value=dict(value), updated_at=datetime.now(timezone.utc))
        )
        await self.session.flush()


class SQLAlchemyUserIdentityRepository(UserIdentityRepository):

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_telegram_user_id(self, user_id: int) -> Optional[int]:
        result = await self.session.execute(
            select(UserIdentityModel.telegram_user_id).where(UserIdentityModel.user_id == user_id)
        )
        return result.scalar_one_or_none()

    async def link_telegram_user(self, user_id: int, telegram_user_id: int) -> None:
        await self.session.merge(
            UserIdentityModel(
                user_id=user_id,
                telegram_user_id=telegram_user_id,
                created_at=datetime.now(timezone.utc),
            )
        )
        await self.session.flush()
