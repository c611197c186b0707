"""
汇率仓储实现（只追加）
"""
from datetime import datetime, timezone
from decimal import Decimal
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from domain.payment.entity import Currency, ExchangeRate, RateSource
from domain.payment.repository import ExchangeRateRepository
from infrastructure.models.payment import ExchangeRateModel


def _utc(dt: Optional[datetime]) -> Optional[datetime]:
    if dt is not None and dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


class SQLAlchemyExchangeRateRepository(ExchangeRateRepository):

    def __init__(self, session: AsyncSession):
        self.session = session

    def _to_entity(self, model: ExchangeRateModel) -> ExchangeRate:
        return ExchangeRate(
            id=model.id,
            from_currency=Currency(model.from_currency),
            to_currency=Currency(model.to_currency),
            rate=Decimal(str(model.rate)),
            source=RateSource(model.source),
            fetched_at=_utc(model.fetched_at),
            expires_at=_utc(model.expires_at),
            raw_response=model.raw_response,
        )

    async def add(self, rate: ExchangeRate) -> ExchangeRate:
        model = ExchangeRateModel(
            from_currency=rate.from_currency.value,
            to_currency=rate.to_currency.value,
            rate=rate.rate,
            source=rate.source.value,
            fetched_at=rate.fetched_at,
            expires_at=rate.expires_at,
            raw_response=rate.raw_response,
        )
        self.session.add(model)
        await self.session.flush()
        await self.session.refresh(model)
        return self._to_entity(model)

    async def _latest(self, *criteria) -> Optional[ExchangeRate]:
        query = (
            select(ExchangeRateModel)
            .where(*criteria)
            .order_by(ExchangeRateModel.fetched_at.desc(), ExchangeRateModel.id.desc())
            .limit(1)
        )
        result = await self.session.execute(query)
        model = result.scalars().first()
        return self._to_entity(model) if model else None

    async def get_latest_valid(
        self,
        from_currency: Currency,
        to_currency: Currency,
        now: datetime,
    ) -> Optional[ExchangeRate]:
        return await self._latest(
            ExchangeRateModel.from_currency == from_currency.value,
            ExchangeRateModel.to_currency == to_currency.value,
            ExchangeRateModel.expires_at > now,
        )

    async def get_latest(
        self,
        from_currency: Currency,
        to_currency: Currency,
    ) -> Optional[ExchangeRate]:
        return await self._latest(
            ExchangeRateModel.from_currency == from_currency.value,
            ExchangeRateModel.to_currency == to_currency.value,
        )

    async def list_recent(self, limit: int = 50) -> List[ExchangeRate]:
        query = (
            select(ExchangeRateModel)
            .order_by(ExchangeRateModel.fetched_at.desc(), ExchangeRateModel.id.desc())
            .limit(limit)
        )
        result = await self.session.execute(query)
        return [self._to_entity(m) for m in result.scalars().all()]
