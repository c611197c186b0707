"""
汇率服务 - 获取、缓存并锁定兑换卢布的汇率

进程内缓存归服务实例所有，仅用于加速；exchange_rates 表始终是最终依据。
时钟可注入，便于在测试中控制过期时间。
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Callable, Optional

from core.logging_config import get_logger
from core.settings import RateSettings, payment_settings
from domain.common.exceptions import PaymentValidationError
from domain.common.unit_of_work import UnitOfWorkFactory, run_in_transaction
from domain.payment.entity import Currency, ExchangeRate, RateConversion, RateSource
from domain.payment.service import round_settlement
from application.ports.rails import MarketDataSource
from infrastructure.external.payments.exceptions import (
    PaymentProviderError,
    PaymentRecoverableError,
)


logger = get_logger(__name__)

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class _CachedRate:
    rate: ExchangeRate
    expires_at: datetime


class RateService:
    def __init__(
        self,
        uow_factory: UnitOfWorkFactory,
        *,
        market_client: MarketDataSource,
        config: Optional[RateSettings] = None,
        clock: Clock = utc_now,
    ) -> None:
        self._uow_factory = uow_factory
        self._config = config or payment_settings.rates
        self._market = market_client
        self._clock = clock
        self._cache: dict[str, _CachedRate] = {}
        self._market_cache: Optional[tuple[Decimal, dict, datetime]] = None

    @property
    def lock_duration(self) -> timedelta:
        return timedelta(minutes=self._config.lock_minutes)

    @staticmethod
    def _key(from_currency: Currency, to_currency: Currency) -> str:
        return f"{from_currency.value}_{to_currency.value}"

    def _identity(self, currency: Currency) -> ExchangeRate:
        now = self._clock()
        return ExchangeRate(
            from_currency=currency,
            to_currency=currency,
            rate=Decimal("1"),
            source=RateSource.FIXED,
            fetched_at=now,
            expires_at=now + self.lock_duration,
        )

    def _remember(self, rate: ExchangeRate) -> ExchangeRate:
        expires_at = rate.expires_at or (rate.fetched_at + self.lock_duration)
        self._cache[self._key(rate.from_currency, rate.to_currency)] = _CachedRate(rate, expires_at)
        return rate

    def clear_cache(self) -> None:
        self._cache.clear()
        self._market_cache = None

    async def get_exchange_rate(
        self,
        from_currency: Currency,
        to_currency: Currency = Currency.RUB,
    ) -> ExchangeRate:
        """获取汇率：内存缓存 → 库中最新未过期汇率 → 重新拉取"""
        if from_currency == to_currency:
            return self._identity(from_currency)

        now = self._clock()
        cached = self._cache.get(self._key(from_currency, to_currency))
        if cached and cached.expires_at > now:
            return cached.rate

        stored = await run_in_transaction(
            self._uow_factory,
            lambda uow: uow.exchange_rate_repository.get_latest_valid(from_currency, to_currency, now),
        )
        if stored is not None:
            return self._remember(stored)

        return await self.fetch_exchange_rate(from_currency, to_currency)

    async def fetch_exchange_rate(
        self,
        from_currency: Currency,
        to_currency: Currency = Currency.RUB,
    ) -> ExchangeRate:
        """拉取最新汇率并落库（含降级逻辑）"""
        if to_currency != Currency.RUB:
            raise PaymentValidationError(
                f"Unsupported conversion {from_currency.value}->{to_currency.value}",
                field="to_currency",
            )
        raw: Optional[dict] = None
        if from_currency == Currency.XTR:
            # Stars 由管理员直接按基础货币定价
            rate, source = Decimal("1"), RateSource.FIXED
        elif from_currency == Currency.TON:
            rate, source, raw = await self._fetch_ton_rate()
        elif from_currency == Currency.RUB:
            return self._identity(Currency.RUB)
        else:
            raise PaymentValidationError(f"Unsupported currency {from_currency}", field="from_currency")

        now = self._clock()
        snapshot = ExchangeRate(
            from_currency=from_currency,
            to_currency=to_currency,
            rate=rate,
            source=source,
            fetched_at=now,
            expires_at=now + self.lock_duration,
            raw_response=raw,
        )
        saved = await run_in_transaction(
            self._uow_factory,
            lambda uow: uow.exchange_rate_repository.add(snapshot),
        )
        logger.info(
            "exchange_rate_fetched",
            from_currency=from_currency.value,
            to_currency=to_currency.value,
            rate=str(rate),
            source=source.value,
        )
        return self._remember(saved)

    async def _fetch_ton_rate(self) -> tuple[Decimal, RateSource, Optional[dict]]:
        now = self._clock()
        if self._market_cache is not None:
            rate, raw, fetched_at = self._market_cache
            if now - fetched_at < timedelta(seconds=self._config.market_cache_seconds):
                return rate, RateSource.LIVE, raw
        try:
            rate, raw = await self._market.fetch_ton_rub()
        except (PaymentProviderError, PaymentRecoverableError) as exc:
            logger.warning("ton_rate_fetch_failed", error=exc.message)
            last = await run_in_transaction(
                self._uow_factory,
                lambda uow: uow.exchange_rate_repository.get_latest(Currency.TON, Currency.RUB),
            )
            if last is not None:
                return last.rate, RateSource.CACHED_FALLBACK, None
            logger.error("ton_rate_emergency_fallback", rate=str(self._config.emergency_ton_rub))
            return Decimal(self._config.emergency_ton_rub), RateSource.EMERGENCY_FALLBACK, None
        self._market_cache = (rate, raw, now)
        return rate, RateSource.LIVE, raw

    async def convert_to_rub(self, amount: Decimal, currency: Currency) -> RateConversion:
        amount = Decimal(amount)
        rate = await self.get_exchange_rate(currency, Currency.RUB)
        expires_at = rate.expires_at or (rate.fetched_at + self.lock_duration)
        return RateConversion(
            original_amount=amount,
            original_currency=currency,
            converted_amount=round_settlement(amount * rate.rate),
            converted_currency=Currency.RUB,
            rate=rate.rate,
            rate_locked_at=rate.fetched_at,
            rate_expires_at=expires_at,
        )

    async def get_recent_rates(self, limit: int = 50) -> list[ExchangeRate]:
        return await run_in_transaction(
            self._uow_factory,
            lambda uow: uow.exchange_rate_repository.list_recent(limit),
        )

    async def set_manual_rate(
        self,
        from_currency: Currency,
        to_currency: Currency,
        rate: Decimal,
    ) -> ExchangeRate:
        if Decimal(rate) <= 0:
            raise PaymentValidationError("Rate must be positive", field="rate")
        now = self._clock()
        snapshot = ExchangeRate(
            from_currency=from_currency,
            to_currency=to_currency,
            rate=Decimal(rate),
            source=RateSource.MANUAL,
            fetched_at=now,
            expires_at=now + timedelta(hours=self._config.manual_rate_hours),
        )
        saved = await run_in_transaction(
            self._uow_factory,
            lambda uow: uow.exchange_rate_repository.add(snapshot),
        )
        logger.info(
            "exchange_rate_set_manually",
            from_currency=from_currency.value,
            to_currency=to_currency.value,
            rate=str(rate),
        )
        return self._remember(saved)
