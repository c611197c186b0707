from datetime import timedelta
from decimal import Decimal

import httpx
import pytest

from application.services.rate_service import RateService
from domain.common.exceptions import PaymentValidationError
from domain.payment.entity import Currency, RateSource
from infrastructure.external.market_data import CoinGeckoClient
from infrastructure.external.payments.exceptions import PaymentRecoverableError


def market_down() -> PaymentRecoverableError:
    return PaymentRecoverableError("coingecko request timed out", provider="coingecko")


@pytest.mark.asyncio
async def test_stars_rate_is_fixed_and_persisted(rate_service, market):
    rate = await rate_service.get_exchange_rate(Currency.XTR, Currency.RUB)

    assert rate.rate == Decimal("1")
    assert rate.source is RateSource.FIXED
    assert market.calls == 0
    recent = await rate_service.get_recent_rates()
    assert [r.source for r in recent] == [RateSource.FIXED]


@pytest.mark.asyncio
async def test_same_currency_is_identity(rate_service, market):
    conversion = await rate_service.convert_to_rub(Decimal("999"), Currency.RUB)

    assert conversion.converted_amount == Decimal("999.00")
    assert conversion.rate == Decimal("1")
    assert market.calls == 0
    assert await rate_service.get_recent_rates() == []


@pytest.mark.asyncio
async def test_ton_rate_is_reused_within_lock_window(rate_service, market, clock):
    first = await rate_service.get_exchange_rate(Currency.TON)
    clock.advance(minutes=10)
    second = await rate_service.get_exchange_rate(Currency.TON)

    assert first.source is RateSource.LIVE
    assert first.rate == second.rate == Decimal("250")
    assert first.expires_at == first.fetched_at + timedelta(minutes=15)
    assert market.calls == 1


@pytest.mark.asyncio
async def test_ton_rate_refreshes_after_lock_expires(rate_service, market, clock):
    await rate_service.get_exchange_rate(Currency.TON)
    clock.advance(minutes=16)
    market.rate = Decimal("260")

    rate = await rate_service.get_exchange_rate(Currency.TON)

    assert rate.rate == Decimal("260")
    assert market.calls == 2
    assert len(await rate_service.get_recent_rates()) == 2


@pytest.mark.asyncio
async def test_stored_rate_survives_a_fresh_service(uow_factory, rate_service, market, clock, settings):
    await rate_service.get_exchange_rate(Currency.TON)
    fresh = RateService(uow_factory, market_client=market, config=settings.rates, clock=clock)

    rate = await fresh.get_exchange_rate(Currency.TON)

    assert rate.rate == Decimal("250")
    assert market.calls == 1


@pytest.mark.asyncio
async def test_market_failure_falls_back_to_last_stored_rate(rate_service, market, clock):
    await rate_service.get_exchange_rate(Currency.TON)
    clock.advance(minutes=30)
    market.error = market_down()

    rate = await rate_service.get_exchange_rate(Currency.TON)

    assert rate.source is RateSource.CACHED_FALLBACK
    assert rate.rate == Decimal("250")
    assert rate.expires_at == clock() + timedelta(minutes=15)


@pytest.mark.asyncio
async def test_market_failure_without_history_uses_emergency_rate(rate_service, market):
    market.error = market_down()

    rate = await rate_service.fetch_exchange_rate(Currency.TON)

    assert rate.source is RateSource.EMERGENCY_FALLBACK
    assert rate.rate == Decimal("300")
    recent = await rate_service.get_recent_rates()
    assert recent[0].source is RateSource.EMERGENCY_FALLBACK


@pytest.mark.asyncio
async def test_manual_rate_wins_for_a_day(rate_service, market, clock):
    manual = await rate_service.set_manual_rate(Currency.TON, Currency.RUB, Decimal("280"))
    assert manual.source is RateSource.MANUAL
    assert manual.expires_at == clock() + timedelta(hours=24)

    rate_service.clear_cache()
    clock.advance(hours=2)
    rate = await rate_service.get_exchange_rate(Currency.TON)

    assert rate.rate == Decimal("280")
    assert market.calls == 0


@pytest.mark.asyncio
async def test_manual_rate_must_be_positive(rate_service):
    with pytest.raises(PaymentValidationError):
        await rate_service.set_manual_rate(Currency.TON, Currency.RUB, Decimal("0"))


@pytest.mark.asyncio
async def test_convert_ton_locks_rate(rate_service, clock):
    conversion = await rate_service.convert_to_rub(Decimal("3"), Currency.TON)

    assert conversion.converted_amount == Decimal("750.00")
    assert conversion.rate_locked_at == clock()
    assert conversion.rate_expires_at == clock() + timedelta(minutes=15)


@pytest.mark.asyncio
async def test_only_rub_targets_are_supported(rate_service):
    with pytest.raises(PaymentValidationError):
        await rate_service.fetch_exchange_rate(Currency.TON, Currency.XTR)


@pytest.mark.asyncio
async def test_malformed_market_body_uses_emergency_rate(uow_factory, settings, clock):
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"the-open-network": {"rub": "n/a"}})

    client = CoinGeckoClient(settings.rates, transport=httpx.MockTransport(handler))
    service = RateService(uow_factory, market_client=client, config=settings.rates, clock=clock)

    rate = await service.fetch_exchange_rate(Currency.TON)
    await client.aclose()

    assert rate.source is RateSource.EMERGENCY_FALLBACK
    assert rate.rate == Decimal("300")
