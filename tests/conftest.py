"""Pytest bootstrap configuration.

Environment variables are set before any module that reads settings is
imported. Each test gets its own SQLite file so locking behaves like a real
shared database.
"""
import os

os.environ.setdefault("DATABASE__URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("ENVIRONMENT", "test")

import asyncio
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Mapping, Optional

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import async_sessionmaker

from application.services.providers import build_providers
from application.services.rate_service import RateService
from application.services.refund_dispatcher import RefundDispatcher
from application.services.providers import get_provider
from core.config import DatabaseSettings
from core.settings import PaymentSettings, TonSettings
from domain.common.unit_of_work import run_in_transaction
from domain.payment.entity import Payment, PaymentProvider
from infrastructure.external.payments.tbank_client import generate_token
from infrastructure.database import build_engine
from infrastructure.models import Base
from infrastructure.unit_of_work import SQLAlchemyUnitOfWork


TBANK_PASSWORD = "tbank-secret"
TON_WALLET = "EQ-test-wallet"


class FakeClock:
    def __init__(self, start: Optional[datetime] = None) -> None:
        self.now = start or datetime(2026, 10, 19, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


class StubMarket:
    def __init__(self, rate: Decimal = Decimal("250")) -> None:
        self.rate = rate
        self.error: Optional[Exception] = None
        self.calls = 0

    async def fetch_ton_rub(self):
        self.calls += 1
        if self.error is not None:
            raise self.error
        return self.rate, {"the-open-network": {"rub": float(self.rate)}}


class StubTBank:
    def __init__(self) -> None:
        self.has_credentials = True
        self.state = "NEW"
        self.cancel_calls: list[dict] = []
        self.cancel_delay = 0.0
        self.cancel_error: Optional[Exception] = None
        self.init_calls: list[dict] = []

    def sign(self, payload: Mapping[str, Any]) -> str:
        return generate_token(payload, TBANK_PASSWORD)

    def verify_notification(self, payload: Mapping[str, Any]) -> bool:
        return payload.get("Token") == self.sign(payload)

    async def init(self, **kwargs) -> dict:
        self.init_calls.append(kwargs)
        return {"Success": True, "PaymentId": "7001", "PaymentURL": "https://securepay.test/pay/7001"}

    async def get_state(self, payment_id: str) -> dict:
        return {"Success": True, "PaymentId": payment_id, "Status": self.state}

    async def cancel(self, payment_id: str, *, amount_kopeks=None, receipt=None) -> dict:
        self.cancel_calls.append({"payment_id": payment_id, "amount_kopeks": amount_kopeks, "receipt": receipt})
        if self.cancel_delay:
            await asyncio.sleep(self.cancel_delay)
        if self.cancel_error is not None:
            raise self.cancel_error
        return {"Success": True, "PaymentId": payment_id, "Status": "REFUNDED"}


class StubTelegram:
    def __init__(self) -> None:
        self.has_token = True
        self.invoices: list[dict] = []
        self.pre_checkout_answers: list[tuple] = []
        self.refunds: list[dict] = []

    async def send_invoice(self, **kwargs) -> dict:
        self.invoices.append(kwargs)
        return {"message_id": 55}

    async def answer_pre_checkout_query(self, query_id: str, *, ok: bool = True, error_message=None) -> None:
        self.pre_checkout_answers.append((query_id, ok))

    async def refund_star_payment(self, *, user_id: int, charge_id: str) -> None:
        self.refunds.append({"user_id": user_id, "charge_id": charge_id})


@pytest_asyncio.fixture
async def session_factory(tmp_path):
    engine = build_engine(DatabaseSettings(url=f"sqlite:///{tmp_path / 'payments.db'}"))
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(bind=engine, expire_on_commit=False)
    await engine.dispose()


@pytest.fixture
def uow_factory(session_factory):
    return lambda: SQLAlchemyUnitOfWork(session_factory=session_factory)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def market():
    return StubMarket()


@pytest.fixture
def tbank():
    return StubTBank()


@pytest.fixture
def telegram():
    return StubTelegram()


@pytest.fixture
def settings():
    return PaymentSettings(ton=TonSettings(wallet_address=TON_WALLET))


@pytest.fixture
def rate_service(uow_factory, market, settings, clock):
    return RateService(uow_factory, market_client=market, config=settings.rates, clock=clock)


@pytest.fixture
def providers(uow_factory, rate_service, tbank, telegram, settings, clock):
    return build_providers(
        uow_factory,
        rate_service=rate_service,
        tbank_client=tbank,
        telegram_client=telegram,
        settings=settings,
        clock=clock,
    )


@pytest.fixture
def dispatcher(uow_factory, providers, clock):
    return RefundDispatcher(
        uow_factory,
        resolver=lambda provider: get_provider(provider, providers),
        clock=clock,
    )


@pytest.fixture
def seed_payment(uow_factory):
    async def _seed(**overrides) -> Payment:
        fields = dict(id=None, user_id=1, provider=PaymentProvider.TBANK, amount=Decimal("999"))
        fields.update(overrides)
        return await run_in_transaction(
            uow_factory, lambda uow: uow.payment_repository.create(Payment(**fields))
        )

    return _seed


@pytest.fixture
def load_payment(uow_factory):
    async def _load(payment_id: int) -> Payment:
        return await run_in_transaction(
            uow_factory, lambda uow: uow.payment_repository.get_by_id(payment_id)
        )

    return _load


@pytest.fixture
def enable_methods(uow_factory):
    async def _enable(**raw) -> None:
        await run_in_transaction(
            uow_factory, lambda uow: uow.admin_settings_repository.set("payment_methods", raw)
        )

    return _enable
