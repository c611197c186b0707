"""
Celery tasks for payment maintenance: expiry sweeps, T-Bank reconciliation,
rate refresh and refunds for failed generations.

Each task runs its coroutine with ``asyncio.run`` and builds its own HTTP
clients, since a pooled client cannot outlive the event loop it was opened on.
"""
from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from datetime import timedelta
from functools import partial
from typing import Optional

from celery import shared_task
from sqlalchemy.exc import OperationalError

from application.services.providers import Providers, build_providers, get_provider
from application.services.rate_service import Clock, RateService, utc_now
from application.services.refund_dispatcher import RefundDispatcher
from core.logging_config import get_logger
from core.settings import payment_settings
from domain.common.exceptions import BusinessException
from domain.common.unit_of_work import UnitOfWorkFactory, run_in_transaction
from domain.payment.entity import Currency, PaymentProvider, PaymentStatus
from infrastructure.database import engine
from infrastructure.external.market_data import CoinGeckoClient
from infrastructure.external.payments import TBankClient, TelegramBotClient
from infrastructure.tasks.utils.base_task import BaseTask
from infrastructure.unit_of_work import SQLAlchemyUnitOfWork


logger = get_logger(__name__)


@asynccontextmanager
async def payment_components():
    """Providers, rate service and dispatcher wired to fresh clients."""
    tbank = TBankClient(payment_settings.tbank)
    telegram = TelegramBotClient(payment_settings.telegram)
    market = CoinGeckoClient(payment_settings.rates)
    rates = RateService(SQLAlchemyUnitOfWork, market_client=market)
    providers = build_providers(
        SQLAlchemyUnitOfWork,
        rate_service=rates,
        tbank_client=tbank,
        telegram_client=telegram,
        settings=payment_settings,
    )
    dispatcher = RefundDispatcher(
        SQLAlchemyUnitOfWork,
        resolver=partial(get_provider, providers=providers),
        clock=utc_now,
    )
    try:
        yield providers, rates, dispatcher
    finally:
        for client in (tbank, telegram, market):
            await client.aclose()
        # pooled connections belong to this loop
        await engine.dispose()


async def reconcile_tbank(
    providers: Providers,
    uow_factory: UnitOfWorkFactory = SQLAlchemyUnitOfWork,
    *,
    stale_minutes: int,
    batch_size: int,
    clock: Clock = utc_now,
) -> dict:
    """
    Pending T-Bank payments older than the threshold: rows that never got a
    PaymentId are expired, the rest are polled through GetState.
    """
    now = clock()
    cutoff = now - timedelta(minutes=stale_minutes)
    pending = await run_in_transaction(
        uow_factory,
        lambda uow: uow.payment_repository.list_pending_before(PaymentProvider.TBANK, cutoff, batch_size),
    )
    expired = 0
    updated = 0
    for payment in pending:
        if not payment.tbank_payment_id:
            changed = await run_in_transaction(
                uow_factory,
                lambda uow, pid=payment.id: uow.payment_repository.transition_status(
                    pid, from_statuses=(PaymentStatus.PENDING,), to_status=PaymentStatus.EXPIRED
                ),
            )
            expired += int(changed)
            continue
        refreshed = await providers.tbank.reconcile(payment)
        if refreshed.status != payment.status:
            updated += 1
    return {"checked": len(pending), "updated": updated, "expired": expired}


@shared_task(name="payments.expire_ton_payments", base=BaseTask)
def task_expire_ton_payments():
    async def _run() -> int:
        async with payment_components() as (providers, _, _):
            return await providers.ton.expire_old_payments()

    count = asyncio.run(_run())
    return {"expired": count}


@shared_task(name="payments.reconcile_tbank_payments", base=BaseTask)
def task_reconcile_tbank_payments():
    async def _run() -> dict:
        async with payment_components() as (providers, _, _):
            return await reconcile_tbank(
                providers,
                stale_minutes=payment_settings.reconcile.tbank_stale_minutes,
                batch_size=payment_settings.reconcile.batch_size,
            )

    summary = asyncio.run(_run())
    logger.info("tbank_reconcile_finished", **summary)
    return summary


@shared_task(name="payments.refresh_ton_rate", base=BaseTask)
def task_refresh_ton_rate():
    async def _run():
        async with payment_components() as (_, rates, _):
            return await rates.fetch_exchange_rate(Currency.TON, Currency.RUB)

    rate = asyncio.run(_run())
    return {"rate": str(rate.rate), "source": rate.source.value}


def _run_refund(task, coro_fn, event: str, **fields):
    """Run a refund coroutine, retrying only while the database is unreachable.

    Business errors (missing payment, unknown provider) fail the same way on
    every attempt. Anything else may surface after the provider API was
    already called, so it is left to the refund lock and manual follow-up.
    """
    try:
        result = asyncio.run(coro_fn())
    except OperationalError as exc:
        logger.warning(event, retrying=True, error=str(exc), **fields)
        raise task.retry(exc=exc)
    except BusinessException as exc:
        logger.error(event, retrying=False, error=exc.message, **fields)
        raise
    return result.model_dump(mode="json")


@shared_task(name="payments.auto_refund", bind=True, base=BaseTask, max_retries=3, default_retry_delay=60)
def task_auto_refund(self, user_id: int, avatar_id: Optional[int] = None, payment_id: Optional[int] = None):
    async def _run():
        async with payment_components() as (_, _, dispatcher):
            return await dispatcher.auto_refund(user_id, avatar_id=avatar_id, payment_id=payment_id)

    return _run_refund(self, _run, "auto_refund_task_failed", user_id=user_id, payment_id=payment_id)


@shared_task(
    name="payments.partial_refund_for_generation",
    bind=True,
    base=BaseTask,
    max_retries=3,
    default_retry_delay=60,
)
def task_partial_refund_for_generation(
    self,
    user_id: int,
    failed_units: int,
    total_units: int,
    avatar_id: Optional[int] = None,
    payment_id: Optional[int] = None,
):
    async def _run():
        async with payment_components() as (_, _, dispatcher):
            return await dispatcher.partial_refund_for_generation(
                user_id, failed_units, total_units, avatar_id=avatar_id, payment_id=payment_id
            )

    return _run_refund(self, _run, "partial_refund_task_failed", user_id=user_id, payment_id=payment_id)
