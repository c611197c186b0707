"""
API依赖项 - 组合根：在这里创建基础设施客户端并注入应用服务
"""
from functools import lru_cache, partial
from typing import Optional

from fastapi import Depends, Header

from application.services.payment_service import PaymentService
from application.services.providers import Providers, build_providers, get_provider
from application.services.rate_service import RateService, utc_now
from application.services.refund_dispatcher import RefundDispatcher
from application.services.webhook_ingress import WebhookIngress
from core.settings import payment_settings
from infrastructure.external.market_data import CoinGeckoClient
from infrastructure.external.payments import TBankClient, TelegramBotClient
from infrastructure.unit_of_work import SQLAlchemyUnitOfWork


@lru_cache
def get_tbank_client() -> TBankClient:
    return TBankClient(payment_settings.tbank)


@lru_cache
def get_telegram_client() -> TelegramBotClient:
    return TelegramBotClient(payment_settings.telegram)


@lru_cache
def get_market_client() -> CoinGeckoClient:
    return CoinGeckoClient(payment_settings.rates)


@lru_cache
def get_rate_service() -> RateService:
    # 进程内单例：缓存只属于这个实例
    return RateService(SQLAlchemyUnitOfWork, market_client=get_market_client())


def get_providers(rate_service: RateService = Depends(get_rate_service)) -> Providers:
    return build_providers(
        SQLAlchemyUnitOfWork,
        rate_service=rate_service,
        tbank_client=get_tbank_client(),
        telegram_client=get_telegram_client(),
        settings=payment_settings,
    )


def get_refund_dispatcher(providers: Providers = Depends(get_providers)) -> RefundDispatcher:
    return RefundDispatcher(
        SQLAlchemyUnitOfWork,
        resolver=partial(get_provider, providers=providers),
        clock=utc_now,
    )


def get_payment_service(
    providers: Providers = Depends(get_providers),
    rate_service: RateService = Depends(get_rate_service),
    dispatcher: RefundDispatcher = Depends(get_refund_dispatcher),
) -> PaymentService:
    return PaymentService(
        SQLAlchemyUnitOfWork,
        providers=providers,
        rate_service=rate_service,
        dispatcher=dispatcher,
    )


def get_webhook_ingress(providers: Providers = Depends(get_providers)) -> WebhookIngress:
    return WebhookIngress(providers)


async def get_admin_id(x_admin_id: Optional[int] = Header(default=None)) -> Optional[int]:
    """调用方鉴权不在本服务范围内，仅透传操作人ID用于审计日志"""
    return x_admin_id


async def shutdown_clients() -> None:
    for factory in (get_tbank_client, get_telegram_client, get_market_client):
        if factory.cache_info().currsize:
            await factory().aclose()
