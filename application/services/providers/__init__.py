"""
Payment rail registry.

The provider set is closed: every ``PaymentProvider`` member maps to exactly one
implementation, and anything else raises ``UnknownProviderError``.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional

from application.ports.payment_gateway import PaymentProviderPort
from application.ports.rails import TBankApi, TelegramBotApi
from application.services.rate_service import Clock, RateService, utc_now
from core.settings import PaymentSettings
from domain.common.exceptions import UnknownProviderError
from domain.common.unit_of_work import UnitOfWorkFactory
from domain.payment.entity import PaymentProvider

from .base import ProviderBase
from .stars import StarsProvider
from .tbank import TBankProvider
from .ton import TonProvider


@dataclass(frozen=True)
class Providers:
    tbank: TBankProvider
    stars: StarsProvider
    ton: TonProvider

    def all(self) -> tuple[PaymentProviderPort, ...]:
        return (self.tbank, self.stars, self.ton)


def get_provider(provider_id: Any, providers: Providers) -> PaymentProviderPort:
    try:
        provider = PaymentProvider(getattr(provider_id, "value", provider_id))
    except ValueError:
        raise UnknownProviderError(provider_id) from None

    if provider is PaymentProvider.TBANK:
        return providers.tbank
    if provider is PaymentProvider.STARS:
        return providers.stars
    if provider is PaymentProvider.TON:
        return providers.ton
    raise UnknownProviderError(provider_id)


def build_providers(
    uow_factory: UnitOfWorkFactory,
    *,
    rate_service: RateService,
    tbank_client: TBankApi,
    telegram_client: TelegramBotApi,
    settings: Optional[PaymentSettings] = None,
    clock: Clock = utc_now,
) -> Providers:
    shared = dict(uow_factory=uow_factory, rate_service=rate_service, settings=settings, clock=clock)
    return Providers(
        tbank=TBankProvider(client=tbank_client, **shared),
        stars=StarsProvider(client=telegram_client, **shared),
        ton=TonProvider(**shared),
    )


__all__ = [
    "ProviderBase",
    "Providers",
    "StarsProvider",
    "TBankProvider",
    "TonProvider",
    "build_providers",
    "get_provider",
]
