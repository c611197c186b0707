"""
Market data source for the TON/RUB rate (CoinGecko simple price).
"""
from __future__ import annotations

from collections.abc import Mapping
from decimal import Decimal, InvalidOperation
from typing import Any, Optional

import httpx

from core.settings import RateSettings, payment_settings
from infrastructure.external.payments.base import BasePaymentClient
from infrastructure.external.payments.exceptions import PaymentProviderError


class CoinGeckoClient(BasePaymentClient):
    provider = "coingecko"

    def __init__(
        self,
        config: Optional[RateSettings] = None,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        retry: Optional[dict[str, Any]] = None,
    ) -> None:
        super().__init__(transport=transport, retry=retry)
        self.config = config or payment_settings.rates

    async def fetch_ton_rub(self) -> tuple[Decimal, dict[str, Any]]:
        """Return (rate, raw response)."""
        data = await self._request_json("GET", self.config.coingecko_url)
        node = data.get("the-open-network") if isinstance(data, Mapping) else None
        price = node.get("rub") if isinstance(node, Mapping) else None
        if price is None or isinstance(price, bool):
            raise PaymentProviderError("Invalid CoinGecko response", provider=self.provider)
        try:
            rate = Decimal(str(price))
        except (InvalidOperation, TypeError, ValueError) as exc:
            raise PaymentProviderError(
                f"Invalid CoinGecko price: {price!r}", provider=self.provider
            ) from exc
        if not rate.is_finite() or rate <= 0:
            raise PaymentProviderError(f"Non-positive TON rate: {rate}", provider=self.provider)
        return rate, data
