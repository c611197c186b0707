"""
Base HTTP client implementing shared concerns for provider APIs: http, retry,
logging and error mapping.

Concrete clients subclass and implement the provider-specific wire format.
"""
from __future__ import annotations

from typing import Any, Callable, Optional
from contextlib import asynccontextmanager

import httpx
from tenacity import AsyncRetrying, stop_after_attempt, wait_exponential, retry_if_exception_type

from core.logging_config import get_logger
from core.settings import payment_settings
from infrastructure.external.payments.exceptions import (
    PaymentProviderError,
    PaymentRecoverableError,
)


logger = get_logger(__name__)


class BasePaymentClient:
    provider: str = "base"

    def __init__(
        self,
        *,
        timeouts: Optional[dict[str, float]] = None,
        retry: Optional[dict[str, Any]] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._timeouts_cfg = timeouts or payment_settings.timeouts.model_dump()
        self._retry_cfg = retry or {
            "max": payment_settings.retry.max,
            "base": payment_settings.retry.base_backoff,
        }
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    @property
    def timeouts(self) -> httpx.Timeout:
        return httpx.Timeout(
            connect=self._timeouts_cfg["connect"],
            read=self._timeouts_cfg["read"],
            write=self._timeouts_cfg["write"],
            timeout=self._timeouts_cfg["total"],
        )

    @asynccontextmanager
    async def client(self):
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeouts, transport=self._transport)
        yield self._client

    async def aclose(self) -> None:
        """Close underlying HTTP client if created."""
        if self._client is not None:
            try:
                await self._client.aclose()
            finally:
                self._client = None

    async def _retry(self, fn: Callable[[], Any]):
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(int(self._retry_cfg["max"]) + 1),
            wait=wait_exponential(multiplier=self._retry_cfg["base"], min=0.1, max=2.0),
            retry=retry_if_exception_type((httpx.TimeoutException, httpx.TransportError)),
            reraise=True,
        ):
            with attempt:
                return await fn()

    async def _request_json(
        self,
        method: str,
        url: str,
        *,
        json: Optional[dict[str, Any]] = None,
        params: Optional[dict[str, Any]] = None,
        retry: bool = True,
    ) -> Any:
        """
        Perform a request and decode the JSON body.

        Timeouts and transport failures surface as PaymentRecoverableError once
        retries are exhausted; malformed bodies as PaymentProviderError. HTTP
        error statuses are returned to the caller when the body is JSON, since
        both T-Bank and the Bot API describe failures in the body.
        """

        async def _call() -> httpx.Response:
            async with self.client() as c:
                return await c.request(method, url, json=json, params=params)

        try:
            resp = await (self._retry(_call) if retry else _call())
        except httpx.TimeoutException as exc:
            raise PaymentRecoverableError(
                f"{self.provider} request timed out", provider=self.provider
            ) from exc
        except httpx.TransportError as exc:
            raise PaymentRecoverableError(
                f"{self.provider} transport error: {exc}", provider=self.provider
            ) from exc

        try:
            data = resp.json()
        except ValueError as exc:
            raise PaymentProviderError(
                f"{self.provider} returned non-JSON response (HTTP {resp.status_code})",
                provider=self.provider,
                provider_code=str(resp.status_code),
            ) from exc
        if resp.status_code >= 500:
            raise PaymentProviderError(
                f"{self.provider} HTTP {resp.status_code}",
                provider=self.provider,
                provider_code=str(resp.status_code),
            )
        if not isinstance(data, dict):
            raise PaymentProviderError(
                f"{self.provider} returned unexpected payload", provider=self.provider
            )
        return data

    def _log(self, event: str, **kwargs) -> None:
        logger.info(
            event,
            provider=self.provider,
            **kwargs,
        )
