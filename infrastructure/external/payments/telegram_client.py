"""
Telegram Bot API adapter for Stars (XTR) payments over httpx.
"""
from __future__ import annotations

from typing import Any, Optional

import httpx

from core.settings import TelegramSettings, payment_settings
from domain.common.exceptions import PaymentConfigurationError
from infrastructure.external.payments.base import BasePaymentClient
from infrastructure.external.payments.exceptions import PaymentProviderError


class TelegramBotClient(BasePaymentClient):
    provider = "stars"

    def __init__(
        self,
        config: Optional[TelegramSettings] = None,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        retry: Optional[dict[str, Any]] = None,
    ) -> None:
        super().__init__(transport=transport, retry=retry)
        self.config = config or payment_settings.telegram

    @property
    def has_token(self) -> bool:
        return bool(self.config.bot_token)

    async def _call(self, method: str, payload: dict[str, Any], *, retry: bool = True) -> Any:
        if not self.config.bot_token:
            raise PaymentConfigurationError("Telegram bot token not configured", provider=self.provider)
        url = f"{self.config.api_url.rstrip('/')}/bot{self.config.bot_token}/{method}"
        data = await self._request_json("POST", url, json=payload, retry=retry)
        if not data.get("ok"):
            description = data.get("description") or "Unknown error"
            self._log("telegram_api_rejected", method=method, description=description)
            raise PaymentProviderError(
                description,
                provider=self.provider,
                provider_code=str(data.get("error_code")) if data.get("error_code") is not None else None,
            )
        return data.get("result")

    async def send_invoice(
        self,
        *,
        chat_id: int,
        title: str,
        description: str,
        payload: str,
        label: str,
        amount: int,
    ) -> dict[str, Any]:
        # Stars invoices carry no provider_token
        result = await self._call(
            "sendInvoice",
            {
                "chat_id": chat_id,
                "title": title,
                "description": description,
                "payload": payload,
                "currency": "XTR",
                "prices": [{"label": label, "amount": amount}],
            },
            retry=False,
        )
        return result or {}

    async def answer_pre_checkout_query(
        self,
        query_id: str,
        *,
        ok: bool = True,
        error_message: Optional[str] = None,
    ) -> None:
        body: dict[str, Any] = {"pre_checkout_query_id": query_id, "ok": ok}
        if error_message and not ok:
            body["error_message"] = error_message
        await self._call("answerPreCheckoutQuery", body)

    async def refund_star_payment(self, *, user_id: int, charge_id: str) -> None:
        await self._call(
            "refundStarPayment",
            {"user_id": user_id, "telegram_payment_charge_id": charge_id},
            retry=False,
        )
