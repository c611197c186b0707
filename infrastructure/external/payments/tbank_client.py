"""
T-Bank (Tinkoff Acquiring API v2) adapter over httpx.

Request signing: every request and every notification carries a ``Token``
which is the SHA-256 hex digest of the concatenated values of all
top-level scalar fields plus ``Password``, ordered by field name. Nested
objects (``Receipt``, ``DATA``) and the token itself are excluded.
"""
from __future__ import annotations

import hashlib
import hmac
from typing import Any, Mapping, Optional

import httpx

from core.settings import TBankSettings, payment_settings
from domain.common.exceptions import PaymentConfigurationError
from infrastructure.external.payments.base import BasePaymentClient
from infrastructure.external.payments.exceptions import PaymentProviderError


def _token_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def generate_token(params: Mapping[str, Any], password: str) -> str:
    values = {
        k: v
        for k, v in params.items()
        if k != "Token" and v is not None and not isinstance(v, (dict, list))
    }
    values["Password"] = password
    concatenated = "".join(_token_value(values[k]) for k in sorted(values))
    return hashlib.sha256(concatenated.encode("utf-8")).hexdigest()


def build_receipt(
    *,
    email: str,
    taxation: str,
    name: str,
    amount_kopeks: int,
) -> dict[str, Any]:
    """Single-line fiscal receipt for a service sold in full."""
    return {
        "Email": email,
        "Taxation": taxation,
        "Items": [
            {
                "Name": name,
                "Price": amount_kopeks,
                "Quantity": 1,
                "Amount": amount_kopeks,
                "Tax": "none",
                "PaymentMethod": "full_payment",
                "PaymentObject": "service",
            }
        ],
    }


class TBankClient(BasePaymentClient):
    provider = "tbank"

    def __init__(
        self,
        config: Optional[TBankSettings] = None,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        retry: Optional[dict[str, Any]] = None,
    ) -> None:
        super().__init__(transport=transport, retry=retry)
        self.config = config or payment_settings.tbank

    @property
    def has_credentials(self) -> bool:
        return bool(self.config.terminal_key and self.config.password)

    def _require_credentials(self) -> None:
        if not self.has_credentials:
            raise PaymentConfigurationError(
                "T-Bank credentials not configured", provider=self.provider
            )

    def sign(self, params: Mapping[str, Any]) -> str:
        self._require_credentials()
        return generate_token(params, self.config.password or "")

    def verify_notification(self, payload: Mapping[str, Any]) -> bool:
        """Recompute the notification token and compare in constant time."""
        received = payload.get("Token")
        if not received or not isinstance(received, str):
            return False
        expected = self.sign(payload)
        return hmac.compare_digest(expected, received.lower())

    async def _call(self, method: str, params: dict[str, Any], *, retry: bool = True, **extra: Any) -> dict[str, Any]:
        self._require_credentials()
        body = {"TerminalKey": self.config.terminal_key, **params}
        body["Token"] = self.sign(body)
        body.update({k: v for k, v in extra.items() if v is not None})

        data = await self._request_json(
            "POST", f"{self.config.api_url.rstrip('/')}/{method}", json=body, retry=retry
        )
        if not data.get("Success"):
            code = data.get("ErrorCode")
            message = data.get("Message") or data.get("Details") or "Unknown error"
            self._log("tbank_api_rejected", method=method, error_code=code, message=message)
            raise PaymentProviderError(
                f"T-Bank error {code}: {message}",
                provider=self.provider,
                provider_code=str(code) if code is not None else None,
            )
        return data

    async def init(
        self,
        *,
        amount_kopeks: int,
        order_id: str,
        description: str,
        success_url: Optional[str] = None,
        fail_url: Optional[str] = None,
        notification_url: Optional[str] = None,
        customer_email: Optional[str] = None,
    ) -> dict[str, Any]:
        params: dict[str, Any] = {
            "Amount": amount_kopeks,
            "OrderId": order_id,
            "Description": description,
            "PayType": "O",
        }
        if success_url:
            params["SuccessURL"] = success_url
        if fail_url:
            params["FailURL"] = fail_url
        if notification_url:
            params["NotificationURL"] = notification_url

        receipt = None
        data = None
        if customer_email:
            receipt = build_receipt(
                email=customer_email,
                taxation=self.config.init_taxation,
                name=description,
                amount_kopeks=amount_kopeks,
            )
            data = {"Email": customer_email}

        self._log(
            "tbank_init_request",
            order_id=order_id,
            amount_kopeks=amount_kopeks,
            has_receipt=receipt is not None,
            test_mode=self.config.is_test_mode,
        )
        # Init is not retried: a retried Init could register a second order
        return await self._call("Init", params, retry=False, Receipt=receipt, DATA=data)

    async def get_state(self, payment_id: str) -> dict[str, Any]:
        return await self._call("GetState", {"PaymentId": payment_id})

    async def cancel(
        self,
        payment_id: str,
        *,
        amount_kopeks: Optional[int] = None,
        receipt: Optional[dict[str, Any]] = None,
    ) -> dict[str, Any]:
        params: dict[str, Any] = {"PaymentId": payment_id}
        if amount_kopeks is not None:
            params["Amount"] = amount_kopeks
        self._log("tbank_cancel_request", payment_id=payment_id, amount_kopeks=amount_kopeks)
        return await self._call("Cancel", params, retry=False, Receipt=receipt)
