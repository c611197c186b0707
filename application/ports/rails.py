"""
Ports for the outbound rail APIs. Infrastructure clients implement these;
the composition root (API dependencies, Celery tasks) injects them.
"""
from __future__ import annotations

from decimal import Decimal
from typing import Any, Mapping, Optional, Protocol, runtime_checkable


@runtime_checkable
class MarketDataSource(Protocol):
    async def fetch_ton_rub(self) -> tuple[Decimal, dict[str, Any]]: ...


@runtime_checkable
class TBankApi(Protocol):
    @property
    def has_credentials(self) -> bool: ...

    def verify_notification(self, payload: Mapping[str, Any]) -> bool: ...

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
    ) -> dict[str, Any]: ...

    async def get_state(self, payment_id: str) -> dict[str, Any]: ...

    async def cancel(
        self,
        payment_id: str,
        *,
        amount_kopeks: Optional[int] = None,
        receipt: Optional[dict[str, Any]] = None,
    ) -> dict[str, Any]: ...


@runtime_checkable
class TelegramBotApi(Protocol):
    @property
    def has_token(self) -> bool: ...

    async def send_invoice(
        self,
        *,
        chat_id: int,
        title: str,
        description: str,
        payload: str,
        label: str,
        amount: int,
    ) -> dict[str, Any]: ...

    async def answer_pre_checkout_query(
        self,
        query_id: str,
        *,
        ok: bool = True,
        error_message: Optional[str] = None,
    ) -> None: ...

    async def refund_star_payment(self, *, user_id: int, charge_id: str) -> None: ...
