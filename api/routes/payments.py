"""
Payments API routes.

Thin layer over PaymentService and WebhookIngress: parsing, the optional
webhook IP allowlist and response envelopes live here, nothing else.
"""
from __future__ import annotations

import ipaddress
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import PlainTextResponse

from api.dependencies import get_admin_id, get_payment_service, get_webhook_ingress
from api.middleware import client_ip_of
from application.dtos.payments import (
    ConfirmManualRefund,
    CreatePayment,
    ManualRate,
    PartialRefundCommand,
    RefundCommand,
)
from application.services.payment_service import PaymentService
from application.services.webhook_ingress import WebhookIngress
from core.logging_config import get_logger
from core.response import gateway_ack, success_response
from core.settings import payment_settings
from domain.payment.entity import PaymentProvider


router = APIRouter(prefix="/payments", tags=["Payments"])
logger = get_logger(__name__)


def ip_allowed(remote_ip: str, allowlist: list[str]) -> bool:
    """Exact IPs or CIDR networks; an empty allowlist admits everyone."""
    if not allowlist:
        return True
    try:
        addr = ipaddress.ip_address(remote_ip)
    except ValueError:
        return False
    for entry in allowlist:
        if "/" in entry:
            try:
                if addr in ipaddress.ip_network(entry, strict=False):
                    return True
            except ValueError:
                logger.warning("webhook_allowlist_entry_invalid", entry=entry)
        elif remote_ip == entry:
            return True
    return False


async def check_webhook_source(request: Request) -> None:
    remote_ip = client_ip_of(request)
    if not ip_allowed(remote_ip, payment_settings.webhook.ip_allowlist or []):
        logger.warning("webhook_ip_rejected", remote_ip=remote_ip)
        raise HTTPException(status_code=403, detail="Webhook source not allowed")


async def _json_body(request: Request) -> dict:
    try:
        body = await request.json()
    except ValueError:
        raise HTTPException(status_code=400, detail="Body must be JSON") from None
    if not isinstance(body, dict):
        raise HTTPException(status_code=400, detail="Body must be a JSON object")
    return body


# ---- webhooks ----

@router.post(
    "/webhooks/tbank",
    response_class=PlainTextResponse,
    dependencies=[Depends(check_webhook_source)],
)
async def tbank_webhook(request: Request, ingress: WebhookIngress = Depends(get_webhook_ingress)):
    result = await ingress.handle(PaymentProvider.TBANK, await _json_body(request))
    return gateway_ack(result.success, result.error)


@router.post("/webhooks/telegram", dependencies=[Depends(check_webhook_source)])
async def telegram_webhook(request: Request, ingress: WebhookIngress = Depends(get_webhook_ingress)):
    result = await ingress.handle(PaymentProvider.STARS, await _json_body(request))
    return success_response(data=result.model_dump(mode="json"))


@router.post("/webhooks/ton", dependencies=[Depends(check_webhook_source)])
async def ton_webhook(request: Request, ingress: WebhookIngress = Depends(get_webhook_ingress)):
    result = await ingress.handle(PaymentProvider.TON, await _json_body(request))
    return success_response(data=result.model_dump(mode="json"))


# ---- catalog & rates (declared before /{payment_id}) ----

@router.get("/methods", summary="Enabled payment methods")
async def list_methods(service: PaymentService = Depends(get_payment_service)):
    methods = await service.list_methods()
    return success_response(data=[m.model_dump(mode="json") for m in methods])


@router.get("/rates", summary="Recent exchange rates")
async def recent_rates(
    limit: int = Query(default=50, ge=1, le=500),
    service: PaymentService = Depends(get_payment_service),
):
    rates = await service.recent_rates(limit)
    return success_response(data=[r.model_dump(mode="json") for r in rates])


@router.post("/rates", summary="Set manual exchange rate")
async def set_manual_rate(
    payload: ManualRate,
    service: PaymentService = Depends(get_payment_service),
    admin_id: Optional[int] = Depends(get_admin_id),
):
    rate = await service.set_manual_rate(payload.from_currency, payload.to_currency, payload.rate)
    logger.info("manual_rate_set_by_admin", admin_id=admin_id, from_currency=rate.from_currency)
    return success_response(data=rate.model_dump(mode="json"), message="Rate saved")


# ---- payments ----

@router.post("", summary="Create payment")
async def create_payment(payload: CreatePayment, service: PaymentService = Depends(get_payment_service)):
    created = await service.create_payment(payload)
    return success_response(data=created.model_dump(mode="json"), message="Payment created")


@router.get("/{payment_id}", summary="Payment status")
async def payment_status(payment_id: int, service: PaymentService = Depends(get_payment_service)):
    view = await service.get_status(payment_id)
    return success_response(data=view.model_dump(mode="json"))


@router.post("/{payment_id}/refund", summary="Full refund")
async def refund_payment(
    payment_id: int,
    payload: RefundCommand,
    service: PaymentService = Depends(get_payment_service),
    admin_id: Optional[int] = Depends(get_admin_id),
):
    result = await service.refund(payment_id, payload.reason, admin_id=admin_id)
    return success_response(data=result.model_dump(mode="json"))


@router.post("/{payment_id}/refund/partial", summary="Partial refund")
async def partial_refund(
    payment_id: int,
    payload: PartialRefundCommand,
    service: PaymentService = Depends(get_payment_service),
):
    result = await service.partial_refund(
        payment_id, payload.failed_units, payload.total_units, payload.reason
    )
    return success_response(data=result.model_dump(mode="json"))


@router.post("/{payment_id}/refund/confirm-manual", summary="Confirm manual refund")
async def confirm_manual_refund(
    payment_id: int,
    payload: ConfirmManualRefund,
    service: PaymentService = Depends(get_payment_service),
    admin_id: Optional[int] = Depends(get_admin_id),
):
    confirmed = await service.confirm_manual_refund(payment_id, payload.tx_hash)
    logger.info("manual_refund_confirmed_by_admin", payment_id=payment_id, admin_id=admin_id)
    return success_response(data={"payment_id": payment_id, "confirmed": confirmed})
