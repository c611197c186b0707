"""
Webhook 与确认入口

将原始回调解析为类型化的载荷，分发给对应的支付渠道，统一返回 WebhookResult。
签名校验失败或载荷格式错误时返回 ``success=False``，不会进入状态机。
"""
from __future__ import annotations

from typing import Any, Mapping, Optional, Union

from pydantic import ValidationError

from application.dtos.payments import (
    StarsPreCheckout,
    StarsSuccessfulPayment,
    TonConfirmation,
    WebhookResult,
)
from application.services.providers import Providers, get_provider
from core.logging_config import get_logger
from domain.common.exceptions import BusinessException, PaymentValidationError
from domain.payment.entity import PaymentProvider
from infrastructure.external.payments.exceptions import (
    PaymentProviderError,
    PaymentRecoverableError,
    PaymentSignatureError,
)


logger = get_logger(__name__)

TelegramEvent = Union[StarsPreCheckout, StarsSuccessfulPayment]


def parse_telegram_update(update: Mapping[str, Any]) -> Optional[TelegramEvent]:
    """从 Telegram update 中提取支付事件，其他类型的 update 返回 None"""
    query = update.get("pre_checkout_query")
    if query:
        return StarsPreCheckout(
            query_id=str(query.get("id")),
            payer_id=(query.get("from") or {}).get("id"),
            currency=query.get("currency"),
            total_amount=query.get("total_amount"),
            invoice_payload=query.get("invoice_payload"),
        )

    message = update.get("message") or {}
    paid = message.get("successful_payment")
    if paid:
        return StarsSuccessfulPayment(
            charge_id=paid.get("telegram_payment_charge_id"),
            provider_charge_id=paid.get("provider_payment_charge_id"),
            payer_id=(message.get("from") or {}).get("id"),
            currency=paid.get("currency"),
            total_amount=paid.get("total_amount"),
            invoice_payload=paid.get("invoice_payload"),
        )
    return None


class WebhookIngress:
    def __init__(self, providers: Providers) -> None:
        self._providers = providers

    async def handle(self, provider_id: Any, payload: Mapping[str, Any]) -> WebhookResult:
        """按渠道标识路由；未知渠道抛出 UnknownProviderError"""
        provider = get_provider(provider_id, self._providers)
        name = provider.provider.value
        try:
            event = self._decode(provider.provider, payload)
            if event is None:
                logger.info("webhook_ignored", provider=name)
                return WebhookResult(success=True)
            result = await provider.process_webhook(event)
        except PaymentSignatureError as exc:
            logger.warning("webhook_signature_invalid", provider=name, error=exc.message)
            return WebhookResult(success=False, error="Invalid signature")
        except ValidationError as exc:
            logger.warning("webhook_payload_invalid", provider=name, errors=exc.error_count())
            return WebhookResult(success=False, error="Invalid payload")
        except PaymentValidationError as exc:
            logger.warning("webhook_rejected", provider=name, error=exc.message)
            return WebhookResult(success=False, error=exc.message)
        except (PaymentProviderError, PaymentRecoverableError) as exc:
            logger.error("webhook_provider_error", provider=name, error=exc.message)
            return WebhookResult(success=False, error=exc.message)
        except BusinessException as exc:
            logger.warning("webhook_failed", provider=name, error=exc.message, code=int(exc.code))
            return WebhookResult(success=False, error=exc.message)

        logger.info(
            "webhook_processed",
            provider=name,
            payment_id=result.payment_id,
            status=result.status,
            success=result.success,
            duplicate=result.duplicate,
        )
        return result

    @staticmethod
    def _decode(provider: PaymentProvider, payload: Mapping[str, Any]) -> Any:
        if provider is PaymentProvider.TBANK:
            # 签名基于原始字段，原样透传
            return dict(payload)
        if provider is PaymentProvider.STARS:
            return parse_telegram_update(payload)
        return TonConfirmation.model_validate(payload)
