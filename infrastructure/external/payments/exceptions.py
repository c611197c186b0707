"""
Exceptions raised by provider API clients, mapped to unified BusinessException variants.

ExternalApiError is split in two: PaymentRecoverableError for timeouts and
transport failures (safe to reconcile later), PaymentProviderError for
explicit rejections and malformed responses.
"""
from __future__ import annotations

from typing import Optional
from domain.common.exceptions import BusinessException
from shared.codes.payment_codes import PaymentCode


def _details(provider: str, provider_code: str | None, extra: Optional[dict]) -> dict:
    out = {"provider": provider}
    if provider_code is not None:
        out["provider_code"] = provider_code
    if extra:
        out.update(extra)
    return out


class PaymentProviderError(BusinessException):
    def __init__(self, message: str, *, provider: str, provider_code: str | None = None, details: Optional[dict] = None):
        super().__init__(
            code=PaymentCode.PROVIDER_ERROR,
            message=message,
            error_type="PaymentProviderError",
            details=_details(provider, provider_code, details),
        )
        self.provider = provider
        self.provider_code = provider_code


class PaymentRecoverableError(BusinessException):
    def __init__(self, message: str, *, provider: str, provider_code: str | None = None, details: Optional[dict] = None):
        super().__init__(
            code=PaymentCode.PROVIDER_RECOVERABLE,
            message=message,
            error_type="PaymentRecoverableError",
            details=_details(provider, provider_code, details),
        )
        self.provider = provider


class PaymentSignatureError(BusinessException):
    """Webhook authenticity failure: rejected without any state change"""

    def __init__(self, message: str, *, provider: str, details: Optional[dict] = None):
        super().__init__(
            code=PaymentCode.SIGNATURE_ERROR,
            message=message,
            error_type="PaymentSignatureError",
            details=_details(provider, None, details),
        )
        self.provider = provider
