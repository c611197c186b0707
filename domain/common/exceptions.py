"""领域层业务异常定义，供领域与基础设施使用。

核心（core）层仅负责全局映射与异常处理，尽量避免领域层反向依赖核心层。
"""
from __future__ import annotations

from typing import Optional
from shared.codes import BusinessCode
from shared.codes.payment_codes import PaymentCode


class BusinessException(Exception):
    """业务异常基类"""

    def __init__(
        self,
        code: int,
        message: str,
        error_type: str = "BusinessError",
        details: Optional[dict] = None,
        field: Optional[str] = None,
    ) -> None:
        self.code = code
        self.message = message
        self.error_type = error_type
        self.details = details
        self.field = field
        super().__init__(self.message)


class DomainValidationException(BusinessException):
    def __init__(
        self,
        message: str,
        *,
        field: str | None = None,
        details: dict | None = None,
    ):
        super().__init__(
            code=BusinessCode.PARAM_VALIDATION_ERROR,
            message=message,
            error_type="DomainValidationError",
            details=details,
            field=field,
        )


class PaymentValidationError(BusinessException):
    """请求不合法：未知渠道/套餐、载荷格式错误等，在任何外部调用之前拒绝"""

    def __init__(self, message: str, *, field: str | None = None, details: dict | None = None):
        super().__init__(
            code=PaymentCode.PAYMENT_VALIDATION,
            message=message,
            error_type="PaymentValidationError",
            details=details,
            field=field,
        )


class UnknownProviderError(PaymentValidationError):
    def __init__(self, provider: object):
        super().__init__(
            f"Unknown payment provider: {provider}",
            field="provider",
            details={"provider": str(provider)},
        )
        self.code = PaymentCode.UNKNOWN_PROVIDER
        self.error_type = "UnknownProvider"


class ProviderDisabledError(BusinessException):
    def __init__(self, provider: str):
        super().__init__(
            code=PaymentCode.PROVIDER_DISABLED,
            message=f"Payment method {provider} is disabled",
            error_type="ProviderDisabled",
            details={"provider": provider},
            field="provider",
        )


class PaymentConfigurationError(BusinessException):
    """缺少凭据/钱包地址等配置，快速失败且不重试"""

    def __init__(self, message: str, *, provider: str | None = None):
        super().__init__(
            code=PaymentCode.CONFIGURATION_ERROR,
            message=message,
            error_type="PaymentConfigurationError",
            details={"provider": provider} if provider else None,
        )


class PaymentNotFoundException(BusinessException):
    """支付记录不存在"""

    def __init__(self, identifier: object):
        super().__init__(
            code=PaymentCode.PAYMENT_NOT_FOUND,
            message=f"Payment not found: {identifier}",
            error_type="PaymentNotFound",
            details={"payment": str(identifier)},
        )


class RefundPreconditionError(BusinessException):
    """退款锁已获取但前置条件不满足（缺少外部ID/付款人身份/凭据），需要人工处理"""

    def __init__(self, instructions: str):
        super().__init__(
            code=BusinessCode.BUSINESS_ERROR,
            message=instructions,
            error_type="RefundPreconditionFailed",
        )
        self.instructions = instructions
