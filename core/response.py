"""
统一响应格式

JSON 接口统一使用 Response 包络；T-Bank 回调要求纯文本应答（"OK" 表示已处理，
否则会按其重试策略反复推送）。
"""
from typing import Any, Optional, Generic, TypeVar
from datetime import datetime, timezone

from fastapi.responses import PlainTextResponse
from pydantic import BaseModel, Field, field_serializer

from shared.codes import BusinessCode


T = TypeVar("T")

GATEWAY_ACK = "OK"


def _iso_utc(value: datetime) -> str:
    ts = value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


class ErrorDetail(BaseModel):
    """错误详情；渠道错误在 details 中带 provider / provider_code"""
    type: str
    details: Optional[dict] = None
    field: Optional[str] = None
    request_id: Optional[str] = None
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @field_serializer("timestamp")
    def serialize_timestamp(self, timestamp: datetime) -> str:
        return _iso_utc(timestamp)


class Response(BaseModel, Generic[T]):
    code: int
    message: str
    data: Optional[T] = None
    error: Optional[ErrorDetail] = None


def success_response(data: Any = None, message: str = "Success") -> Response:
    return Response(code=BusinessCode.SUCCESS, message=message, data=data)


def error_response(
    code: int,
    message: str,
    error_type: str = "BusinessError",
    details: Optional[dict] = None,
    field: Optional[str] = None,
    request_id: Optional[str] = None,
) -> Response:
    """
    创建错误响应

    Args:
        code: 业务状态码（BusinessCode / PaymentCode）
        message: 错误消息
        error_type: 异常类型名，客户端据此区分错误
        details: 错误详情
        field: 出错字段
        request_id: 请求ID，与 X-Request-ID 响应头一致
    """
    return Response(
        code=code,
        message=message,
        error=ErrorDetail(type=error_type, details=details, field=field, request_id=request_id),
    )


def gateway_ack(success: bool, error: Optional[str] = None) -> PlainTextResponse:
    """T-Bank 回调应答：成功返回 "OK"，失败返回 400 与错误文本"""
    if success:
        return PlainTextResponse(GATEWAY_ACK)
    return PlainTextResponse(error or "ERROR", status_code=400)
