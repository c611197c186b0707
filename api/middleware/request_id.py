"""
Request ID 中间件
透传或生成 X-Request-ID，并把 request_id / client_ip 绑定到 structlog 上下文，
这样服务层与渠道客户端的日志都能按请求串起来。
"""
import uuid

import structlog
from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware


HEADER_NAME = "X-Request-ID"


def client_ip_of(request: Request) -> str:
    """客户端IP：X-Forwarded-For 第一个地址 → X-Real-IP → 直连地址"""
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        return forwarded.split(",")[0].strip()
    real_ip = request.headers.get("X-Real-IP")
    if real_ip:
        return real_ip
    return request.client.host if request.client else "unknown"


class RequestIDMiddleware(BaseHTTPMiddleware):

    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get(HEADER_NAME) or str(uuid.uuid4())
        client_ip = client_ip_of(request)
        request.state.request_id = request_id

        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(
            request_id=request_id,
            client_ip=client_ip,
            method=request.method,
            path=request.url.path,
        )

        response = await call_next(request)
        response.headers[HEADER_NAME] = request_id
        return response
