"""
请求日志中间件
记录状态码与耗时；webhook 请求额外绑定 provider，请求体含签名，不记录
"""
import time

import structlog
from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

from core.logging_config import get_logger


logger = get_logger(__name__)

WEBHOOK_MARKER = "/payments/webhooks/"


def webhook_provider(path: str) -> str | None:
    """/api/v1/payments/webhooks/tbank → "tbank"；非 webhook 路径返回 None"""
    if WEBHOOK_MARKER not in path:
        return None
    return path.rsplit("/", 1)[-1] or None


class LoggingMiddleware(BaseHTTPMiddleware):

    SKIP_PATHS = {"/health", "/docs", "/redoc", "/openapi.json"}

    async def dispatch(self, request: Request, call_next):
        path = request.url.path
        if path in self.SKIP_PATHS:
            return await call_next(request)

        provider = webhook_provider(path)
        if provider:
            structlog.contextvars.bind_contextvars(webhook_provider=provider)
            logger.info("webhook_received")
        else:
            logger.info("request_started", query_params=dict(request.query_params))

        start_time = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception as exc:
            logger.error(
                "request_failed",
                duration=time.perf_counter() - start_time,
                error_type=type(exc).__name__,
                exc_info=True,
            )
            raise

        duration = time.perf_counter() - start_time
        self._log_response(response, duration)
        response.headers["X-Process-Time"] = f"{duration:.3f}"
        return response

    @staticmethod
    def _log_response(response: Response, duration: float) -> None:
        status_code = response.status_code
        if status_code < 400:
            logger.info("request_completed", status_code=status_code, duration=duration)
        elif status_code < 500:
            logger.warning("request_client_error", status_code=status_code, duration=duration)
        else:
            logger.error("request_server_error", status_code=status_code, duration=duration)
