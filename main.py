"""
FastAPI 应用入口：支付 API、渠道 webhook 与退款管理接口
"""
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from api.dependencies import shutdown_clients
from api.middleware import RequestIDMiddleware, LoggingMiddleware
from api.routes import payments as payments_routes
from core.config import settings
from core.exceptions import register_exception_handlers
from core.logging_config import get_logger, configure_logging
from core.response import error_response, success_response
from core.settings import payment_settings
from infrastructure.database import create_tables, engine
from shared.codes import BusinessCode


configure_logging()
logger = get_logger(__name__)


def configured_channels() -> dict[str, bool]:
    """各渠道凭证是否齐全；是否对用户开放由 admin_settings 决定"""
    return {
        "tbank": bool(payment_settings.tbank.terminal_key and payment_settings.tbank.password),
        "stars": bool(payment_settings.telegram.bot_token),
        "ton": bool(payment_settings.ton.wallet_address),
    }


@asynccontextmanager
async def lifespan(app: FastAPI):
    # 仅开发环境自动建表，生产使用 Alembic 迁移
    if settings.DEBUG:
        await create_tables()
        logger.info("database_initialized", message="Database tables created (development)")
    else:
        logger.info(
            "database_migrations_required",
            message="No auto-create in production, use Alembic migrations (alembic upgrade head)"
        )
    logger.info("payment_channels_configured", **configured_channels())
    if payment_settings.tbank.is_test_mode:
        logger.warning("tbank_test_mode", message="T-Bank terminal is a test terminal")
    yield
    await shutdown_clients()
    logger.info("application_shutdown")


app = FastAPI(
    title=settings.PROJECT_NAME,
    version=settings.VERSION,
    debug=settings.DEBUG,
    lifespan=lifespan,
    description="Payments and refund dispatch for T-Bank, Telegram Stars and TON",
)

# 中间件：后添加的先执行
app.add_middleware(LoggingMiddleware)
app.add_middleware(RequestIDMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

register_exception_handlers(app)

app.include_router(payments_routes.router, prefix="/api/v1")


@app.get("/health", tags=["Health"])
async def health_check():
    return success_response(data={"status": "healthy"})


@app.get("/health/ready", tags=["Health"])
async def readiness_check():
    """数据库可达才算就绪；渠道凭证缺失只报告，不影响就绪"""
    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
    except SQLAlchemyError as exc:
        logger.error("readiness_database_unavailable", error=str(exc))
        body = error_response(
            code=BusinessCode.SERVICE_UNAVAILABLE,
            message="Database unavailable",
            error_type="ServiceUnavailable",
        )
        return JSONResponse(status_code=503, content=body.model_dump(mode="json"))
    return success_response(data={"database": "ok", "channels": configured_channels()})


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.DEBUG,
        log_level="debug" if settings.DEBUG else "info"
    )
