"""
数据库引擎与会话工厂

退款锁依赖单条 UPDATE 的原子性；SQLite 下需要 busy timeout 让并发写入排队等待，
PostgreSQL 下使用连接池并开启 pre_ping。
"""
from typing import Any

from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine, async_sessionmaker

from core.config import DatabaseSettings, settings
from infrastructure.models import Base


_ASYNC_DRIVERS = {
    "postgresql": "postgresql+asyncpg",
    "postgres": "postgresql+asyncpg",
    "sqlite": "sqlite+aiosqlite",
}


def _build_async_url(database_url: str) -> str:
    """确保数据库URL使用异步驱动"""
    url = make_url(database_url)
    if "+" in url.drivername:
        return database_url
    if url.drivername not in _ASYNC_DRIVERS:
        raise ValueError(f"不支持的数据库驱动: {url.drivername}. 请使用 async 驱动或更新DATABASE_URL")
    return str(url.set(drivername=_ASYNC_DRIVERS[url.drivername]))


def _engine_options(config: DatabaseSettings, url: str) -> dict[str, Any]:
    if make_url(url).get_backend_name() == "sqlite":
        return {"connect_args": {"timeout": config.sqlite_timeout}}
    return {
        "pool_size": config.pool_size,
        "max_overflow": config.max_overflow,
        "pool_pre_ping": True,
    }


def build_engine(config: DatabaseSettings) -> AsyncEngine:
    url = _build_async_url(config.url)
    return create_async_engine(url, echo=config.echo, **_engine_options(config, url))


engine = build_engine(settings.database)

AsyncSessionLocal = async_sessionmaker(bind=engine, expire_on_commit=False)


async def create_tables() -> None:
    """开发环境建表；生产环境使用 Alembic 迁移"""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
