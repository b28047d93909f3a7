"""
Order Service — データベース接続

非同期エンジンとセッションファクトリを生成する。
エンジン(コネクションプール)はプロセス全体で 1 つだけ作り、
リポジトリへ明示的に渡す。
"""

import logging

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

from .errors import StoreUnavailableError

logger = logging.getLogger(__name__)


def create_engine(database_url: str, **kwargs) -> AsyncEngine:
    kwargs.setdefault("pool_pre_ping", True)
    return create_async_engine(database_url, echo=False, **kwargs)


def create_session_factory(engine: AsyncEngine) -> sessionmaker:
    return sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def check_connection(engine: AsyncEngine) -> None:
    """起動時の疎通確認。失敗すれば StoreUnavailableError。"""
    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
    except (SQLAlchemyError, OSError) as exc:
        logger.error("Failed to ping DB: %s", exc)
        raise StoreUnavailableError("database is unreachable") from exc
    logger.info("DB is ready")
