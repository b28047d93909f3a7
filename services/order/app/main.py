"""
Order Service — FastAPI エントリーポイント

Kafka から注文を取り込み PostgreSQL に保存し、Redis をリードスルーキャッシュとして
GET /order/{order_uid} を提供する。

  ┌───────┐  orders   ┌──────────────┐   ┌──────────────────┐   ┌────────────┐
  │ Kafka │ ────────▶ │ OrderConsumer│──▶│ SaveOrderUseCase │──▶│ PostgreSQL │
  └───────┘           └──────────────┘   └────────┬─────────┘   └─────▲──────┘
                                                  │                   │
  ┌─────────┐  GET /order/{uid}  ┌────────────────▼┐   miss           │
  │ Browser │ ─────────────────▶ │ GetOrderUseCase │──────────────────┘
  └─────────┘                    └───────┬─────────┘
                                         │ hit / 補充
                                    ┌────▼────┐
                                    │  Redis  │
                                    └─────────┘

lifespan での起動順:
  1. DB 接続確認・マイグレーション (失敗 → 起動中止)
  2. Redis 接続 (失敗しても続行)
  3. キャッシュウォーマー (失敗しても続行)
  4. Kafka コンシューマをバックグラウンドタスクとして開始

停止時: HTTP のドレインは uvicorn が行い、その後
コンシューマ停止 → Redis クローズ → DB プール破棄 の順で閉じる。
"""

import asyncio
import logging
import os
from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import FastAPI
from fastapi.responses import FileResponse
from fastapi.staticfiles import StaticFiles

from . import api
from .cache import OrderCache
from .config import Settings, load_settings
from .consumer import OrderConsumer, create_kafka_consumer
from .database import check_connection, create_engine, create_session_factory
from .errors import StoreError
from .migrations import apply_migrations
from .repository import OrderRepository
from .usecases import GetOrderUseCase, RestoreCacheUseCase, SaveOrderUseCase

logger = logging.getLogger(__name__)


async def _stop_consumer(task: asyncio.Task, shutdown_event: asyncio.Event, timeout: float) -> None:
    shutdown_event.set()
    try:
        await asyncio.wait_for(asyncio.shield(task), timeout=timeout)
        logger.info("Kafka consumer stopped")
    except asyncio.TimeoutError:
        logger.error("Kafka consumer did not stop within %.1fs, cancelling", timeout)
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
    except Exception:
        logger.exception("Kafka consumer exited with error")


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings: Settings = app.state.settings or load_settings()

    engine = create_engine(settings.database_url)
    try:
        await check_connection(engine)
        await apply_migrations(engine)
    except StoreError:
        await engine.dispose()
        logger.critical("Database is not ready, aborting startup")
        raise

    repo = OrderRepository(create_session_factory(engine))
    cache = OrderCache.from_url(settings.redis_url)
    await cache.connect()

    app.state.save_order = SaveOrderUseCase(repo, cache, strict_cache=settings.cache_write_strict)
    app.state.get_order = GetOrderUseCase(repo, cache)

    try:
        await RestoreCacheUseCase(repo, cache).execute()
    except StoreError as exc:
        logger.error("Failed to restore cache from DB: %s", exc)
    logger.info("Cache restoration attempted")

    shutdown_event = asyncio.Event()
    worker = OrderConsumer(
        create_kafka_consumer(settings.kafka_broker, settings.kafka_topic, settings.kafka_group_id),
        app.state.save_order,
        retry_backoff=settings.kafka_retry_backoff,
    )
    consumer_task = asyncio.create_task(worker.run(shutdown_event))
    logger.info("Application started topic=%s group_id=%s", settings.kafka_topic, settings.kafka_group_id)

    yield

    logger.info("Shutdown signal received, shutting down...")
    await _stop_consumer(consumer_task, shutdown_event, settings.shutdown_timeout)

    try:
        await cache.close()
        logger.info("Redis connection closed")
    except Exception:
        logger.exception("Failed to close Redis connection")

    await engine.dispose()
    logger.info("DB connection closed")
    logger.info("Application stopped successfully")


def _mount_web(app: FastAPI, web_dir: str) -> None:
    """ブラウザ UI (web/index.html) があれば配信する。"""
    root = Path(web_dir)
    index = root / "index.html"
    if not index.is_file():
        return

    app.mount("/web", StaticFiles(directory=root), name="web")

    @app.get("/", include_in_schema=False)
    async def index_page():
        return FileResponse(index)


def create_app(settings: Settings | None = None, lifespan=lifespan) -> FastAPI:
    app = FastAPI(title="Order Service", lifespan=lifespan)
    app.state.settings = settings
    app.include_router(api.router)
    _mount_web(app, settings.web_dir if settings else os.environ.get("WEB_DIR", "./web"))
    return app


app = create_app()
