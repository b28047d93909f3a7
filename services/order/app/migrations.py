"""
Order Service — スキーママイグレーション

起動時に適用する。適用済みのバージョンは schema_migrations に記録し、
各バージョンは独立したトランザクションで 1 度だけ実行する。
DDL 自体も IF NOT EXISTS なので、記録が失われても再実行できる。

  orders ─┬─ delivery  (order_uid PK/FK)  1:1
          ├─ payment   (order_uid PK/FK)  1:1
          └─ items     (order_uid, item_idx) 1:N

item_idx はメッセージ内の items の並び順を保持する。
"""

import logging
from datetime import datetime, timezone

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine

from .errors import StoreError

logger = logging.getLogger(__name__)

MIGRATIONS: list[tuple[int, str, list[str]]] = [
    (
        1,
        "create_order_tables",
        [
            """
            CREATE TABLE IF NOT EXISTS orders (
                order_uid          VARCHAR(64)  PRIMARY KEY,
                track_number       VARCHAR(255) NOT NULL,
                entry              VARCHAR(255) NOT NULL,
                locale             VARCHAR(255) NOT NULL,
                internal_signature VARCHAR(255) NOT NULL DEFAULT '',
                customer_id        VARCHAR(255) NOT NULL,
                delivery_service   VARCHAR(255) NOT NULL,
                shardkey           VARCHAR(255) NOT NULL,
                sm_id              INTEGER      NOT NULL,
                date_created       VARCHAR(64)  NOT NULL,
                oof_shard          VARCHAR(255) NOT NULL
            )
            """,
            """
            CREATE TABLE IF NOT EXISTS delivery (
                order_uid VARCHAR(64)  PRIMARY KEY REFERENCES orders (order_uid) ON DELETE CASCADE,
                name      VARCHAR(255) NOT NULL,
                phone     VARCHAR(32)  NOT NULL,
                zip       VARCHAR(255) NOT NULL,
                city      VARCHAR(255) NOT NULL,
                address   VARCHAR(255) NOT NULL,
                region    VARCHAR(255) NOT NULL,
                email     VARCHAR(255) NOT NULL
            )
            """,
            """
            CREATE TABLE IF NOT EXISTS payment (
                order_uid     VARCHAR(64)  PRIMARY KEY REFERENCES orders (order_uid) ON DELETE CASCADE,
                "transaction" VARCHAR(255) NOT NULL,
                request_id    VARCHAR(255) NOT NULL DEFAULT '',
                currency      VARCHAR(8)   NOT NULL,
                provider      VARCHAR(255) NOT NULL,
                amount        BIGINT       NOT NULL CHECK (amount > 0),
                payment_dt    BIGINT       NOT NULL,
                bank          VARCHAR(255) NOT NULL,
                delivery_cost BIGINT       NOT NULL,
                goods_total   BIGINT       NOT NULL,
                custom_fee    BIGINT       NOT NULL
            )
            """,
            """
            CREATE TABLE IF NOT EXISTS items (
                order_uid    VARCHAR(64)  NOT NULL REFERENCES orders (order_uid) ON DELETE CASCADE,
                item_idx     INTEGER      NOT NULL,
                chrt_id      BIGINT       NOT NULL,
                track_number VARCHAR(255) NOT NULL,
                price        BIGINT       NOT NULL CHECK (price > 0),
                rid          VARCHAR(255) NOT NULL,
                name         VARCHAR(255) NOT NULL,
                sale         INTEGER      NOT NULL,
                size         VARCHAR(255) NOT NULL,
                total_price  BIGINT       NOT NULL,
                nm_id        BIGINT       NOT NULL,
                brand        VARCHAR(255) NOT NULL,
                status       INTEGER      NOT NULL,
                PRIMARY KEY (order_uid, item_idx)
            )
            """,
        ],
    ),
]


async def apply_migrations(engine: AsyncEngine) -> list[int]:
    """未適用のマイグレーションを順に適用し、適用したバージョンを返す。"""
    applied: list[int] = []
    try:
        async with engine.begin() as conn:
            await conn.execute(
                text("""
                    CREATE TABLE IF NOT EXISTS schema_migrations (
                        version    INTEGER      PRIMARY KEY,
                        name       VARCHAR(255) NOT NULL,
                        applied_at VARCHAR(64)  NOT NULL
                    )
                """)
            )
            result = await conn.execute(text("SELECT version FROM schema_migrations"))
            done = {row.version for row in result.fetchall()}

        for version, name, statements in MIGRATIONS:
            if version in done:
                continue
            async with engine.begin() as conn:
                for statement in statements:
                    await conn.execute(text(statement))
                await conn.execute(
                    text("""
                        INSERT INTO schema_migrations (version, name, applied_at)
                        VALUES (:version, :name, :applied_at)
                    """),
                    {
                        "version": version,
                        "name": name,
                        "applied_at": datetime.now(timezone.utc).isoformat(),
                    },
                )
            logger.info("Applied migration version=%d name=%s", version, name)
            applied.append(version)
    except SQLAlchemyError as exc:
        raise StoreError(f"failed to apply migrations: {exc}") from exc

    logger.info("Database migrations applied successfully (new=%d)", len(applied))
    return applied
