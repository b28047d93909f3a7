"""
Order Service — 注文キャッシュ (Redis)

order_uid → シリアライズ済み注文 (JSON) のマッピング。有効期限なし。
値は HTTP レスポンスと同じ JSON 表現。

キャッシュは派生ビューにすぎない。ストアが唯一の正であり、
Redis が落ちていてもサービスは動き続ける:
  - 起動時に接続できなければログを出して続行する
  - 読み取りでのミス・失敗は呼び出し側がストアにフォールバックする
"""

import asyncio
import logging

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from .errors import CacheError, DecodeError
from .models import Order, decode_order, encode_order

logger = logging.getLogger(__name__)

KEY_PREFIX = "order:"


def cache_key(order_uid: str) -> str:
    return f"{KEY_PREFIX}{order_uid}"


class OrderCache:
    def __init__(self, redis: aioredis.Redis) -> None:
        self.redis = redis

    @classmethod
    def from_url(cls, url: str, timeout: float = 10.0) -> "OrderCache":
        return cls(
            aioredis.from_url(
                url,
                decode_responses=True,
                socket_timeout=timeout,
                socket_connect_timeout=timeout,
            )
        )

    async def connect(self, attempts: int = 3, delay: float = 2.0) -> bool:
        """
        起動時の疎通確認。失敗しても例外にはせず False を返す。
        接続できるようになれば以降の書き込みはそのまま再開される。
        """
        for attempt in range(1, attempts + 1):
            try:
                await self.redis.ping()
                logger.info("Connected to Redis")
                return True
            except (RedisError, OSError) as exc:
                logger.warning("Failed to connect to Redis (attempt %d/%d): %s", attempt, attempts, exc)
                if attempt < attempts:
                    await asyncio.sleep(delay)
        logger.error("Redis is unreachable, continuing without cache")
        return False

    async def get(self, order_uid: str) -> Order | None:
        """キャッシュヒットなら Order、ミスなら None。壊れた値や通信失敗は CacheError。"""
        try:
            data = await self.redis.get(cache_key(order_uid))
        except (RedisError, OSError) as exc:
            raise CacheError(f"redis get failed: {exc}") from exc
        if data is None:
            return None
        try:
            return decode_order(data)
        except DecodeError as exc:
            raise CacheError(f"corrupt cache entry for {order_uid}") from exc

    async def set(self, order: Order) -> None:
        try:
            await self.redis.set(cache_key(order.order_uid), encode_order(order))
        except (RedisError, OSError) as exc:
            raise CacheError(f"redis set failed: {exc}") from exc

    async def delete(self, order_uid: str) -> None:
        try:
            await self.redis.delete(cache_key(order_uid))
        except (RedisError, OSError) as exc:
            raise CacheError(f"redis delete failed: {exc}") from exc

    async def close(self) -> None:
        await self.redis.aclose()
