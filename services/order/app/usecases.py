"""
Order Service — ユースケース

  SaveOrderUseCase     検証 → 存在確認 → 永続化 → キャッシュ投入
  GetOrderUseCase      リードスルー: キャッシュ → リポジトリ → キャッシュ補充
  RestoreCacheUseCase  起動時に全注文をキャッシュへ読み込む (ウォーマー)

依存 (リポジトリ・キャッシュ) はコンストラクタで受け取る。
"""

import logging
from dataclasses import dataclass
from typing import Protocol

from .errors import (
    CacheError,
    DuplicateKeyError,
    DuplicateOrderError,
    InvalidOrderError,
    OrderNotFoundError,
    StoreError,
)
from .models import Order
from .validation import validate_order

logger = logging.getLogger(__name__)


class OrderStore(Protocol):
    async def save(self, order: Order) -> None: ...

    async def get_by_uid(self, order_uid: str) -> Order: ...

    async def get_all(self) -> list[Order]: ...

    async def exists(self, order_uid: str) -> bool: ...


class OrderCacheStore(Protocol):
    async def get(self, order_uid: str) -> Order | None: ...

    async def set(self, order: Order) -> None: ...


class SaveOrderUseCase:
    """
    注文保存ユースケース

    1. バリデーション            失敗 → InvalidOrderError
    2. exists() で存在確認       既存 → DuplicateOrderError (書き込みなし)
    3. リポジトリに保存          UNIQUE 競合 → DuplicateOrderError / その他 → StoreError
    4. キャッシュに投入          失敗してもストアのコミットは有効

    2 はブローカーの再送がほぼ既存 UID に当たるための最適化で、
    競合は 3 の UNIQUE 制約が検出する。

    strict_cache=False (既定) では 4 の失敗をログに残して成功を返す。
    次回の読み取りがキャッシュを補充する。True なら CacheError を送出する。
    キャッシュ書き込みはリトライしない。
    """

    def __init__(self, repo: OrderStore, cache: OrderCacheStore, strict_cache: bool = False) -> None:
        self.repo = repo
        self.cache = cache
        self.strict_cache = strict_cache

    async def execute(self, order: Order) -> None:
        try:
            validate_order(order)
        except InvalidOrderError as exc:
            logger.warning("Order validation failed order_uid=%s: %s", order.order_uid, exc)
            raise

        if await self.repo.exists(order.order_uid):
            logger.info("Order already exists, skipping order_uid=%s", order.order_uid)
            raise DuplicateOrderError(f"order {order.order_uid} already exists")

        try:
            await self.repo.save(order)
        except DuplicateKeyError as exc:
            logger.info("Order inserted concurrently, skipping order_uid=%s", order.order_uid)
            raise DuplicateOrderError(f"order {order.order_uid} already exists") from exc
        except StoreError:
            logger.error("Failed to save order to DB order_uid=%s", order.order_uid)
            raise

        try:
            await self.cache.set(order)
        except CacheError as exc:
            logger.error("Failed to save order to cache order_uid=%s: %s", order.order_uid, exc)
            if self.strict_cache:
                raise

        logger.info("Order saved order_uid=%s", order.order_uid)


class GetOrderUseCase:
    """
    注文取得ユースケース (リードスルー)

    キャッシュの失敗はミスとして扱い、ストアにフォールバックする。
    キャッシュ補充に失敗しても注文はそのまま返す。
    """

    def __init__(self, repo: OrderStore, cache: OrderCacheStore) -> None:
        self.repo = repo
        self.cache = cache

    async def execute(self, order_uid: str) -> Order:
        try:
            order = await self.cache.get(order_uid)
        except CacheError as exc:
            logger.warning("Cache read failed, falling back to DB order_uid=%s: %s", order_uid, exc)
            order = None
        if order is not None:
            logger.debug("Order retrieved from cache order_uid=%s", order_uid)
            return order

        try:
            order = await self.repo.get_by_uid(order_uid)
        except OrderNotFoundError:
            logger.info("Order not found order_uid=%s", order_uid)
            raise
        except StoreError:
            logger.error("Failed to get order from DB order_uid=%s", order_uid)
            raise

        try:
            await self.cache.set(order)
        except CacheError as exc:
            logger.warning("Failed to backfill cache order_uid=%s: %s", order_uid, exc)

        logger.debug("Order retrieved from DB order_uid=%s", order_uid)
        return order


@dataclass(frozen=True)
class RestoreResult:
    success_count: int
    total_count: int


class RestoreCacheUseCase:
    """起動時のキャッシュウォーマー。個別の失敗はスキップし、起動を止めない。"""

    def __init__(self, repo: OrderStore, cache: OrderCacheStore) -> None:
        self.repo = repo
        self.cache = cache

    async def execute(self) -> RestoreResult:
        try:
            orders = await self.repo.get_all()
        except StoreError:
            logger.error("Failed to get orders from DB for cache restore")
            raise

        success_count = 0
        for order in orders:
            try:
                await self.cache.set(order)
            except CacheError as exc:
                logger.error("Failed to save order to cache order_uid=%s: %s", order.order_uid, exc)
                continue
            success_count += 1

        logger.info("Cache restored success_count=%d total_count=%d", success_count, len(orders))
        return RestoreResult(success_count=success_count, total_count=len(orders))
