"""
Order Service — Kafka コンシューマ (取り込みワーカー)

orders トピックを購読し、受信した注文を SaveOrderUseCase に渡す。
オフセットは自動コミットせず、処理結果を見てから手動でコミットする。

  メッセージ ─▶ デコード ─▶ SaveOrderUseCase ─▶ コミット判定

  結果                    オフセット
  ──────────────────────  ─────────────────────────────
  保存成功                 コミット
  DuplicateOrderError      コミット (再送の冪等な取り込み)
  InvalidOrderError        コミット (poison)
  デコード失敗             コミット (poison、生データをログ)
  StoreError / CacheError  コミットしない → 同じオフセットに seek して再取得

order_uid を冪等性キーとし、ストアの UNIQUE 制約と
「成功後にコミット」を組み合わせることで、at-least-once 配信を
ストアに対しては実質 exactly-once にしている。
"""

import asyncio
import enum
import logging
from typing import Any

from aiokafka import AIOKafkaConsumer, TopicPartition
from aiokafka.errors import KafkaError

from .errors import (
    DecodeError,
    DuplicateOrderError,
    InvalidOrderError,
    OrderServiceError,
    is_retryable,
)
from .models import decode_order
from .usecases import SaveOrderUseCase

logger = logging.getLogger(__name__)

MAX_LOGGED_PAYLOAD = 4096


class ProcessResult(enum.Enum):
    SAVED = "saved"
    DUPLICATE = "duplicate"
    INVALID = "invalid"
    POISON = "poison"
    RETRY = "retry"

    @property
    def should_commit(self) -> bool:
        return self is not ProcessResult.RETRY


def create_kafka_consumer(broker: str, topic: str, group_id: str) -> AIOKafkaConsumer:
    return AIOKafkaConsumer(
        topic,
        bootstrap_servers=broker,
        group_id=group_id,
        enable_auto_commit=False,
        auto_offset_reset="earliest",
        fetch_min_bytes=10_000,
        fetch_max_bytes=10_000_000,
        fetch_max_wait_ms=1000,
    )


class OrderConsumer:
    """
    単一ワーカーの取り込みループ。

    パーティション内はオフセット順に 1 件ずつ処理し、コミットが後退することはない。
    """

    def __init__(
        self,
        consumer: Any,
        save_order: SaveOrderUseCase,
        retry_backoff: float = 1.0,
        poll_timeout_ms: int = 1000,
    ) -> None:
        self.consumer = consumer
        self.save_order = save_order
        self.retry_backoff = retry_backoff
        self.poll_timeout_ms = poll_timeout_ms

    async def handle_message(self, msg) -> ProcessResult:
        """1 メッセージを処理し、コミット判定を返す (コミット自体はしない)。"""
        try:
            order = decode_order(msg.value)
        except DecodeError as exc:
            logger.warning(
                "Failed to decode order, skipping partition=%d offset=%d error=%s message=%r",
                msg.partition, msg.offset, exc, (msg.value or b"")[:MAX_LOGGED_PAYLOAD],
            )
            return ProcessResult.POISON

        try:
            await self.save_order.execute(order)
        except DuplicateOrderError:
            logger.info("Order already exists, skipping order_uid=%s", order.order_uid)
            return ProcessResult.DUPLICATE
        except InvalidOrderError:
            logger.info("Invalid order data, skipping order_uid=%s", order.order_uid)
            return ProcessResult.INVALID
        except OrderServiceError as exc:
            if not is_retryable(exc):
                logger.error("Unrecoverable order error, skipping order_uid=%s kind=%s", order.order_uid, exc.kind)
                return ProcessResult.POISON
            logger.error(
                "Failed to save order, will retry order_uid=%s offset=%d kind=%s: %s",
                order.order_uid, msg.offset, exc.kind, exc,
            )
            return ProcessResult.RETRY
        except Exception:
            logger.exception("Failed to process order order_uid=%s offset=%d", order.order_uid, msg.offset)
            return ProcessResult.RETRY

        return ProcessResult.SAVED

    async def commit(self, msg) -> None:
        tp = TopicPartition(msg.topic, msg.partition)
        try:
            await self.consumer.commit({tp: msg.offset + 1})
        except KafkaError as exc:
            # 次回の再取得で同じメッセージが冪等に処理される
            logger.error("Failed to commit offset partition=%d offset=%d: %s", msg.partition, msg.offset, exc)

    async def process_batch(self, tp, messages: list, shutdown_event: asyncio.Event) -> bool:
        """
        1 パーティション分のメッセージを順に処理する。
        リトライが必要なら失敗したオフセットに seek して False を返す。
        """
        for msg in messages:
            if shutdown_event.is_set():
                return True
            result = await self.handle_message(msg)
            if not result.should_commit:
                self.consumer.seek(tp, msg.offset)
                return False
            await self.commit(msg)
            if result is ProcessResult.SAVED:
                logger.info("Order processed from Kafka partition=%d offset=%d", msg.partition, msg.offset)
        return True

    async def _backoff(self, shutdown_event: asyncio.Event) -> None:
        try:
            await asyncio.wait_for(shutdown_event.wait(), timeout=self.retry_backoff)
        except asyncio.TimeoutError:
            pass

    async def _start(self, shutdown_event: asyncio.Event) -> bool:
        while not shutdown_event.is_set():
            try:
                await self.consumer.start()
                return True
            except KafkaError as exc:
                logger.error("Failed to start Kafka consumer, retrying: %s", exc)
                await self._backoff(shutdown_event)
        return False

    async def run(self, shutdown_event: asyncio.Event) -> None:
        """shutdown_event がセットされるまでポーリングを続ける。"""
        if not await self._start(shutdown_event):
            return
        logger.info("Kafka consumer started")

        try:
            while not shutdown_event.is_set():
                try:
                    batches = await self.consumer.getmany(timeout_ms=self.poll_timeout_ms)
                except KafkaError as exc:
                    logger.error("Failed to fetch messages from Kafka: %s", exc)
                    await self._backoff(shutdown_event)
                    continue

                needs_backoff = False
                for tp, messages in batches.items():
                    if not await self.process_batch(tp, messages, shutdown_event):
                        needs_backoff = True
                if needs_backoff:
                    await self._backoff(shutdown_event)
        except asyncio.CancelledError:
            logger.info("Kafka consumer cancelled, stopping...")
            raise
        finally:
            await self.consumer.stop()
            logger.info("Kafka consumer stopped")
