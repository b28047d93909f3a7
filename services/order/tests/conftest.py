"""Pytest fixtures for order service tests."""

import asyncio
from dataclasses import dataclass

import pytest
from fakeredis import FakeServer
from fakeredis.aioredis import FakeRedis

from app.cache import OrderCache
from app.database import create_engine, create_session_factory
from app.errors import CacheError, DuplicateKeyError, OrderNotFoundError
from app.migrations import apply_migrations
from app.models import Delivery, Item, Order, Payment
from app.repository import OrderRepository


def build_order(order_uid: str = "b563feb7b2b84b6test", items: int = 1, **overrides) -> Order:
    order = Order(
        order_uid=order_uid,
        track_number="WBILMTESTTRACK",
        entry="WBIL",
        delivery=Delivery(
            name="Test Testov",
            phone="+9720000000",
            zip="2639809",
            city="Kiryat Mozkin",
            address="Ploshad Mira 15",
            region="Kraiot",
            email="test@gmail.com",
        ),
        payment=Payment(
            transaction=order_uid,
            request_id="",
            currency="USD",
            provider="wbpay",
            amount=1817,
            payment_dt=1637907727,
            bank="alpha",
            delivery_cost=1500,
            goods_total=317,
            custom_fee=0,
        ),
        items=[
            Item(
                chrt_id=9934930 + i,
                track_number="WBILMTESTTRACK",
                price=453 + i,
                rid=f"ab4219087a764ae0btest-{i}",
                name="Mascaras",
                sale=30,
                size="0",
                total_price=317,
                nm_id=2389212,
                brand="Vivienne Sabo",
                status=202,
            )
            for i in range(items)
        ],
        locale="en",
        internal_signature="",
        customer_id="test",
        delivery_service="meest",
        shardkey="9",
        sm_id=99,
        date_created="2021-11-26T06:22:19Z",
        oof_shard="1",
    )
    if overrides:
        order = order.model_copy(update=overrides)
    return order


@pytest.fixture
def order_factory():
    return build_order


@pytest.fixture
def order():
    return build_order()


# ── Database ─────────────────────────────────────


@pytest.fixture
async def engine(tmp_path):
    engine = create_engine(f"sqlite+aiosqlite:///{tmp_path / 'orders.db'}", pool_pre_ping=False)
    await apply_migrations(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def repository(engine):
    return OrderRepository(create_session_factory(engine))


@pytest.fixture
async def row_counts(engine):
    """Return per-table row counts for one order_uid."""
    from sqlalchemy import text

    async def counts(order_uid: str) -> dict[str, int]:
        result = {}
        async with engine.connect() as conn:
            for table in ("orders", "delivery", "payment", "items"):
                res = await conn.execute(
                    text(f"SELECT COUNT(*) FROM {table} WHERE order_uid = :uid"), {"uid": order_uid}
                )
                result[table] = res.scalar()
        return result

    return counts


# ── Redis ────────────────────────────────────────


@pytest.fixture
def redis_server():
    return FakeServer()


@pytest.fixture
async def redis_client(redis_server):
    client = FakeRedis(server=redis_server, decode_responses=True)
    yield client
    await client.aclose()


@pytest.fixture
def order_cache(redis_client):
    return OrderCache(redis_client)


# ── In-memory fakes ──────────────────────────────


class FakeRepository:
    """Dict-backed repository that records calls and can inject failures."""

    def __init__(self):
        self.orders: dict[str, Order] = {}
        self.calls: list[str] = []
        self.save_failures: list[Exception] = []
        self.fail_reads: Exception | None = None
        self.race_on_save = False

    async def save(self, order):
        self.calls.append("save")
        if self.save_failures:
            raise self.save_failures.pop(0)
        if self.race_on_save or order.order_uid in self.orders:
            raise DuplicateKeyError("order already exists")
        self.orders[order.order_uid] = order

    async def get_by_uid(self, order_uid):
        self.calls.append("get_by_uid")
        if self.fail_reads:
            raise self.fail_reads
        if order_uid not in self.orders:
            raise OrderNotFoundError(f"order {order_uid} not found")
        return self.orders[order_uid]

    async def get_all(self):
        self.calls.append("get_all")
        if self.fail_reads:
            raise self.fail_reads
        return [self.orders[uid] for uid in sorted(self.orders)]

    async def exists(self, order_uid):
        self.calls.append("exists")
        if self.fail_reads:
            raise self.fail_reads
        return order_uid in self.orders


class FakeCache:
    def __init__(self):
        self.entries: dict[str, Order] = {}
        self.calls: list[str] = []
        self.down = False
        self.fail_set_for: set[str] = set()

    async def get(self, order_uid):
        self.calls.append("get")
        if self.down:
            raise CacheError("redis get failed: connection refused")
        return self.entries.get(order_uid)

    async def set(self, order):
        self.calls.append("set")
        if self.down or order.order_uid in self.fail_set_for:
            raise CacheError("redis set failed: connection refused")
        self.entries[order.order_uid] = order


@pytest.fixture
def fake_repo():
    return FakeRepository()


@pytest.fixture
def fake_cache():
    return FakeCache()


# ── Kafka ────────────────────────────────────────


@dataclass(frozen=True)
class FakeTopicPartition:
    topic: str
    partition: int


@dataclass
class FakeRecord:
    topic: str
    partition: int
    offset: int
    value: bytes
    key: bytes | None = None


class FakeKafkaConsumer:
    """
    Mimics the slice of AIOKafkaConsumer the worker uses: getmany, seek,
    commit, start, stop. Sets ``idle_event`` once every record was handed out.
    """

    def __init__(self, topic: str = "orders", partition: int = 0):
        self.topic = topic
        self.tp = FakeTopicPartition(topic, partition)
        self.records: list[FakeRecord] = []
        self.position = 0
        self.committed: dict = {}
        self.commit_calls = 0
        self.fetches = 0
        self.start_failures: list[Exception] = []
        self.start_attempts = 0
        self.started = False
        self.stopped = False
        self.idle_event: asyncio.Event | None = None

    def publish(self, value: bytes | str, key: bytes | None = None) -> FakeRecord:
        if isinstance(value, str):
            value = value.encode()
        record = FakeRecord(self.topic, self.tp.partition, len(self.records), value, key)
        self.records.append(record)
        return record

    async def start(self):
        self.start_attempts += 1
        if self.start_failures:
            raise self.start_failures.pop(0)
        self.started = True

    async def stop(self):
        self.stopped = True

    async def getmany(self, timeout_ms=0):
        self.fetches += 1
        await asyncio.sleep(0)
        pending = self.records[self.position:]
        if not pending:
            if self.idle_event is not None:
                self.idle_event.set()
            return {}
        self.position = len(self.records)
        return {self.tp: list(pending)}

    def seek(self, tp, offset):
        self.position = offset

    async def commit(self, offsets):
        self.commit_calls += 1
        for tp, offset in offsets.items():
            key = (tp.topic, tp.partition)
            assert offset >= self.committed.get(key, 0), "commit moved backwards"
            self.committed[key] = offset

    def committed_offset(self) -> int:
        return self.committed.get((self.tp.topic, self.tp.partition), 0)


@pytest.fixture
def kafka():
    return FakeKafkaConsumer()
