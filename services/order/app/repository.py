"""
Order Service — 注文リポジトリ

5 テーブルにまたがる注文集約を 1 つの単位として読み書きする。

  save の状態遷移:
  ┌───────┐   ┌────────┐   ┌──────────┐   ┌─────────┐   ┌───────────┐   ┌────────┐
  │ BEGIN │──▶│ orders │──▶│ delivery │──▶│ payment │──▶│ items[0‥n]│──▶│ COMMIT │
  └───────┘   └────────┘   └──────────┘   └─────────┘   └───────────┘   └────────┘
       どの遷移で失敗しても (キャンセルも含めて) ROLLBACK し、ストアは変わらない。

order_uid の UNIQUE 制約が冪等性キーになる。
コミット失敗は内部でリトライしない。呼び出し側 (Kafka の at-least-once) が再送する。
"""

import asyncio
import logging

from sqlalchemy import bindparam, text
from sqlalchemy.exc import (
    DataError,
    DBAPIError,
    IntegrityError,
    InterfaceError,
    OperationalError,
    SQLAlchemyError,
)
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import sessionmaker

from .errors import (
    ConstraintViolationError,
    DuplicateKeyError,
    OrderNotFoundError,
    StoreError,
    StoreUnavailableError,
)
from .models import Delivery, Item, Order, Payment

logger = logging.getLogger(__name__)

ITEMS_BATCH_SIZE = 1000

_UNIQUE_VIOLATION = "23505"

_HEADER_COLUMNS = """
    o.order_uid, o.track_number, o.entry, o.locale, o.internal_signature,
    o.customer_id, o.delivery_service, o.shardkey, o.sm_id, o.date_created, o.oof_shard,
    d.name AS d_name, d.phone AS d_phone, d.zip AS d_zip, d.city AS d_city,
    d.address AS d_address, d.region AS d_region, d.email AS d_email,
    p."transaction" AS p_transaction, p.request_id AS p_request_id,
    p.currency AS p_currency, p.provider AS p_provider, p.amount AS p_amount,
    p.payment_dt AS p_payment_dt, p.bank AS p_bank, p.delivery_cost AS p_delivery_cost,
    p.goods_total AS p_goods_total, p.custom_fee AS p_custom_fee
"""

_HEADER_FROM = """
    FROM orders o
    JOIN delivery d ON d.order_uid = o.order_uid
    JOIN payment p ON p.order_uid = o.order_uid
"""

_ITEM_COLUMNS = """
    order_uid, chrt_id, track_number, price, rid, name, sale,
    size, total_price, nm_id, brand, status
"""


def _sqlstate(exc: DBAPIError) -> str | None:
    for candidate in (exc.orig, getattr(exc.orig, "__cause__", None)):
        if candidate is None:
            continue
        code = getattr(candidate, "sqlstate", None) or getattr(candidate, "pgcode", None)
        if code:
            return str(code)
    return None


def _is_value_rejection(exc: DBAPIError) -> bool:
    # asyncpg はエンコードできない値 (int64 超過など) をクライアント側で弾く
    cause = getattr(exc.orig, "__cause__", None)
    return isinstance(exc.orig, ValueError) or isinstance(cause, ValueError)


def _translate(exc: BaseException, action: str) -> StoreError:
    """インフラ例外をドメインの StoreError 系に包み直す。"""
    if isinstance(exc, IntegrityError):
        code = _sqlstate(exc)
        if code == _UNIQUE_VIOLATION or (code is None and "UNIQUE" in str(exc.orig)):
            return DuplicateKeyError(f"{action}: order already exists")
        return ConstraintViolationError(f"{action}: {exc.orig}")
    if isinstance(exc, DataError) or (isinstance(exc, DBAPIError) and _is_value_rejection(exc)):
        return ConstraintViolationError(f"{action}: {exc.orig}")
    if isinstance(exc, (OperationalError, InterfaceError)):
        return StoreUnavailableError(f"{action}: {exc.orig}")
    if isinstance(exc, DBAPIError) and exc.connection_invalidated:
        return StoreUnavailableError(f"{action}: connection lost")
    if isinstance(exc, (OSError, asyncio.TimeoutError)):
        return StoreUnavailableError(f"{action}: {exc}")
    if isinstance(exc, (OverflowError, ValueError)):
        return ConstraintViolationError(f"{action}: {exc}")
    return StoreError(f"{action}: {exc}")


_STORE_EXCEPTIONS = (SQLAlchemyError, OSError, asyncio.TimeoutError, OverflowError, ValueError)


def _order_from_row(row, items: list[Item]) -> Order:
    return Order(
        order_uid=row.order_uid,
        track_number=row.track_number,
        entry=row.entry,
        delivery=Delivery(
            name=row.d_name,
            phone=row.d_phone,
            zip=row.d_zip,
            city=row.d_city,
            address=row.d_address,
            region=row.d_region,
            email=row.d_email,
        ),
        payment=Payment(
            transaction=row.p_transaction,
            request_id=row.p_request_id,
            currency=row.p_currency,
            provider=row.p_provider,
            amount=row.p_amount,
            payment_dt=row.p_payment_dt,
            bank=row.p_bank,
            delivery_cost=row.p_delivery_cost,
            goods_total=row.p_goods_total,
            custom_fee=row.p_custom_fee,
        ),
        items=items,
        locale=row.locale,
        internal_signature=row.internal_signature,
        customer_id=row.customer_id,
        delivery_service=row.delivery_service,
        shardkey=row.shardkey,
        sm_id=row.sm_id,
        date_created=row.date_created,
        oof_shard=row.oof_shard,
    )


def _item_from_row(row) -> Item:
    return Item(
        chrt_id=row.chrt_id,
        track_number=row.track_number,
        price=row.price,
        rid=row.rid,
        name=row.name,
        sale=row.sale,
        size=row.size,
        total_price=row.total_price,
        nm_id=row.nm_id,
        brand=row.brand,
        status=row.status,
    )


class OrderRepository:
    """PostgreSQL 上の注文集約リポジトリ"""

    def __init__(self, session_factory: sessionmaker) -> None:
        self._session_factory = session_factory

    async def save(self, order: Order) -> None:
        """
        注文集約を 1 トランザクションで保存する。

        - order_uid が既に存在 → DuplicateKeyError
        - カラム長超過・関連行の拒否 → ConstraintViolationError
        - 接続レベルの失敗 → StoreUnavailableError
        """
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    await self._insert_aggregate(session, order)
        except _STORE_EXCEPTIONS as exc:
            error = _translate(exc, "failed to save order")
            logger.warning("Order save rolled back order_uid=%s kind=%s", order.order_uid, error.kind)
            raise error from exc

    async def _insert_aggregate(self, session: AsyncSession, order: Order) -> None:
        await session.execute(
            text("""
                INSERT INTO orders (
                    order_uid, track_number, entry, locale, internal_signature,
                    customer_id, delivery_service, shardkey, sm_id, date_created, oof_shard
                ) VALUES (
                    :order_uid, :track_number, :entry, :locale, :internal_signature,
                    :customer_id, :delivery_service, :shardkey, :sm_id, :date_created, :oof_shard
                )
            """),
            order.model_dump(exclude={"delivery", "payment", "items"}),
        )

        await session.execute(
            text("""
                INSERT INTO delivery (order_uid, name, phone, zip, city, address, region, email)
                VALUES (:order_uid, :name, :phone, :zip, :city, :address, :region, :email)
            """),
            {"order_uid": order.order_uid, **order.delivery.model_dump()},
        )

        await session.execute(
            text("""
                INSERT INTO payment (
                    order_uid, "transaction", request_id, currency, provider, amount,
                    payment_dt, bank, delivery_cost, goods_total, custom_fee
                ) VALUES (
                    :order_uid, :transaction, :request_id, :currency, :provider, :amount,
                    :payment_dt, :bank, :delivery_cost, :goods_total, :custom_fee
                )
            """),
            {"order_uid": order.order_uid, **order.payment.model_dump()},
        )

        if order.items:
            await session.execute(
                text("""
                    INSERT INTO items (
                        order_uid, item_idx, chrt_id, track_number, price, rid, name,
                        sale, size, total_price, nm_id, brand, status
                    ) VALUES (
                        :order_uid, :item_idx, :chrt_id, :track_number, :price, :rid, :name,
                        :sale, :size, :total_price, :nm_id, :brand, :status
                    )
                """),
                [
                    {"order_uid": order.order_uid, "item_idx": idx, **item.model_dump()}
                    for idx, item in enumerate(order.items)
                ],
            )

    async def get_by_uid(self, order_uid: str) -> Order:
        """
        注文集約を取得する。

        ヘッダ・配送・支払は 1 回の JOIN、明細はもう 1 回のクエリで読み、
        どちらも同じトランザクション内で実行する。
        集約は 1 トランザクションでまとめてコミットされるので、
        ヘッダが見えていれば配送・支払・明細も必ず見える。
        """
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    result = await session.execute(
                        text(f"SELECT {_HEADER_COLUMNS} {_HEADER_FROM} WHERE o.order_uid = :uid"),
                        {"uid": order_uid},
                    )
                    row = result.fetchone()
                    if row is None:
                        raise OrderNotFoundError(f"order {order_uid} not found")

                    item_result = await session.execute(
                        text(f"""
                            SELECT {_ITEM_COLUMNS}
                            FROM items
                            WHERE order_uid = :uid
                            ORDER BY item_idx
                        """),
                        {"uid": order_uid},
                    )
                    items = [_item_from_row(r) for r in item_result.fetchall()]
        except _STORE_EXCEPTIONS as exc:
            raise _translate(exc, "failed to get order") from exc

        return _order_from_row(row, items)

    async def get_all(self) -> list[Order]:
        """
        全注文を order_uid 昇順で返す。

        N+1 を避けるため、ヘッダ類を JOIN 1 回で取得し、
        明細は order_uid IN (...) でまとめて取得してメモリ上で結合する。
        """
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    result = await session.execute(
                        text(f"SELECT {_HEADER_COLUMNS} {_HEADER_FROM} ORDER BY o.order_uid")
                    )
                    rows = result.fetchall()

                    items_by_uid: dict[str, list[Item]] = {row.order_uid: [] for row in rows}
                    uids = list(items_by_uid)
                    items_query = text(f"""
                        SELECT {_ITEM_COLUMNS}
                        FROM items
                        WHERE order_uid IN :uids
                        ORDER BY order_uid, item_idx
                    """).bindparams(bindparam("uids", expanding=True))

                    for start in range(0, len(uids), ITEMS_BATCH_SIZE):
                        batch = uids[start:start + ITEMS_BATCH_SIZE]
                        item_result = await session.execute(items_query, {"uids": batch})
                        for item_row in item_result.fetchall():
                            items_by_uid[item_row.order_uid].append(_item_from_row(item_row))
        except _STORE_EXCEPTIONS as exc:
            raise _translate(exc, "failed to get orders") from exc

        return [_order_from_row(row, items_by_uid[row.order_uid]) for row in rows]

    async def exists(self, order_uid: str) -> bool:
        try:
            async with self._session_factory() as session:
                result = await session.execute(
                    text("SELECT EXISTS(SELECT 1 FROM orders WHERE order_uid = :uid)"),
                    {"uid": order_uid},
                )
                return bool(result.scalar())
        except _STORE_EXCEPTIONS as exc:
            raise _translate(exc, "failed to check order existence") from exc
