"""
Order Service — 注文バリデーション

バリデーションはストアとの契約ではなくポリシー。
ルールを厳しくしてもマイグレーションが不要になるよう、
ユースケースと同じ場所に置いている。

違反は最初の 1 件で止めず、すべて集めて InvalidOrderError にまとめる。
フィールドは "delivery.email" / "items[0].price" のようなパスで報告する。
"""

import re
from datetime import datetime

from .errors import InvalidOrderError
from .models import Delivery, Item, Order, Payment

MAX_UID_LENGTH = 64
MAX_TEXT_LENGTH = 255
MAX_DATE_LENGTH = 64

# カラム型の上限 (INTEGER / BIGINT)
MAX_INT32 = 2**31 - 1
MAX_INT64 = 2**63 - 1

_PHONE_RE = re.compile(r"^\+[1-9]\d{1,14}$")
_EMAIL_RE = re.compile(
    r"^[A-Za-z0-9!#$%&'*+/=?^_`{|}~-]+(\.[A-Za-z0-9!#$%&'*+/=?^_`{|}~-]+)*"
    r"@[A-Za-z0-9]([A-Za-z0-9-]{0,61}[A-Za-z0-9])?"
    r"(\.[A-Za-z0-9]([A-Za-z0-9-]{0,61}[A-Za-z0-9])?)+$"
)
_RFC3339_RE = re.compile(
    r"^(\d{4}-\d{2}-\d{2})[Tt](\d{2}:\d{2}:\d{2})(\.\d+)?([Zz]|[+-]\d{2}:\d{2})$"
)
_CURRENCY_RE = re.compile(r"^[A-Za-z]{3}$")


def is_rfc3339(value: str) -> bool:
    match = _RFC3339_RE.match(value)
    if not match:
        return False
    date, time, fraction, offset = match.groups()
    # fromisoformat は小数秒 6 桁まで
    fraction = (fraction or "")[:7]
    offset = "+00:00" if offset in ("Z", "z") else offset
    try:
        datetime.fromisoformat(f"{date}T{time}{fraction}{offset}")
    except ValueError:
        return False
    return True


def is_email(value: str) -> bool:
    return len(value) <= MAX_TEXT_LENGTH and bool(_EMAIL_RE.match(value))


def is_phone(value: str) -> bool:
    return bool(_PHONE_RE.match(value))


class _Collector:
    def __init__(self) -> None:
        self.violations: list[tuple[str, str]] = []

    def add(self, field: str, rule: str) -> None:
        self.violations.append((field, rule))

    def required(self, field: str, value: str, max_length: int = MAX_TEXT_LENGTH) -> None:
        if not value:
            self.add(field, "required")
        elif len(value) > max_length:
            self.add(field, f"max length {max_length}")

    def optional(self, field: str, value: str) -> None:
        if len(value) > MAX_TEXT_LENGTH:
            self.add(field, f"max length {MAX_TEXT_LENGTH}")

    def positive(self, field: str, value: int, max_value: int = MAX_INT64) -> None:
        if value <= 0:
            self.add(field, "must be greater than 0")
        elif value > max_value:
            self.add(field, f"must be at most {max_value}")

    def non_negative(self, field: str, value: int, max_value: int = MAX_INT64) -> None:
        if value < 0:
            self.add(field, "must not be negative")
        elif value > max_value:
            self.add(field, f"must be at most {max_value}")


def _check_delivery(c: _Collector, d: Delivery) -> None:
    c.required("delivery.name", d.name)
    if not is_phone(d.phone):
        c.add("delivery.phone", "must be E.164")
    c.required("delivery.zip", d.zip)
    c.required("delivery.city", d.city)
    c.required("delivery.address", d.address)
    c.required("delivery.region", d.region)
    if not is_email(d.email):
        c.add("delivery.email", "must be a valid email")


def _check_payment(c: _Collector, p: Payment) -> None:
    c.required("payment.transaction", p.transaction)
    c.optional("payment.request_id", p.request_id)
    if not _CURRENCY_RE.match(p.currency):
        c.add("payment.currency", "must be a 3-letter code")
    c.required("payment.provider", p.provider)
    c.positive("payment.amount", p.amount)
    c.positive("payment.payment_dt", p.payment_dt)
    c.required("payment.bank", p.bank)
    c.non_negative("payment.delivery_cost", p.delivery_cost)
    c.non_negative("payment.goods_total", p.goods_total)
    c.non_negative("payment.custom_fee", p.custom_fee)


def _check_item(c: _Collector, i: int, item: Item) -> None:
    prefix = f"items[{i}]"
    c.positive(f"{prefix}.chrt_id", item.chrt_id)
    c.required(f"{prefix}.track_number", item.track_number)
    c.positive(f"{prefix}.price", item.price)
    c.required(f"{prefix}.rid", item.rid)
    c.required(f"{prefix}.name", item.name)
    if not 0 <= item.sale <= 100:
        c.add(f"{prefix}.sale", "must be between 0 and 100")
    c.required(f"{prefix}.size", item.size)
    c.non_negative(f"{prefix}.total_price", item.total_price)
    c.positive(f"{prefix}.nm_id", item.nm_id)
    c.required(f"{prefix}.brand", item.brand)
    c.non_negative(f"{prefix}.status", item.status, MAX_INT32)


def collect_violations(order: Order) -> list[tuple[str, str]]:
    c = _Collector()

    c.required("order_uid", order.order_uid, MAX_UID_LENGTH)
    c.required("track_number", order.track_number)
    c.required("entry", order.entry)
    c.required("locale", order.locale)
    c.optional("internal_signature", order.internal_signature)
    c.required("customer_id", order.customer_id)
    c.required("delivery_service", order.delivery_service)
    c.required("shardkey", order.shardkey)
    c.non_negative("sm_id", order.sm_id, MAX_INT32)
    if len(order.date_created) > MAX_DATE_LENGTH:
        c.add("date_created", f"max length {MAX_DATE_LENGTH}")
    elif not is_rfc3339(order.date_created):
        c.add("date_created", "must be an RFC 3339 timestamp")
    c.required("oof_shard", order.oof_shard)

    _check_delivery(c, order.delivery)
    _check_payment(c, order.payment)

    if not order.items:
        c.add("items", "at least one item required")
    for i, item in enumerate(order.items):
        _check_item(c, i, item)

    return c.violations


def validate_order(order: Order) -> None:
    """違反があれば InvalidOrderError を送出する。"""
    violations = collect_violations(order)
    if violations:
        raise InvalidOrderError(violations)
