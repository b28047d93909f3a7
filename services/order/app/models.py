"""
Order Service — 注文集約 (Order Aggregate)

注文は 1 つの集約として扱う:

  Order (orders)
  ├─ Delivery (delivery)  1:1
  ├─ Payment  (payment)   1:1
  └─ Item     (items)     1:N

同じ JSON 表現を Kafka メッセージ・HTTP レスポンス・Redis キャッシュで共有する。
ここでは型だけを検査し、業務ルールは validation.py に置く。
欠けたフィールドはゼロ値になるので、空の注文もデコードは成功し
バリデーションで弾かれる。

注文は書き込み後に変更されない (immutable) ため、モデルは frozen にしている。
"""

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .errors import DecodeError

_MODEL_CONFIG = ConfigDict(strict=True, frozen=True, extra="ignore")


class Delivery(BaseModel):
    model_config = _MODEL_CONFIG

    name: str = ""
    phone: str = ""
    zip: str = ""
    city: str = ""
    address: str = ""
    region: str = ""
    email: str = ""


class Payment(BaseModel):
    model_config = _MODEL_CONFIG

    transaction: str = ""
    request_id: str = ""
    currency: str = ""
    provider: str = ""
    amount: int = 0
    payment_dt: int = 0
    bank: str = ""
    delivery_cost: int = 0
    goods_total: int = 0
    custom_fee: int = 0


class Item(BaseModel):
    model_config = _MODEL_CONFIG

    chrt_id: int = 0
    track_number: str = ""
    price: int = 0
    rid: str = ""
    name: str = ""
    sale: int = 0
    size: str = ""
    total_price: int = 0
    nm_id: int = 0
    brand: str = ""
    status: int = 0


class Order(BaseModel):
    """
    注文集約のルート。

    フィールドの宣言順がそのまま JSON のキー順になる。
    キャッシュの値はこの順序でシリアライズされたバイト列。
    """

    model_config = _MODEL_CONFIG

    order_uid: str = ""
    track_number: str = ""
    entry: str = ""
    delivery: Delivery = Field(default_factory=Delivery)
    payment: Payment = Field(default_factory=Payment)
    items: list[Item] = Field(default_factory=list)
    locale: str = ""
    internal_signature: str = ""
    customer_id: str = ""
    delivery_service: str = ""
    shardkey: str = ""
    sm_id: int = 0
    date_created: str = ""
    oof_shard: str = ""


def decode_order(raw: bytes | str) -> Order:
    """JSON を Order にデコードする。構文・型の誤りは DecodeError。"""
    try:
        return Order.model_validate_json(raw)
    except ValidationError as exc:
        raise DecodeError(f"failed to decode order: {exc.error_count()} error(s)") from exc


def encode_order(order: Order) -> str:
    return order.model_dump_json()
