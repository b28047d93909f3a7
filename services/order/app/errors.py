"""
Order Service — エラー定義

すべてのドメインエラーは OrderServiceError を継承し、
機械可読な kind と人間向けのメッセージを持つ。

呼び出し側はメッセージ文字列ではなく例外クラスで分岐する:
  - Kafka コンシューマ: コミットするか / リトライするかの判定
  - HTTP ハンドラ:     ステータスコードへの変換

  OrderServiceError
  ├─ InvalidOrderError        バリデーション違反 (poison)
  ├─ DuplicateOrderError      order_uid が既に存在
  ├─ OrderNotFoundError       読み取り時に存在しない
  ├─ StoreError               リレーショナルストアの失敗
  │   ├─ DuplicateKeyError        UNIQUE 制約違反
  │   ├─ ConstraintViolationError カラム長・値域・関連行の拒否 (poison)
  │   └─ StoreUnavailableError    接続レベルの失敗
  ├─ CacheError               Redis 不通・シリアライズ失敗
  ├─ DecodeError              不正な JSON
  └─ ConfigError              必須設定の欠落 (起動失敗)
"""


class OrderServiceError(Exception):
    kind = "internal"

    def __init__(self, message: str = "") -> None:
        super().__init__(message or self.kind)
        self.message = message or self.kind


class InvalidOrderError(OrderServiceError):
    """注文がスキーマ・フィールド制約を満たさない"""

    kind = "invalid_order"

    def __init__(self, violations: list[tuple[str, str]]) -> None:
        self.violations = violations
        detail = "; ".join(f"{field}: {rule}" for field, rule in violations)
        super().__init__(f"invalid order data: {detail}")

    @property
    def field(self) -> str | None:
        return self.violations[0][0] if self.violations else None


class DuplicateOrderError(OrderServiceError):
    kind = "duplicate_order"


class OrderNotFoundError(OrderServiceError):
    kind = "not_found"


class StoreError(OrderServiceError):
    kind = "store_error"


class DuplicateKeyError(StoreError):
    kind = "duplicate_key"


class ConstraintViolationError(StoreError):
    kind = "constraint_violation"


class StoreUnavailableError(StoreError):
    kind = "store_unavailable"


class CacheError(OrderServiceError):
    kind = "cache_error"


class DecodeError(OrderServiceError):
    kind = "decode_error"


class ConfigError(OrderServiceError):
    kind = "config_error"


def is_retryable(exc: BaseException) -> bool:
    """オフセットをコミットせず再取得すべきエラーか。"""
    if isinstance(exc, (DuplicateKeyError, ConstraintViolationError)):
        return False
    return isinstance(exc, (StoreError, CacheError))
