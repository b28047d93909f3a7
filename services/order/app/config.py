"""
Order Service — 設定

環境変数から設定を読み込む。POSTGRES_USER / POSTGRES_PASSWORD は必須で、
欠けている場合は ConfigError となりプロセスは非ゼロで終了する。

時間は Go 形式 ("10s", "500ms", "1m30s") か秒数で指定できる。
"""

import os
import re
from collections.abc import Mapping
from urllib.parse import quote_plus

from pydantic import BaseModel

from .errors import ConfigError

_DURATION_PART_RE = re.compile(r"(\d+(?:\.\d+)?)(ms|h|m|s)")
_DURATION_UNITS = {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0}
_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off", ""}


def parse_duration(value: str) -> float:
    """ "10s" / "1m30s" / "250ms" / "5" を秒数に変換する。"""
    value = value.strip()
    if not value:
        raise ValueError("empty duration")
    try:
        return float(value)
    except ValueError:
        pass
    pos = 0
    total = 0.0
    for match in _DURATION_PART_RE.finditer(value):
        if match.start() != pos:
            raise ValueError(f"invalid duration: {value!r}")
        total += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
        pos = match.end()
    if pos != len(value):
        raise ValueError(f"invalid duration: {value!r}")
    return total


def _parse_bool(value: str) -> bool:
    lowered = value.strip().lower()
    if lowered in _TRUE_VALUES:
        return True
    if lowered in _FALSE_VALUES:
        return False
    raise ValueError(f"invalid boolean: {value!r}")


class Settings(BaseModel):
    http_port: int = 8080
    shutdown_timeout: float = 10.0

    postgres_user: str
    postgres_password: str
    postgres_host: str = "postgres"
    postgres_port: int = 5432
    postgres_db: str = "orders_db"

    kafka_broker: str = "localhost:9092"
    kafka_topic: str = "orders"
    kafka_group_id: str = "orders_group"
    kafka_retry_backoff: float = 1.0

    redis_addr: str = "localhost:6379"
    cache_write_strict: bool = False

    log_level: str = "INFO"
    web_dir: str = "./web"

    @property
    def database_url(self) -> str:
        return (
            f"postgresql+asyncpg://{quote_plus(self.postgres_user)}:{quote_plus(self.postgres_password)}"
            f"@{self.postgres_host}:{self.postgres_port}/{self.postgres_db}"
        )

    @property
    def redis_url(self) -> str:
        return f"redis://{self.redis_addr}/0"


def load_settings(environ: Mapping[str, str] | None = None) -> Settings:
    env = os.environ if environ is None else environ

    missing = [name for name in ("POSTGRES_USER", "POSTGRES_PASSWORD") if not env.get(name)]
    if missing:
        raise ConfigError(f"missing required environment variables: {', '.join(missing)}")

    try:
        return Settings(
            http_port=int(env.get("HTTP_PORT", "8080").lstrip(":")),
            shutdown_timeout=parse_duration(env.get("SHUTDOWN_TIMEOUT", "10s")),
            postgres_user=env["POSTGRES_USER"],
            postgres_password=env["POSTGRES_PASSWORD"],
            postgres_host=env.get("POSTGRES_HOST", "postgres"),
            postgres_port=int(env.get("POSTGRES_PORT", "5432")),
            postgres_db=env.get("POSTGRES_DB", "orders_db"),
            kafka_broker=env.get("KAFKA_BROKER", "localhost:9092"),
            kafka_topic=env.get("KAFKA_TOPIC", "orders"),
            kafka_group_id=env.get("KAFKA_GROUP_ID", "orders_group"),
            kafka_retry_backoff=parse_duration(env.get("KAFKA_RETRY_BACKOFF", "1s")),
            redis_addr=env.get("REDIS_ADDR", "localhost:6379"),
            cache_write_strict=_parse_bool(env.get("CACHE_WRITE_STRICT", "false")),
            log_level=env.get("LOG_LEVEL", "INFO").upper(),
            web_dir=env.get("WEB_DIR", "./web"),
        )
    except ValueError as exc:
        # pydantic.ValidationError も ValueError のサブクラス
        raise ConfigError(f"invalid configuration: {exc}") from exc
