"""
Order Service — 起動スクリプト

    python -m app

設定エラー・DB 不通・マイグレーション失敗では終了コード 1 で終了する。
SIGINT / SIGTERM で HTTP をドレインしてから各コンポーネントを閉じる。
"""

import logging
import sys

import uvicorn

from .config import load_settings
from .errors import ConfigError
from .main import create_app

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"


def main() -> int:
    try:
        settings = load_settings()
    except ConfigError as exc:
        logging.basicConfig(level=logging.INFO, format=LOG_FORMAT)
        logging.getLogger("app").critical("Failed to load config: %s", exc)
        return 1

    logging.basicConfig(level=settings.log_level, format=LOG_FORMAT)

    server = uvicorn.Server(
        uvicorn.Config(
            create_app(settings),
            host="0.0.0.0",
            port=settings.http_port,
            timeout_graceful_shutdown=settings.shutdown_timeout,
            log_config=None,
        )
    )
    server.run()
    if not server.started:
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
