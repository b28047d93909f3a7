"""
Order Service — HTTP API

  GET  /order/{order_uid}   リードスルーで注文を取得
  POST /orders              注文を直接登録 (Kafka と同じ保存経路)

ユースケースは lifespan で app.state に載せ、依存関数経由で受け取る。
"""

import logging

from fastapi import APIRouter, Depends, Request, Response
from fastapi.responses import JSONResponse

from .errors import (
    DecodeError,
    DuplicateOrderError,
    InvalidOrderError,
    OrderNotFoundError,
    OrderServiceError,
)
from .models import decode_order, encode_order
from .usecases import GetOrderUseCase, SaveOrderUseCase

logger = logging.getLogger(__name__)

router = APIRouter()


def get_order_use_case(request: Request) -> GetOrderUseCase:
    return request.app.state.get_order


def save_order_use_case(request: Request) -> SaveOrderUseCase:
    return request.app.state.save_order


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message})


# ── Query ────────────────────────────────────────


@router.get("/order")
@router.get("/order/")
async def get_order_without_uid():
    logger.warning("Missing order_uid parameter")
    return _error(400, "order_uid is required")


@router.get("/order/{order_uid}")
async def get_order(order_uid: str, use_case: GetOrderUseCase = Depends(get_order_use_case)):
    """注文を取得する。キャッシュにあればストアには問い合わせない。"""
    if not order_uid.strip():
        logger.warning("Missing order_uid parameter")
        return _error(400, "order_uid is required")

    try:
        order = await use_case.execute(order_uid)
    except OrderNotFoundError:
        return _error(404, "order not found")
    except OrderServiceError as exc:
        logger.error("Failed to get order order_uid=%s kind=%s: %s", order_uid, exc.kind, exc)
        return _error(500, "failed to get order")

    return Response(content=encode_order(order), media_type="application/json")


# ── Command ──────────────────────────────────────


@router.post("/orders")
async def create_order(request: Request, use_case: SaveOrderUseCase = Depends(save_order_use_case)):
    """注文を登録する。ボディは Kafka メッセージと同じ JSON。"""
    try:
        order = decode_order(await request.body())
    except DecodeError as exc:
        logger.warning("Invalid request body: %s", exc)
        return _error(400, "invalid request body")

    try:
        await use_case.execute(order)
    except DuplicateOrderError:
        return _error(409, "order already exists")
    except InvalidOrderError:
        return _error(400, "invalid order data")
    except OrderServiceError as exc:
        logger.error("Failed to save order order_uid=%s kind=%s: %s", order.order_uid, exc.kind, exc)
        return _error(500, "internal server error")

    return JSONResponse(status_code=201, content={"order_uid": order.order_uid, "status": "created"})


@router.get("/health")
async def health():
    return {"status": "ok", "service": "order-service"}
