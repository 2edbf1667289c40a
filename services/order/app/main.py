"""
Order Service — FastAPI エントリーポイント

注文の受付 (Order Coordinator)、undecided の照合 (バックグラウンドワーカー)、
確定結果の通知 (SSE) を提供する。

┌────────┐ POST /api/orders ┌───────────────┐  deduct (T 秒まで)  ┌───────────────────┐
│ Client │ ───────────────▶ │ Order Service │ ─────────────────▶ │ Inventory Service │
│        │ ◀─── SSE ─────── │               │                    │  (冪等な引き落とし) │
└────────┘                  └──────┬────────┘                    └───────────────────┘
                                   │ タイムアウト → undecided
                          ┌────────▼─────────┐   再問い合わせ (冪等)
                          │ Redis 遅延キュー   │ ─▶ 照合ワーカー ─▶ 確定 ─▶ Pub/Sub ─▶ SSE
                          └──────────────────┘
"""

import asyncio
import json
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone

import httpx
import redis.asyncio as aioredis
from fastapi import FastAPI, Header, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel
from redis.exceptions import RedisError
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

from . import config, queries, status_events
from .coordinator import InvalidOrder, OrderCoordinator, PlacementResult
from .events import CONFIRMED, TERMINAL_STATUSES, UNDECIDED, OrderStatusChanged
from .inventory_client import InventoryClient
from .retry_queue import RetryQueue
from .status_events import OrderStatusBus
from .worker import ReconciliationWorker

logging.basicConfig(
    level=config.LOG_LEVEL,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

engine = create_async_engine(config.DATABASE_URL, echo=False)
async_session = sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

redis_pool: aioredis.Redis | None = None
http_client: httpx.AsyncClient | None = None
inventory: InventoryClient | None = None
status_bus: OrderStatusBus | None = None
coordinator: OrderCoordinator | None = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """起動時に照合ワーカーをバックグラウンドタスクとして開始する。"""
    global redis_pool, http_client, inventory, status_bus, coordinator
    redis_pool = aioredis.from_url(config.REDIS_URL, decode_responses=True)
    http_client = httpx.AsyncClient(timeout=config.RECONCILE_TIMEOUT_SECONDS)
    inventory = InventoryClient(config.INVENTORY_SERVICE_URL, http_client)
    queue = RetryQueue(redis_pool)
    status_bus = OrderStatusBus(redis_pool)
    coordinator = OrderCoordinator(
        async_session,
        inventory,
        queue,
        status_bus,
        deduct_timeout=config.INVENTORY_TIMEOUT_SECONDS,
        max_attempts=config.RETRY_MAX_ATTEMPTS,
        initial_delay=config.RETRY_INITIAL_DELAY_SECONDS,
    )
    worker = ReconciliationWorker(
        async_session,
        inventory,
        queue,
        status_bus,
        reconcile_timeout=config.RECONCILE_TIMEOUT_SECONDS,
        initial_delay=config.RETRY_INITIAL_DELAY_SECONDS,
        poll_interval=config.WORKER_POLL_INTERVAL_SECONDS,
        error_backoff=config.WORKER_ERROR_BACKOFF_SECONDS,
    )

    shutdown_event = asyncio.Event()
    worker_task = asyncio.create_task(worker.run(shutdown_event))
    yield
    shutdown_event.set()
    worker_task.cancel()
    try:
        await worker_task
    except asyncio.CancelledError:
        pass
    await http_client.aclose()
    await redis_pool.aclose()
    await engine.dispose()


app = FastAPI(title="Order Service", lifespan=lifespan)


@app.exception_handler(RequestValidationError)
async def handle_validation_error(request: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=400,
        content={"error": {"code": "BAD_REQUEST", "message": "Invalid input"}},
    )


# ── Request Models ───────────────────────────────


class PlaceOrderRequest(BaseModel):
    product_id: str | None = None
    quantity: int | None = None
    idempotency_key: str | None = None


# ── Command Endpoints ────────────────────────────


@app.post("/api/orders")
async def place_order(
    req: PlaceOrderRequest,
    x_request_id: str | None = Header(default=None),
    x_correlation_id: str | None = Header(default=None),
):
    """
    注文を受け付ける。

    確定 (confirmed / failed) なら 200、引き落としの結果が分からなければ 503。
    503 のときはクライアントは idempotency_key = order_id で再送するか、
    /api/orders/{order_id}/events で確定を待つ。
    """
    try:
        result = await coordinator.place_order(
            req.product_id,
            req.quantity,
            idempotency_key=req.idempotency_key,
            request_id=x_request_id,
            correlation_id=x_correlation_id,
        )
    except InvalidOrder as e:
        return JSONResponse(
            status_code=400,
            content={"error": {"code": "BAD_REQUEST", "message": str(e)}},
        )
    return _placement_response(result)


def _placement_response(result: PlacementResult) -> JSONResponse:
    order = result.order
    if result.status == UNDECIDED:
        return JSONResponse(
            status_code=503,
            content={
                "order_id": order["order_id"],
                "status": UNDECIDED,
                "error": {
                    "code": result.error_code or "TIMEOUT",
                    "message": order["error_message"],
                    "timestamp": datetime.now(timezone.utc).isoformat(),
                },
            },
        )
    return JSONResponse(
        status_code=200,
        content={
            "order_id": order["order_id"],
            "status": order["status"],
            "product_id": order["product_id"],
            "quantity": order["quantity"],
            "message": "Order placed and fulfilled"
            if order["status"] == CONFIRMED
            else order["error_message"],
            "timestamp": order["updated_at"],
        },
    )


# ── 確定待ち (SSE) ───────────────────────────────


def _sse(data: dict, event: str | None = None) -> str:
    prefix = f"event: {event}\n" if event else ""
    return f"{prefix}data: {json.dumps(data, default=str)}\n\n"


async def _stored_resolution(order_id: str) -> OrderStatusChanged | None:
    async with async_session() as session:
        order = await queries.get_order(session, order_id)
    if order is None or order["status"] not in TERMINAL_STATUSES:
        return None
    return OrderStatusChanged(
        order_id=order_id,
        status=order["status"],
        error_message=order["error_message"],
        timestamp=order["updated_at"],
    )


async def _status_stream(order_id: str):
    yield _sse(
        {
            "type": "connected",
            "order_id": order_id,
            "message": "Listening for status updates...",
        }
    )
    try:
        event = await status_events.wait_for_resolution(
            status_bus, async_session, order_id, config.LISTENER_TIMEOUT_SECONDS
        )
    except RedisError:
        # 通知が受け取れないので、保存済みの注文行で答える
        logger.warning("Status subscription failed for order %s", order_id, exc_info=True)
        event = await _stored_resolution(order_id)

    if event is None:
        yield _sse(
            {
                "type": "timeout",
                "order_id": order_id,
                "status": UNDECIDED,
                "message": "No update received within timeout period",
            }
        )
    else:
        yield _sse(event.model_dump(), event="status_update")


@app.get("/api/orders/{order_id}/events")
async def order_status_events(order_id: str):
    """
    undecided の注文の確定を待つ (Server-Sent Events)。

    既に確定していれば JSON をすぐ返す。
    それ以外はイベント 1 件、またはタイムアウト通知を送って閉じる。
    """
    async with async_session() as session:
        order = await queries.get_order(session, order_id)
    if not order:
        raise HTTPException(404, "Order not found")

    if order["status"] in TERMINAL_STATUSES:
        return {
            "order_id": order_id,
            "status": order["status"],
            "error_message": order["error_message"],
            "message": "Order already resolved",
        }

    return StreamingResponse(
        _status_stream(order_id),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )


# ── Query Endpoints (Read 側) ────────────────────


@app.get("/queries/orders")
async def query_list_orders(status: str | None = None, limit: int = 50, offset: int = 0):
    async with async_session() as session:
        return await queries.list_orders(session, status, limit, offset)


@app.get("/queries/orders/{order_id}")
async def query_get_order(order_id: str):
    async with async_session() as session:
        order = await queries.get_order(session, order_id)
        if not order:
            raise HTTPException(404, "Order not found")
        return order


@app.get("/internal/orders/stats")
async def get_order_stats():
    async with async_session() as session:
        return await queries.order_stats(session)


@app.get("/health")
async def health():
    db_healthy = True
    try:
        async with async_session() as session:
            await session.execute(text("SELECT 1"))
    except (SQLAlchemyError, OSError):
        logger.warning("Database health check failed", exc_info=True)
        db_healthy = False

    redis_healthy = redis_pool is not None
    if redis_healthy:
        try:
            await redis_pool.ping()
        except RedisError:
            redis_healthy = False

    inventory_healthy = await inventory.is_healthy() if inventory else False

    if not db_healthy:
        status = "unhealthy"
    elif redis_healthy and inventory_healthy:
        status = "healthy"
    else:
        status = "degraded"

    return JSONResponse(
        status_code=503 if status == "unhealthy" else 200,
        content={
            "status": status,
            "service": "order-service",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "database": "healthy" if db_healthy else "unhealthy",
            "redis": "healthy" if redis_healthy else "unhealthy",
            "inventory_service": "healthy" if inventory_healthy else "unhealthy",
        },
    )
