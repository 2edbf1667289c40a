"""
Inventory Service — FastAPI エントリーポイント

在庫管理サービス。注文サービスからの引き落とし (冪等) を受け付ける。
商品と操作ログは自サービスの DB だけが持つ (Database per Service)。
"""

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from uuid import uuid4

from fastapi import FastAPI, Header, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

from . import commands, config, operations, queries
from .errors import InventoryError
from .events import ProductCreated, StockAdjusted, StockDeducted
from .latency import LatencyInjector

logging.basicConfig(
    level=config.LOG_LEVEL,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

engine = create_async_engine(config.DATABASE_URL, echo=False)
async_session = sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
latency = LatencyInjector(config.LATENCY_EVERY_NTH, config.LATENCY_DELAY_SECONDS)


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    await engine.dispose()


app = FastAPI(title="Inventory Service", lifespan=lifespan)


@app.exception_handler(InventoryError)
async def handle_inventory_error(request: Request, exc: InventoryError):
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": {"code": exc.code, "message": exc.message}},
    )


@app.exception_handler(RequestValidationError)
async def handle_validation_error(request: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=400,
        content={"error": {"code": "BAD_REQUEST", "message": "Invalid input"}},
    )


# ── Request Models ───────────────────────────────


class DeductRequest(BaseModel):
    order_id: str | None = None
    product_id: str | None = None
    quantity: int | None = None


class AdjustRequest(BaseModel):
    product_id: str | None = None
    adjustment: int | None = None
    reason: str | None = None
    notes: str | None = None


class CreateProductRequest(BaseModel):
    product_id: str | None = None
    name: str | None = None
    initial_stock: int | None = None


# ── Command Endpoints (サービス間) ────────────────


@app.post("/internal/inventory/deduct", response_model=StockDeducted)
async def cmd_deduct(
    req: DeductRequest,
    x_request_id: str | None = Header(default=None),
    x_correlation_id: str | None = Header(default=None),
):
    """在庫引き落とし (冪等)。同じ order_id なら何度呼んでも同じ結果。"""
    request_id = x_request_id or str(uuid4())
    correlation_id = x_correlation_id or str(uuid4())
    logger.info(
        "[%s] Deduct request: order=%s, product=%s, qty=%s",
        request_id, req.order_id, req.product_id, req.quantity,
    )
    async with async_session() as session:
        return await commands.deduct_stock(
            session,
            req.order_id,
            req.product_id,
            req.quantity,
            request_id=request_id,
            correlation_id=correlation_id,
            latency=latency,
        )


@app.post("/internal/inventory/adjust", response_model=StockAdjusted)
async def cmd_adjust(
    req: AdjustRequest,
    x_request_id: str | None = Header(default=None),
    x_correlation_id: str | None = Header(default=None),
):
    """手動在庫調整 (入荷・訂正・破損)"""
    async with async_session() as session:
        return await commands.adjust_stock(
            session,
            req.product_id,
            req.adjustment,
            req.reason,
            notes=req.notes,
            request_id=x_request_id or str(uuid4()),
            correlation_id=x_correlation_id or str(uuid4()),
        )


@app.post("/internal/inventory/products", status_code=201, response_model=ProductCreated)
async def cmd_create_product(req: CreateProductRequest):
    async with async_session() as session:
        return await commands.create_product(
            session, req.product_id, req.name, req.initial_stock
        )


@app.get("/internal/inventory/audit")
async def get_audit_log(product_id: str | None = None, limit: int = 100):
    """操作ログ (監査用)"""
    async with async_session() as session:
        logs = await operations.load_operations(session, product_id, limit)
        return {"logs": logs, "count": len(logs)}


# ── 遅延注入 (カオステスト用) ─────────────────────


@app.post("/internal/latency/enable")
async def enable_latency():
    latency.enable()
    return {"message": "Latency injection enabled", **latency.status()}


@app.post("/internal/latency/disable")
async def disable_latency():
    latency.disable()
    return {"message": "Latency injection disabled", **latency.status()}


@app.get("/internal/latency/status")
async def latency_status():
    return latency.status()


# ── Query Endpoints (Read 側) ────────────────────


@app.get("/queries/products")
async def query_list_products(in_stock_only: bool = False, limit: int = 100, offset: int = 0):
    async with async_session() as session:
        return await queries.list_products(session, in_stock_only, limit, offset)


@app.get("/queries/products/{product_id}")
async def query_get_product(product_id: str):
    async with async_session() as session:
        product = await queries.get_product(session, product_id)
        if not product:
            raise HTTPException(404, "Product not found")
        return product


@app.get("/health")
async def health():
    db_healthy = True
    try:
        async with async_session() as session:
            await session.execute(text("SELECT 1"))
    except (SQLAlchemyError, OSError):
        logger.warning("Database health check failed", exc_info=True)
        db_healthy = False

    return JSONResponse(
        status_code=200 if db_healthy else 503,
        content={
            "status": "healthy" if db_healthy else "unhealthy",
            "service": "inventory-service",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "latency_mode": "injected" if latency.enabled else "normal",
            "database": "healthy" if db_healthy else "unhealthy",
        },
    )
