"""
Inventory Service — コマンドハンドラ (Write 側)

引き落とし (Deduct) は冪等:
  同じ order_id で何回呼ばれても在庫の減算は 1 回だけ。
  2 回目以降は 1 回目の結果をそのまま返す (リプレイ)。

  1. order_id の引き落とし行があれば、その結果を返す
  2. 商品行を FOR UPDATE でロックして在庫を読む
  3. 在庫不足ならロールバックして InsufficientStock (行は残さない)
  4. 在庫を減らし、操作ログを追記してコミット
  5. 追記が UNIQUE 違反 = 同じ注文の並行リクエストに負けた
     → ロールバックして勝った側の行を返す

注文サービスがタイムアウトしても、ここは安全に何度でも呼び直せる。
"""

import logging
from datetime import datetime, timezone

from sqlalchemy.engine import Row
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from . import operations
from .errors import (
    InsufficientStock,
    InvalidInput,
    ProductAlreadyExists,
    ProductNotFound,
    StockUnderflow,
)
from .latency import LatencyInjector

logger = logging.getLogger(__name__)

ADJUSTMENT_REASONS = ("restock", "correction", "damage")

# INT 列と VARCHAR(64) 列に収まる範囲
MAX_QUANTITY = 2**31 - 1
MAX_ID_LENGTH = 64


def _is_positive_int(value) -> bool:
    return isinstance(value, int) and not isinstance(value, bool) and 0 < value <= MAX_QUANTITY


def _is_id(value) -> bool:
    return bool(value) and len(value) <= MAX_ID_LENGTH


def _receipt(record: Row) -> dict:
    return {
        "order_id": record.order_id,
        "product_id": record.product_id,
        "quantity_deducted": abs(record.quantity_change),
        "new_stock_level": record.new_stock,
        "timestamp": record.created_at.isoformat(),
    }


async def deduct_stock(
    session: AsyncSession,
    order_id: str | None,
    product_id: str | None,
    quantity: int | None,
    request_id: str | None = None,
    correlation_id: str | None = None,
    latency: LatencyInjector | None = None,
) -> dict:
    """在庫引き落としコマンド (冪等)"""
    if not _is_id(order_id) or not _is_id(product_id) or not _is_positive_int(quantity):
        raise InvalidInput("Invalid input")

    try:
        existing = await operations.find_deduction(session, order_id)
        if existing is not None:
            logger.info("[%s] Idempotent replay for order %s", request_id, order_id)
            return _receipt(existing)

        product = await operations.lock_product(session, product_id)
        if product is None:
            raise ProductNotFound("Product not found")

        current_stock = product.stock_level
        if current_stock < quantity:
            logger.info(
                "[%s] Insufficient stock for %s: %d < %d",
                request_id, product_id, current_stock, quantity,
            )
            raise InsufficientStock(
                f"Insufficient stock: requested={quantity}, available={current_stock}"
            )

        now = datetime.now(timezone.utc)
        new_stock = current_stock - quantity
        await operations.set_stock_level(session, product_id, new_stock, now)
        record = await operations.record_operation(
            session,
            operation_type=operations.DEDUCT,
            product_id=product_id,
            quantity_change=-quantity,
            previous_stock=current_stock,
            new_stock=new_stock,
            now=now,
            order_id=order_id,
            request_id=request_id,
            correlation_id=correlation_id,
        )
        await session.commit()
    except IntegrityError:
        await session.rollback()
        winner = await operations.find_deduction(session, order_id)
        if winner is None:
            raise
        logger.info(
            "[%s] Lost deduction race for order %s, returning committed result",
            request_id, order_id,
        )
        return _receipt(winner)
    except Exception:
        await session.rollback()
        raise

    logger.info(
        "[%s] Stock deducted for order %s: %s %d -> %d",
        request_id, order_id, product_id, current_stock, new_stock,
    )

    # コミット後・応答前に遅延を入れる (データには影響しない)
    if latency is not None:
        await latency.maybe_delay()

    return _receipt(record)


async def adjust_stock(
    session: AsyncSession,
    product_id: str | None,
    adjustment: int | None,
    reason: str | None,
    notes: str | None = None,
    request_id: str | None = None,
    correlation_id: str | None = None,
) -> dict:
    """
    手動の在庫調整コマンド (入荷・訂正・破損)

    引き落としと同じく行ロックを取り、操作ログを追記する。
    order_id を持たないので冪等性の対象外。
    """
    if (
        not product_id
        or not isinstance(adjustment, int)
        or isinstance(adjustment, bool)
        or adjustment == 0
        or reason not in ADJUSTMENT_REASONS
    ):
        raise InvalidInput("Invalid input")

    try:
        product = await operations.lock_product(session, product_id)
        if product is None:
            raise ProductNotFound("Product not found")

        previous_stock = product.stock_level
        new_stock = previous_stock + adjustment
        if new_stock < 0:
            raise StockUnderflow(
                f"Stock cannot be negative: current={previous_stock}, adjustment={adjustment}"
            )

        now = datetime.now(timezone.utc)
        await operations.set_stock_level(session, product_id, new_stock, now)
        await operations.record_operation(
            session,
            operation_type=operations.ADJUST,
            product_id=product_id,
            quantity_change=adjustment,
            previous_stock=previous_stock,
            new_stock=new_stock,
            now=now,
            adjustment_reason=reason,
            notes=notes,
            request_id=request_id,
            correlation_id=correlation_id,
        )
        await session.commit()
    except Exception:
        await session.rollback()
        raise

    logger.info(
        "[%s] Stock adjusted (%s): %s %d -> %d",
        request_id, reason, product_id, previous_stock, new_stock,
    )
    return {
        "product_id": product_id,
        "previous_stock": previous_stock,
        "adjustment": adjustment,
        "new_stock": new_stock,
        "timestamp": now.isoformat(),
    }


async def create_product(
    session: AsyncSession,
    product_id: str | None,
    name: str | None,
    initial_stock: int | None,
) -> dict:
    """商品登録コマンド"""
    if (
        not product_id
        or not name
        or not isinstance(initial_stock, int)
        or isinstance(initial_stock, bool)
        or initial_stock < 0
    ):
        raise InvalidInput("Invalid input")

    now = datetime.now(timezone.utc)
    try:
        await operations.insert_product(session, product_id, name, initial_stock, now)
        await session.commit()
    except IntegrityError:
        await session.rollback()
        raise ProductAlreadyExists(f"Product {product_id} already exists") from None

    return {
        "product_id": product_id,
        "name": name,
        "stock_level": initial_stock,
        "created_at": now.isoformat(),
    }
