"""
Inventory Service — 在庫操作ログ (inventory_operations)

在庫の変更はすべて、このテーブルへの 1 行の追記と同じトランザクションで行う。
(order_id, operation_type) の部分 UNIQUE インデックスにより、
1 つの注文に対する引き落とし行は常に高々 1 行 → 引き落としが冪等になる。

行は追記のみで、書き換えない。監査ログとしてもそのまま使う。
"""

from datetime import datetime

from sqlalchemy import text
from sqlalchemy.engine import Row
from sqlalchemy.ext.asyncio import AsyncSession

DEDUCT = "deduct"
ADJUST = "adjust"

_RECORD_COLUMNS = """
    operation_id, operation_type, order_id, product_id, quantity_change,
    previous_stock, new_stock, adjustment_reason, notes, created_at
"""


async def find_deduction(session: AsyncSession, order_id: str) -> Row | None:
    result = await session.execute(
        text(f"""
            SELECT {_RECORD_COLUMNS}
            FROM inventory_operations
            WHERE order_id = :order_id AND operation_type = 'deduct'
        """),
        {"order_id": order_id},
    )
    return result.fetchone()


async def lock_product(session: AsyncSession, product_id: str) -> Row | None:
    """
    商品行を排他ロック付きで読む (SELECT ... FOR UPDATE)。

    ロックはトランザクション終了まで保持され、同じ商品への
    引き落としを直列化する。別商品の行はブロックしない。
    """
    result = await session.execute(
        text("""
            SELECT product_id, stock_level
            FROM products
            WHERE product_id = :id
            FOR UPDATE
        """),
        {"id": product_id},
    )
    return result.fetchone()


async def set_stock_level(
    session: AsyncSession,
    product_id: str,
    stock_level: int,
    now: datetime,
) -> None:
    await session.execute(
        text("""
            UPDATE products
            SET stock_level = :stock, last_updated = :now
            WHERE product_id = :id
        """),
        {"stock": stock_level, "now": now, "id": product_id},
    )


async def insert_product(
    session: AsyncSession,
    product_id: str,
    name: str,
    stock_level: int,
    now: datetime,
) -> None:
    await session.execute(
        text("""
            INSERT INTO products (product_id, name, stock_level, created_at, last_updated)
            VALUES (:id, :name, :stock, :now, :now)
        """),
        {"id": product_id, "name": name, "stock": stock_level, "now": now},
    )


async def record_operation(
    session: AsyncSession,
    *,
    operation_type: str,
    product_id: str,
    quantity_change: int,
    previous_stock: int,
    new_stock: int,
    now: datetime,
    order_id: str | None = None,
    adjustment_reason: str | None = None,
    notes: str | None = None,
    request_id: str | None = None,
    correlation_id: str | None = None,
) -> Row:
    """
    操作を 1 行追記して、その行を返す。

    同じ order_id の引き落としが既にコミット済みなら
    UNIQUE 制約違反 (IntegrityError) になる → 呼び出し側で既存行を返す。
    """
    result = await session.execute(
        text(f"""
            INSERT INTO inventory_operations
                (operation_type, product_id, quantity_change, previous_stock, new_stock,
                 order_id, adjustment_reason, notes, request_id, correlation_id,
                 status, created_at)
            VALUES
                (:operation_type, :product_id, :quantity_change, :previous_stock, :new_stock,
                 :order_id, :adjustment_reason, :notes, :request_id, :correlation_id,
                 'success', :now)
            RETURNING {_RECORD_COLUMNS}
        """),
        {
            "operation_type": operation_type,
            "product_id": product_id,
            "quantity_change": quantity_change,
            "previous_stock": previous_stock,
            "new_stock": new_stock,
            "order_id": order_id,
            "adjustment_reason": adjustment_reason,
            "notes": notes,
            "request_id": request_id,
            "correlation_id": correlation_id,
            "now": now,
        },
    )
    return result.fetchone()


async def load_operations(
    session: AsyncSession,
    product_id: str | None = None,
    limit: int = 100,
) -> list[dict]:
    """監査ログ。新しい順に返す。"""
    if product_id:
        result = await session.execute(
            text(f"""
                SELECT {_RECORD_COLUMNS}
                FROM inventory_operations
                WHERE product_id = :product_id
                ORDER BY created_at DESC
                LIMIT :limit
            """),
            {"product_id": product_id, "limit": limit},
        )
    else:
        result = await session.execute(
            text(f"""
                SELECT {_RECORD_COLUMNS}
                FROM inventory_operations
                ORDER BY created_at DESC
                LIMIT :limit
            """),
            {"limit": limit},
        )
    return [
        {
            "log_id": row.operation_id,
            "operation": row.operation_type,
            "order_id": row.order_id,
            "product_id": row.product_id,
            "quantity_change": row.quantity_change,
            "previous_stock": row.previous_stock,
            "new_stock": row.new_stock,
            "adjustment_reason": row.adjustment_reason,
            "notes": row.notes,
            "timestamp": row.created_at.isoformat() if row.created_at else None,
        }
        for row in result.fetchall()
    ]
