"""
Order Service — クエリハンドラ (Read 側)
"""

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

_COLUMNS = """
    order_id, product_id, quantity, status, error_message,
    request_id, correlation_id, created_at, updated_at
"""


def _to_dict(row) -> dict:
    return {
        "order_id": row.order_id,
        "product_id": row.product_id,
        "quantity": row.quantity,
        "status": row.status,
        "error_message": row.error_message,
        "request_id": row.request_id,
        "correlation_id": row.correlation_id,
        "created_at": row.created_at.isoformat() if row.created_at else None,
        "updated_at": row.updated_at.isoformat() if row.updated_at else None,
    }


async def get_order(session: AsyncSession, order_id: str) -> dict | None:
    result = await session.execute(
        text(f"SELECT {_COLUMNS} FROM orders WHERE order_id = :id"),
        {"id": order_id},
    )
    row = result.fetchone()
    if not row:
        return None
    return _to_dict(row)


async def list_orders(
    session: AsyncSession,
    status: str | None = None,
    limit: int = 50,
    offset: int = 0,
) -> dict:
    """注文履歴。status を指定すればその状態だけ。"""
    where = "WHERE status = :status" if status else ""
    params = {"status": status, "limit": limit, "offset": offset}
    result = await session.execute(
        text(f"""
            SELECT {_COLUMNS}
            FROM orders
            {where}
            ORDER BY created_at DESC
            LIMIT :limit OFFSET :offset
        """),
        params,
    )
    orders = [_to_dict(row) for row in result.fetchall()]

    total = await session.execute(
        text(f"SELECT COUNT(*) FROM orders {where}"),
        {"status": status} if status else {},
    )
    return {"orders": orders, "total": total.scalar_one(), "limit": limit, "offset": offset}


async def order_stats(session: AsyncSession) -> dict:
    result = await session.execute(
        text("""
            SELECT
                COUNT(*) AS total_orders,
                COUNT(*) FILTER (WHERE status = 'confirmed') AS confirmed_orders,
                COUNT(*) FILTER (WHERE status = 'failed') AS failed_orders,
                COUNT(*) FILTER (WHERE status = 'undecided') AS undecided_orders
            FROM orders
        """),
    )
    row = result.fetchone()
    return {
        "total_orders": row.total_orders,
        "confirmed_orders": row.confirmed_orders,
        "failed_orders": row.failed_orders,
        "undecided_orders": row.undecided_orders,
    }
