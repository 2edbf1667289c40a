"""
Inventory Service — クエリハンドラ (Read 側)
"""

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession


def _to_dict(row) -> dict:
    return {
        "product_id": row.product_id,
        "name": row.name,
        "stock_level": row.stock_level,
        "available_stock": row.stock_level,
        "last_updated": row.last_updated.isoformat() if row.last_updated else None,
    }


async def get_product(session: AsyncSession, product_id: str) -> dict | None:
    result = await session.execute(
        text("""
            SELECT product_id, name, stock_level, last_updated
            FROM products
            WHERE product_id = :id
        """),
        {"id": product_id},
    )
    row = result.fetchone()
    if not row:
        return None
    return _to_dict(row)


async def list_products(
    session: AsyncSession,
    in_stock_only: bool = False,
    limit: int = 100,
    offset: int = 0,
) -> dict:
    where = "WHERE stock_level > 0" if in_stock_only else ""
    result = await session.execute(
        text(f"""
            SELECT product_id, name, stock_level, last_updated
            FROM products
            {where}
            ORDER BY name
            LIMIT :limit OFFSET :offset
        """),
        {"limit": limit, "offset": offset},
    )
    products = [_to_dict(row) for row in result.fetchall()]

    total = await session.execute(text(f"SELECT COUNT(*) FROM products {where}"))
    return {
        "products": products,
        "total": total.scalar_one(),
        "limit": limit,
        "offset": offset,
    }
