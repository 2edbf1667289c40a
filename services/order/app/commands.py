"""
Order Service — コマンドハンドラ (Write 側)

注文行を書くのはここだけ。

  insert_order   注文受付時に 1 回だけ INSERT (confirmed / failed / undecided)
  resolve_order  undecided → confirmed / failed

resolve_order は「まだ undecided なら」という条件付き UPDATE。
同期リプレイ (再送された注文) と照合ワーカーが同時に確定させても、
書き込みが効くのは先に来た方だけで、後の方は何もしない。
状態変更イベントも、実際に行を変えた側だけが発行する。
"""

from datetime import datetime, timezone

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from .events import UNDECIDED
from .status_events import OrderStatusBus


async def insert_order(
    session: AsyncSession,
    order_id: str,
    product_id: str,
    quantity: int,
    status: str,
    error_message: str | None = None,
    request_id: str | None = None,
    correlation_id: str | None = None,
) -> dict:
    now = datetime.now(timezone.utc)
    await session.execute(
        text("""
            INSERT INTO orders
                (order_id, product_id, quantity, status, error_message,
                 request_id, correlation_id, created_at, updated_at)
            VALUES
                (:order_id, :product_id, :quantity, :status, :error_message,
                 :request_id, :correlation_id, :now, :now)
        """),
        {
            "order_id": order_id,
            "product_id": product_id,
            "quantity": quantity,
            "status": status,
            "error_message": error_message,
            "request_id": request_id,
            "correlation_id": correlation_id,
            "now": now,
        },
    )
    await session.commit()
    return {
        "order_id": order_id,
        "product_id": product_id,
        "quantity": quantity,
        "status": status,
        "error_message": error_message,
        "request_id": request_id,
        "correlation_id": correlation_id,
        "created_at": now.isoformat(),
        "updated_at": now.isoformat(),
    }


async def resolve_order(
    session: AsyncSession,
    bus: OrderStatusBus,
    order_id: str,
    status: str,
    error_message: str | None = None,
) -> bool:
    """
    undecided の注文を終端状態にする。

    行を変えたら True を返し、状態変更イベントを発行する。
    既に終端状態なら何もせず False。
    イベント発行の失敗はコミット済みの更新に影響しない。
    """
    result = await session.execute(
        text("""
            UPDATE orders
            SET status = :status, error_message = :error_message, updated_at = :now
            WHERE order_id = :id AND status = :undecided
        """),
        {
            "status": status,
            "error_message": error_message,
            "now": datetime.now(timezone.utc),
            "id": order_id,
            "undecided": UNDECIDED,
        },
    )
    await session.commit()

    if result.rowcount != 1:
        return False

    await bus.publish(order_id, status, error_message)
    return True
