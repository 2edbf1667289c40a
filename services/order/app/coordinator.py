"""
Order Coordinator — 注文受付と在庫引き落としの調整

注文 1 件につき、下流は Inventory Service の引き落とし 1 つだけ。
引き落とし API は order_id で冪等なので、結果が分からないときは
推測せず undecided として保存し、後で同じ呼び出しで確かめる。

  フロー:
  ┌──────────────────────────────────────────────────────────────┐
  │  idempotency_key あり & 注文が存在                             │
  │    ├─ confirmed / failed → そのまま返す                         │
  │    └─ undecided → 引き落としをもう一度呼んで、その場で確定       │
  │                                                              │
  │  新規注文 (order_id を採番)                                     │
  │    引き落とし (待ち時間 T まで)                                  │
  │    ├─ 成功       → confirmed                                  │
  │    ├─ 確定的失敗 → failed (在庫不足・商品なし・入力エラー)        │
  │    └─ タイムアウト / 接続失敗                                    │
  │         → undecided で保存し、照合タスクを遅延キューに積む        │
  │           クライアントには「order_id で再送して」と返す           │
  └──────────────────────────────────────────────────────────────┘
"""

import logging
from dataclasses import dataclass
from uuid import uuid4

from redis.exceptions import RedisError
from sqlalchemy.orm import sessionmaker

from . import commands, queries
from .events import CONFIRMED, FAILED, TERMINAL_STATUSES, UNDECIDED
from .inventory_client import (
    DeductionRejected,
    DeductionTimeout,
    DeductionUnavailable,
    InventoryClient,
)
from .retry_queue import RetryQueue, RetryTask, backoff_delay
from .status_events import OrderStatusBus

logger = logging.getLogger(__name__)

UNDECIDED_MESSAGE = "Could not confirm inventory availability. Retry with the order ID."

# orders.quantity は INT、product_id は VARCHAR(64)
MAX_QUANTITY = 2**31 - 1
MAX_PRODUCT_ID_LENGTH = 64

TIMEOUT = "TIMEOUT"
INVENTORY_UNAVAILABLE = "INVENTORY_UNAVAILABLE"


class InvalidOrder(Exception):
    pass


@dataclass
class PlacementResult:
    order: dict
    # undecided のときだけ: TIMEOUT / INVENTORY_UNAVAILABLE
    error_code: str | None = None

    @property
    def status(self) -> str:
        return self.order["status"]


class OrderCoordinator:
    def __init__(
        self,
        session_factory: sessionmaker,
        inventory: InventoryClient,
        queue: RetryQueue,
        bus: OrderStatusBus,
        deduct_timeout: float = 3.0,
        max_attempts: int = 5,
        initial_delay: float = 5.0,
    ) -> None:
        self.session_factory = session_factory
        self.inventory = inventory
        self.queue = queue
        self.bus = bus
        self.deduct_timeout = deduct_timeout
        self.max_attempts = max_attempts
        self.initial_delay = initial_delay

    async def place_order(
        self,
        product_id: str | None,
        quantity: int | None,
        idempotency_key: str | None = None,
        request_id: str | None = None,
        correlation_id: str | None = None,
    ) -> PlacementResult:
        if (
            not product_id
            or len(product_id) > MAX_PRODUCT_ID_LENGTH
            or not isinstance(quantity, int)
            or isinstance(quantity, bool)
            or not 0 < quantity <= MAX_QUANTITY
        ):
            raise InvalidOrder("Invalid input")

        request_id = request_id or str(uuid4())
        correlation_id = correlation_id or str(uuid4())

        if idempotency_key:
            async with self.session_factory() as session:
                existing = await queries.get_order(session, idempotency_key)
            if existing is not None:
                if existing["status"] in TERMINAL_STATUSES:
                    logger.info(
                        "[%s] Returning stored result for order %s (%s)",
                        request_id, idempotency_key, existing["status"],
                    )
                    return PlacementResult(existing)
                return await self._replay_undecided(existing, request_id, correlation_id)

        order_id = str(uuid4())
        try:
            await self.inventory.deduct(
                order_id, product_id, quantity, self.deduct_timeout,
                request_id=request_id, correlation_id=correlation_id,
            )
        except DeductionRejected as e:
            logger.info("[%s] Order %s rejected: %s", request_id, order_id, e.message)
            order = await self._record(
                order_id, product_id, quantity, FAILED, e.message, request_id, correlation_id
            )
            return PlacementResult(order)
        except (DeductionTimeout, DeductionUnavailable) as e:
            logger.warning("[%s] Order %s undecided: %s", request_id, order_id, e)
            order = await self._record(
                order_id, product_id, quantity, UNDECIDED, UNDECIDED_MESSAGE,
                request_id, correlation_id,
            )
            await self._schedule_reconciliation(order_id, product_id, quantity)
            return PlacementResult(order, error_code=_error_code(e))

        logger.info("[%s] Order %s confirmed", request_id, order_id)
        order = await self._record(
            order_id, product_id, quantity, CONFIRMED, None, request_id, correlation_id
        )
        return PlacementResult(order)

    async def _replay_undecided(
        self,
        order: dict,
        request_id: str,
        correlation_id: str,
    ) -> PlacementResult:
        """再送された undecided の注文を、引き落としの再呼び出しでその場で確定させる。"""
        order_id = order["order_id"]
        logger.info("[%s] Replaying deduction for undecided order %s", request_id, order_id)
        try:
            await self.inventory.deduct(
                order_id, order["product_id"], order["quantity"], self.deduct_timeout,
                request_id=request_id, correlation_id=correlation_id,
            )
        except DeductionRejected as e:
            return await self._resolve(order_id, FAILED, e.message)
        except (DeductionTimeout, DeductionUnavailable) as e:
            logger.info("[%s] Order %s still undecided: %s", request_id, order_id, e)
            return PlacementResult(order, error_code=_error_code(e))

        return await self._resolve(order_id, CONFIRMED, None)

    async def _resolve(
        self,
        order_id: str,
        status: str,
        error_message: str | None,
    ) -> PlacementResult:
        async with self.session_factory() as session:
            changed = await commands.resolve_order(
                session, self.bus, order_id, status, error_message
            )
            current = await queries.get_order(session, order_id)
        if not changed:
            # 照合ワーカーが先に確定させていた
            logger.info("Order %s was already resolved as %s", order_id, current["status"])
        return PlacementResult(current)

    async def _record(
        self,
        order_id: str,
        product_id: str,
        quantity: int,
        status: str,
        error_message: str | None,
        request_id: str,
        correlation_id: str,
    ) -> dict:
        async with self.session_factory() as session:
            return await commands.insert_order(
                session, order_id, product_id, quantity, status,
                error_message=error_message,
                request_id=request_id,
                correlation_id=correlation_id,
            )

    async def _schedule_reconciliation(
        self,
        order_id: str,
        product_id: str,
        quantity: int,
    ) -> None:
        task = RetryTask(
            order_id=order_id,
            product_id=product_id,
            quantity=quantity,
            attempt=0,
            max_attempts=self.max_attempts,
        )
        try:
            await self.queue.schedule(task, backoff_delay(self.initial_delay, 0))
        except RedisError:
            # 注文は undecided のまま残る。再送 (idempotency_key) で確定できる
            logger.exception("Failed to schedule reconciliation for order %s", order_id)


def _error_code(error: Exception) -> str:
    return TIMEOUT if isinstance(error, DeductionTimeout) else INVENTORY_UNAVAILABLE
