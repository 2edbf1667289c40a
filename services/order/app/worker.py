"""
Order Service — 照合ワーカー (Reconciliation Worker)

遅延キューから実行可能になった照合タスクを取り出し、
Inventory Service の引き落としをもう一度呼んで undecided の注文を確定させる。
引き落としは冪等なので、前回の呼び出しが実は成功していても二重には減らない。

  タスクごとの処理 (並行に実行):
    成功            → confirmed にして通知
    確定的失敗      → failed にして通知
    一時的失敗      → attempt+1 で再投入 (initial_delay * 2^(attempt+1) 秒後)
    最終試行で一時的失敗 → failed にして通知 (undecided のまま残さない)
    想定外の例外    → 試行が残っていれば再投入、なければ破棄 (注文は undecided のまま)

ループ自体は 1 回の失敗で止まらない。ログを出して次の周期に進む。
"""

import asyncio
import logging

from redis.exceptions import RedisError
from sqlalchemy.orm import sessionmaker

from . import commands, queries
from .events import CONFIRMED, FAILED, UNDECIDED
from .inventory_client import (
    DeductionRejected,
    DeductionTimeout,
    DeductionUnavailable,
    InventoryClient,
)
from .retry_queue import RetryQueue, RetryTask, backoff_delay
from .status_events import OrderStatusBus

logger = logging.getLogger(__name__)


class ReconciliationWorker:
    def __init__(
        self,
        session_factory: sessionmaker,
        inventory: InventoryClient,
        queue: RetryQueue,
        bus: OrderStatusBus,
        reconcile_timeout: float = 5.0,
        initial_delay: float = 5.0,
        poll_interval: float = 2.0,
        error_backoff: float = 5.0,
    ) -> None:
        self.session_factory = session_factory
        self.inventory = inventory
        self.queue = queue
        self.bus = bus
        self.reconcile_timeout = reconcile_timeout
        self.initial_delay = initial_delay
        self.poll_interval = poll_interval
        self.error_backoff = error_backoff

    async def run(self, shutdown_event: asyncio.Event) -> None:
        """shutdown_event がセットされるまでポーリングを続ける。"""
        logger.info("Reconciliation worker started (poll every %.1fs)", self.poll_interval)
        while not shutdown_event.is_set():
            try:
                await self.process_ready()
                delay = self.poll_interval
            except Exception:
                logger.exception("Error in reconciliation loop")
                delay = self.error_backoff

            try:
                await asyncio.wait_for(shutdown_event.wait(), timeout=delay)
            except asyncio.TimeoutError:
                pass
        logger.info("Reconciliation worker stopped")

    async def process_ready(self, now: float | None = None) -> int:
        tasks = await self.queue.drain_ready(now)
        if not tasks:
            return 0
        logger.info("Processing %d retry task(s)", len(tasks))
        await asyncio.gather(*(self.process_task(task) for task in tasks))
        return len(tasks)

    async def process_task(self, task: RetryTask) -> str:
        """1 タスクを処理して結果 (confirmed / failed / rescheduled / ...) を返す。"""
        try:
            return await self._reconcile(task)
        except Exception:
            logger.exception(
                "Unexpected error reconciling order %s (attempt %d/%d)",
                task.order_id, task.attempt + 1, task.max_attempts,
            )
            if task.attempt < task.max_attempts - 1:
                try:
                    await self._reschedule(task)
                    return "rescheduled"
                except RedisError:
                    logger.exception("Failed to reschedule order %s", task.order_id)
            logger.error(
                "Dropping retry task for order %s; order remains undecided", task.order_id
            )
            return "dropped"

    async def _reconcile(self, task: RetryTask) -> str:
        async with self.session_factory() as session:
            order = await queries.get_order(session, task.order_id)
        if order is None:
            logger.error("Order %s not found, dropping retry task", task.order_id)
            return "dropped"
        if order["status"] != UNDECIDED:
            # 再送時の同期リプレイで確定済み。確定後の注文に引き落としを呼ばない
            logger.info("Order %s already %s, skipping", task.order_id, order["status"])
            return "skipped"

        logger.info(
            "Verifying order %s, attempt %d/%d",
            task.order_id, task.attempt + 1, task.max_attempts,
        )
        try:
            await self.inventory.deduct(
                task.order_id, task.product_id, task.quantity, self.reconcile_timeout
            )
        except DeductionRejected as e:
            await self._resolve(task.order_id, FAILED, e.message)
            logger.info("Order %s failed (permanent): %s", task.order_id, e.message)
            return FAILED
        except (DeductionTimeout, DeductionUnavailable) as e:
            if task.attempt < task.max_attempts - 1:
                logger.info("Transient error for order %s: %s. Retrying", task.order_id, e)
                await self._reschedule(task)
                return "rescheduled"
            # 下流では実際に引き落とされている可能性がある (既知の照合の穴)
            logger.warning(
                "Order %s marked failed after %d attempts without a definitive answer: %s",
                task.order_id, task.max_attempts, e,
            )
            await self._resolve(
                task.order_id,
                FAILED,
                f"Could not verify inventory deduction after {task.max_attempts} attempts: {e}",
            )
            return "exhausted"

        await self._resolve(task.order_id, CONFIRMED, None)
        logger.info("Order %s confirmed (inventory was deducted)", task.order_id)
        return CONFIRMED

    async def _reschedule(self, task: RetryTask) -> None:
        next_task = task.model_copy(update={"attempt": task.attempt + 1})
        delay = backoff_delay(self.initial_delay, next_task.attempt)
        await self.queue.schedule(next_task, delay)

    async def _resolve(self, order_id: str, status: str, error_message: str | None) -> bool:
        async with self.session_factory() as session:
            return await commands.resolve_order(
                session, self.bus, order_id, status, error_message
            )
