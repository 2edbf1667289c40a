"""
Order Service — 遅延キュー (Redis Sorted Set)

undecided の注文を照合するタスクを、実行可能時刻をスコアにして積む。

  schedule(task, delay)  → ZADD (スコア = now + delay)
  drain_ready(now)       → スコア <= now のタスクを取り出して削除

取り出しと削除は MULTI/EXEC で 1 つのトランザクションにする。
ワーカーを複数並べても、同じタスクが 2 つのワーカーに渡ることはない。
同じ時刻のタスク同士の順序は保証しない。
"""

import logging
import time
from typing import Callable

import redis.asyncio as aioredis
from pydantic import BaseModel, ValidationError

logger = logging.getLogger(__name__)

RETRY_QUEUE_KEY = "order:retry:queue"


class RetryTask(BaseModel):
    """照合タスク。キューの外には保存しない。"""
    order_id: str
    product_id: str
    quantity: int
    attempt: int = 0
    max_attempts: int
    eligible_at: float = 0.0


def backoff_delay(initial_delay: float, attempt: int) -> float:
    """指数バックオフ: initial_delay * 2^attempt"""
    return initial_delay * (2 ** attempt)


class RetryQueue:
    def __init__(
        self,
        redis: aioredis.Redis,
        key: str = RETRY_QUEUE_KEY,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.redis = redis
        self.key = key
        self._clock = clock

    async def schedule(self, task: RetryTask, delay: float) -> RetryTask:
        eligible_at = self._clock() + delay
        task = task.model_copy(update={"eligible_at": eligible_at})
        await self.redis.zadd(self.key, {task.model_dump_json(): eligible_at})
        logger.info(
            "Scheduled retry for order %s, attempt %d/%d, in %.1fs",
            task.order_id, task.attempt + 1, task.max_attempts, delay,
        )
        return task

    async def drain_ready(self, now: float | None = None) -> list[RetryTask]:
        if now is None:
            now = self._clock()

        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.zrangebyscore(self.key, "-inf", now)
            pipe.zremrangebyscore(self.key, "-inf", now)
            members, _removed = await pipe.execute()

        tasks: list[RetryTask] = []
        for member in members:
            try:
                tasks.append(RetryTask.model_validate_json(member))
            except ValidationError:
                logger.error("Discarding malformed retry task: %r", member)
        return tasks

    async def size(self) -> int:
        return await self.redis.zcard(self.key)
