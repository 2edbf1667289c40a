"""
Order Service — 注文ステータス通知 (Redis Pub/Sub)

undecided の注文が確定したとき、照合ワーカーが
order:status:{order_id} チャネルにイベントを発行する。
SSE エンドポイントはそのチャネルを購読して、接続中のクライアントに届ける。

  publish(order_id, status)   発行。失敗してもログだけ (注文行が正)
  subscribe(order_id)         async with で使う 1 回限りの購読。
                              抜けるときに必ず unsubscribe・切断する

Redis Pub/Sub は fire-and-forget なので、購読前に発行されたイベントは届かない。
wait_for_resolution は「購読してから注文行を読む」順にして、
購読前に確定していた注文も取りこぼさない。
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import AsyncIterator

import redis.asyncio as aioredis
from pydantic import ValidationError
from redis.exceptions import RedisError
from sqlalchemy.orm import sessionmaker

from . import queries
from .events import TERMINAL_STATUSES, OrderStatusChanged

logger = logging.getLogger(__name__)

ORDER_STATUS_CHANNEL_PREFIX = "order:status:"


def channel_for(order_id: str) -> str:
    return f"{ORDER_STATUS_CHANNEL_PREFIX}{order_id}"


class OrderStatusSubscription:
    """1 つの注文の終端イベントを 1 回だけ受け取る。"""

    def __init__(self, pubsub, order_id: str) -> None:
        self._pubsub = pubsub
        self.order_id = order_id
        self._delivered = False

    async def wait(self, timeout: float) -> OrderStatusChanged | None:
        """イベントを待つ。timeout 秒で None (まだ undecided)。"""
        if self._delivered:
            raise RuntimeError(f"Subscription for order {self.order_id} already delivered")

        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while True:
            remaining = deadline - loop.time()
            if remaining <= 0:
                return None
            message = await self._pubsub.get_message(
                ignore_subscribe_messages=True, timeout=min(remaining, 1.0)
            )
            if not message or message["type"] != "message":
                continue
            try:
                event = OrderStatusChanged.model_validate_json(message["data"])
            except ValidationError:
                logger.error("Ignoring malformed status event: %r", message["data"])
                continue
            self._delivered = True
            return event


class OrderStatusBus:
    def __init__(self, redis: aioredis.Redis) -> None:
        self.redis = redis

    async def publish(
        self,
        order_id: str,
        status: str,
        error_message: str | None = None,
    ) -> bool:
        event = OrderStatusChanged(
            order_id=order_id,
            status=status,
            error_message=error_message,
            timestamp=datetime.now(timezone.utc).isoformat(),
        )
        try:
            receivers = await self.redis.publish(channel_for(order_id), event.model_dump_json())
        except RedisError:
            logger.exception("Failed to publish status change for order %s", order_id)
            return False
        logger.info(
            "Published status change for order %s: %s (%s listener(s))",
            order_id, status, receivers,
        )
        return True

    @asynccontextmanager
    async def subscribe(self, order_id: str) -> AsyncIterator[OrderStatusSubscription]:
        channel = channel_for(order_id)
        pubsub = self.redis.pubsub()
        try:
            await pubsub.subscribe(channel)
            logger.debug("Subscribed to %s", channel)
            yield OrderStatusSubscription(pubsub, order_id)
        finally:
            try:
                await pubsub.unsubscribe(channel)
            except RedisError:
                logger.warning("Failed to unsubscribe from %s", channel, exc_info=True)
            await pubsub.aclose()
            logger.debug("Unsubscribed from %s", channel)


async def wait_for_resolution(
    bus: OrderStatusBus,
    session_factory: sessionmaker,
    order_id: str,
    timeout: float,
) -> OrderStatusChanged | None:
    """
    注文が終端状態になるのを待つ。

    既に確定していれば保存済みの状態をすぐ返す。
    timeout 内に確定しなければ None (エラーではない)。
    """
    async with bus.subscribe(order_id) as subscription:
        async with session_factory() as session:
            order = await queries.get_order(session, order_id)

        if order is not None and order["status"] in TERMINAL_STATUSES:
            return OrderStatusChanged(
                order_id=order_id,
                status=order["status"],
                error_message=order["error_message"],
                timestamp=order["updated_at"] or datetime.now(timezone.utc).isoformat(),
            )

        return await subscription.wait(timeout)
