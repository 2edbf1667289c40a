"""
Inventory Service — 遅延注入 (カオステスト用)

有効にすると N 回に 1 回、引き落としの応答を遅らせる。
遅延は DB コミットの後に入るので、データは確定しているのに
呼び出し側はタイムアウトする、という状況を再現できる。

カウンタはインスタンスごとに持つ。テストでは別インスタンスを
渡すか、sleep を差し替えればよい。
"""

import asyncio
import logging
from typing import Awaitable, Callable

logger = logging.getLogger(__name__)


class LatencyInjector:
    def __init__(
        self,
        every_nth: int = 3,
        delay_seconds: float = 5.0,
        enabled: bool = False,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        if every_nth < 1:
            raise ValueError("every_nth must be >= 1")
        self.every_nth = every_nth
        self.delay_seconds = delay_seconds
        self.enabled = enabled
        self.request_counter = 0
        self._sleep = sleep

    def enable(self) -> None:
        self.enabled = True
        self.request_counter = 0

    def disable(self) -> None:
        self.enabled = False
        self.request_counter = 0

    def should_delay(self) -> bool:
        if not self.enabled:
            return False
        self.request_counter += 1
        return self.request_counter % self.every_nth == 0

    async def maybe_delay(self) -> bool:
        """遅延対象なら sleep して True を返す。"""
        if not self.should_delay():
            return False
        logger.warning(
            "Delaying response for request #%d by %.1fs (already committed)",
            self.request_counter,
            self.delay_seconds,
        )
        await self._sleep(self.delay_seconds)
        return True

    def status(self) -> dict:
        return {
            "enabled": self.enabled,
            "request_counter": self.request_counter,
            "pattern": f"1 in every {self.every_nth} requests delayed by {self.delay_seconds:g}s",
        }
