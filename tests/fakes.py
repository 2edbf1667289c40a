"""
テスト用のインメモリ実装 (Postgres / Redis / Inventory Service の代わり)
"""

import asyncio
import itertools
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from types import SimpleNamespace

from sqlalchemy.exc import IntegrityError

from services.order.app.events import UNDECIDED
from services.order.app.inventory_client import DeductionRejected


def session_factory(make_session=lambda: None):
    """async_session() の代わり。呼ばれるたびに make_session() を yield する。"""

    @asynccontextmanager
    async def factory():
        yield make_session()

    return factory


# ── Inventory Service の DB ─────────────────────


class FakeInventorySession:
    """1 トランザクション分の未コミットの変更と、保持中の行ロック"""

    def __init__(self, store: "FakeInventoryStore") -> None:
        self.store = store
        self.pending_stock: dict[str, int] = {}
        self.pending_products: dict[str, dict] = {}
        self.pending_rows: list[SimpleNamespace] = []
        self.held_locks: set[str] = set()
        self.commits = 0
        self.rollbacks = 0

    async def execute(self, statement, params=None):
        return None

    async def commit(self) -> None:
        self.store.apply(self)
        self.commits += 1
        self._end()

    async def rollback(self) -> None:
        self.rollbacks += 1
        self._end()

    def _end(self) -> None:
        self.pending_stock.clear()
        self.pending_products.clear()
        self.pending_rows.clear()
        for product_id in self.held_locks:
            self.store.locks[product_id].release()
        self.held_locks.clear()


class FakeInventoryStore:
    """
    commands.operations の差し替え。

    lock_product は商品ごとの asyncio.Lock で FOR UPDATE を真似る。
    record_operation は同じ order_id の引き落としがコミット済みなら
    IntegrityError (UNIQUE 違反) を投げる。
    """

    DEDUCT = "deduct"
    ADJUST = "adjust"

    def __init__(self, products: dict[str, int] | None = None) -> None:
        self.products: dict[str, dict] = {}
        self.rows: list[SimpleNamespace] = []
        self.locks: dict[str, asyncio.Lock] = {}
        self._ids = itertools.count(1)
        for product_id, stock in (products or {}).items():
            self.add_product(product_id, stock)

    def add_product(self, product_id: str, stock: int, name: str | None = None) -> None:
        self.products[product_id] = {"name": name or product_id, "stock_level": stock}
        self.locks.setdefault(product_id, asyncio.Lock())

    def stock(self, product_id: str) -> int:
        return self.products[product_id]["stock_level"]

    def deductions(self, order_id: str) -> list[SimpleNamespace]:
        return [
            row for row in self.rows
            if row.order_id == order_id and row.operation_type == self.DEDUCT
        ]

    def session(self) -> FakeInventorySession:
        return FakeInventorySession(self)

    def apply(self, session: FakeInventorySession) -> None:
        for row in session.pending_rows:
            if row.order_id is not None and self.deductions(row.order_id):
                raise IntegrityError("INSERT INTO inventory_operations", {}, Exception("duplicate"))
        for product_id, product in session.pending_products.items():
            self.add_product(product_id, product["stock_level"], product["name"])
        for product_id, stock in session.pending_stock.items():
            self.products[product_id]["stock_level"] = stock
        self.rows.extend(session.pending_rows)

    # operations と同じシグネチャ

    async def find_deduction(self, session, order_id):
        found = self.deductions(order_id)
        # ここで他のリクエストに順番を譲る (並行リクエストの競合を再現)
        await asyncio.sleep(0)
        return found[0] if found else None

    async def lock_product(self, session, product_id):
        if product_id not in self.products:
            return None
        if product_id not in session.held_locks:
            await self.locks[product_id].acquire()
            session.held_locks.add(product_id)
        stock = session.pending_stock.get(product_id, self.stock(product_id))
        return SimpleNamespace(product_id=product_id, stock_level=stock)

    async def set_stock_level(self, session, product_id, stock_level, now):
        session.pending_stock[product_id] = stock_level

    async def insert_product(self, session, product_id, name, stock_level, now):
        if product_id in self.products:
            raise IntegrityError("INSERT INTO products", {}, Exception("duplicate"))
        session.pending_products[product_id] = {"name": name, "stock_level": stock_level}

    async def record_operation(
        self,
        session,
        *,
        operation_type,
        product_id,
        quantity_change,
        previous_stock,
        new_stock,
        now,
        order_id=None,
        adjustment_reason=None,
        notes=None,
        request_id=None,
        correlation_id=None,
    ):
        if order_id is not None and self.deductions(order_id):
            raise IntegrityError("INSERT INTO inventory_operations", {}, Exception("duplicate"))
        row = SimpleNamespace(
            operation_id=next(self._ids),
            operation_type=operation_type,
            order_id=order_id,
            product_id=product_id,
            quantity_change=quantity_change,
            previous_stock=previous_stock,
            new_stock=new_stock,
            adjustment_reason=adjustment_reason,
            notes=notes,
            created_at=now,
        )
        session.pending_rows.append(row)
        return row

    async def load_operations(self, session, product_id=None, limit=100):
        rows = [r for r in self.rows if product_id is None or r.product_id == product_id]
        return [
            {
                "log_id": r.operation_id,
                "operation": r.operation_type,
                "order_id": r.order_id,
                "product_id": r.product_id,
                "quantity_change": r.quantity_change,
                "previous_stock": r.previous_stock,
                "new_stock": r.new_stock,
                "adjustment_reason": r.adjustment_reason,
                "notes": r.notes,
                "timestamp": r.created_at.isoformat(),
            }
            for r in reversed(rows)
        ][:limit]


# ── Order Service の DB ─────────────────────────


class FakeOrderStore:
    """commands / queries の差し替え (insert_order, resolve_order, get_order)"""

    def __init__(self) -> None:
        self.orders: dict[str, dict] = {}
        self.resolve_calls: list[tuple[str, str]] = []

    def add(self, order_id, product_id, quantity, status, error_message=None) -> dict:
        now = datetime.now(timezone.utc).isoformat()
        self.orders[order_id] = {
            "order_id": order_id,
            "product_id": product_id,
            "quantity": quantity,
            "status": status,
            "error_message": error_message,
            "request_id": None,
            "correlation_id": None,
            "created_at": now,
            "updated_at": now,
        }
        return dict(self.orders[order_id])

    async def get_order(self, session, order_id):
        order = self.orders.get(order_id)
        return dict(order) if order else None

    async def insert_order(
        self,
        session,
        order_id,
        product_id,
        quantity,
        status,
        error_message=None,
        request_id=None,
        correlation_id=None,
    ):
        order = self.add(order_id, product_id, quantity, status, error_message)
        self.orders[order_id].update(request_id=request_id, correlation_id=correlation_id)
        order.update(request_id=request_id, correlation_id=correlation_id)
        return order

    async def resolve_order(self, session, bus, order_id, status, error_message=None):
        self.resolve_calls.append((order_id, status))
        order = self.orders.get(order_id)
        if order is None or order["status"] != UNDECIDED:
            return False
        order.update(
            status=status,
            error_message=error_message,
            updated_at=datetime.now(timezone.utc).isoformat(),
        )
        await bus.publish(order_id, status, error_message)
        return True


# ── Inventory Service (HTTP クライアントの代わり) ──


class FakeInventory:
    """
    InventoryClient の差し替え。order_id で冪等な引き落としをする。

    before_faults: 引き落とす前に投げる例外 (接続失敗など)
    after_faults:  引き落としてから投げる例外 (コミット後のタイムアウト)
    """

    def __init__(self, products: dict[str, int] | None = None) -> None:
        self.stock = dict(products or {})
        self.receipts: dict[str, dict] = {}
        self.before_faults: list[Exception] = []
        self.after_faults: list[Exception] = []
        self.calls: list[dict] = []

    async def deduct(
        self,
        order_id,
        product_id,
        quantity,
        timeout,
        request_id=None,
        correlation_id=None,
    ):
        self.calls.append(
            {"order_id": order_id, "product_id": product_id, "quantity": quantity,
             "timeout": timeout}
        )
        if self.before_faults:
            raise self.before_faults.pop(0)

        receipt = self.receipts.get(order_id)
        if receipt is None:
            if product_id not in self.stock:
                raise DeductionRejected("NOT_FOUND", "Product not found", 404)
            if self.stock[product_id] < quantity:
                raise DeductionRejected(
                    "INSUFFICIENT_STOCK",
                    f"Insufficient stock: requested={quantity}, "
                    f"available={self.stock[product_id]}",
                    409,
                )
            self.stock[product_id] -= quantity
            receipt = {
                "order_id": order_id,
                "product_id": product_id,
                "quantity_deducted": quantity,
                "new_stock_level": self.stock[product_id],
                "timestamp": datetime.now(timezone.utc).isoformat(),
            }
            self.receipts[order_id] = receipt

        if self.after_faults:
            raise self.after_faults.pop(0)
        return dict(receipt)

    async def is_healthy(self):
        return True


class FakeRetryQueue:
    """時刻を見ない遅延キュー。schedule されたものは次の drain_ready で全部返す。"""

    def __init__(self) -> None:
        self.pending = []
        self.scheduled = []

    async def schedule(self, task, delay):
        self.scheduled.append((task, delay))
        self.pending.append(task)
        return task

    async def drain_ready(self, now=None):
        tasks, self.pending = self.pending, []
        return tasks

    async def size(self):
        return len(self.pending)


class FakeStatusBus:
    def __init__(self) -> None:
        self.published: list[tuple[str, str, str | None]] = []

    async def publish(self, order_id, status, error_message=None):
        self.published.append((order_id, status, error_message))
        return True


# ── Redis ───────────────────────────────────────


class FakePubSub:
    def __init__(self, redis: "FakeRedis") -> None:
        self.redis = redis
        self.channels: set[str] = set()
        self.messages: asyncio.Queue = asyncio.Queue()
        self.closed = False

    async def subscribe(self, *channels):
        for channel in channels:
            self.channels.add(channel)
            self.redis.subscribers.setdefault(channel, []).append(self)

    async def unsubscribe(self, *channels):
        for channel in channels or tuple(self.channels):
            self.channels.discard(channel)
            subscribers = self.redis.subscribers.get(channel, [])
            if self in subscribers:
                subscribers.remove(self)

    async def get_message(self, ignore_subscribe_messages=False, timeout=0.0):
        try:
            return await asyncio.wait_for(self.messages.get(), timeout=timeout)
        except asyncio.TimeoutError:
            return None

    async def aclose(self):
        self.closed = True


class FakePipeline:
    def __init__(self, redis: "FakeRedis") -> None:
        self.redis = redis
        self.commands = []

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        return False

    def zrangebyscore(self, key, min, max):
        self.commands.append(("zrangebyscore", key, min, max))
        return self

    def zremrangebyscore(self, key, min, max):
        self.commands.append(("zremrangebyscore", key, min, max))
        return self

    async def execute(self):
        # MULTI/EXEC: 待ち合わせはここまで。以降のコマンドは割り込まれずに実行される
        await asyncio.sleep(0)
        results = []
        for name, key, low, high in self.commands:
            results.append(getattr(self.redis, f"_{name}")(key, low, high))
        self.commands = []
        return results


class FakeRedis:
    """decode_responses=True の redis.asyncio.Redis のうち、使う部分だけ"""

    def __init__(self) -> None:
        self.zsets: dict[str, dict[str, float]] = {}
        self.subscribers: dict[str, list[FakePubSub]] = {}
        self.published: list[tuple[str, str]] = []
        self.pubsubs: list[FakePubSub] = []

    async def zadd(self, key, mapping):
        zset = self.zsets.setdefault(key, {})
        added = sum(1 for member in mapping if member not in zset)
        zset.update(mapping)
        return added

    async def zcard(self, key):
        return len(self.zsets.get(key, {}))

    def pipeline(self, transaction=True):
        return FakePipeline(self)

    def _in_range(self, score, low, high) -> bool:
        low = float("-inf") if low == "-inf" else float(low)
        high = float("inf") if high == "+inf" else float(high)
        return low <= score <= high

    def _zrangebyscore(self, key, low, high):
        zset = self.zsets.get(key, {})
        return [
            member
            for member, score in sorted(zset.items(), key=lambda item: item[1])
            if self._in_range(score, low, high)
        ]

    def _zremrangebyscore(self, key, low, high):
        members = self._zrangebyscore(key, low, high)
        zset = self.zsets.get(key, {})
        for member in members:
            del zset[member]
        return len(members)

    async def publish(self, channel, message):
        self.published.append((channel, message))
        subscribers = list(self.subscribers.get(channel, []))
        for pubsub in subscribers:
            pubsub.messages.put_nowait(
                {"type": "message", "channel": channel, "data": message}
            )
        return len(subscribers)

    def pubsub(self):
        pubsub = FakePubSub(self)
        self.pubsubs.append(pubsub)
        return pubsub

    async def ping(self):
        return True
