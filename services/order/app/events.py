"""
Order Service — 注文ステータスとイベント定義

注文の状態遷移:
    (新規) → confirmed   (引き落とし成功)
    (新規) → failed      (在庫不足・商品なし・入力エラー)
    (新規) → undecided   (タイムアウト: 引き落とされたか分からない)
    undecided → confirmed / failed   (照合で確定)

confirmed / failed は終端。一度書いたら二度と書き換えない。
"""

from pydantic import BaseModel

CONFIRMED = "confirmed"
FAILED = "failed"
UNDECIDED = "undecided"

TERMINAL_STATUSES = (CONFIRMED, FAILED)


class OrderStatusChanged(BaseModel):
    """undecided の注文が終端状態になった"""
    order_id: str
    status: str
    error_message: str | None = None
    timestamp: str
