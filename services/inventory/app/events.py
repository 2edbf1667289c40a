"""
Inventory Service — 応答モデル

引き落としの結果 (StockDeducted) は操作ログの行から作られる。
同じ注文のリプレイでは同じ行から作るので、応答も常に同じになる。
"""

from pydantic import BaseModel


class StockDeducted(BaseModel):
    """在庫が引き落とされた (初回・リプレイ共通)"""
    order_id: str
    product_id: str
    quantity_deducted: int
    new_stock_level: int
    timestamp: str


class StockAdjusted(BaseModel):
    """在庫が手動で調整された"""
    product_id: str
    previous_stock: int
    adjustment: int
    new_stock: int
    timestamp: str


class ProductCreated(BaseModel):
    product_id: str
    name: str
    stock_level: int
    created_at: str
