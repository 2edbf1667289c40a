"""
Inventory Service — ドメインエラー

各エラーは HTTP ステータスとエラーコードを持ち、
main.py の例外ハンドラで {"error": {"code", "message"}} に変換される。
"""


class InventoryError(Exception):
    code = "INTERNAL_ERROR"
    status_code = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class InvalidInput(InventoryError):
    code = "BAD_REQUEST"
    status_code = 400


class ProductNotFound(InventoryError):
    code = "NOT_FOUND"
    status_code = 404


class InsufficientStock(InventoryError):
    """在庫不足。この試行は失敗だが、操作ログは残さない。"""

    code = "INSUFFICIENT_STOCK"
    status_code = 409


class StockUnderflow(InventoryError):
    code = "STOCK_UNDERFLOW"
    status_code = 409


class ProductAlreadyExists(InventoryError):
    code = "ALREADY_EXISTS"
    status_code = 409
