"""
Order Service — Inventory Service クライアント

引き落とし API は冪等なので、タイムアウト後の再問い合わせにも同じ呼び出しを使う。

待ち時間の上限は asyncio.wait_for で掛ける。タイムアウトすると
リクエストのタスクがキャンセルされ、コネクションも解放される
(放置された未完了リクエストが溜まらない)。

結果の分類:
  - 200            → 引き落とし結果 (dict)
  - 400 / 404 / 409 → DeductionRejected   (確定的な失敗、再試行しない)
  - タイムアウト      → DeductionTimeout     (一時的、照合で再試行)
  - 接続失敗 / 5xx    → DeductionUnavailable (一時的、照合で再試行)
"""

import asyncio
import logging
from uuid import uuid4

import httpx

logger = logging.getLogger(__name__)

_REJECTION_STATUSES = (400, 404, 409)


class DeductionError(Exception):
    transient = False


class DeductionRejected(DeductionError):
    def __init__(self, code: str, message: str, status_code: int) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.status_code = status_code


class DeductionTimeout(DeductionError):
    transient = True


class DeductionUnavailable(DeductionError):
    transient = True


class InventoryClient:
    def __init__(self, base_url: str, http: httpx.AsyncClient) -> None:
        self.base_url = base_url.rstrip("/")
        self.http = http

    async def deduct(
        self,
        order_id: str,
        product_id: str,
        quantity: int,
        timeout: float,
        request_id: str | None = None,
        correlation_id: str | None = None,
    ) -> dict:
        headers = {
            "X-Request-ID": request_id or str(uuid4()),
            "X-Correlation-ID": correlation_id or str(uuid4()),
        }
        try:
            resp = await asyncio.wait_for(
                self.http.post(
                    f"{self.base_url}/internal/inventory/deduct",
                    json={
                        "order_id": order_id,
                        "product_id": product_id,
                        "quantity": quantity,
                    },
                    headers=headers,
                ),
                timeout=timeout,
            )
        except asyncio.TimeoutError:
            raise DeductionTimeout(
                f"Inventory service did not respond within {timeout:g}s"
            ) from None
        except httpx.TimeoutException as e:
            raise DeductionTimeout(f"Inventory service timeout: {e}") from e
        except httpx.HTTPError as e:
            raise DeductionUnavailable(f"Inventory service unreachable: {e}") from e

        if resp.status_code == 200:
            try:
                return resp.json()
            except ValueError as e:
                raise DeductionUnavailable("Malformed response from inventory service") from e

        if resp.status_code in _REJECTION_STATUSES:
            code, message = _parse_error(resp)
            raise DeductionRejected(code, message, resp.status_code)

        raise DeductionUnavailable(
            f"Inventory service returned HTTP {resp.status_code}"
        )

    async def is_healthy(self) -> bool:
        try:
            resp = await asyncio.wait_for(self.http.get(f"{self.base_url}/health"), timeout=2.0)
        except (asyncio.TimeoutError, httpx.HTTPError):
            return False
        return resp.status_code == 200


def _parse_error(resp: httpx.Response) -> tuple[str, str]:
    try:
        error = resp.json().get("error") or {}
    except (ValueError, AttributeError):
        error = {}
    if not isinstance(error, dict):
        error = {}
    return (
        error.get("code", f"HTTP_{resp.status_code}"),
        error.get("message") or resp.text or f"HTTP {resp.status_code}",
    )
