"""
Client for the product/stock service, used to return stock after a refund
or a cancellation.
"""

import uuid
from typing import Any

from storefront.clients.service_client import ServiceClient


class StockServiceClient:
    """Typed facade over the stock service's restoration endpoints."""

    def __init__(self, service_client: ServiceClient):
        self.service_client = service_client

    async def restore_after_refund(self, order_id: uuid.UUID | str) -> Any:
        return await self._restore("refund", order_id)

    async def restore_after_cancel(self, order_id: uuid.UUID | str) -> Any:
        return await self._restore("cancel", order_id)

    async def _restore(self, cause: str, order_id: uuid.UUID | str) -> Any:
        # Restoration is idempotent per (order, product, cause), so retries are safe
        body = await self.service_client.request(
            "POST",
            f"/api/v1/inventory/restore/{cause}/{order_id}",
        )
        return body.get("data", body) if isinstance(body, dict) else body
