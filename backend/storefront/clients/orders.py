"""
Client for the order service, used by the payment and stock services.
"""

import asyncio
import uuid
from decimal import Decimal
from typing import Any, Awaitable, Callable, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field

from storefront.clients.service_client import ServiceClient
from storefront.core.errors import StorefrontError
from storefront.core.logging import get_logger, get_trace_id, set_trace_id
from storefront.database.models.order import OrderPaymentStatus, OrderStatus

logger = get_logger(__name__)


class OrderItemSnapshot(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    product_id: str = Field(validation_alias=AliasChoices("product_id", "productId", "product"))
    name: Optional[str] = None
    price: Decimal = Decimal("0")
    quantity: int = Field(gt=0)


class OrderSnapshot(BaseModel):
    """Authoritative order data as served by the order service."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: uuid.UUID = Field(validation_alias=AliasChoices("id", "_id"))
    order_number: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("order_number", "orderNumber"),
    )
    user_id: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("user_id", "userId"),
    )
    session_id: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("session_id", "sessionId"),
    )
    status: OrderStatus
    payment_status: OrderPaymentStatus = Field(
        validation_alias=AliasChoices("payment_status", "paymentStatus"),
    )
    items: list[OrderItemSnapshot] = Field(default_factory=list)
    total_amount: Decimal = Field(
        validation_alias=AliasChoices("total_amount", "totalAmount"),
    )
    customer_info: Optional[dict[str, Any]] = Field(
        default=None,
        validation_alias=AliasChoices("customer_info", "customerInfo"),
    )

    def belongs_to(self, user_id: Optional[str], session_id: Optional[str]) -> bool:
        if user_id and self.user_id == user_id:
            return True
        return bool(session_id) and self.session_id == session_id


class OrderServiceClient:
    """Typed facade over the order service's HTTP API."""

    def __init__(self, service_client: ServiceClient):
        self.service_client = service_client

    async def get_order(self, order_id: uuid.UUID | str) -> OrderSnapshot:
        """
        Raises:
            NotFoundError: Order does not exist
            UpstreamError: Order service unavailable after retries
        """
        body = await self.service_client.request("GET", f"/api/v1/orders/{order_id}")
        data = body.get("data", body) if isinstance(body, dict) else body
        return OrderSnapshot.model_validate(data)

    async def update_payment_status(
        self,
        order_id: uuid.UUID | str,
        payment_status: OrderPaymentStatus,
        note: Optional[str] = None,
    ) -> None:
        """Push a payment status change. Attempted exactly once."""
        await self.service_client.request(
            "PUT",
            f"/api/v1/orders/{order_id}/payment-status",
            json={"payment_status": payment_status.value, "note": note},
            retry_enabled=False,
        )


class BackgroundNotifier:
    """
    Runs best-effort side effects without blocking the caller.

    Each notification runs at most once in its own task. Failures are logged
    and dropped; nothing is retried. Tasks keep the trace id of the request
    that scheduled them.
    """

    def __init__(self) -> None:
        self._tasks: set[asyncio.Task] = set()

    def schedule(
        self,
        name: str,
        func: Callable[[], Awaitable[Any]],
        **context: Any,
    ) -> asyncio.Task:
        trace_id = get_trace_id()

        async def run() -> None:
            set_trace_id(trace_id)
            try:
                await func()
                logger.info("Notification delivered", notification=name, **context)
            except StorefrontError as e:
                logger.warning(
                    "Notification failed",
                    notification=name,
                    error=str(e),
                    error_type=type(e).__name__,
                    **context,
                )
            except Exception as e:
                logger.error(
                    "Notification failed unexpectedly",
                    notification=name,
                    error=str(e),
                    error_type=type(e).__name__,
                    **context,
                )

        task = asyncio.create_task(run(), name=f"notify:{name}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def drain(self) -> None:
        """Wait for every scheduled notification to finish."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
