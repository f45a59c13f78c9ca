"""
Client for the cart service.

The cart service owns carts; the order orchestrator only reads the active
cart snapshot and asks for it to be marked converted after checkout.
"""

from decimal import Decimal
from typing import Any, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field

from storefront.clients.service_client import ServiceClient
from storefront.core.errors import NotFoundError
from storefront.core.logging import get_logger

logger = get_logger(__name__)


class CartItemSnapshot(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    product_id: str = Field(validation_alias=AliasChoices("product_id", "productId", "product"))
    name: str
    price: Decimal = Field(ge=0)
    quantity: int = Field(gt=0)
    image: Optional[str] = None


class CartSnapshot(BaseModel):
    """Read-only view of a shopper's active cart."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: Optional[str] = Field(default=None, validation_alias=AliasChoices("id", "_id"))
    items: list[CartItemSnapshot] = Field(default_factory=list)
    subtotal: Optional[Decimal] = None
    discount: Decimal = Decimal("0")
    customer_info: Optional[dict[str, Any]] = Field(
        default=None,
        validation_alias=AliasChoices("customer_info", "customerInfo"),
    )

    @property
    def computed_subtotal(self) -> Decimal:
        """Subtotal reported by the cart, or the sum of its lines."""
        if self.subtotal is not None:
            return self.subtotal
        return sum((item.price * item.quantity for item in self.items), Decimal("0"))


def _unwrap(body: Any) -> Any:
    if isinstance(body, dict) and "data" in body and "items" not in body:
        return body["data"]
    return body


class CartClient:
    """Typed facade over the cart service's HTTP API."""

    def __init__(self, service_client: ServiceClient):
        self.service_client = service_client

    async def get_active_cart(
        self,
        user_id: Optional[str] = None,
        session_id: Optional[str] = None,
    ) -> Optional[CartSnapshot]:
        """
        Fetch the owner's active cart.

        Returns:
            The cart snapshot, or None when the owner has no active cart
        """
        try:
            body = await self.service_client.request(
                "GET",
                "/api/carts",
                params={"userId": user_id, "sessionId": session_id},
            )
        except NotFoundError:
            return None

        data = _unwrap(body)
        if not data:
            return None
        return CartSnapshot.model_validate(data)

    async def mark_converted(
        self,
        user_id: Optional[str] = None,
        session_id: Optional[str] = None,
    ) -> None:
        """
        Ask the cart service to mark the owner's active cart converted.

        Attempted exactly once.
        """
        await self.service_client.request(
            "PUT",
            "/api/carts/status",
            json={"userId": user_id, "sessionId": session_id, "status": "converted"},
            retry_enabled=False,
        )
