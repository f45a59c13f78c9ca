"""
Payment request schemas.
"""

from typing import Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


class OnlinePaymentRequest(BaseModel):
    """Start a gateway payment for an order."""

    model_config = ConfigDict(populate_by_name=True)

    order_id: UUID = Field(..., alias="orderId")
    payment_method: str = Field(..., alias="paymentMethod", examples=["VNPay", "Momo"])


class OfflinePaymentRequest(BaseModel):
    """Record a cash on delivery payment. The amount is the order total."""

    model_config = ConfigDict(populate_by_name=True)

    order_id: UUID = Field(..., alias="orderId")
    payment_method: str = Field("CashOnDelivery", alias="paymentMethod")


class RefundRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    order_id: UUID = Field(..., alias="orderId")
    reason: Optional[str] = Field(None, max_length=500)
