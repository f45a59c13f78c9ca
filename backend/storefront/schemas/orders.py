"""
Order request schemas.

Checkout fields are optional at the schema level so that missing values are
reported by the order service with a single, consistent validation message.
"""

from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class ShippingAddress(BaseModel):
    """Delivery address captured at checkout."""

    model_config = ConfigDict(str_strip_whitespace=True, extra="allow")

    full_name: str = Field(..., min_length=1, max_length=255)
    phone: str = Field(..., min_length=6, max_length=20)
    address: str = Field(..., min_length=1, max_length=500)
    city: str = Field(..., min_length=1, max_length=100)
    district: Optional[str] = Field(None, max_length=100)
    ward: Optional[str] = Field(None, max_length=100)
    postal_code: Optional[str] = Field(None, max_length=20)

    @field_validator("phone")
    @classmethod
    def validate_phone_format(cls, v: str) -> str:
        """Normalize phone number to digits, keeping a leading plus."""
        digits = "".join(filter(str.isdigit, v))
        if len(digits) < 6:
            raise ValueError("Phone number must contain at least 6 digits")
        return f"+{digits}" if v.startswith("+") else digits


class OrderCreateRequest(BaseModel):
    """Checkout request; items and prices come from the active cart."""

    model_config = ConfigDict(populate_by_name=True)

    shipping_address: Optional[ShippingAddress] = Field(None, alias="shippingAddress")
    shipping_method: Optional[str] = Field(None, alias="shippingMethod")
    payment_method: Optional[str] = Field(None, alias="paymentMethod")
    notes: Optional[str] = Field(None, max_length=1000)

    def shipping_address_dict(self) -> Optional[dict[str, Any]]:
        if self.shipping_address is None:
            return None
        return self.shipping_address.model_dump(exclude_none=True)


class OrderStatusUpdate(BaseModel):
    """Admin status change."""

    status: str = Field(..., min_length=1)
    note: Optional[str] = Field(None, max_length=1000)


class PaymentStatusUpdate(BaseModel):
    """Payment status pushed by the payment service."""

    model_config = ConfigDict(populate_by_name=True)

    payment_status: str = Field(..., min_length=1, alias="paymentStatus")
    note: Optional[str] = Field(None, max_length=1000)
