"""
Database models package initialization.

Models are imported here so they are registered with the Base metadata for
Alembic and relationship resolution.
"""

from storefront.database.base import AuditedModel, Base, BaseModel
from storefront.database.models.inventory import (
    InventoryLedgerEntry,
    LedgerCause,
    StockRecord,
)
from storefront.database.models.order import (
    Order,
    OrderItem,
    OrderPaymentStatus,
    OrderStatus,
    OrderStatusHistory,
    PaymentMethod,
    ShippingMethod,
)
from storefront.database.models.payment import Payment, PaymentStatus

__all__ = [
    "Base",
    "BaseModel",
    "AuditedModel",
    "InventoryLedgerEntry",
    "LedgerCause",
    "StockRecord",
    "Order",
    "OrderItem",
    "OrderPaymentStatus",
    "OrderStatus",
    "OrderStatusHistory",
    "PaymentMethod",
    "ShippingMethod",
    "Payment",
    "PaymentStatus",
]
