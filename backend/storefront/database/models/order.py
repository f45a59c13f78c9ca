"""
Order model for the order orchestrator.

An order is created once from a cart snapshot and afterwards only mutated
through status changes (each of which appends exactly one history row) and
payment status updates pushed by the payment service. Orders are never
deleted.
"""

import uuid
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Optional

from sqlalchemy import (
    CheckConstraint,
    DateTime,
    Enum as SQLEnum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from storefront.database.base import AuditedModel, Base, UUIDMixin, enum_values


class OrderStatus(str, Enum):
    """
    Order lifecycle.

    pending -> confirmed -> processing -> shipped -> delivered, or cancelled
    at any point before delivery.
    """

    PENDING = "pending"
    CONFIRMED = "confirmed"
    PROCESSING = "processing"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"

    @property
    def accepts_payment(self) -> bool:
        return self in (OrderStatus.PENDING, OrderStatus.CONFIRMED)


class OrderPaymentStatus(str, Enum):
    """Payment state of an order as reported by the payment service."""

    UNPAID = "unpaid"
    PROCESSING = "processing"
    PAID = "paid"
    PAYMENT_FAILED = "payment_failed"
    REFUNDED = "refunded"
    PARTIALLY_REFUNDED = "partially_refunded"


class ShippingMethod(str, Enum):
    STANDARD = "standard"
    EXPRESS = "express"
    PICKUP = "pickup"


class PaymentMethod(str, Enum):
    """How the shopper intends to pay."""

    VNPAY = "VNPay"
    MOMO = "Momo"
    CASH_ON_DELIVERY = "CashOnDelivery"

    @property
    def is_online(self) -> bool:
        return self is not PaymentMethod.CASH_ON_DELIVERY


class Order(AuditedModel):
    """
    Customer order placed from a cart.

    Exactly one of user_id and session_id identifies the owner. Line items
    are an immutable snapshot of the cart at checkout time.
    """

    __tablename__ = "orders"

    order_number: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        unique=True,
        comment="Human readable number ORD-YYYYMMDD-NNNN, assigned once",
    )

    user_id: Mapped[Optional[str]] = mapped_column(
        String(64),
        nullable=True,
        index=True,
        comment="Authenticated owner",
    )

    session_id: Mapped[Optional[str]] = mapped_column(
        String(128),
        nullable=True,
        index=True,
        comment="Anonymous owner session",
    )

    status: Mapped[OrderStatus] = mapped_column(
        SQLEnum(
            OrderStatus,
            name="order_status",
            create_constraint=True,
            values_callable=enum_values,
        ),
        nullable=False,
        default=OrderStatus.PENDING,
        comment="Current order status",
    )

    payment_status: Mapped[OrderPaymentStatus] = mapped_column(
        SQLEnum(
            OrderPaymentStatus,
            name="order_payment_status",
            create_constraint=True,
            values_callable=enum_values,
        ),
        nullable=False,
        default=OrderPaymentStatus.UNPAID,
        comment="Current payment status",
    )

    subtotal: Mapped[Decimal] = mapped_column(
        Numeric(precision=12, scale=2),
        nullable=False,
        comment="Sum of line item prices",
    )

    shipping_cost: Mapped[Decimal] = mapped_column(
        Numeric(precision=12, scale=2),
        nullable=False,
        default=Decimal("0"),
    )

    discount: Mapped[Decimal] = mapped_column(
        Numeric(precision=12, scale=2),
        nullable=False,
        default=Decimal("0"),
    )

    tax: Mapped[Decimal] = mapped_column(
        Numeric(precision=12, scale=2),
        nullable=False,
        default=Decimal("0"),
    )

    total_amount: Mapped[Decimal] = mapped_column(
        Numeric(precision=12, scale=2),
        nullable=False,
        comment="subtotal + shipping_cost - discount",
    )

    shipping_method: Mapped[ShippingMethod] = mapped_column(
        SQLEnum(
            ShippingMethod,
            name="shipping_method",
            create_constraint=True,
            values_callable=enum_values,
        ),
        nullable=False,
    )

    shipping_address: Mapped[dict[str, Any]] = mapped_column(
        JSONB,
        nullable=False,
    )

    payment_method: Mapped[PaymentMethod] = mapped_column(
        SQLEnum(
            PaymentMethod,
            name="payment_method",
            create_constraint=True,
            values_callable=enum_values,
        ),
        nullable=False,
    )

    customer_info: Mapped[Optional[dict[str, Any]]] = mapped_column(
        JSONB,
        nullable=True,
    )

    tracking_number: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    customer_notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    admin_notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    completed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    cancelled_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    items: Mapped[list["OrderItem"]] = relationship(
        "OrderItem",
        back_populates="order",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="OrderItem.position",
    )

    status_history: Mapped[list["OrderStatusHistory"]] = relationship(
        "OrderStatusHistory",
        back_populates="order",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="OrderStatusHistory.sequence",
    )

    __table_args__ = (
        Index("ix_orders_user_created", "user_id", "created_at"),
        Index("ix_orders_session_created", "session_id", "created_at"),
        Index("ix_orders_status_created", "status", "created_at"),
        CheckConstraint(
            "(user_id IS NULL) <> (session_id IS NULL)",
            name="ck_orders_single_owner",
        ),
        CheckConstraint(
            "total_amount >= 0",
            name="ck_orders_total_non_negative",
        ),
        {"comment": "Customer orders created from cart snapshots"},
    )

    def record_status(
        self,
        new_status: OrderStatus,
        note: Optional[str] = None,
        actor_id: Optional[str] = None,
    ) -> "OrderStatusHistory":
        """
        Move the order to ``new_status`` and append one history entry.

        Also stamps completed_at / cancelled_at when the order reaches those
        states.
        """
        now = datetime.now(timezone.utc)
        self.status = new_status
        self.updated_by = actor_id

        if new_status == OrderStatus.DELIVERED:
            self.completed_at = now
        elif new_status == OrderStatus.CANCELLED:
            self.cancelled_at = now

        entry = OrderStatusHistory(
            status=new_status,
            note=note,
            updated_by=actor_id,
            sequence=len(self.status_history) + 1,
            changed_at=now,
        )
        self.status_history.append(entry)
        return entry

    def append_admin_note(self, text: str, at: Optional[datetime] = None) -> None:
        stamp = (at or datetime.now(timezone.utc)).isoformat()
        line = f"[{stamp}] {text}"
        self.admin_notes = f"{self.admin_notes}\n{line}" if self.admin_notes else line


class OrderItem(Base, UUIDMixin):
    """Line item snapshot. Never modified after the order is created."""

    __tablename__ = "order_items"

    order_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("orders.id", ondelete="CASCADE"),
        nullable=False,
    )

    position: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    product_id: Mapped[str] = mapped_column(
        String(64),
        nullable=False,
        comment="Product reference in the catalog service",
    )

    name: Mapped[str] = mapped_column(String(255), nullable=False)

    price: Mapped[Decimal] = mapped_column(
        Numeric(precision=12, scale=2),
        nullable=False,
        comment="Unit price at checkout",
    )

    quantity: Mapped[int] = mapped_column(Integer, nullable=False)

    image: Mapped[Optional[str]] = mapped_column(String(1024), nullable=True)

    order: Mapped["Order"] = relationship("Order", back_populates="items")

    __table_args__ = (
        Index("ix_order_items_order", "order_id"),
        CheckConstraint("quantity > 0", name="ck_order_items_quantity_positive"),
        CheckConstraint("price >= 0", name="ck_order_items_price_non_negative"),
    )


class OrderStatusHistory(Base, UUIDMixin):
    """Append-only audit trail of order status changes."""

    __tablename__ = "order_status_history"
    __mapper_args__ = {"eager_defaults": True}

    order_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("orders.id", ondelete="CASCADE"),
        nullable=False,
    )

    sequence: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        comment="1-based position within the order's history",
    )

    status: Mapped[OrderStatus] = mapped_column(
        SQLEnum(
            OrderStatus,
            name="order_status",
            create_constraint=True,
            values_callable=enum_values,
        ),
        nullable=False,
    )

    note: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    updated_by: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    changed_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    order: Mapped["Order"] = relationship("Order", back_populates="status_history")

    __table_args__ = (
        Index("uq_order_status_history_sequence", "order_id", "sequence", unique=True),
    )
