"""
Payment model for online gateway and offline payments.

A payment row is created when a shopper starts an online payment (or an
offline payment is recorded) and then moves pending -> success | failed
once, and success -> refunded at most once. Rows are never deleted.
"""

import uuid
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Optional

from sqlalchemy import (
    CheckConstraint,
    DateTime,
    Enum as SQLEnum,
    Index,
    Numeric,
    String,
    Text,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import Mapped, mapped_column

from storefront.database.base import AuditedModel, enum_values
from storefront.database.models.order import PaymentMethod


class PaymentStatus(str, Enum):
    """
    Payment status lifecycle.

    Attributes:
        PENDING: Gateway transaction created, waiting for the callback
        SUCCESS: Gateway reported the payment as captured
        FAILED: Gateway reported the payment as failed
        REFUNDED: Captured payment refunded through the gateway
    """

    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"
    REFUNDED = "refunded"

    @property
    def is_terminal(self) -> bool:
        return self is not PaymentStatus.PENDING


class Payment(AuditedModel):
    """
    Payment attempt for an order.

    order_id references an order owned by the order service; there is no
    foreign key because the two services only share ids.
    """

    __tablename__ = "payments"

    order_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        nullable=False,
        index=True,
        comment="Order this payment belongs to",
    )

    amount: Mapped[Decimal] = mapped_column(
        Numeric(precision=12, scale=2),
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

    status: Mapped[PaymentStatus] = mapped_column(
        SQLEnum(
            PaymentStatus,
            name="payment_record_status",
            create_constraint=True,
            values_callable=enum_values,
        ),
        nullable=False,
        default=PaymentStatus.PENDING,
    )

    transaction_id: Mapped[Optional[str]] = mapped_column(
        String(64),
        nullable=True,
        unique=True,
        comment="Gateway transaction reference, unique once assigned",
    )

    payment_gateway: Mapped[Optional[str]] = mapped_column(
        String(32),
        nullable=True,
    )

    callback_payload: Mapped[Optional[dict[str, Any]]] = mapped_column(
        JSONB,
        nullable=True,
        comment="Raw callback parameters as received from the gateway",
    )

    refund_amount: Mapped[Optional[Decimal]] = mapped_column(
        Numeric(precision=12, scale=2),
        nullable=True,
    )

    refund_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    refunded_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    refunded_by: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    __table_args__ = (
        Index("ix_payments_order_status", "order_id", "status"),
        # At most one pending payment per order and online method
        Index(
            "uq_payments_pending_order_method",
            "order_id",
            "payment_method",
            unique=True,
            postgresql_where=text("status = 'pending'"),
        ),
        CheckConstraint("amount >= 0", name="ck_payments_amount_non_negative"),
        {"comment": "Payment attempts and their gateway outcomes"},
    )

    @property
    def is_offline(self) -> bool:
        return not self.payment_method.is_online
