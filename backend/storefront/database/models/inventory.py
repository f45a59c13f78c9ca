"""
Stock records and the append-only inventory ledger.

Every change to a stock record's quantity goes through a compare-and-swap on
its version column and writes exactly one ledger entry in the same
transaction, so the initial stock plus the sum of ledger deltas always equals
the current stock.
"""

import uuid
from datetime import datetime
from enum import Enum
from typing import Optional

from sqlalchemy import (
    CheckConstraint,
    DateTime,
    Enum as SQLEnum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    func,
    text,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from storefront.database.base import Base, BaseModel, UUIDMixin, enum_values


class LedgerCause(str, Enum):
    """Why a stock quantity changed."""

    ORDER_DEBIT = "order_debit"
    REFUND_CREDIT = "refund_credit"
    CANCEL_CREDIT = "cancel_credit"
    ADMIN_ADJUSTMENT = "admin_adjustment"

    @classmethod
    def from_string(cls, value: str) -> "LedgerCause":
        try:
            return cls(value.lower())
        except (ValueError, AttributeError):
            raise ValueError(f"Invalid ledger cause: {value}")


class StockRecord(BaseModel):
    """
    Quantity on hand for one product.

    ``version`` increments on every write. Writers must present the version
    they read; a mismatch means someone else wrote first.
    """

    __tablename__ = "stock_records"

    name: Mapped[str] = mapped_column(String(255), nullable=False)

    stock: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=0,
        comment="Quantity on hand",
    )

    initial_stock: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=0,
        comment="Quantity on hand when the record was created",
    )

    version: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=0,
        comment="Optimistic concurrency token",
    )

    __table_args__ = (
        CheckConstraint("stock >= 0", name="ck_stock_records_stock_non_negative"),
        {"comment": "Product stock levels"},
    )


class InventoryLedgerEntry(Base, UUIDMixin):
    """Immutable record of a single stock delta."""

    __tablename__ = "inventory_ledger"
    __mapper_args__ = {"eager_defaults": True}

    product_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("stock_records.id", ondelete="RESTRICT"),
        nullable=False,
    )

    delta: Mapped[int] = mapped_column(Integer, nullable=False)

    cause: Mapped[LedgerCause] = mapped_column(
        SQLEnum(
            LedgerCause,
            name="ledger_cause",
            create_constraint=True,
            values_callable=enum_values,
        ),
        nullable=False,
    )

    reference_id: Mapped[Optional[str]] = mapped_column(
        String(64),
        nullable=True,
        comment="Order id for order causes, actor id for adjustments",
    )

    previous_stock: Mapped[int] = mapped_column(Integer, nullable=False)
    new_stock: Mapped[int] = mapped_column(Integer, nullable=False)

    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    trace_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    __table_args__ = (
        Index("ix_inventory_ledger_product_created", "product_id", text("created_at DESC")),
        Index("ix_inventory_ledger_cause_created", "cause", text("created_at DESC")),
        # One restoration per product, order and cause
        Index(
            "uq_inventory_ledger_restoration",
            "product_id",
            "cause",
            "reference_id",
            unique=True,
            postgresql_where=text("cause IN ('refund_credit', 'cancel_credit')"),
        ),
        CheckConstraint("delta <> 0", name="ck_inventory_ledger_delta_non_zero"),
        CheckConstraint(
            "new_stock = previous_stock + delta",
            name="ck_inventory_ledger_delta_consistent",
        ),
        {"comment": "Append-only log of stock changes"},
    )
