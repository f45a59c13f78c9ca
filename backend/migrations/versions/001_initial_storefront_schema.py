"""
Alembic migration: Initial storefront schema.

Creates orders with their item snapshots and status history, payments,
stock records and the inventory ledger, together with the uniqueness rules
that make payment creation, gateway callbacks and stock restoration safe to
repeat.

Revision ID: 001
Revises:
Create Date: 2024-02-01 09:00:00.000000
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# Revision identifiers, used by Alembic
revision: str = '001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


order_status = postgresql.ENUM(
    'pending', 'confirmed', 'processing', 'shipped', 'delivered', 'cancelled',
    name='order_status',
    create_type=False,
)
order_payment_status = postgresql.ENUM(
    'unpaid', 'processing', 'paid', 'payment_failed', 'refunded', 'partially_refunded',
    name='order_payment_status',
    create_type=False,
)
shipping_method = postgresql.ENUM(
    'standard', 'express', 'pickup',
    name='shipping_method',
    create_type=False,
)
payment_method = postgresql.ENUM(
    'VNPay', 'Momo', 'CashOnDelivery',
    name='payment_method',
    create_type=False,
)
payment_record_status = postgresql.ENUM(
    'pending', 'success', 'failed', 'refunded',
    name='payment_record_status',
    create_type=False,
)
ledger_cause = postgresql.ENUM(
    'order_debit', 'refund_credit', 'cancel_credit', 'admin_adjustment',
    name='ledger_cause',
    create_type=False,
)

ENUMS = (
    order_status,
    order_payment_status,
    shipping_method,
    payment_method,
    payment_record_status,
    ledger_cause,
)


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column(
            'created_at',
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text('now()'),
            comment='Timestamp when record was created',
        ),
        sa.Column(
            'updated_at',
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text('now()'),
            comment='Timestamp when record was last updated',
        ),
    ]


def _audit() -> list[sa.Column]:
    return _timestamps() + [
        sa.Column('created_by', sa.String(255), nullable=True, comment='Actor ID who created the record'),
        sa.Column('updated_by', sa.String(255), nullable=True, comment='Actor ID who last updated the record'),
    ]


def upgrade() -> None:
    """Create all storefront tables, enum types, indexes and constraints."""
    bind = op.get_bind()
    for enum_type in ENUMS:
        enum_type.create(bind, checkfirst=True)

    # Orders
    op.create_table(
        'orders',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
        sa.Column('order_number', sa.String(20), nullable=False, comment='Human readable ORD-YYYYMMDD-NNNN number'),
        sa.Column('user_id', sa.String(64), nullable=True),
        sa.Column('session_id', sa.String(128), nullable=True),
        sa.Column('status', order_status, nullable=False),
        sa.Column('payment_status', order_payment_status, nullable=False),
        sa.Column('subtotal', sa.Numeric(12, 2), nullable=False),
        sa.Column('shipping_cost', sa.Numeric(12, 2), nullable=False),
        sa.Column('discount', sa.Numeric(12, 2), nullable=False),
        sa.Column('tax', sa.Numeric(12, 2), nullable=False),
        sa.Column('total_amount', sa.Numeric(12, 2), nullable=False),
        sa.Column('shipping_method', shipping_method, nullable=False),
        sa.Column('shipping_address', postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column('payment_method', payment_method, nullable=False),
        sa.Column('customer_info', postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column('tracking_number', sa.String(100), nullable=True),
        sa.Column('customer_notes', sa.Text(), nullable=True),
        sa.Column('admin_notes', sa.Text(), nullable=True),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('cancelled_at', sa.DateTime(timezone=True), nullable=True),
        *_audit(),
        sa.UniqueConstraint('order_number', name='orders_order_number_key'),
        sa.CheckConstraint('(user_id IS NULL) <> (session_id IS NULL)', name='ck_orders_single_owner'),
        sa.CheckConstraint('total_amount >= 0', name='ck_orders_total_non_negative'),
        comment='Customer orders created from cart snapshots',
    )
    op.create_index('ix_orders_user_created', 'orders', ['user_id', 'created_at'])
    op.create_index('ix_orders_session_created', 'orders', ['session_id', 'created_at'])
    op.create_index('ix_orders_status_created', 'orders', ['status', 'created_at'])

    op.create_table(
        'order_items',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
        sa.Column(
            'order_id',
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey('orders.id', ondelete='CASCADE'),
            nullable=False,
        ),
        sa.Column('position', sa.Integer(), nullable=False),
        sa.Column('product_id', sa.String(64), nullable=False),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('price', sa.Numeric(12, 2), nullable=False),
        sa.Column('quantity', sa.Integer(), nullable=False),
        sa.Column('image', sa.String(1024), nullable=True),
        sa.CheckConstraint('quantity > 0', name='ck_order_items_quantity_positive'),
        sa.CheckConstraint('price >= 0', name='ck_order_items_price_non_negative'),
    )
    op.create_index('ix_order_items_order', 'order_items', ['order_id'])

    op.create_table(
        'order_status_history',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
        sa.Column(
            'order_id',
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey('orders.id', ondelete='CASCADE'),
            nullable=False,
        ),
        sa.Column('sequence', sa.Integer(), nullable=False),
        sa.Column('status', order_status, nullable=False),
        sa.Column('note', sa.Text(), nullable=True),
        sa.Column('updated_by', sa.String(255), nullable=True),
        sa.Column('changed_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('now()')),
    )
    op.create_index(
        'uq_order_status_history_sequence',
        'order_status_history',
        ['order_id', 'sequence'],
        unique=True,
    )

    # Payments
    op.create_table(
        'payments',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
        sa.Column('order_id', postgresql.UUID(as_uuid=True), nullable=False, comment='Order this payment belongs to'),
        sa.Column('amount', sa.Numeric(12, 2), nullable=False),
        sa.Column('payment_method', payment_method, nullable=False),
        sa.Column('status', payment_record_status, nullable=False),
        sa.Column('transaction_id', sa.String(64), nullable=True),
        sa.Column('payment_gateway', sa.String(32), nullable=True),
        sa.Column('callback_payload', postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column('refund_amount', sa.Numeric(12, 2), nullable=True),
        sa.Column('refund_reason', sa.Text(), nullable=True),
        sa.Column('refunded_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('refunded_by', sa.String(255), nullable=True),
        *_audit(),
        sa.UniqueConstraint('transaction_id', name='payments_transaction_id_key'),
        sa.CheckConstraint('amount >= 0', name='ck_payments_amount_non_negative'),
        comment='Payment attempts and their gateway outcomes',
    )
    op.create_index('ix_payments_order_id', 'payments', ['order_id'])
    op.create_index('ix_payments_order_status', 'payments', ['order_id', 'status'])
    op.create_index(
        'uq_payments_pending_order_method',
        'payments',
        ['order_id', 'payment_method'],
        unique=True,
        postgresql_where=sa.text("status = 'pending'"),
    )

    # Stock
    op.create_table(
        'stock_records',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('stock', sa.Integer(), nullable=False, comment='Quantity on hand'),
        sa.Column('initial_stock', sa.Integer(), nullable=False, comment='Quantity on hand when the record was created'),
        sa.Column('version', sa.Integer(), nullable=False, comment='Optimistic concurrency token'),
        *_timestamps(),
        sa.CheckConstraint('stock >= 0', name='ck_stock_records_stock_non_negative'),
        comment='Product stock levels',
    )

    op.create_table(
        'inventory_ledger',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
        sa.Column(
            'product_id',
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey('stock_records.id', ondelete='RESTRICT'),
            nullable=False,
        ),
        sa.Column('delta', sa.Integer(), nullable=False),
        sa.Column('cause', ledger_cause, nullable=False),
        sa.Column('reference_id', sa.String(64), nullable=True),
        sa.Column('previous_stock', sa.Integer(), nullable=False),
        sa.Column('new_stock', sa.Integer(), nullable=False),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('trace_id', sa.String(64), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('now()')),
        sa.CheckConstraint('delta <> 0', name='ck_inventory_ledger_delta_non_zero'),
        sa.CheckConstraint('new_stock = previous_stock + delta', name='ck_inventory_ledger_delta_consistent'),
        comment='Append-only log of stock changes',
    )
    op.create_index(
        'ix_inventory_ledger_product_created',
        'inventory_ledger',
        ['product_id', sa.text('created_at DESC')],
    )
    op.create_index(
        'ix_inventory_ledger_cause_created',
        'inventory_ledger',
        ['cause', sa.text('created_at DESC')],
    )
    op.create_index(
        'uq_inventory_ledger_restoration',
        'inventory_ledger',
        ['product_id', 'cause', 'reference_id'],
        unique=True,
        postgresql_where=sa.text("cause IN ('refund_credit', 'cancel_credit')"),
    )


def downgrade() -> None:
    """Drop all storefront tables and enum types."""
    op.drop_table('inventory_ledger')
    op.drop_table('stock_records')
    op.drop_table('payments')
    op.drop_table('order_status_history')
    op.drop_table('order_items')
    op.drop_table('orders')

    bind = op.get_bind()
    for enum_type in reversed(ENUMS):
        enum_type.drop(bind, checkfirst=True)
