"""
Tests for order model behaviour and order number allocation.
"""

from datetime import date, datetime, timezone

import pytest

from storefront.database.models.inventory import LedgerCause
from storefront.database.models.order import Order, OrderStatus, PaymentMethod
from storefront.database.models.payment import Payment, PaymentStatus
from storefront.services.orders.service import next_order_number


class TestNextOrderNumber:
    def test_first_number_of_the_day(self):
        assert next_order_number(None, date(2024, 1, 31)) == "ORD-20240131-0001"

    def test_increments_latest(self):
        assert next_order_number("ORD-20240131-0041", date(2024, 1, 31)) == "ORD-20240131-0042"

    def test_sequence_restarts_each_day(self):
        assert next_order_number("ORD-20240130-0999", date(2024, 1, 31)) == "ORD-20240131-0001"

    def test_sequence_grows_past_four_digits(self):
        assert next_order_number("ORD-20240131-9999", date(2024, 1, 31)) == "ORD-20240131-10000"

    def test_continues_after_five_digits(self):
        assert next_order_number("ORD-20240131-10000", date(2024, 1, 31)) == "ORD-20240131-10001"


class TestOrderStatusHistory:
    def test_each_change_appends_one_entry(self):
        order = Order(status=OrderStatus.PENDING, status_history=[])

        order.record_status(OrderStatus.CONFIRMED, actor_id="admin-1")
        order.record_status(OrderStatus.SHIPPED, note="Handed to carrier", actor_id="admin-1")

        assert [entry.sequence for entry in order.status_history] == [1, 2]
        assert order.status == OrderStatus.SHIPPED
        assert order.status_history[-1].note == "Handed to carrier"
        assert order.updated_by == "admin-1"

    def test_cancel_stamps_cancelled_at(self):
        order = Order(status=OrderStatus.PENDING, status_history=[])

        order.record_status(OrderStatus.CANCELLED)

        assert order.cancelled_at is not None
        assert order.completed_at is None

    def test_admin_notes_accumulate(self):
        order = Order()
        at = datetime(2024, 1, 31, 9, 0, tzinfo=timezone.utc)

        order.append_admin_note("first", at=at)
        order.append_admin_note("second", at=at)

        assert order.admin_notes.splitlines() == [
            "[2024-01-31T09:00:00+00:00] first",
            "[2024-01-31T09:00:00+00:00] second",
        ]


class TestEnums:
    @pytest.mark.parametrize(
        "status, payable",
        [
            (OrderStatus.PENDING, True),
            (OrderStatus.CONFIRMED, True),
            (OrderStatus.PROCESSING, False),
            (OrderStatus.SHIPPED, False),
            (OrderStatus.CANCELLED, False),
        ],
    )
    def test_payable_statuses(self, status, payable):
        assert status.accepts_payment is payable

    def test_ledger_cause_from_string(self):
        assert LedgerCause.from_string("REFUND_CREDIT") == LedgerCause.REFUND_CREDIT
        with pytest.raises(ValueError):
            LedgerCause.from_string("theft")

    def test_online_methods(self):
        assert PaymentMethod.VNPAY.is_online
        assert PaymentMethod.MOMO.is_online
        assert not PaymentMethod.CASH_ON_DELIVERY.is_online

    def test_only_pending_payments_accept_callbacks(self):
        assert not PaymentStatus.PENDING.is_terminal
        assert all(
            status.is_terminal
            for status in (PaymentStatus.SUCCESS, PaymentStatus.FAILED, PaymentStatus.REFUNDED)
        )

    def test_cash_payment_is_offline(self):
        assert Payment(payment_method=PaymentMethod.CASH_ON_DELIVERY).is_offline
        assert not Payment(payment_method=PaymentMethod.MOMO).is_offline
