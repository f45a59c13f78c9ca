"""
Test suite for the payment orchestrator.

Covers online payment creation and reuse of pending payments, exactly-once
callback application, offline payments, refunds and the background order
notifications that follow each status change.
"""

import asyncio
import uuid
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Optional
from unittest.mock import AsyncMock

import pytest

from storefront.clients.orders import BackgroundNotifier, OrderSnapshot
from storefront.core.config import VNPayConfig
from storefront.core.errors import (
    AuthenticationError,
    AuthorizationError,
    ConflictError,
    NotFoundError,
    PreconditionFailed,
    UpstreamError,
    ValidationError,
)
from storefront.database.models.order import OrderPaymentStatus, OrderStatus, PaymentMethod
from storefront.database.models.payment import Payment, PaymentStatus
from storefront.services.payments.gateways import (
    GatewayPayment,
    PaymentGateway,
    VNPayGateway,
    generate_transaction_id,
)
from storefront.services.payments.repository import (
    DuplicatePendingPaymentError,
    TransactionIdCollisionError,
)
from storefront.services.orders.service import OrderOwner
from storefront.services.payments.service import PaymentService


class FakePaymentRepository:
    """In-memory payments with the same conditional-transition contract."""

    def __init__(self):
        self.payments: dict[uuid.UUID, Payment] = {}
        self.collide_next = 0

    def add(self, **fields: Any) -> Payment:
        payment = Payment(
            id=uuid.uuid4(),
            created_at=datetime.now(timezone.utc),
            **fields,
        )
        self.payments[payment.id] = payment
        return payment

    def _check_unique(self, transaction_id: Optional[str], order_id, method, exclude=None):
        if self.collide_next:
            self.collide_next -= 1
            raise TransactionIdCollisionError("Duplicate transaction ID")
        for payment in self.payments.values():
            if payment is exclude:
                continue
            if transaction_id and payment.transaction_id == transaction_id:
                raise TransactionIdCollisionError("Duplicate transaction ID")
            if (
                exclude is None
                and payment.order_id == order_id
                and payment.payment_method == method
                and payment.status == PaymentStatus.PENDING
            ):
                raise DuplicatePendingPaymentError("A pending payment already exists for this order")

    async def create(
        self,
        order_id,
        amount,
        payment_method,
        transaction_id,
        payment_gateway=None,
        created_by=None,
    ) -> Payment:
        self._check_unique(transaction_id, order_id, payment_method)
        return self.add(
            order_id=order_id,
            amount=amount,
            payment_method=payment_method,
            status=PaymentStatus.PENDING,
            transaction_id=transaction_id,
            payment_gateway=payment_gateway,
            created_by=created_by,
        )

    async def get_by_id(self, payment_id):
        return self.payments.get(payment_id)

    async def get_by_transaction_id(self, transaction_id):
        return next(
            (p for p in self.payments.values() if p.transaction_id == transaction_id),
            None,
        )

    async def get_pending_for_order(self, order_id, payment_method):
        return next(
            (
                p
                for p in self.payments.values()
                if p.order_id == order_id
                and p.payment_method == payment_method
                and p.status == PaymentStatus.PENDING
            ),
            None,
        )

    async def get_settled_for_order(self, order_id):
        settled = [
            p
            for p in self.payments.values()
            if p.order_id == order_id
            and p.status in (PaymentStatus.SUCCESS, PaymentStatus.REFUNDED)
        ]
        return max(settled, key=lambda p: p.created_at) if settled else None

    async def list_for_order(self, order_id):
        return sorted(
            (p for p in self.payments.values() if p.order_id == order_id),
            key=lambda p: p.created_at,
            reverse=True,
        )

    async def update_pending(self, payment, transaction_id, amount, payment_gateway):
        self._check_unique(transaction_id, payment.order_id, payment.payment_method, exclude=payment)
        payment.transaction_id = transaction_id
        payment.amount = amount
        payment.payment_gateway = payment_gateway
        return payment

    async def mark_outcome(self, payment_id, new_status, callback_payload) -> bool:
        # Let a concurrent callback interleave before the conditional write
        await asyncio.sleep(0)
        payment = self.payments[payment_id]
        if payment.status != PaymentStatus.PENDING:
            return False
        payment.status = new_status
        payment.callback_payload = callback_payload
        return True

    async def mark_refunded(self, payment_id, refund_amount, reason, actor_id) -> bool:
        await asyncio.sleep(0)
        payment = self.payments[payment_id]
        if payment.status != PaymentStatus.SUCCESS:
            return False
        payment.status = PaymentStatus.REFUNDED
        payment.refund_amount = refund_amount
        payment.refund_reason = reason
        payment.refunded_by = actor_id
        payment.refunded_at = datetime.now(timezone.utc)
        return True


class FakeGateway(PaymentGateway):
    """Gateway double that records calls and never touches the network."""

    def __init__(self, method: PaymentMethod):
        super().__init__(http_client=None)
        self.method = method
        self.transaction_prefix = method.value.upper()
        self.created: list[GatewayPayment] = []
        self.refund_calls: list[Payment] = []
        self.refund_error: Optional[Exception] = None

    async def create_payment(self, order, amount, client_ip, force_new=False):
        transaction_id = generate_transaction_id(self.transaction_prefix, force_new)
        payment = GatewayPayment(
            payment_url=f"https://gateway.test/pay/{transaction_id}",
            transaction_id=transaction_id,
        )
        self.created.append(payment)
        return payment

    async def refund(self, payment, reason, actor_id):
        self.refund_calls.append(payment)
        if self.refund_error is not None:
            raise self.refund_error
        return {"resultCode": 0}


VNPAY_CONFIG = VNPayConfig(
    tmn_code="TESTTMN1",
    hash_secret="vnpay-secret",
    payment_url="https://sandbox.vnpayment.vn/paymentv2/vpcpay.html",
    api_url="https://sandbox.vnpayment.vn/merchant_webapi/api/transaction",
    return_url="https://shop.example.com/api/v1/payments/callback/vnpay",
)


# ============================================================================
# Test Fixtures
# ============================================================================


@pytest.fixture
def order() -> OrderSnapshot:
    return OrderSnapshot(
        id=uuid.uuid4(),
        order_number="ORD-20240131-0007",
        status=OrderStatus.PENDING,
        payment_status=OrderPaymentStatus.UNPAID,
        total_amount=Decimal("379000"),
        user_id="user-1",
    )


@pytest.fixture
def order_client(order) -> AsyncMock:
    client = AsyncMock()
    client.get_order.return_value = order
    client.update_payment_status.return_value = None
    return client


@pytest.fixture
def repository() -> FakePaymentRepository:
    return FakePaymentRepository()


@pytest.fixture
def momo_gateway() -> FakeGateway:
    return FakeGateway(PaymentMethod.MOMO)


@pytest.fixture
def vnpay_gateway() -> VNPayGateway:
    return VNPayGateway(VNPAY_CONFIG, http_client=None)


@pytest.fixture
def notifier() -> BackgroundNotifier:
    return BackgroundNotifier()


@pytest.fixture
def stock_client() -> AsyncMock:
    return AsyncMock()


@pytest.fixture
def payment_service(
    repository, order_client, vnpay_gateway, momo_gateway, notifier, stock_client
):
    return PaymentService(
        repository=repository,
        order_client=order_client,
        gateways={PaymentMethod.VNPAY: vnpay_gateway, PaymentMethod.MOMO: momo_gateway},
        notifier=notifier,
        stock_client=stock_client,
    )


def vnpay_callback(transaction_id: str, response_code: str = "00") -> dict[str, str]:
    params = {
        "vnp_Amount": "37900000",
        "vnp_ResponseCode": response_code,
        "vnp_TmnCode": "TESTTMN1",
        "vnp_TransactionNo": "14283540",
        "vnp_TxnRef": transaction_id,
    }
    params["vnp_SecureHash"] = VNPayGateway(VNPAY_CONFIG, http_client=None).signature(params)
    return params


# ============================================================================
# Online payments
# ============================================================================


class TestCreateOnlinePayment:
    @pytest.mark.asyncio
    async def test_creates_pending_payment(
        self, payment_service, repository, order, order_client, notifier
    ):
        result = await payment_service.create_online_payment(order.id, "Momo", "10.0.0.1")
        await notifier.drain()

        assert result["success"] is True
        assert result["amount"] == 379000.0
        assert result["payment_url"].endswith(result["transaction_id"])
        payment = await repository.get_by_transaction_id(result["transaction_id"])
        assert payment.status == PaymentStatus.PENDING
        assert payment.amount == Decimal("379000")
        assert payment.payment_gateway == "Momo"
        order_client.update_payment_status.assert_awaited_once_with(
            order.id, OrderPaymentStatus.PROCESSING, None
        )

    @pytest.mark.asyncio
    async def test_vnpay_payment_url(self, payment_service, order):
        result = await payment_service.create_online_payment(order.id, "VNPay")

        assert result["payment_url"].startswith(VNPAY_CONFIG.payment_url)
        assert result["transaction_id"].startswith("VNPAY-")

    @pytest.mark.asyncio
    async def test_second_attempt_reuses_pending_payment(self, payment_service, repository, order):
        first = await payment_service.create_online_payment(order.id, "Momo")
        second = await payment_service.create_online_payment(order.id, "Momo")

        assert first["transaction_id"] != second["transaction_id"]
        assert len(repository.payments) == 1
        only = next(iter(repository.payments.values()))
        assert only.transaction_id == second["transaction_id"]

    @pytest.mark.asyncio
    async def test_transaction_collision_regenerates_once(
        self, payment_service, repository, momo_gateway, order
    ):
        repository.collide_next = 1

        result = await payment_service.create_online_payment(order.id, "Momo")

        assert len(momo_gateway.created) == 2
        assert len(result["transaction_id"].split("-")[-1]) == 16

    @pytest.mark.asyncio
    async def test_repeated_collision_surfaces(self, payment_service, repository, order):
        repository.collide_next = 2

        with pytest.raises(TransactionIdCollisionError):
            await payment_service.create_online_payment(order.id, "Momo")

    @pytest.mark.asyncio
    @pytest.mark.parametrize("method", ["CashOnDelivery", "Bitcoin"])
    async def test_rejects_non_gateway_methods(self, payment_service, order, method):
        with pytest.raises(ValidationError):
            await payment_service.create_online_payment(order.id, method)

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "status",
        [OrderStatus.PROCESSING, OrderStatus.SHIPPED, OrderStatus.DELIVERED, OrderStatus.CANCELLED],
    )
    async def test_order_must_be_payable(self, payment_service, order_client, order, status):
        order_client.get_order.return_value = order.model_copy(update={"status": status})

        with pytest.raises(PreconditionFailed) as exc_info:
            await payment_service.create_online_payment(order.id, "Momo")

        assert exc_info.value.message == f"Cannot process payment for order with status: {status.value}"

    @pytest.mark.asyncio
    async def test_paid_order_rejected(self, payment_service, order_client, order, repository):
        order_client.get_order.return_value = order.model_copy(
            update={"payment_status": OrderPaymentStatus.PAID}
        )

        with pytest.raises(PreconditionFailed) as exc_info:
            await payment_service.create_online_payment(order.id, "Momo")

        assert exc_info.value.message == "Order has already been paid"
        assert repository.payments == {}

    @pytest.mark.asyncio
    async def test_order_service_down(self, payment_service, order_client, order, repository):
        order_client.get_order.side_effect = UpstreamError("order-service is unreachable", retryable=True)

        with pytest.raises(UpstreamError):
            await payment_service.create_online_payment(order.id, "Momo")

        assert repository.payments == {}

    @pytest.mark.asyncio
    async def test_notification_failure_does_not_fail_payment(
        self, payment_service, order_client, order, notifier
    ):
        order_client.update_payment_status.side_effect = UpstreamError("order-service responded with 500")

        result = await payment_service.create_online_payment(order.id, "Momo")
        await notifier.drain()

        assert result["success"] is True
        assert notifier.pending == 0

    @pytest.mark.asyncio
    async def test_owner_may_pay(self, payment_service, order):
        result = await payment_service.create_online_payment(
            order.id, "Momo", requester=OrderOwner(user_id="user-1")
        )

        assert result["success"] is True

    @pytest.mark.asyncio
    async def test_session_owner_may_pay(self, payment_service, order_client, order):
        order_client.get_order.return_value = order.model_copy(
            update={"user_id": None, "session_id": "session-abc"}
        )

        result = await payment_service.create_online_payment(
            order.id, "Momo", requester=OrderOwner(session_id="session-abc")
        )

        assert result["success"] is True

    @pytest.mark.asyncio
    async def test_other_shopper_cannot_pay(self, payment_service, order, repository, momo_gateway):
        with pytest.raises(AuthorizationError) as exc_info:
            await payment_service.create_online_payment(
                order.id, "Momo", requester=OrderOwner(user_id="user-2")
            )

        assert exc_info.value.message == "Not allowed to pay for this order"
        assert momo_gateway.created == []
        assert repository.payments == {}


# ============================================================================
# Callbacks
# ============================================================================


class TestHandleGatewayCallback:
    @pytest.fixture
    def pending(self, repository, order) -> Payment:
        return repository.add(
            order_id=order.id,
            amount=Decimal("379000"),
            payment_method=PaymentMethod.VNPAY,
            status=PaymentStatus.PENDING,
            transaction_id="VNPAY-1706700000000-3fa1c2d4",
            payment_gateway="VNPay",
        )

    @pytest.mark.asyncio
    async def test_success_marks_payment_and_order_paid(
        self, payment_service, pending, order_client, notifier
    ):
        result = await payment_service.handle_gateway_callback(
            "vnpay", vnpay_callback(pending.transaction_id)
        )
        await notifier.drain()

        assert result == {
            "transaction_id": pending.transaction_id,
            "order_id": str(pending.order_id),
            "status": "success",
            "duplicate": False,
        }
        assert pending.status == PaymentStatus.SUCCESS
        assert pending.callback_payload["vnp_TransactionNo"] == "14283540"
        order_client.update_payment_status.assert_awaited_once_with(
            pending.order_id, OrderPaymentStatus.PAID, "Payment successful via VNPay"
        )

    @pytest.mark.asyncio
    async def test_failure_marks_payment_failed(
        self, payment_service, pending, order_client, notifier
    ):
        result = await payment_service.handle_gateway_callback(
            "VNPay", vnpay_callback(pending.transaction_id, response_code="24")
        )
        await notifier.drain()

        assert result["status"] == "failed"
        assert pending.status == PaymentStatus.FAILED
        order_client.update_payment_status.assert_awaited_once_with(
            pending.order_id, OrderPaymentStatus.PAYMENT_FAILED, "Payment failed via VNPay"
        )

    @pytest.mark.asyncio
    async def test_replayed_callback_changes_nothing(
        self, payment_service, pending, order_client, notifier
    ):
        params = vnpay_callback(pending.transaction_id)

        await payment_service.handle_gateway_callback("vnpay", params)
        replay = await payment_service.handle_gateway_callback("vnpay", params)
        await notifier.drain()

        assert replay["duplicate"] is True
        assert replay["status"] == "success"
        assert order_client.update_payment_status.await_count == 1

    @pytest.mark.asyncio
    async def test_late_failure_does_not_override_success(
        self, payment_service, pending, notifier
    ):
        await payment_service.handle_gateway_callback("vnpay", vnpay_callback(pending.transaction_id))

        late = await payment_service.handle_gateway_callback(
            "vnpay", vnpay_callback(pending.transaction_id, response_code="24")
        )
        await notifier.drain()

        assert late["duplicate"] is True
        assert pending.status == PaymentStatus.SUCCESS

    @pytest.mark.asyncio
    async def test_concurrent_callbacks_apply_once(
        self, payment_service, pending, order_client, notifier
    ):
        params = vnpay_callback(pending.transaction_id)

        results = await asyncio.gather(
            payment_service.handle_gateway_callback("vnpay", params),
            payment_service.handle_gateway_callback("vnpay", params),
        )
        await notifier.drain()

        assert sorted(result["duplicate"] for result in results) == [False, True]
        assert order_client.update_payment_status.await_count == 1

    @pytest.mark.asyncio
    async def test_bad_signature(self, payment_service, pending):
        params = vnpay_callback(pending.transaction_id)
        params["vnp_Amount"] = "100"

        with pytest.raises(AuthenticationError):
            await payment_service.handle_gateway_callback("vnpay", params)

        assert pending.status == PaymentStatus.PENDING

    @pytest.mark.asyncio
    async def test_unknown_transaction(self, payment_service):
        with pytest.raises(NotFoundError) as exc_info:
            await payment_service.handle_gateway_callback("vnpay", vnpay_callback("VNPAY-0-missing"))

        assert exc_info.value.message == "Payment not found"

    @pytest.mark.asyncio
    async def test_unknown_gateway(self, payment_service):
        with pytest.raises(ValidationError):
            await payment_service.handle_gateway_callback("paypal", {})


# ============================================================================
# Offline payments
# ============================================================================


class TestCreateOfflinePayment:
    @pytest.mark.asyncio
    async def test_records_cash_on_delivery(self, payment_service, order, repository):
        payment = await payment_service.create_offline_payment(
            order.id, actor_id="user-1", requester=OrderOwner(user_id="user-1")
        )

        assert payment["status"] == "pending"
        assert payment["payment_method"] == "CashOnDelivery"
        assert payment["transaction_id"].startswith("COD-")
        assert payment["amount"] == 379000.0
        stored = await repository.get_by_transaction_id(payment["transaction_id"])
        assert stored.created_by == "user-1"

    @pytest.mark.asyncio
    async def test_amount_follows_order_total(self, payment_service, order_client, order):
        order_client.get_order.return_value = order.model_copy(
            update={"total_amount": Decimal("125500")}
        )

        payment = await payment_service.create_offline_payment(order.id)

        assert payment["amount"] == 125500.0

    @pytest.mark.asyncio
    async def test_rejects_online_method(self, payment_service, order):
        with pytest.raises(ValidationError):
            await payment_service.create_offline_payment(order.id, "VNPay")

    @pytest.mark.asyncio
    async def test_other_shopper_cannot_record(self, payment_service, order, repository):
        with pytest.raises(AuthorizationError):
            await payment_service.create_offline_payment(
                order.id, requester=OrderOwner(session_id="session-xyz")
            )

        assert repository.payments == {}

    @pytest.mark.asyncio
    async def test_paid_order_rejected(self, payment_service, order_client, order):
        order_client.get_order.return_value = order.model_copy(
            update={"payment_status": OrderPaymentStatus.PAID}
        )

        with pytest.raises(PreconditionFailed):
            await payment_service.create_offline_payment(order.id)

    @pytest.mark.asyncio
    async def test_second_pending_cod_payment_conflicts(self, payment_service, order):
        await payment_service.create_offline_payment(order.id)

        with pytest.raises(DuplicatePendingPaymentError):
            await payment_service.create_offline_payment(order.id)


# ============================================================================
# Refunds
# ============================================================================


class TestRefundPayment:
    @pytest.fixture
    def captured(self, repository, order) -> Payment:
        return repository.add(
            order_id=order.id,
            amount=Decimal("379000"),
            payment_method=PaymentMethod.MOMO,
            status=PaymentStatus.SUCCESS,
            transaction_id="MOMO-1706700000000-a1b2c3d4",
            payment_gateway="Momo",
            callback_payload={"transId": "4088878653"},
        )

    @pytest.mark.asyncio
    async def test_refunds_through_gateway(
        self, payment_service, captured, momo_gateway, order_client, stock_client, notifier
    ):
        result = await payment_service.refund_payment(captured.order_id, "Damaged item", "admin-1")
        await notifier.drain()

        assert result["transaction_id"] == captured.transaction_id
        assert result["refund_amount"] == 379000.0
        assert result["refunded_at"] is not None
        assert result["gateway_response"] == {"resultCode": 0}
        assert captured.status == PaymentStatus.REFUNDED
        assert captured.refunded_by == "admin-1"
        assert momo_gateway.refund_calls == [captured]
        order_client.update_payment_status.assert_awaited_once_with(
            captured.order_id, OrderPaymentStatus.REFUNDED, "Damaged item"
        )
        stock_client.restore_after_refund.assert_awaited_once_with(captured.order_id)

    @pytest.mark.asyncio
    async def test_restock_waits_for_order_update(
        self, payment_service, captured, order_client, stock_client, notifier
    ):
        order_client.update_payment_status.side_effect = UpstreamError(
            "order-service is unreachable", retryable=True
        )

        result = await payment_service.refund_payment(captured.order_id, None, "admin-1")
        await notifier.drain()

        assert result["refund_amount"] == 379000.0
        assert captured.status == PaymentStatus.REFUNDED
        stock_client.restore_after_refund.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_restock_failure_does_not_fail_refund(
        self, payment_service, captured, stock_client, notifier
    ):
        stock_client.restore_after_refund.side_effect = UpstreamError(
            "stock-service responded with 500"
        )

        result = await payment_service.refund_payment(captured.order_id, None, "admin-1")
        await notifier.drain()

        assert result["transaction_id"] == captured.transaction_id
        assert notifier.pending == 0

    @pytest.mark.asyncio
    async def test_second_refund_conflicts(self, payment_service, captured, momo_gateway):
        await payment_service.refund_payment(captured.order_id, None, "admin-1")

        with pytest.raises(ConflictError) as exc_info:
            await payment_service.refund_payment(captured.order_id, None, "admin-1")

        assert exc_info.value.message == "This payment has already been refunded"
        assert len(momo_gateway.refund_calls) == 1

    @pytest.mark.asyncio
    async def test_gateway_failure_leaves_payment_captured(
        self, payment_service, captured, momo_gateway, order_client, stock_client, notifier
    ):
        momo_gateway.refund_error = UpstreamError("Refund failed: rejected by Momo")

        with pytest.raises(UpstreamError):
            await payment_service.refund_payment(captured.order_id, None, "admin-1")
        await notifier.drain()

        assert captured.status == PaymentStatus.SUCCESS
        order_client.update_payment_status.assert_not_awaited()
        stock_client.restore_after_refund.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_no_captured_payment(self, payment_service, repository, order):
        repository.add(
            order_id=order.id,
            amount=Decimal("379000"),
            payment_method=PaymentMethod.MOMO,
            status=PaymentStatus.PENDING,
            transaction_id="MOMO-1-pending",
        )

        with pytest.raises(NotFoundError) as exc_info:
            await payment_service.refund_payment(order.id, None, "admin-1")

        assert exc_info.value.message == "No successful payment found for this order"

    @pytest.mark.asyncio
    async def test_cash_on_delivery_cannot_be_refunded(self, payment_service, repository, order):
        repository.add(
            order_id=order.id,
            amount=Decimal("379000"),
            payment_method=PaymentMethod.CASH_ON_DELIVERY,
            status=PaymentStatus.SUCCESS,
            transaction_id="COD-1a2b3c4d",
        )

        with pytest.raises(ValidationError) as exc_info:
            await payment_service.refund_payment(order.id, None, "admin-1")

        assert exc_info.value.message == "Cannot refund cash on delivery payment"

    @pytest.mark.asyncio
    async def test_pending_cash_on_delivery_cannot_be_refunded(
        self, payment_service, order, order_client, stock_client, notifier
    ):
        await payment_service.create_offline_payment(order.id, actor_id="user-1")

        with pytest.raises(ValidationError) as exc_info:
            await payment_service.refund_payment(order.id, "Changed my mind", "admin-1")
        await notifier.drain()

        assert exc_info.value.message == "Cannot refund cash on delivery payment"
        order_client.update_payment_status.assert_not_awaited()
        stock_client.restore_after_refund.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_order_without_payments(self, payment_service, order):
        with pytest.raises(NotFoundError) as exc_info:
            await payment_service.refund_payment(order.id, None, "admin-1")

        assert exc_info.value.message == "No successful payment found for this order"


class TestGetPaymentByTransaction:
    @pytest.mark.asyncio
    async def test_found(self, payment_service, repository, order):
        repository.add(
            order_id=order.id,
            amount=Decimal("10"),
            payment_method=PaymentMethod.MOMO,
            status=PaymentStatus.PENDING,
            transaction_id="MOMO-1-x",
        )

        payment = await payment_service.get_payment_by_transaction("MOMO-1-x")

        assert payment["order_id"] == str(order.id)

    @pytest.mark.asyncio
    async def test_missing(self, payment_service):
        with pytest.raises(NotFoundError):
            await payment_service.get_payment_by_transaction("nope")
