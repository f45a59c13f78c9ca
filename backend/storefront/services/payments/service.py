"""
Payment orchestrator.

Starts online payments through VNPay or Momo, applies the gateways' signed
callbacks exactly once, records offline (cash on delivery) payments and
issues refunds. The order service is told about every payment status change
in the background, and refunded orders are handed to the stock service for
restocking; a lost notification never fails the payment operation.
"""

import secrets
import uuid
from decimal import Decimal
from typing import Any, Mapping, Optional

from storefront.clients.orders import BackgroundNotifier, OrderServiceClient, OrderSnapshot
from storefront.clients.stock import StockServiceClient
from storefront.core.errors import (
    AuthorizationError,
    ConflictError,
    NotFoundError,
    PreconditionFailed,
    UpstreamError,
    ValidationError,
)
from storefront.core.logging import get_logger
from storefront.database.models.order import OrderPaymentStatus, PaymentMethod
from storefront.database.models.payment import Payment, PaymentStatus
from storefront.services.orders.service import OrderOwner
from storefront.services.payments.gateways import GatewayPayment, PaymentGateway
from storefront.services.payments.repository import (
    PaymentRepository,
    TransactionIdCollisionError,
)

logger = get_logger(__name__)


def _parse_method(value: Any) -> PaymentMethod:
    if isinstance(value, PaymentMethod):
        return value
    try:
        return PaymentMethod(value)
    except ValueError as e:
        raise ValidationError("Unsupported payment method", payment_method=value) from e


def format_payment(payment: Payment) -> dict[str, Any]:
    return {
        "id": str(payment.id),
        "order_id": str(payment.order_id),
        "amount": float(payment.amount),
        "payment_method": payment.payment_method.value,
        "status": payment.status.value,
        "transaction_id": payment.transaction_id,
        "payment_gateway": payment.payment_gateway,
        "refund_amount": float(payment.refund_amount) if payment.refund_amount is not None else None,
        "refund_reason": payment.refund_reason,
        "refunded_at": payment.refunded_at.isoformat() if payment.refunded_at else None,
        "refunded_by": payment.refunded_by,
        "created_at": payment.created_at.isoformat() if payment.created_at else None,
        "updated_at": payment.updated_at.isoformat() if payment.updated_at else None,
    }


class PaymentService:
    """
    Payment orchestrator.

    Attributes:
        repository: Payment repository for data access
        order_client: Client for the order service
        gateways: Online gateways keyed by payment method
        notifier: Runs order status notifications in the background
        stock_client: Client for the stock service, asked to restock refunds
    """

    def __init__(
        self,
        repository: PaymentRepository,
        order_client: OrderServiceClient,
        gateways: Mapping[PaymentMethod, PaymentGateway],
        notifier: BackgroundNotifier,
        stock_client: StockServiceClient,
    ):
        self.repository = repository
        self.order_client = order_client
        self.gateways = dict(gateways)
        self.notifier = notifier
        self.stock_client = stock_client

    def _notify_order(
        self,
        order_id: uuid.UUID | str,
        payment_status: OrderPaymentStatus,
        note: Optional[str] = None,
    ) -> None:
        self.notifier.schedule(
            "order_payment_status",
            lambda: self.order_client.update_payment_status(order_id, payment_status, note),
            order_id=str(order_id),
            payment_status=payment_status.value,
        )

    def _notify_refund(self, order_id: uuid.UUID, reason: Optional[str]) -> None:
        async def mark_refunded_then_restock() -> None:
            await self.order_client.update_payment_status(
                order_id, OrderPaymentStatus.REFUNDED, reason
            )
            # Restoration is only accepted once the order reads as refunded
            await self.stock_client.restore_after_refund(order_id)

        self.notifier.schedule(
            "order_refunded",
            mark_refunded_then_restock,
            order_id=str(order_id),
            payment_status=OrderPaymentStatus.REFUNDED.value,
        )

    async def _payable_order(
        self,
        order_id: uuid.UUID,
        requester: Optional[OrderOwner],
    ) -> OrderSnapshot:
        """
        Load the order and check it can take a payment from ``requester``.

        A requester of None is a trusted caller (administrator or sibling
        service) and skips the ownership check.
        """
        order = await self.order_client.get_order(order_id)

        if requester is not None and not order.belongs_to(requester.user_id, requester.session_id):
            logger.warning(
                "Payment attempt on another owner's order",
                order_id=str(order_id),
                requester=requester.reference,
            )
            raise AuthorizationError("Not allowed to pay for this order", order_id=str(order_id))
        if not order.status.accepts_payment:
            raise PreconditionFailed(
                f"Cannot process payment for order with status: {order.status.value}",
                order_id=str(order_id),
            )
        if order.payment_status == OrderPaymentStatus.PAID:
            raise PreconditionFailed("Order has already been paid", order_id=str(order_id))
        return order

    async def create_online_payment(
        self,
        order_id: uuid.UUID,
        payment_method: str,
        client_ip: str = "127.0.0.1",
        requester: Optional[OrderOwner] = None,
    ) -> dict[str, Any]:
        """
        Start a gateway payment for an order.

        A pending payment already open for the same order and method is
        reissued with a new transaction instead of creating a second one.

        Raises:
            ValidationError: Method is not an online gateway
            NotFoundError: Order does not exist
            AuthorizationError: Requester does not own the order
            PreconditionFailed: Order not payable or already paid
            UpstreamError: Order service or gateway failure
        """
        method = _parse_method(payment_method)
        gateway = self.gateways.get(method)
        if gateway is None:
            raise ValidationError("Unsupported payment method", payment_method=method.value)

        order = await self._payable_order(order_id, requester)

        amount = order.total_amount
        gateway_payment = await gateway.create_payment(order, amount, client_ip)

        try:
            payment = await self._store_pending(order, method, amount, gateway_payment)
        except TransactionIdCollisionError:
            logger.warning(
                "Duplicate transaction id, generating a new one",
                order_id=str(order_id),
                transaction_id=gateway_payment.transaction_id,
            )
            gateway_payment = await gateway.create_payment(order, amount, client_ip, force_new=True)
            payment = await self._store_pending(order, method, amount, gateway_payment)

        self._notify_order(order.id, OrderPaymentStatus.PROCESSING)

        logger.info(
            "Online payment started",
            order_id=str(order_id),
            payment_id=str(payment.id),
            transaction_id=gateway_payment.transaction_id,
            payment_method=method.value,
            amount=float(amount),
        )

        return {
            "success": True,
            "payment_url": gateway_payment.payment_url,
            "transaction_id": gateway_payment.transaction_id,
            "amount": float(amount),
        }

    async def _store_pending(
        self,
        order: OrderSnapshot,
        method: PaymentMethod,
        amount: Decimal,
        gateway_payment: GatewayPayment,
    ) -> Payment:
        existing = await self.repository.get_pending_for_order(order.id, method)
        if existing is not None:
            return await self.repository.update_pending(
                existing,
                transaction_id=gateway_payment.transaction_id,
                amount=amount,
                payment_gateway=method.value,
            )
        return await self.repository.create(
            order_id=order.id,
            amount=amount,
            payment_method=method,
            transaction_id=gateway_payment.transaction_id,
            payment_gateway=method.value,
        )

    async def create_offline_payment(
        self,
        order_id: uuid.UUID,
        payment_method: str = PaymentMethod.CASH_ON_DELIVERY.value,
        actor_id: Optional[str] = None,
        requester: Optional[OrderOwner] = None,
    ) -> dict[str, Any]:
        """
        Record a cash on delivery payment for the order's total.

        Raises:
            ValidationError: Method is an online gateway
            NotFoundError: Order does not exist
            AuthorizationError: Requester does not own the order
            PreconditionFailed: Order not payable or already paid
            ConflictError: Pending offline payment already recorded
        """
        method = _parse_method(payment_method)
        if method.is_online:
            raise ValidationError(
                "Online payments must be started through /payments/online",
                payment_method=method.value,
            )

        order = await self._payable_order(order_id, requester)

        payment = await self.repository.create(
            order_id=order_id,
            amount=order.total_amount,
            payment_method=method,
            transaction_id=f"COD-{secrets.token_hex(4)}",
            created_by=actor_id,
        )
        return format_payment(payment)

    async def handle_gateway_callback(
        self,
        gateway_name: str,
        params: Mapping[str, Any],
    ) -> dict[str, Any]:
        """
        Apply a gateway's payment result.

        Replayed callbacks are acknowledged without changing anything.

        Raises:
            ValidationError: Unknown gateway
            AuthenticationError: Signature does not verify
            NotFoundError: Unknown transaction
        """
        gateway = next(
            (
                candidate
                for method, candidate in self.gateways.items()
                if method.value.lower() == gateway_name.lower()
            ),
            None,
        )
        if gateway is None:
            raise ValidationError("Unsupported payment gateway", gateway=gateway_name)

        outcome = gateway.verify_callback(params)

        payment = await self.repository.get_by_transaction_id(outcome.transaction_id)
        if payment is None:
            logger.warning(
                "Callback for unknown transaction",
                gateway=gateway.method.value,
                transaction_id=outcome.transaction_id,
            )
            raise NotFoundError("Payment not found", transaction_id=outcome.transaction_id)

        result = {
            "transaction_id": outcome.transaction_id,
            "order_id": str(payment.order_id),
            "status": payment.status.value,
            "duplicate": True,
        }

        if payment.status.is_terminal:
            logger.info(
                "Duplicate callback ignored",
                transaction_id=outcome.transaction_id,
                status=payment.status.value,
            )
            return result

        new_status = PaymentStatus.SUCCESS if outcome.success else PaymentStatus.FAILED
        won = await self.repository.mark_outcome(
            payment.id,
            new_status,
            {key: str(value) for key, value in params.items()},
        )
        if not won:
            logger.info(
                "Callback lost the race to a concurrent callback",
                transaction_id=outcome.transaction_id,
            )
            return result

        if outcome.success:
            self._notify_order(
                payment.order_id,
                OrderPaymentStatus.PAID,
                f"Payment successful via {gateway.method.value}",
            )
        else:
            self._notify_order(
                payment.order_id,
                OrderPaymentStatus.PAYMENT_FAILED,
                f"Payment failed via {gateway.method.value}",
            )

        logger.info(
            "Payment callback applied",
            transaction_id=outcome.transaction_id,
            order_id=str(payment.order_id),
            status=new_status.value,
            result_code=outcome.result_code,
        )

        return {**result, "status": new_status.value, "duplicate": False}

    async def refund_payment(
        self,
        order_id: uuid.UUID,
        reason: Optional[str],
        actor_id: Optional[str],
    ) -> dict[str, Any]:
        """
        Refund the captured payment of an order through its gateway.

        The payment record only changes after the gateway confirms.

        Raises:
            NotFoundError: No captured payment
            ConflictError: Already refunded
            ValidationError: Offline payment
            UpstreamError: Gateway refused or was unreachable
        """
        payment = await self.repository.get_settled_for_order(order_id)
        if payment is None:
            # Cash on delivery payments stay pending, so they are never settled here
            payments = await self.repository.list_for_order(order_id)
            if payments and all(candidate.is_offline for candidate in payments):
                raise ValidationError(
                    "Cannot refund cash on delivery payment",
                    order_id=str(order_id),
                )
            raise NotFoundError(
                "No successful payment found for this order",
                order_id=str(order_id),
            )
        if payment.status == PaymentStatus.REFUNDED:
            raise ConflictError(
                "This payment has already been refunded",
                order_id=str(order_id),
                transaction_id=payment.transaction_id,
            )
        if payment.is_offline:
            raise ValidationError(
                "Cannot refund cash on delivery payment",
                order_id=str(order_id),
            )

        gateway = self.gateways.get(payment.payment_method)
        if gateway is None:
            raise ValidationError(
                f"Unsupported payment method: {payment.payment_method.value}",
                order_id=str(order_id),
            )

        try:
            gateway_response = await gateway.refund(payment, reason, actor_id)
        except UpstreamError as e:
            logger.error(
                "Gateway refund failed",
                order_id=str(order_id),
                transaction_id=payment.transaction_id,
                error=str(e),
            )
            raise

        won = await self.repository.mark_refunded(payment.id, payment.amount, reason, actor_id)
        if not won:
            raise ConflictError(
                "This payment has already been refunded",
                order_id=str(order_id),
                transaction_id=payment.transaction_id,
            )

        self._notify_refund(order_id, reason)

        logger.info(
            "Payment refunded",
            order_id=str(order_id),
            transaction_id=payment.transaction_id,
            amount=float(payment.amount),
            actor_id=actor_id,
        )

        refreshed = await self.repository.get_by_id(payment.id)
        return {
            "transaction_id": payment.transaction_id,
            "refund_amount": float(payment.amount),
            "refunded_at": (
                refreshed.refunded_at.isoformat()
                if refreshed is not None and refreshed.refunded_at
                else None
            ),
            "gateway_response": gateway_response,
        }

    async def get_payment_by_transaction(self, transaction_id: str) -> dict[str, Any]:
        payment = await self.repository.get_by_transaction_id(transaction_id)
        if payment is None:
            raise NotFoundError("Payment not found", transaction_id=transaction_id)
        return format_payment(payment)
