"""
Order orchestrator.

Turns the shopper's active cart into a pending order, exposes admin status
changes with an audit trail, and accepts payment status updates pushed by
the payment service.
"""

import uuid
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from decimal import Decimal
from typing import Any, Optional

from storefront.clients.cart import CartClient
from storefront.clients.orders import BackgroundNotifier
from storefront.clients.stock import StockServiceClient
from storefront.core.config import PricingConfig
from storefront.core.errors import NotFoundError, StorefrontError, ValidationError
from storefront.core.logging import get_logger
from storefront.database.models.order import (
    Order,
    OrderPaymentStatus,
    OrderStatus,
    PaymentMethod,
    ShippingMethod,
)
from storefront.services.orders.repository import OrderNumberTakenError, OrderRepository

logger = get_logger(__name__)

ORDER_NUMBER_ATTEMPTS = 3
MAX_PAGE_SIZE = 100
CANCELLED_AFTER_PAYMENT_NOTE = "Order cancelled after payment. Refund may be required."


@dataclass(frozen=True)
class OrderOwner:
    """Who is placing or viewing orders: a signed-in user or an anonymous session."""

    user_id: Optional[str] = None
    session_id: Optional[str] = None

    @property
    def reference(self) -> str:
        return self.user_id or self.session_id or ""


def next_order_number(latest: Optional[str], today: date) -> str:
    """
    Next number in today's ORD-YYYYMMDD-NNNN sequence.

    Example:
        >>> next_order_number("ORD-20240131-0041", date(2024, 1, 31))
        'ORD-20240131-0042'
    """
    prefix = f"ORD-{today:%Y%m%d}-"
    sequence = 1
    if latest and latest.startswith(prefix):
        try:
            sequence = int(latest[len(prefix):]) + 1
        except ValueError:
            sequence = 1
    return f"{prefix}{sequence:04d}"


def _parse_enum(enum_cls, value: Any, label: str):
    try:
        return enum_cls(value)
    except ValueError as e:
        allowed = ", ".join(member.value for member in enum_cls)
        raise ValidationError(f"Invalid {label}. Must be one of: {allowed}", value=value) from e


class OrderService:
    """
    Order orchestrator.

    Attributes:
        repository: Order repository for data access
        cart_client: Client for the cart service
        pricing: Shipping fee lookup
        stock_client: Client for the stock service, asked to restock cancellations
        notifier: Runs stock restoration requests in the background
    """

    def __init__(
        self,
        repository: OrderRepository,
        cart_client: CartClient,
        pricing: PricingConfig,
        stock_client: StockServiceClient,
        notifier: BackgroundNotifier,
    ):
        self.repository = repository
        self.cart_client = cart_client
        self.pricing = pricing
        self.stock_client = stock_client
        self.notifier = notifier

    async def create_order_from_cart(
        self,
        owner: OrderOwner,
        shipping_address: Optional[dict[str, Any]],
        shipping_method: Optional[str],
        payment_method: Optional[str],
        customer_notes: Optional[str] = None,
    ) -> dict[str, Any]:
        """
        Create a pending order from the owner's active cart.

        The cart is marked converted afterwards on a best-effort basis; a
        failure there is logged and does not undo the order.

        Raises:
            ValidationError: Bad owner or checkout fields, empty cart
            NotFoundError: Owner has no active cart
            UpstreamError: Cart service unavailable after retries
        """
        if bool(owner.user_id) == bool(owner.session_id):
            raise ValidationError("Exactly one of user id or session id is required")
        if not shipping_address or not shipping_method or not payment_method:
            raise ValidationError(
                "Shipping address, shipping method and payment method are required"
            )

        shipping = _parse_enum(ShippingMethod, shipping_method, "shipping method")
        payment = _parse_enum(PaymentMethod, payment_method, "payment method")

        cart = await self.cart_client.get_active_cart(
            user_id=owner.user_id,
            session_id=owner.session_id,
        )
        if cart is None:
            raise NotFoundError("Active cart not found", owner=owner.reference)
        if not cart.items:
            raise ValidationError("Cart is empty", owner=owner.reference)

        subtotal = cart.computed_subtotal
        shipping_cost = Decimal(self.pricing.shipping_cost(shipping.value))
        discount = cart.discount
        total_amount = subtotal + shipping_cost - discount
        if total_amount < 0:
            raise ValidationError(
                "Order total cannot be negative",
                subtotal=str(subtotal),
                discount=str(discount),
            )

        items = [
            {
                "product_id": item.product_id,
                "name": item.name,
                "price": item.price,
                "quantity": item.quantity,
                "image": item.image,
            }
            for item in cart.items
        ]

        order = await self._persist_with_fresh_number(
            user_id=owner.user_id,
            session_id=owner.session_id,
            items=items,
            subtotal=subtotal,
            shipping_cost=shipping_cost,
            discount=discount,
            total_amount=total_amount,
            shipping_method=shipping,
            shipping_address=shipping_address,
            payment_method=payment,
            customer_info=cart.customer_info,
            customer_notes=customer_notes,
        )

        logger.info(
            "Order created from cart",
            order_id=str(order.id),
            order_number=order.order_number,
            total_amount=float(total_amount),
            item_count=len(items),
        )

        try:
            await self.cart_client.mark_converted(
                user_id=owner.user_id,
                session_id=owner.session_id,
            )
        except StorefrontError as e:
            # Order stays; the cart may still show as active until it expires
            logger.warning(
                "Failed to mark cart converted",
                order_id=str(order.id),
                owner=owner.reference,
                error=str(e),
                error_type=type(e).__name__,
            )

        return self._format_order(order)

    async def _persist_with_fresh_number(self, **fields: Any) -> Order:
        today = datetime.now(timezone.utc).date()
        prefix = f"ORD-{today:%Y%m%d}-"

        attempt = 1
        while True:
            latest = await self.repository.get_latest_order_number(prefix)
            order_number = next_order_number(latest, today)
            try:
                return await self.repository.create_order(order_number=order_number, **fields)
            except OrderNumberTakenError:
                if attempt >= ORDER_NUMBER_ATTEMPTS:
                    raise
                logger.info(
                    "Order number taken, allocating the next one",
                    order_number=order_number,
                    attempt=attempt,
                )
                attempt += 1

    async def update_order_status(
        self,
        order_id: uuid.UUID,
        new_status: str,
        actor_id: Optional[str] = None,
        note: Optional[str] = None,
    ) -> dict[str, Any]:
        """
        Change an order's status and append it to the history.

        Cancelling an order that was already paid leaves a note for
        administrators; it does not start a refund. Cancelling an unpaid
        order asks the stock service, in the background, to restock it.

        Raises:
            ValidationError: Unknown status
            NotFoundError: Order does not exist
        """
        status = _parse_enum(OrderStatus, new_status, "status")

        order = await self.repository.get_order_by_id(order_id, for_update=True)
        if order is None:
            raise NotFoundError("Order not found", order_id=str(order_id))

        previous_status = order.status
        order.record_status(status, note=note, actor_id=actor_id)

        if status == OrderStatus.CANCELLED and order.payment_status == OrderPaymentStatus.PAID:
            order.append_admin_note(CANCELLED_AFTER_PAYMENT_NOTE)
            logger.warning(
                "Paid order cancelled, refund may be required",
                order_id=str(order_id),
            )

        await self.repository.save(order)

        logger.info(
            "Order status updated",
            order_id=str(order_id),
            old_status=previous_status.value,
            new_status=status.value,
            actor_id=actor_id,
        )

        if status == OrderStatus.CANCELLED and order.payment_status == OrderPaymentStatus.UNPAID:
            self.notifier.schedule(
                "restock_cancelled_order",
                lambda: self.stock_client.restore_after_cancel(order_id),
                order_id=str(order_id),
            )

        return self._format_order(order)

    async def update_payment_status(
        self,
        order_id: uuid.UUID,
        payment_status: str,
        note: Optional[str] = None,
    ) -> dict[str, Any]:
        """Record the payment status reported by the payment service."""
        status = _parse_enum(OrderPaymentStatus, payment_status, "payment status")

        order = await self.repository.get_order_by_id(order_id, for_update=True)
        if order is None:
            raise NotFoundError("Order not found", order_id=str(order_id))

        previous = order.payment_status
        order.payment_status = status
        if note:
            order.append_admin_note(note)

        await self.repository.save(order)

        logger.info(
            "Order payment status updated",
            order_id=str(order_id),
            old_payment_status=previous.value,
            new_payment_status=status.value,
        )

        return self._format_order(order)

    async def get_order(self, order_id: uuid.UUID) -> dict[str, Any]:
        order = await self.repository.get_order_by_id(order_id)
        if order is None:
            raise NotFoundError("Order not found", order_id=str(order_id))
        return self._format_order(order)

    async def get_orders_for_owner(
        self,
        owner: OrderOwner,
        status: Optional[str] = None,
        page: int = 1,
        limit: int = 10,
    ) -> dict[str, Any]:
        if not owner.user_id and not owner.session_id:
            raise ValidationError("User id or session id is required")

        return await self._list(
            page=page,
            limit=limit,
            user_id=owner.user_id,
            session_id=None if owner.user_id else owner.session_id,
            status=_parse_enum(OrderStatus, status, "status") if status else None,
        )

    async def get_orders_for_admin(
        self,
        status: Optional[str] = None,
        user_id: Optional[str] = None,
        from_date: Optional[date] = None,
        to_date: Optional[date] = None,
        page: int = 1,
        limit: int = 10,
    ) -> dict[str, Any]:
        """Admin listing; ``to_date`` includes the whole day."""
        return await self._list(
            page=page,
            limit=limit,
            user_id=user_id,
            status=_parse_enum(OrderStatus, status, "status") if status else None,
            created_from=(
                datetime.combine(from_date, time.min, tzinfo=timezone.utc)
                if from_date
                else None
            ),
            created_before=(
                datetime.combine(to_date, time.min, tzinfo=timezone.utc) + timedelta(days=1)
                if to_date
                else None
            ),
        )

    async def _list(self, page: int, limit: int, **filters: Any) -> dict[str, Any]:
        if page < 1 or limit < 1:
            raise ValidationError("page and limit must be positive", page=page, limit=limit)
        limit = min(limit, MAX_PAGE_SIZE)

        orders, total = await self.repository.list_orders(
            skip=(page - 1) * limit,
            limit=limit,
            **filters,
        )
        return {
            "orders": [self._format_order(order) for order in orders],
            "pagination": {
                "page": page,
                "limit": limit,
                "total": total,
                "total_pages": (total + limit - 1) // limit,
            },
        }

    def _format_order(self, order: Order) -> dict[str, Any]:
        return {
            "id": str(order.id),
            "order_number": order.order_number,
            "user_id": order.user_id,
            "session_id": order.session_id,
            "status": order.status.value,
            "payment_status": order.payment_status.value,
            "items": [
                {
                    "product_id": item.product_id,
                    "name": item.name,
                    "price": float(item.price),
                    "quantity": item.quantity,
                    "image": item.image,
                }
                for item in order.items
            ],
            "subtotal": float(order.subtotal),
            "shipping_cost": float(order.shipping_cost),
            "discount": float(order.discount),
            "total_amount": float(order.total_amount),
            "shipping_method": order.shipping_method.value,
            "shipping_address": order.shipping_address,
            "payment_method": order.payment_method.value,
            "customer_info": order.customer_info,
            "customer_notes": order.customer_notes,
            "admin_notes": order.admin_notes,
            "tracking_number": order.tracking_number,
            "status_history": [
                {
                    "status": entry.status.value,
                    "note": entry.note,
                    "updated_by": entry.updated_by,
                    "date": entry.changed_at.isoformat() if entry.changed_at else None,
                }
                for entry in order.status_history
            ],
            "completed_at": order.completed_at.isoformat() if order.completed_at else None,
            "cancelled_at": order.cancelled_at.isoformat() if order.cancelled_at else None,
            "created_at": order.created_at.isoformat() if order.created_at else None,
        }
