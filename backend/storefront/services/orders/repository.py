"""
Order data access repository.

Creates orders with their item snapshot and initial history entry in one
transaction, loads orders (optionally row-locked for status changes), and
pages through orders for owners and administrators.
"""

import uuid
from datetime import datetime
from decimal import Decimal
from typing import Any, Optional, Sequence

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from storefront.core.errors import ConflictError, InternalError
from storefront.core.logging import get_logger
from storefront.database.models.order import (
    Order,
    OrderItem,
    OrderPaymentStatus,
    OrderStatus,
    OrderStatusHistory,
    PaymentMethod,
    ShippingMethod,
)

logger = get_logger(__name__)


class OrderRepositoryError(InternalError):
    """Base exception for order repository errors."""

    pass


class OrderNumberTakenError(ConflictError):
    """Another order was created with the same number first."""

    code = "ORDER_NUMBER_TAKEN"


class OrderRepository:
    """
    Repository for order data access operations.
    """

    def __init__(self, session: AsyncSession):
        self.session = session

    async def create_order(
        self,
        order_number: str,
        user_id: Optional[str],
        session_id: Optional[str],
        items: Sequence[dict[str, Any]],
        subtotal: Decimal,
        shipping_cost: Decimal,
        discount: Decimal,
        total_amount: Decimal,
        shipping_method: ShippingMethod,
        shipping_address: dict[str, Any],
        payment_method: PaymentMethod,
        customer_info: Optional[dict[str, Any]] = None,
        customer_notes: Optional[str] = None,
    ) -> Order:
        """
        Persist a new pending order with items and its first history entry.

        Raises:
            OrderNumberTakenError: order_number already exists
            OrderRepositoryError: Any other database failure
        """
        try:
            order = Order(
                order_number=order_number,
                user_id=user_id,
                session_id=session_id,
                status=OrderStatus.PENDING,
                payment_status=OrderPaymentStatus.UNPAID,
                subtotal=subtotal,
                shipping_cost=shipping_cost,
                discount=discount,
                tax=Decimal("0"),
                total_amount=total_amount,
                shipping_method=shipping_method,
                shipping_address=shipping_address,
                payment_method=payment_method,
                customer_info=customer_info,
                customer_notes=customer_notes,
                created_by=user_id or session_id,
                items=[
                    OrderItem(
                        position=position,
                        product_id=item["product_id"],
                        name=item["name"],
                        price=item["price"],
                        quantity=item["quantity"],
                        image=item.get("image"),
                    )
                    for position, item in enumerate(items)
                ],
                status_history=[
                    OrderStatusHistory(
                        sequence=1,
                        status=OrderStatus.PENDING,
                        note="Order created",
                        updated_by=user_id or session_id,
                    )
                ],
            )

            self.session.add(order)
            await self.session.flush()
            await self.session.commit()

            logger.info(
                "Order persisted",
                order_id=str(order.id),
                order_number=order_number,
                item_count=len(items),
            )
            return order

        except IntegrityError as e:
            await self.session.rollback()
            detail = str(e.orig) if e.orig is not None else str(e)
            if "order_number" in detail:
                raise OrderNumberTakenError(
                    "Order number already taken",
                    order_number=order_number,
                ) from e
            logger.error(
                "Order creation failed - integrity error",
                error=detail,
                order_number=order_number,
            )
            raise OrderRepositoryError(
                "Order creation failed due to data integrity violation",
                order_number=order_number,
            ) from e
        except SQLAlchemyError as e:
            await self.session.rollback()
            logger.error(
                "Order creation failed - database error",
                error=str(e),
                order_number=order_number,
            )
            raise OrderRepositoryError(
                "Order creation failed due to database error",
                order_number=order_number,
            ) from e

    async def get_latest_order_number(self, prefix: str) -> Optional[str]:
        """Number of the most recently created order whose number starts with ``prefix``."""
        try:
            result = await self.session.execute(
                select(Order.order_number)
                .where(Order.order_number.like(f"{prefix}%"))
                .order_by(Order.created_at.desc())
                .limit(1)
            )
            return result.scalar_one_or_none()
        except SQLAlchemyError as e:
            logger.error("Failed to read latest order number", prefix=prefix, error=str(e))
            raise OrderRepositoryError("Failed to read latest order number") from e

    async def get_order_by_id(
        self,
        order_id: uuid.UUID,
        for_update: bool = False,
    ) -> Optional[Order]:
        """
        Load an order with items and history.

        Args:
            order_id: Order identifier
            for_update: Lock the row until the transaction ends, so that
                concurrent status changes append history in commit order
        """
        try:
            stmt = select(Order).where(Order.id == order_id)
            if for_update:
                stmt = stmt.with_for_update().execution_options(populate_existing=True)

            result = await self.session.execute(stmt)
            return result.scalar_one_or_none()

        except SQLAlchemyError as e:
            logger.error(
                "Failed to fetch order",
                order_id=str(order_id),
                error=str(e),
            )
            raise OrderRepositoryError(
                "Failed to fetch order",
                order_id=str(order_id),
            ) from e

    async def list_orders(
        self,
        user_id: Optional[str] = None,
        session_id: Optional[str] = None,
        status: Optional[OrderStatus] = None,
        created_from: Optional[datetime] = None,
        created_before: Optional[datetime] = None,
        skip: int = 0,
        limit: int = 10,
    ) -> tuple[Sequence[Order], int]:
        """
        Page through orders matching the given filters, newest first.

        Returns:
            Tuple of (orders, total_count)
        """
        conditions: list[Any] = []
        if user_id is not None:
            conditions.append(Order.user_id == user_id)
        if session_id is not None:
            conditions.append(Order.session_id == session_id)
        if status is not None:
            conditions.append(Order.status == status)
        if created_from is not None:
            conditions.append(Order.created_at >= created_from)
        if created_before is not None:
            conditions.append(Order.created_at < created_before)

        try:
            result = await self.session.execute(
                select(Order)
                .where(*conditions)
                .order_by(Order.created_at.desc())
                .offset(skip)
                .limit(limit)
            )
            total = await self.session.scalar(
                select(func.count()).select_from(Order).where(*conditions)
            )
            return result.scalars().all(), int(total or 0)

        except SQLAlchemyError as e:
            logger.error("Failed to list orders", error=str(e))
            raise OrderRepositoryError("Failed to list orders") from e

    async def save(self, order: Order) -> Order:
        """
        Commit pending changes to an already loaded order.

        Raises:
            ConflictError: A concurrent writer appended history first
            OrderRepositoryError: Any other database failure
        """
        try:
            await self.session.flush()
            await self.session.commit()
            return order
        except IntegrityError as e:
            await self.session.rollback()
            logger.warning(
                "Order update collided with a concurrent change",
                order_id=str(order.id),
                error=str(e.orig) if e.orig is not None else str(e),
            )
            raise ConflictError(
                "Order was modified concurrently, retry the request",
                order_id=str(order.id),
            ) from e
        except SQLAlchemyError as e:
            await self.session.rollback()
            logger.error(
                "Failed to save order",
                order_id=str(order.id),
                error=str(e),
            )
            raise OrderRepositoryError(
                "Failed to save order",
                order_id=str(order.id),
            ) from e
