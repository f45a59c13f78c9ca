"""
Payment repository.

Status transitions are conditional updates (``WHERE status = <expected>``)
so that concurrent callbacks or refunds for the same payment resolve to a
single winner without row locks.
"""

import uuid
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Optional, Sequence

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from storefront.core.errors import ConflictError, InternalError
from storefront.core.logging import get_logger
from storefront.database.models.order import PaymentMethod
from storefront.database.models.payment import Payment, PaymentStatus

logger = get_logger(__name__)


class PaymentRepositoryError(InternalError):
    """Base exception for payment repository errors."""

    pass


class TransactionIdCollisionError(ConflictError):
    """Gateway transaction id already used by another payment."""

    code = "TRANSACTION_ID_COLLISION"


class DuplicatePendingPaymentError(ConflictError):
    """A pending payment already exists for this order and method."""

    code = "DUPLICATE_PAYMENT"


def _integrity_error(e: IntegrityError, **context: Any) -> ConflictError:
    detail = str(e.orig) if e.orig is not None else str(e)
    if "transaction_id" in detail:
        return TransactionIdCollisionError("Duplicate transaction ID", **context)
    if "uq_payments_pending_order_method" in detail:
        return DuplicatePendingPaymentError(
            "A pending payment already exists for this order",
            **context,
        )
    return ConflictError("Payment violates a uniqueness constraint", **context)


class PaymentRepository:
    """
    Repository for payment data access.

    Attributes:
        session: Async database session for executing queries
    """

    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(
        self,
        order_id: uuid.UUID,
        amount: Decimal,
        payment_method: PaymentMethod,
        transaction_id: Optional[str],
        payment_gateway: Optional[str] = None,
        created_by: Optional[str] = None,
    ) -> Payment:
        """
        Insert a pending payment.

        Raises:
            TransactionIdCollisionError: transaction_id already exists
            DuplicatePendingPaymentError: Pending payment for (order, method) exists
            PaymentRepositoryError: Any other database failure
        """
        try:
            payment = Payment(
                order_id=order_id,
                amount=amount,
                payment_method=payment_method,
                status=PaymentStatus.PENDING,
                transaction_id=transaction_id,
                payment_gateway=payment_gateway,
                created_by=created_by,
                updated_by=created_by,
            )
            self.session.add(payment)
            await self.session.flush()
            await self.session.commit()

            logger.info(
                "Payment created",
                payment_id=str(payment.id),
                order_id=str(order_id),
                transaction_id=transaction_id,
                amount=float(amount),
                payment_method=payment_method.value,
            )
            return payment

        except IntegrityError as e:
            await self.session.rollback()
            logger.warning(
                "Payment creation rejected by constraint",
                order_id=str(order_id),
                transaction_id=transaction_id,
                error=str(e.orig) if e.orig is not None else str(e),
            )
            raise _integrity_error(
                e,
                order_id=str(order_id),
                transaction_id=transaction_id,
            ) from e
        except SQLAlchemyError as e:
            await self.session.rollback()
            logger.error("Payment creation failed", order_id=str(order_id), error=str(e))
            raise PaymentRepositoryError(
                "Payment creation failed due to database error",
                order_id=str(order_id),
            ) from e

    async def get_by_id(self, payment_id: uuid.UUID) -> Optional[Payment]:
        return await self._one(select(Payment).where(Payment.id == payment_id))

    async def get_by_transaction_id(self, transaction_id: str) -> Optional[Payment]:
        return await self._one(select(Payment).where(Payment.transaction_id == transaction_id))

    async def get_pending_for_order(
        self,
        order_id: uuid.UUID,
        payment_method: PaymentMethod,
    ) -> Optional[Payment]:
        return await self._one(
            select(Payment).where(
                Payment.order_id == order_id,
                Payment.payment_method == payment_method,
                Payment.status == PaymentStatus.PENDING,
            )
        )

    async def get_settled_for_order(self, order_id: uuid.UUID) -> Optional[Payment]:
        """Latest captured or refunded payment of an order."""
        return await self._one(
            select(Payment)
            .where(
                Payment.order_id == order_id,
                Payment.status.in_([PaymentStatus.SUCCESS, PaymentStatus.REFUNDED]),
            )
            .order_by(Payment.created_at.desc())
            .limit(1)
        )

    async def list_for_order(self, order_id: uuid.UUID) -> Sequence[Payment]:
        """Every payment recorded for an order, newest first."""
        try:
            result = await self.session.execute(
                select(Payment)
                .where(Payment.order_id == order_id)
                .order_by(Payment.created_at.desc())
            )
            return result.scalars().all()
        except SQLAlchemyError as e:
            logger.error("Failed to list payments", order_id=str(order_id), error=str(e))
            raise PaymentRepositoryError("Failed to list payments", order_id=str(order_id)) from e

    async def _one(self, stmt) -> Optional[Payment]:
        try:
            result = await self.session.execute(
                stmt.execution_options(populate_existing=True)
            )
            return result.scalars().first()
        except SQLAlchemyError as e:
            logger.error("Failed to fetch payment", error=str(e))
            raise PaymentRepositoryError("Failed to fetch payment") from e

    async def update_pending(
        self,
        payment: Payment,
        transaction_id: str,
        amount: Decimal,
        payment_gateway: str,
    ) -> Payment:
        """Point an existing pending payment at a fresh gateway transaction."""
        previous_transaction = payment.transaction_id
        try:
            payment.transaction_id = transaction_id
            payment.amount = amount
            payment.payment_gateway = payment_gateway
            await self.session.flush()
            await self.session.commit()

            logger.info(
                "Pending payment reissued",
                payment_id=str(payment.id),
                previous_transaction_id=previous_transaction,
                transaction_id=transaction_id,
            )
            return payment

        except IntegrityError as e:
            await self.session.rollback()
            raise _integrity_error(
                e,
                payment_id=str(payment.id),
                transaction_id=transaction_id,
            ) from e
        except SQLAlchemyError as e:
            await self.session.rollback()
            logger.error("Failed to update payment", payment_id=str(payment.id), error=str(e))
            raise PaymentRepositoryError(
                "Failed to update payment",
                payment_id=str(payment.id),
            ) from e

    async def mark_outcome(
        self,
        payment_id: uuid.UUID,
        new_status: PaymentStatus,
        callback_payload: dict[str, Any],
    ) -> bool:
        """
        Move a pending payment to success or failed.

        Returns:
            True if this call performed the transition, False if the payment
            was no longer pending.
        """
        return await self._transition(
            payment_id,
            expected=PaymentStatus.PENDING,
            values={"status": new_status, "callback_payload": callback_payload},
        )

    async def mark_refunded(
        self,
        payment_id: uuid.UUID,
        refund_amount: Decimal,
        reason: Optional[str],
        actor_id: Optional[str],
    ) -> bool:
        """Move a successful payment to refunded. Returns False if it lost the race."""
        return await self._transition(
            payment_id,
            expected=PaymentStatus.SUCCESS,
            values={
                "status": PaymentStatus.REFUNDED,
                "refund_amount": refund_amount,
                "refund_reason": reason,
                "refunded_at": datetime.now(timezone.utc),
                "refunded_by": actor_id,
                "updated_by": actor_id,
            },
        )

    async def _transition(
        self,
        payment_id: uuid.UUID,
        expected: PaymentStatus,
        values: dict[str, Any],
    ) -> bool:
        try:
            result = await self.session.execute(
                update(Payment)
                .where(Payment.id == payment_id, Payment.status == expected)
                .values(**values)
                .returning(Payment.id)
            )
            won = result.scalar_one_or_none() is not None
            await self.session.commit()

            logger.info(
                "Payment transition attempted",
                payment_id=str(payment_id),
                from_status=expected.value,
                to_status=values["status"].value,
                applied=won,
            )
            return won

        except SQLAlchemyError as e:
            await self.session.rollback()
            logger.error(
                "Payment transition failed",
                payment_id=str(payment_id),
                error=str(e),
            )
            raise PaymentRepositoryError(
                "Failed to update payment status",
                payment_id=str(payment_id),
            ) from e
