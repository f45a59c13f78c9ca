"""
Stock reconciler: puts an order's items back on the shelf after a refund or
a cancellation.

Each line item is restored independently. A product that disappeared, an
item restored by an earlier call, or a stock record under heavy write
contention never stops the remaining items from being restored; those
outcomes are reported alongside the restored items instead.
"""

import uuid
from collections import OrderedDict
from enum import Enum
from typing import Any

from storefront.clients.orders import OrderServiceClient, OrderSnapshot
from storefront.core.errors import (
    NotFoundError,
    StorefrontError,
    ValidationError,
    VersionConflictError,
)
from storefront.core.logging import get_logger
from storefront.database.models.inventory import LedgerCause
from storefront.database.models.order import OrderPaymentStatus, OrderStatus
from storefront.services.inventory.ledger import InventoryLedgerService
from storefront.services.inventory.repository import AlreadyRestoredError

logger = get_logger(__name__)


class RestorationCause(str, Enum):
    REFUND = "refund"
    CANCEL = "cancel"

    @property
    def ledger_cause(self) -> LedgerCause:
        if self is RestorationCause.REFUND:
            return LedgerCause.REFUND_CREDIT
        return LedgerCause.CANCEL_CREDIT


def _check_eligibility(order: OrderSnapshot, cause: RestorationCause) -> None:
    if cause is RestorationCause.REFUND:
        if order.payment_status != OrderPaymentStatus.REFUNDED:
            raise ValidationError(
                "Cannot restore inventory for non-refunded order",
                order_id=str(order.id),
                payment_status=order.payment_status.value,
            )
        return

    if not (
        order.status == OrderStatus.CANCELLED
        and order.payment_status == OrderPaymentStatus.UNPAID
    ):
        raise ValidationError(
            "Cannot restore inventory for order that is not cancelled and unpaid",
            order_id=str(order.id),
            status=order.status.value,
            payment_status=order.payment_status.value,
        )


def _quantities_by_product(order: OrderSnapshot) -> "OrderedDict[str, int]":
    # An order may list the same product on several lines
    quantities: "OrderedDict[str, int]" = OrderedDict()
    for item in order.items:
        quantities[item.product_id] = quantities.get(item.product_id, 0) + item.quantity
    return quantities


class StockReconciler:
    """Restores stock for refunded or cancelled-unpaid orders."""

    def __init__(self, ledger: InventoryLedgerService, order_client: OrderServiceClient):
        self.ledger = ledger
        self.order_client = order_client

    async def restore_inventory(
        self,
        order_id: uuid.UUID,
        cause: RestorationCause,
    ) -> dict[str, Any]:
        """
        Credit every item of the order back to stock.

        Args:
            order_id: Order whose items are restored
            cause: Why the stock comes back (refund or cancel)

        Returns:
            Dictionary with restored_items, skipped_items and failed_items.
            success is True whenever the order itself was eligible.

        Raises:
            NotFoundError: Order missing or without items
            ValidationError: Order not eligible for this cause
            UpstreamError: Order service unavailable after retries
        """
        order = await self.order_client.get_order(order_id)

        if not order.items:
            raise NotFoundError("No items found in order", order_id=str(order_id))

        _check_eligibility(order, cause)

        ledger_cause = cause.ledger_cause
        reference_id = str(order.id)
        restored: list[dict[str, Any]] = []
        skipped: list[dict[str, Any]] = []
        failed: list[dict[str, Any]] = []

        for product_ref, quantity in _quantities_by_product(order).items():
            item_context = {
                "order_id": reference_id,
                "product_id": product_ref,
                "quantity": quantity,
                "cause": cause.value,
            }

            try:
                product_id = uuid.UUID(product_ref)
            except ValueError:
                logger.warning("Skipping item with malformed product id", **item_context)
                skipped.append({"product_id": product_ref, "reason": "invalid_product_id"})
                continue

            try:
                if await self.ledger.has_restoration(product_id, ledger_cause, reference_id):
                    logger.info("Item already restored", **item_context)
                    skipped.append({"product_id": product_ref, "reason": "already_restored"})
                    continue

                entry = await self.ledger.record_change(
                    product_id=product_id,
                    delta=quantity,
                    cause=ledger_cause,
                    reference_id=reference_id,
                    notes=f"Restored after order {cause.value}",
                )
            except AlreadyRestoredError:
                logger.info("Item restored concurrently by another call", **item_context)
                skipped.append({"product_id": product_ref, "reason": "already_restored"})
                continue
            except NotFoundError:
                logger.warning("Product not found during restoration", **item_context)
                skipped.append({"product_id": product_ref, "reason": "product_not_found"})
                continue
            except VersionConflictError as e:
                logger.error(
                    "Stock restoration gave up after repeated version conflicts",
                    error=str(e),
                    **item_context,
                )
                failed.append({"product_id": product_ref, "reason": "version_conflict"})
                continue
            except StorefrontError as e:
                logger.error(
                    "Stock restoration failed for item",
                    error=str(e),
                    error_type=type(e).__name__,
                    **item_context,
                )
                failed.append({"product_id": product_ref, "reason": e.code.lower()})
                continue

            restored.append(
                {
                    "product_id": product_ref,
                    "quantity_restored": quantity,
                    "previous_stock": entry.previous_stock,
                    "new_stock": entry.new_stock,
                }
            )

        logger.info(
            "Inventory restoration finished",
            order_id=reference_id,
            cause=cause.value,
            restored=len(restored),
            skipped=len(skipped),
            failed=len(failed),
        )

        return {
            "success": True,
            "order_id": reference_id,
            "cause": cause.value,
            "restored_items": restored,
            "skipped_items": skipped,
            "failed_items": failed,
        }
