"""
Inventory API endpoints.

Stock restoration after refunds and cancellations, ledger history and
statistics, and manual stock adjustments.
"""

from datetime import date
from typing import Annotated, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query

from storefront.api.deps import (
    CurrentAdmin,
    get_ledger_service,
    get_stock_reconciler,
    require_admin_or_service,
)
from storefront.core.logging import get_logger
from storefront.schemas.inventory import StockAdjustmentRequest
from storefront.services.inventory.ledger import InventoryLedgerService
from storefront.services.inventory.reconciler import RestorationCause, StockReconciler

logger = get_logger(__name__)

router = APIRouter(prefix="/inventory", tags=["inventory"])

ReconcilerDep = Annotated[StockReconciler, Depends(get_stock_reconciler)]
LedgerDep = Annotated[InventoryLedgerService, Depends(get_ledger_service)]
AdminOrService = Annotated[Optional[str], Depends(require_admin_or_service)]


@router.post(
    "/restore/refund/{order_id}",
    summary="Restore stock after refund",
)
async def restore_after_refund(
    order_id: UUID,
    actor_id: AdminOrService,
    reconciler: ReconcilerDep,
) -> dict:
    logger.info("Restoring inventory after refund", order_id=str(order_id), actor_id=actor_id)
    result = await reconciler.restore_inventory(order_id, RestorationCause.REFUND)
    return {"status": "success", "message": "Inventory restored", "data": result}


@router.post(
    "/restore/cancel/{order_id}",
    summary="Restore stock after cancellation",
)
async def restore_after_cancel(
    order_id: UUID,
    actor_id: AdminOrService,
    reconciler: ReconcilerDep,
) -> dict:
    logger.info("Restoring inventory after cancellation", order_id=str(order_id), actor_id=actor_id)
    result = await reconciler.restore_inventory(order_id, RestorationCause.CANCEL)
    return {"status": "success", "message": "Inventory restored", "data": result}


@router.get(
    "/products/{product_id}/history",
    summary="Stock change history",
)
async def get_history(
    product_id: UUID,
    admin: CurrentAdmin,
    ledger: LedgerDep,
    cause: Optional[str] = Query(None, alias="source"),
    start_date: Optional[date] = Query(None, alias="startDate"),
    end_date: Optional[date] = Query(None, alias="endDate"),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
) -> dict:
    result = await ledger.get_history(
        product_id=product_id,
        cause=cause,
        start_date=start_date,
        end_date=end_date,
        page=page,
        limit=limit,
    )
    return {"status": "success", **result}


@router.get(
    "/stats",
    summary="Stock movement statistics",
)
async def get_stats(
    admin: CurrentAdmin,
    ledger: LedgerDep,
    start_date: Optional[date] = Query(None, alias="startDate"),
    end_date: Optional[date] = Query(None, alias="endDate"),
    group_by: str = Query("day", alias="groupBy"),
) -> dict:
    stats = await ledger.get_stats(start_date=start_date, end_date=end_date, group_by=group_by)
    return {"status": "success", "data": stats}


@router.post(
    "/products/{product_id}/adjust",
    summary="Adjust stock",
)
async def adjust_stock(
    product_id: UUID,
    body: StockAdjustmentRequest,
    admin: CurrentAdmin,
    ledger: LedgerDep,
) -> dict:
    entry = await ledger.adjust_stock(
        product_id=product_id,
        delta=body.delta,
        actor_id=admin.user_id,
        notes=body.notes,
    )
    return {"status": "success", "message": "Stock adjusted", "data": entry}
