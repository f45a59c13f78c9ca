"""
Order API endpoints.

Checkout from the active cart, order listings for owners and administrators,
admin status changes, and the internal payment-status endpoint used by the
payment service.
"""

from datetime import date
from typing import Annotated, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query, status

from storefront.api.deps import (
    CurrentAdmin,
    CurrentIdentity,
    InternalCall,
    get_order_service,
    verify_service_token,
)
from storefront.core.errors import AuthorizationError, ValidationError
from storefront.core.logging import get_logger
from storefront.schemas.orders import OrderCreateRequest, OrderStatusUpdate, PaymentStatusUpdate
from storefront.services.orders.service import OrderService

logger = get_logger(__name__)

router = APIRouter(prefix="/orders", tags=["orders"])

OrderServiceDep = Annotated[OrderService, Depends(get_order_service)]


@router.post(
    "",
    status_code=status.HTTP_201_CREATED,
    summary="Create order from cart",
    description="Turn the caller's active cart into a pending order",
)
async def create_order(
    request: OrderCreateRequest,
    identity: CurrentIdentity,
    service: OrderServiceDep,
) -> dict:
    if not identity.user_id and not identity.session_id:
        raise ValidationError("User id or session id is required")

    order = await service.create_order_from_cart(
        owner=identity.owner,
        shipping_address=request.shipping_address_dict(),
        shipping_method=request.shipping_method,
        payment_method=request.payment_method,
        customer_notes=request.notes,
    )
    return {"status": "success", "message": "Order created successfully", "data": order}


@router.get(
    "",
    summary="List my orders",
    description="Orders of the signed-in user or anonymous session, newest first",
)
async def list_my_orders(
    identity: CurrentIdentity,
    service: OrderServiceDep,
    status_filter: Optional[str] = Query(None, alias="status"),
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
) -> dict:
    result = await service.get_orders_for_owner(
        owner=identity.owner,
        status=status_filter,
        page=page,
        limit=limit,
    )
    return {"status": "success", "data": result["orders"], "pagination": result["pagination"]}


@router.get(
    "/admin",
    summary="List all orders",
    description="Admin listing with status, user and date filters",
)
async def list_all_orders(
    admin: CurrentAdmin,
    service: OrderServiceDep,
    status_filter: Optional[str] = Query(None, alias="status"),
    user_id: Optional[str] = Query(None, alias="userId"),
    from_date: Optional[date] = Query(None, alias="fromDate"),
    to_date: Optional[date] = Query(None, alias="toDate"),
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
) -> dict:
    if from_date and to_date and to_date < from_date:
        raise ValidationError("toDate must not be before fromDate")

    result = await service.get_orders_for_admin(
        status=status_filter,
        user_id=user_id,
        from_date=from_date,
        to_date=to_date,
        page=page,
        limit=limit,
    )
    return {"status": "success", "data": result["orders"], "pagination": result["pagination"]}


@router.get(
    "/{order_id}",
    summary="Get order",
    description="Visible to the order's owner, administrators and sibling services",
)
async def get_order(
    order_id: UUID,
    identity: CurrentIdentity,
    internal: InternalCall,
    service: OrderServiceDep,
) -> dict:
    order = await service.get_order(order_id)

    if not (
        internal
        or identity.is_admin
        or (identity.user_id and order["user_id"] == identity.user_id)
        or (identity.session_id and order["session_id"] == identity.session_id)
    ):
        logger.warning(
            "Order access denied",
            order_id=str(order_id),
            user_id=identity.user_id,
        )
        raise AuthorizationError("Not allowed to view this order", order_id=str(order_id))

    return {"status": "success", "data": order}


@router.put(
    "/{order_id}/status",
    summary="Update order status",
    description="Admin status change; appends to the status history",
)
async def update_order_status(
    order_id: UUID,
    request: OrderStatusUpdate,
    admin: CurrentAdmin,
    service: OrderServiceDep,
) -> dict:
    order = await service.update_order_status(
        order_id=order_id,
        new_status=request.status,
        actor_id=admin.user_id,
        note=request.note,
    )
    return {"status": "success", "message": "Order status updated", "data": order}


@router.put(
    "/{order_id}/payment-status",
    summary="Update payment status",
    description="Internal endpoint called by the payment service",
    dependencies=[Depends(verify_service_token)],
)
async def update_payment_status(
    order_id: UUID,
    request: PaymentStatusUpdate,
    service: OrderServiceDep,
) -> dict:
    order = await service.update_payment_status(
        order_id=order_id,
        payment_status=request.payment_status,
        note=request.note,
    )
    return {"status": "success", "data": order}
