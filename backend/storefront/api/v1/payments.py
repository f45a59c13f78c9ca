"""
Payment API endpoints.

Online payment initiation, gateway callbacks (browser return and
server-to-server notification), offline payments, lookups and refunds.
"""

from typing import Annotated, Any
from urllib.parse import urlencode

from fastapi import APIRouter, Depends, Request, status
from fastapi.responses import RedirectResponse

from storefront.api.deps import AppSettings, CurrentAdmin, CurrentShopper, get_payment_service
from storefront.core.logging import get_logger
from storefront.schemas.payments import (
    OfflinePaymentRequest,
    OnlinePaymentRequest,
    RefundRequest,
)
from storefront.services.payments.service import PaymentService

logger = get_logger(__name__)

router = APIRouter(prefix="/payments", tags=["payments"])

PaymentServiceDep = Annotated[PaymentService, Depends(get_payment_service)]


def _client_ip(request: Request) -> str:
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "127.0.0.1"


async def _callback_params(request: Request) -> dict[str, Any]:
    params: dict[str, Any] = dict(request.query_params)
    # Server-to-server notifications are POSTed as JSON
    if request.method == "POST" and "application/json" in request.headers.get("content-type", ""):
        body = await request.json()
        if isinstance(body, dict):
            params.update(body)
    return params


@router.post(
    "",
    status_code=status.HTTP_201_CREATED,
    summary="Record offline payment",
    description="Create a pending cash on delivery payment for the order total",
)
async def create_offline_payment(
    request: OfflinePaymentRequest,
    shopper: CurrentShopper,
    service: PaymentServiceDep,
) -> dict:
    payment = await service.create_offline_payment(
        order_id=request.order_id,
        payment_method=request.payment_method,
        actor_id=shopper.user_id or shopper.session_id,
        requester=shopper.requester,
    )
    return {"status": "success", "message": "Payment created successfully", "data": payment}


@router.post(
    "/online",
    summary="Start online payment",
    description="Create or reuse a pending gateway payment and return its redirect URL",
)
async def create_online_payment(
    body: OnlinePaymentRequest,
    request: Request,
    shopper: CurrentShopper,
    service: PaymentServiceDep,
) -> dict:
    result = await service.create_online_payment(
        order_id=body.order_id,
        payment_method=body.payment_method,
        client_ip=_client_ip(request),
        requester=shopper.requester,
    )
    return {"status": "success", "data": result}


@router.api_route(
    "/callback/{gateway}",
    methods=["GET", "POST"],
    summary="Gateway callback",
    description="Signed payment result from VNPay or Momo; safe to deliver more than once",
)
async def gateway_callback(
    gateway: str,
    request: Request,
    settings: AppSettings,
    service: PaymentServiceDep,
):
    params = await _callback_params(request)
    logger.info(
        "Gateway callback received",
        gateway=gateway,
        method=request.method,
        fields=sorted(params),
    )

    result = await service.handle_gateway_callback(gateway, params)

    if request.method == "GET" and settings.payment_result_url:
        query = urlencode(
            {
                "status": result["status"],
                "orderId": result["order_id"],
                "transactionId": result["transaction_id"],
            }
        )
        return RedirectResponse(
            f"{settings.payment_result_url}?{query}",
            status_code=status.HTTP_302_FOUND,
        )

    return {"status": "success", "message": f"Payment {result['status']}", "data": result}


@router.get(
    "/transaction/{transaction_id}",
    summary="Get payment by transaction",
)
async def get_payment_by_transaction(
    transaction_id: str,
    service: PaymentServiceDep,
) -> dict:
    payment = await service.get_payment_by_transaction(transaction_id)
    return {"status": "success", "data": payment}


@router.post(
    "/refund",
    summary="Refund payment",
    description="Refund an order's captured payment through its gateway",
)
async def refund_payment(
    body: RefundRequest,
    admin: CurrentAdmin,
    service: PaymentServiceDep,
) -> dict:
    result = await service.refund_payment(
        order_id=body.order_id,
        reason=body.reason,
        actor_id=admin.user_id,
    )
    return {"status": "success", "message": "Refund processed successfully", "data": result}
