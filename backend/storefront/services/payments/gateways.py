"""
Payment gateway strategies for VNPay and Momo.

Each gateway builds a signed payment request, verifies the signature of the
callback it later sends back, and issues refunds. Gateway calls are made
once; a failed call surfaces as UpstreamError and is never retried here.
"""

import base64
import hashlib
import hmac
import json
import secrets
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Mapping, Optional
from urllib.parse import quote_plus

import httpx

from storefront.clients.orders import OrderSnapshot
from storefront.core.config import MomoConfig, VNPayConfig
from storefront.core.errors import AuthenticationError, UpstreamError
from storefront.core.logging import get_logger
from storefront.database.models.order import PaymentMethod
from storefront.database.models.payment import Payment

logger = get_logger(__name__)

# Gateway timestamps are in Vietnam local time
GATEWAY_TZ = timezone(timedelta(hours=7))


@dataclass(frozen=True)
class GatewayPayment:
    payment_url: str
    transaction_id: str
    request_payload: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class CallbackOutcome:
    transaction_id: str
    success: bool
    result_code: str


def generate_transaction_id(prefix: str, force_new: bool = False) -> str:
    """
    Build a gateway transaction reference, e.g. ``VNPAY-1706700000000-3fa1c2d4``.

    ``force_new`` widens the random part, used after a collision.
    """
    suffix = secrets.token_hex(8 if force_new else 4)
    return f"{prefix}-{int(time.time() * 1000)}-{suffix}"


def _sign(secret: str, data: str, digest) -> str:
    return hmac.new(secret.encode("utf-8"), data.encode("utf-8"), digest).hexdigest()


def _order_info(order: OrderSnapshot) -> str:
    return f"Thanh toan don hang {order.order_number or order.id}"


class PaymentGateway:
    """Common interface of online payment gateways."""

    method: PaymentMethod
    transaction_prefix: str

    def __init__(self, http_client: httpx.AsyncClient):
        self.http_client = http_client

    async def create_payment(
        self,
        order: OrderSnapshot,
        amount: Decimal,
        client_ip: str,
        force_new: bool = False,
    ) -> GatewayPayment:
        raise NotImplementedError

    def verify_callback(self, params: Mapping[str, Any]) -> CallbackOutcome:
        raise NotImplementedError

    async def refund(
        self,
        payment: Payment,
        reason: Optional[str],
        actor_id: Optional[str],
    ) -> dict[str, Any]:
        raise NotImplementedError

    async def _post(self, url: str, payload: dict[str, Any], timeout: float) -> dict[str, Any]:
        try:
            response = await self.http_client.post(url, json=payload, timeout=timeout)
        except httpx.TimeoutException as e:
            raise UpstreamError(
                f"{self.method.value} request timed out",
                gateway=self.method.value,
            ) from e
        except httpx.HTTPError as e:
            raise UpstreamError(
                f"{self.method.value} unreachable",
                gateway=self.method.value,
                error=str(e),
            ) from e

        if response.status_code >= 400:
            raise UpstreamError(
                f"{self.method.value} returned HTTP {response.status_code}",
                gateway=self.method.value,
                status_code=response.status_code,
            )
        try:
            return response.json()
        except ValueError as e:
            raise UpstreamError(
                f"{self.method.value} returned a malformed response",
                gateway=self.method.value,
            ) from e


class VNPayGateway(PaymentGateway):
    """
    VNPay redirect payments.

    The payment URL carries the signed request; VNPay later redirects the
    shopper to the return URL and calls the IPN endpoint with the result,
    both signed with HMAC-SHA512 over the sorted, URL-encoded parameters.
    """

    method = PaymentMethod.VNPAY
    transaction_prefix = "VNPAY"
    version = "2.1.0"

    def __init__(self, config: VNPayConfig, http_client: httpx.AsyncClient):
        super().__init__(http_client)
        self.config = config

    @staticmethod
    def sign_data(params: Mapping[str, Any]) -> str:
        return "&".join(
            f"{key}={quote_plus(str(value))}"
            for key, value in sorted(params.items())
            if value not in (None, "")
        )

    def signature(self, params: Mapping[str, Any]) -> str:
        return _sign(self.config.hash_secret, self.sign_data(params), hashlib.sha512)

    async def create_payment(
        self,
        order: OrderSnapshot,
        amount: Decimal,
        client_ip: str,
        force_new: bool = False,
    ) -> GatewayPayment:
        transaction_id = generate_transaction_id(self.transaction_prefix, force_new)
        now = datetime.now(GATEWAY_TZ)

        params = {
            "vnp_Version": self.version,
            "vnp_Command": "pay",
            "vnp_TmnCode": self.config.tmn_code,
            "vnp_Amount": int(amount * 100),
            "vnp_CreateDate": now.strftime("%Y%m%d%H%M%S"),
            "vnp_ExpireDate": (now + timedelta(minutes=15)).strftime("%Y%m%d%H%M%S"),
            "vnp_CurrCode": "VND",
            "vnp_IpAddr": client_ip,
            "vnp_Locale": "vn",
            "vnp_OrderInfo": _order_info(order),
            "vnp_OrderType": "billpayment",
            "vnp_ReturnUrl": self.config.return_url,
            "vnp_TxnRef": transaction_id,
        }

        query = self.sign_data(params)
        payment_url = f"{self.config.payment_url}?{query}&vnp_SecureHash={self.signature(params)}"

        logger.info(
            "VNPay payment URL created",
            order_id=str(order.id),
            transaction_id=transaction_id,
            amount=float(amount),
        )

        return GatewayPayment(
            payment_url=payment_url,
            transaction_id=transaction_id,
            request_payload=params,
        )

    def verify_callback(self, params: Mapping[str, Any]) -> CallbackOutcome:
        received = params.get("vnp_SecureHash")
        signed = {
            key: value
            for key, value in params.items()
            if key.startswith("vnp_") and key not in ("vnp_SecureHash", "vnp_SecureHashType")
        }

        if not received or not hmac.compare_digest(
            str(received).lower(), self.signature(signed)
        ):
            logger.warning(
                "VNPay callback signature mismatch",
                transaction_id=params.get("vnp_TxnRef"),
            )
            raise AuthenticationError("Invalid VNPay signature")

        transaction_id = params.get("vnp_TxnRef")
        if not transaction_id:
            raise AuthenticationError("VNPay callback is missing vnp_TxnRef")

        result_code = str(params.get("vnp_ResponseCode", ""))
        return CallbackOutcome(
            transaction_id=str(transaction_id),
            success=result_code == "00",
            result_code=result_code,
        )

    async def refund(
        self,
        payment: Payment,
        reason: Optional[str],
        actor_id: Optional[str],
    ) -> dict[str, Any]:
        now = datetime.now(GATEWAY_TZ)
        created = payment.created_at.astimezone(GATEWAY_TZ) if payment.created_at else now
        payload = {
            "vnp_RequestId": uuid.uuid4().hex,
            "vnp_Version": self.version,
            "vnp_Command": "refund",
            "vnp_TmnCode": self.config.tmn_code,
            "vnp_TransactionType": "02",
            "vnp_TxnRef": payment.transaction_id,
            "vnp_Amount": int(payment.amount * 100),
            "vnp_TransactionNo": (payment.callback_payload or {}).get("vnp_TransactionNo", ""),
            "vnp_TransactionDate": created.strftime("%Y%m%d%H%M%S"),
            "vnp_CreateBy": actor_id or "system",
            "vnp_CreateDate": now.strftime("%Y%m%d%H%M%S"),
            "vnp_IpAddr": "127.0.0.1",
            "vnp_OrderInfo": reason or f"Refund {payment.transaction_id}",
        }
        # Refund requests are signed over a fixed field order joined by pipes
        data = "|".join(str(value) for value in payload.values())
        payload["vnp_SecureHash"] = _sign(self.config.hash_secret, data, hashlib.sha512)

        body = await self._post(self.config.api_url, payload, self.config.timeout_seconds)

        if str(body.get("vnp_ResponseCode")) != "00":
            logger.error(
                "VNPay refund rejected",
                transaction_id=payment.transaction_id,
                response_code=body.get("vnp_ResponseCode"),
                message=body.get("vnp_Message"),
            )
            raise UpstreamError(
                f"Refund failed: {body.get('vnp_Message') or 'rejected by VNPay'}",
                gateway=self.method.value,
                response_code=body.get("vnp_ResponseCode"),
            )

        return body


class MomoGateway(PaymentGateway):
    """
    Momo wallet payments.

    Payment creation is a signed server-to-server call that returns the
    payUrl; Momo then posts the result to the IPN URL.
    """

    method = PaymentMethod.MOMO
    transaction_prefix = "MOMO"

    def __init__(self, config: MomoConfig, http_client: httpx.AsyncClient):
        super().__init__(http_client)
        self.config = config

    def signature(self, params: Mapping[str, Any]) -> str:
        data = "&".join(f"{key}={value}" for key, value in sorted(params.items()))
        return _sign(self.config.secret_key, data, hashlib.sha256)

    async def create_payment(
        self,
        order: OrderSnapshot,
        amount: Decimal,
        client_ip: str,
        force_new: bool = False,
    ) -> GatewayPayment:
        transaction_id = generate_transaction_id(self.transaction_prefix, force_new)
        extra_data = base64.b64encode(
            json.dumps({"orderId": str(order.id)}).encode("utf-8")
        ).decode("ascii")

        signed = {
            "partnerCode": self.config.partner_code,
            "accessKey": self.config.access_key,
            "requestId": uuid.uuid4().hex,
            "amount": int(amount),
            "orderId": transaction_id,
            "orderInfo": _order_info(order),
            "redirectUrl": self.config.redirect_url,
            "ipnUrl": self.config.ipn_url,
            "extraData": extra_data,
            "requestType": "captureWallet",
        }
        payload = {**signed, "signature": self.signature(signed), "lang": "vi"}

        body = await self._post(
            f"{self.config.endpoint}/v2/gateway/api/create",
            payload,
            self.config.timeout_seconds,
        )

        if body.get("resultCode") != 0:
            logger.warning(
                "Momo rejected payment creation",
                order_id=str(order.id),
                result_code=body.get("resultCode"),
                message=body.get("message"),
            )
            raise UpstreamError(
                f"Momo error: {body.get('message') or 'payment creation rejected'}",
                gateway=self.method.value,
                result_code=body.get("resultCode"),
            )

        pay_url = body.get("payUrl")
        if not pay_url:
            logger.error(
                "Momo accepted payment without a payUrl",
                order_id=str(order.id),
                transaction_id=transaction_id,
            )
            raise UpstreamError(
                "Momo error: response is missing payUrl",
                gateway=self.method.value,
            )

        logger.info(
            "Momo payment created",
            order_id=str(order.id),
            transaction_id=transaction_id,
            amount=float(amount),
        )

        return GatewayPayment(
            payment_url=pay_url,
            transaction_id=transaction_id,
            request_payload=payload,
        )

    def verify_callback(self, params: Mapping[str, Any]) -> CallbackOutcome:
        received = params.get("signature")
        signed = {key: value for key, value in params.items() if key != "signature"}
        signed["accessKey"] = self.config.access_key

        if not received or not hmac.compare_digest(str(received), self.signature(signed)):
            logger.warning(
                "Momo callback signature mismatch",
                transaction_id=params.get("orderId"),
            )
            raise AuthenticationError("Invalid Momo signature")

        transaction_id = params.get("orderId")
        if not transaction_id:
            raise AuthenticationError("Momo callback is missing orderId")

        result_code = str(params.get("resultCode", ""))
        return CallbackOutcome(
            transaction_id=str(transaction_id),
            success=result_code == "0",
            result_code=result_code,
        )

    async def refund(
        self,
        payment: Payment,
        reason: Optional[str],
        actor_id: Optional[str],
    ) -> dict[str, Any]:
        signed = {
            "partnerCode": self.config.partner_code,
            "accessKey": self.config.access_key,
            "orderId": generate_transaction_id("MOMO-REFUND"),
            "requestId": uuid.uuid4().hex,
            "amount": int(payment.amount),
            "transId": (payment.callback_payload or {}).get("transId", ""),
            "description": reason or "",
        }
        payload = {**signed, "signature": self.signature(signed), "lang": "vi"}

        body = await self._post(
            f"{self.config.endpoint}/v2/gateway/api/refund",
            payload,
            self.config.timeout_seconds,
        )

        if body.get("resultCode") != 0:
            logger.error(
                "Momo refund rejected",
                transaction_id=payment.transaction_id,
                result_code=body.get("resultCode"),
                message=body.get("message"),
            )
            raise UpstreamError(
                f"Refund failed: {body.get('message') or 'rejected by Momo'}",
                gateway=self.method.value,
                result_code=body.get("resultCode"),
            )

        return body
