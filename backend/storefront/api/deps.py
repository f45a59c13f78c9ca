"""
FastAPI dependencies for identity, authorization and service wiring.

Identity comes from an externally issued Bearer JWT (``sub`` is the user id,
``role`` the role) or, for anonymous shoppers, from the X-Session-ID header.
Internal service-to-service calls authenticate with a shared token in
X-Service-Token. Service factories build each orchestrator from its
repository, sibling-service clients and immutable config objects.
"""

import hmac
from dataclasses import dataclass
from typing import Annotated, Optional

import httpx
from fastapi import Depends, Header, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt
from sqlalchemy.ext.asyncio import AsyncSession

from storefront.clients.cart import CartClient
from storefront.clients.orders import BackgroundNotifier, OrderServiceClient
from storefront.clients.service_client import ServiceClient
from storefront.clients.stock import StockServiceClient
from storefront.core.config import Settings, get_settings
from storefront.core.errors import AuthenticationError, AuthorizationError
from storefront.core.logging import get_logger, set_actor_id
from storefront.core.retry import http_retry_policy, stock_conflict_policy
from storefront.database.connection import get_db
from storefront.database.models.order import PaymentMethod
from storefront.services.inventory.ledger import InventoryLedgerService
from storefront.services.inventory.reconciler import StockReconciler
from storefront.services.inventory.repository import StockRepository
from storefront.services.orders.repository import OrderRepository
from storefront.services.orders.service import OrderOwner, OrderService
from storefront.services.payments.gateways import MomoGateway, VNPayGateway
from storefront.services.payments.repository import PaymentRepository
from storefront.services.payments.service import PaymentService

logger = get_logger(__name__)

security = HTTPBearer(auto_error=False)

ADMIN_ROLE = "admin"


@dataclass(frozen=True)
class Identity:
    """Caller identity resolved from the request."""

    user_id: Optional[str] = None
    session_id: Optional[str] = None
    role: Optional[str] = None

    @property
    def is_admin(self) -> bool:
        return self.user_id is not None and self.role == ADMIN_ROLE

    @property
    def owner(self) -> OrderOwner:
        if self.user_id:
            return OrderOwner(user_id=self.user_id)
        return OrderOwner(session_id=self.session_id)

    @property
    def requester(self) -> Optional[OrderOwner]:
        """Owner to check orders against, or None for administrators."""
        if self.is_admin:
            return None
        return OrderOwner(user_id=self.user_id, session_id=self.session_id)


AppSettings = Annotated[Settings, Depends(get_settings)]
DatabaseSession = Annotated[AsyncSession, Depends(get_db)]


async def get_identity(
    settings: AppSettings,
    credentials: Annotated[Optional[HTTPAuthorizationCredentials], Depends(security)],
    x_session_id: Annotated[Optional[str], Header()] = None,
) -> Identity:
    """
    Resolve the caller.

    Raises:
        AuthenticationError: A token was sent but does not validate
    """
    session_id = x_session_id.strip() if x_session_id and x_session_id.strip() else None

    if credentials is None:
        return Identity(session_id=session_id)

    try:
        payload = jwt.decode(
            credentials.credentials,
            settings.secret_key,
            algorithms=[settings.jwt_algorithm],
        )
    except JWTError as e:
        logger.warning(
            "Authentication failed: JWT validation error",
            error=str(e),
            error_type=type(e).__name__,
        )
        raise AuthenticationError("Could not validate credentials") from e

    user_id = payload.get("sub")
    if not user_id:
        logger.warning("Authentication failed: Token missing 'sub' claim")
        raise AuthenticationError("Could not validate credentials")

    set_actor_id(str(user_id))
    return Identity(user_id=str(user_id), session_id=session_id, role=payload.get("role"))


CurrentIdentity = Annotated[Identity, Depends(get_identity)]


async def require_admin(identity: CurrentIdentity) -> Identity:
    """
    Raises:
        AuthenticationError: No signed-in user
        AuthorizationError: Signed-in user is not an administrator
    """
    if identity.user_id is None:
        raise AuthenticationError("Authentication required")
    if not identity.is_admin:
        logger.warning(
            "Authorization failed: admin role required",
            user_id=identity.user_id,
            role=identity.role,
        )
        raise AuthorizationError("Admin access required")
    return identity


CurrentAdmin = Annotated[Identity, Depends(require_admin)]


async def require_shopper(identity: CurrentIdentity) -> Identity:
    """
    Raises:
        AuthenticationError: Neither a signed-in user nor an anonymous session
    """
    if not identity.user_id and not identity.session_id:
        raise AuthenticationError("Authentication required")
    return identity


CurrentShopper = Annotated[Identity, Depends(require_shopper)]


def _service_token_valid(settings: Settings, token: Optional[str]) -> bool:
    return bool(token) and hmac.compare_digest(token, settings.internal_service_token)


async def is_internal_call(
    settings: AppSettings,
    x_service_token: Annotated[Optional[str], Header()] = None,
) -> bool:
    """True when the request carries the shared service token."""
    return _service_token_valid(settings, x_service_token)


InternalCall = Annotated[bool, Depends(is_internal_call)]


async def verify_service_token(internal: InternalCall) -> None:
    """Guard for endpoints only sibling services may call."""
    if not internal:
        logger.warning("Rejected internal call with missing or invalid service token")
        raise AuthenticationError("Invalid service token")


async def require_admin_or_service(
    internal: InternalCall,
    identity: CurrentIdentity,
) -> Optional[str]:
    """
    Allow either a sibling service or an administrator.

    Returns:
        The acting admin's user id, or None for service calls
    """
    if internal:
        return None
    admin = await require_admin(identity)
    return admin.user_id


def get_http_client(request: Request) -> httpx.AsyncClient:
    return request.app.state.http_client


def get_notifier(request: Request) -> BackgroundNotifier:
    return request.app.state.notifier


HttpClient = Annotated[httpx.AsyncClient, Depends(get_http_client)]


def _service_client(
    name: str,
    base_url: str,
    settings: Settings,
    http_client: httpx.AsyncClient,
) -> ServiceClient:
    endpoints = settings.service_endpoints()
    return ServiceClient(
        service_name=name,
        base_url=base_url,
        http_client=http_client,
        retry_policy=http_retry_policy(settings),
        timeout=endpoints.timeout_seconds,
        service_token=endpoints.service_token,
    )


def get_order_client(settings: AppSettings, http_client: HttpClient) -> OrderServiceClient:
    return OrderServiceClient(
        _service_client("order-service", settings.order_service_url, settings, http_client)
    )


def get_stock_client(settings: AppSettings, http_client: HttpClient) -> StockServiceClient:
    return StockServiceClient(
        _service_client("stock-service", settings.stock_service_url, settings, http_client)
    )


def get_order_service(
    db: DatabaseSession,
    settings: AppSettings,
    http_client: HttpClient,
    stock_client: Annotated[StockServiceClient, Depends(get_stock_client)],
    notifier: Annotated[BackgroundNotifier, Depends(get_notifier)],
) -> OrderService:
    cart_client = CartClient(
        _service_client("cart-service", settings.cart_service_url, settings, http_client)
    )
    return OrderService(
        repository=OrderRepository(db),
        cart_client=cart_client,
        pricing=settings.pricing_config(),
        stock_client=stock_client,
        notifier=notifier,
    )


def get_payment_service(
    db: DatabaseSession,
    settings: AppSettings,
    http_client: HttpClient,
    order_client: Annotated[OrderServiceClient, Depends(get_order_client)],
    stock_client: Annotated[StockServiceClient, Depends(get_stock_client)],
    notifier: Annotated[BackgroundNotifier, Depends(get_notifier)],
) -> PaymentService:
    gateways = {
        PaymentMethod.VNPAY: VNPayGateway(settings.vnpay_config(), http_client),
        PaymentMethod.MOMO: MomoGateway(settings.momo_config(), http_client),
    }
    return PaymentService(
        repository=PaymentRepository(db),
        order_client=order_client,
        gateways=gateways,
        notifier=notifier,
        stock_client=stock_client,
    )


def get_ledger_service(db: DatabaseSession, settings: AppSettings) -> InventoryLedgerService:
    return InventoryLedgerService(
        repository=StockRepository(db),
        conflict_policy=stock_conflict_policy(settings),
    )


def get_stock_reconciler(
    ledger: Annotated[InventoryLedgerService, Depends(get_ledger_service)],
    order_client: Annotated[OrderServiceClient, Depends(get_order_client)],
) -> StockReconciler:
    return StockReconciler(ledger=ledger, order_client=order_client)
