"""
Retrying JSON client for sibling-service calls.

Wraps an httpx.AsyncClient with a per-call timeout, trace propagation,
request/response logging and translation of transport and HTTP failures
into the storefront error taxonomy. Transient failures (connection refused,
timeouts, 503 and 504) are tagged retryable and retried with exponential
backoff.
"""

from typing import Any, Optional

import httpx

from storefront.core.errors import (
    ConflictError,
    NotFoundError,
    StorefrontError,
    UpstreamError,
    ValidationError,
)
from storefront.core.logging import TRACE_HEADER, get_logger, get_trace_id
from storefront.core.retry import NO_RETRY, RetryPolicy, retry

logger = get_logger(__name__)

SERVICE_TOKEN_HEADER = "X-Service-Token"
RETRYABLE_STATUS_CODES = frozenset({503, 504})


def _error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text[:200] or response.reason_phrase
    if isinstance(body, dict):
        return str(body.get("message") or body.get("detail") or body)
    return str(body)


class ServiceClient:
    """
    JSON-over-HTTP client bound to one sibling service.

    The underlying httpx.AsyncClient is shared and owned by the caller
    (created in the application lifespan), so this class never closes it.
    """

    def __init__(
        self,
        service_name: str,
        base_url: str,
        http_client: httpx.AsyncClient,
        retry_policy: RetryPolicy,
        timeout: float = 5.0,
        service_token: Optional[str] = None,
    ):
        self.service_name = service_name
        self.base_url = base_url.rstrip("/")
        self.http_client = http_client
        self.retry_policy = retry_policy
        self.timeout = timeout
        self.service_token = service_token

    async def request(
        self,
        method: str,
        path: str,
        *,
        params: Optional[dict[str, Any]] = None,
        json: Optional[dict[str, Any]] = None,
        retry_enabled: bool = True,
    ) -> Any:
        """
        Send a request and return the decoded JSON body.

        Args:
            method: HTTP method
            path: Path relative to the service base URL
            params: Query parameters; None values are dropped
            json: JSON request body
            retry_enabled: When False the call is attempted exactly once

        Returns:
            Decoded JSON body, or None for empty responses

        Raises:
            NotFoundError: Service answered 404
            ValidationError: Service answered 400 or 422
            ConflictError: Service answered 409
            UpstreamError: Transport failure or any other error status
        """
        url = f"{self.base_url}{path}"
        trace_id = get_trace_id()
        headers = {TRACE_HEADER: trace_id} if trace_id else {}
        if self.service_token:
            headers[SERVICE_TOKEN_HEADER] = self.service_token
        clean_params = (
            {k: v for k, v in params.items() if v is not None} if params else None
        )

        async def send() -> Any:
            return await self._send_once(method, url, clean_params, json, headers)

        policy = self.retry_policy if retry_enabled else NO_RETRY
        return await retry(
            send,
            policy,
            trace_id=trace_id,
            operation_name=f"{self.service_name} {method} {path}",
        )

    async def _send_once(
        self,
        method: str,
        url: str,
        params: Optional[dict[str, Any]],
        body: Optional[dict[str, Any]],
        headers: dict[str, str],
    ) -> Any:
        logger.debug(
            "Outbound request",
            service=self.service_name,
            method=method,
            url=url,
        )

        try:
            response = await self.http_client.request(
                method,
                url,
                params=params,
                json=body,
                headers=headers,
                timeout=self.timeout,
            )
        except httpx.TimeoutException as e:
            raise UpstreamError(
                f"{self.service_name} timed out",
                retryable=True,
                service=self.service_name,
                url=url,
            ) from e
        except httpx.TransportError as e:
            raise UpstreamError(
                f"{self.service_name} is unreachable",
                retryable=True,
                service=self.service_name,
                url=url,
                error=str(e),
            ) from e

        logger.debug(
            "Outbound response",
            service=self.service_name,
            method=method,
            url=url,
            status_code=response.status_code,
        )

        if response.status_code >= 400:
            raise self._translate_status(response, url)

        if response.status_code == 204 or not response.content:
            return None
        try:
            return response.json()
        except ValueError as e:
            raise UpstreamError(
                f"{self.service_name} returned a non-JSON body",
                service=self.service_name,
                url=url,
            ) from e

    def _translate_status(self, response: httpx.Response, url: str) -> StorefrontError:
        status_code = response.status_code
        message = _error_message(response)
        context = {"service": self.service_name, "url": url, "status_code": status_code}

        if status_code == 404:
            return NotFoundError(message, **context)
        if status_code in (400, 422):
            return ValidationError(message, **context)
        if status_code == 409:
            return ConflictError(message, **context)
        return UpstreamError(
            f"{self.service_name} responded with {status_code}: {message}",
            retryable=status_code in RETRYABLE_STATUS_CODES,
            **context,
        )
