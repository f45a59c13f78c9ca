"""
Error taxonomy shared by every service in the storefront backend.

Each error carries the HTTP status it maps to, a stable machine readable
code, and a retryable flag that the retry primitive consults instead of
matching on exception names.
"""

from typing import Any


class StorefrontError(Exception):
    """Base exception for all expected storefront failures."""

    status_code: int = 500
    code: str = "INTERNAL_ERROR"
    retryable: bool = False

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.message = message
        self.context = context


class ValidationError(StorefrontError):
    """Caller input is missing or malformed."""

    status_code = 400
    code = "VALIDATION_ERROR"


class NotFoundError(StorefrontError):
    """Referenced entity does not exist."""

    status_code = 404
    code = "NOT_FOUND"


class AuthenticationError(StorefrontError):
    """Signature or token verification failed."""

    status_code = 401
    code = "AUTHENTICATION_ERROR"


class AuthorizationError(StorefrontError):
    """Caller is authenticated but lacks the required role."""

    status_code = 403
    code = "FORBIDDEN"


class ConflictError(StorefrontError):
    """Duplicate or already-processed request."""

    status_code = 409
    code = "CONFLICT"


class PreconditionFailed(StorefrontError):
    """Entity is not in a state that allows the requested operation."""

    status_code = 400
    code = "PRECONDITION_FAILED"


class VersionConflictError(ConflictError):
    """Optimistic concurrency check failed on a stock write."""

    code = "VERSION_CONFLICT"
    retryable = True


class UpstreamError(StorefrontError):
    """
    A sibling service or payment gateway failed or was unreachable.

    Whether the failure is worth retrying depends on the cause (connection
    refused and 503/504 are, a 500 with a body is not), so the flag is set
    per instance.
    """

    status_code = 502
    code = "UPSTREAM_ERROR"

    def __init__(self, message: str, retryable: bool = False, **context: Any):
        super().__init__(message, **context)
        self.retryable = retryable


class InternalError(StorefrontError):
    """Unexpected failure. The message is never shown to callers."""

    status_code = 500
    code = "INTERNAL_ERROR"


def is_retryable(error: BaseException) -> bool:
    """Default retry classifier: trust the tag carried by the error."""
    return bool(getattr(error, "retryable", False))
