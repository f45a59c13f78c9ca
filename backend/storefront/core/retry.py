"""
Bounded retry with backoff for asynchronous operations.

Used for sibling-service HTTP calls (exponential backoff on transient
faults) and for optimistic-concurrency stock writes (short linear backoff on
version conflicts).
"""

import asyncio
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Literal, Optional, TypeVar

from storefront.core.config import Settings
from storefront.core.errors import VersionConflictError, is_retryable
from storefront.core.logging import get_logger, get_trace_id

logger = get_logger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """How many times to try an operation and how long to wait in between."""

    max_attempts: int = 4
    base_delay: float = 1.0
    backoff: Literal["exponential", "linear"] = "exponential"
    is_retryable: Callable[[BaseException], bool] = field(default=is_retryable)

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.base_delay < 0:
            raise ValueError("base_delay must not be negative")

    def delay_for(self, attempt: int) -> float:
        """
        Delay before the attempt that follows ``attempt`` (1-based).

        Exponential: base * 2^(attempt-1). Linear: base * attempt.
        """
        if self.backoff == "linear":
            return self.base_delay * attempt
        return self.base_delay * (2 ** (attempt - 1))


NO_RETRY = RetryPolicy(max_attempts=1, base_delay=0.0)


def http_retry_policy(settings: Settings) -> RetryPolicy:
    return RetryPolicy(
        max_attempts=settings.http_max_attempts,
        base_delay=settings.http_retry_base_delay,
        backoff="exponential",
    )


def stock_conflict_policy(settings: Settings) -> RetryPolicy:
    return RetryPolicy(
        max_attempts=settings.stock_conflict_max_attempts,
        base_delay=settings.stock_conflict_delay,
        backoff="linear",
        is_retryable=lambda error: isinstance(error, VersionConflictError),
    )


async def retry(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    *,
    trace_id: Optional[str] = None,
    operation_name: str = "operation",
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """
    Run ``operation`` until it succeeds or the policy gives up.

    Args:
        operation: Zero-argument coroutine factory, called once per attempt
        policy: Attempt budget, backoff shape and retryability predicate
        trace_id: Correlation id for the log lines, defaults to the current one
        operation_name: Label used in log lines
        sleep: Awaitable used for waiting between attempts

    Returns:
        Whatever the first successful attempt returned

    Raises:
        The error from the last attempt, unchanged
    """
    trace_id = trace_id or get_trace_id()
    attempt = 0

    while True:
        attempt += 1
        logger.debug(
            "Attempt started",
            operation=operation_name,
            attempt=attempt,
            max_attempts=policy.max_attempts,
            trace_id=trace_id,
        )
        try:
            return await operation()
        except Exception as e:
            retryable = policy.is_retryable(e)
            if attempt >= policy.max_attempts or not retryable:
                logger.error(
                    "Attempt failed, giving up",
                    operation=operation_name,
                    attempt=attempt,
                    max_attempts=policy.max_attempts,
                    retryable=retryable,
                    error=str(e),
                    error_type=type(e).__name__,
                    trace_id=trace_id,
                )
                raise

            delay = policy.delay_for(attempt)
            logger.warning(
                "Attempt failed, retrying",
                operation=operation_name,
                attempt=attempt,
                max_attempts=policy.max_attempts,
                delay_seconds=delay,
                error=str(e),
                error_type=type(e).__name__,
                trace_id=trace_id,
            )
            await sleep(delay)
