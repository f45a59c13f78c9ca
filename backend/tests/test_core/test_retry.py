"""
Tests for the bounded retry primitive and its policies.
"""

import pytest

from storefront.core.config import Settings
from storefront.core.errors import (
    NotFoundError,
    UpstreamError,
    ValidationError,
    VersionConflictError,
)
from storefront.core.retry import (
    NO_RETRY,
    RetryPolicy,
    http_retry_policy,
    retry,
    stock_conflict_policy,
)


class RecordingSleep:
    """Stands in for asyncio.sleep and remembers every delay."""

    def __init__(self):
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


class FlakyOperation:
    """Fails with the given errors in order, then returns ``result``."""

    def __init__(self, errors, result="ok"):
        self.errors = list(errors)
        self.result = result
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        if self.errors:
            raise self.errors.pop(0)
        return self.result


# ============================================================================
# Policy
# ============================================================================


class TestRetryPolicy:
    def test_exponential_delays_double(self):
        policy = RetryPolicy(max_attempts=4, base_delay=1.0, backoff="exponential")

        assert [policy.delay_for(n) for n in (1, 2, 3)] == [1.0, 2.0, 4.0]

    def test_linear_delays_grow_by_base(self):
        policy = RetryPolicy(max_attempts=5, base_delay=0.05, backoff="linear")

        assert policy.delay_for(1) == pytest.approx(0.05)
        assert policy.delay_for(3) == pytest.approx(0.15)

    def test_rejects_zero_attempts(self):
        with pytest.raises(ValueError):
            RetryPolicy(max_attempts=0)

    def test_rejects_negative_delay(self):
        with pytest.raises(ValueError):
            RetryPolicy(base_delay=-1)

    def test_http_policy_from_settings(self):
        settings = Settings(http_max_attempts=4, http_retry_base_delay=1.0)

        policy = http_retry_policy(settings)

        assert policy.max_attempts == 4
        assert policy.backoff == "exponential"
        assert policy.is_retryable(UpstreamError("down", retryable=True))
        assert not policy.is_retryable(UpstreamError("bad body"))

    def test_stock_policy_only_retries_version_conflicts(self):
        policy = stock_conflict_policy(Settings())

        assert policy.backoff == "linear"
        assert policy.is_retryable(VersionConflictError("stale"))
        assert not policy.is_retryable(UpstreamError("down", retryable=True))


# ============================================================================
# Retry loop
# ============================================================================


class TestRetry:
    @pytest.mark.asyncio
    async def test_returns_first_success_without_sleeping(self):
        sleep = RecordingSleep()
        operation = FlakyOperation([])

        result = await retry(operation, RetryPolicy(), sleep=sleep)

        assert result == "ok"
        assert operation.calls == 1
        assert sleep.delays == []

    @pytest.mark.asyncio
    async def test_retries_transient_failures_with_backoff(self):
        sleep = RecordingSleep()
        operation = FlakyOperation(
            [
                UpstreamError("refused", retryable=True),
                UpstreamError("timeout", retryable=True),
            ]
        )

        result = await retry(
            operation,
            RetryPolicy(max_attempts=4, base_delay=1.0),
            sleep=sleep,
        )

        assert result == "ok"
        assert operation.calls == 3
        assert sleep.delays == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_gives_up_after_max_attempts_with_last_error(self):
        sleep = RecordingSleep()
        last = UpstreamError("still down", retryable=True)
        operation = FlakyOperation(
            [
                UpstreamError("down 1", retryable=True),
                UpstreamError("down 2", retryable=True),
                UpstreamError("down 3", retryable=True),
                last,
            ]
        )

        with pytest.raises(UpstreamError) as exc_info:
            await retry(operation, RetryPolicy(max_attempts=4, base_delay=1.0), sleep=sleep)

        assert exc_info.value is last
        assert operation.calls == 4
        assert sleep.delays == [1.0, 2.0, 4.0]

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "error",
        [
            NotFoundError("missing"),
            ValidationError("bad input"),
            UpstreamError("500 with body", retryable=False),
        ],
    )
    async def test_non_retryable_error_is_raised_immediately(self, error):
        sleep = RecordingSleep()
        operation = FlakyOperation([error])

        with pytest.raises(type(error)):
            await retry(operation, RetryPolicy(max_attempts=4), sleep=sleep)

        assert operation.calls == 1
        assert sleep.delays == []

    @pytest.mark.asyncio
    async def test_no_retry_policy_attempts_once(self):
        sleep = RecordingSleep()
        operation = FlakyOperation([UpstreamError("down", retryable=True)])

        with pytest.raises(UpstreamError):
            await retry(operation, NO_RETRY, sleep=sleep)

        assert operation.calls == 1

    @pytest.mark.asyncio
    async def test_custom_predicate_overrides_error_tag(self):
        sleep = RecordingSleep()
        operation = FlakyOperation([VersionConflictError("stale"), VersionConflictError("stale")])
        policy = RetryPolicy(
            max_attempts=5,
            base_delay=0.05,
            backoff="linear",
            is_retryable=lambda e: isinstance(e, VersionConflictError),
        )

        result = await retry(operation, policy, sleep=sleep)

        assert result == "ok"
        assert sleep.delays == pytest.approx([0.05, 0.10])
