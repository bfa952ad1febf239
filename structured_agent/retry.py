"""Retry with rate-limit-aware exponential backoff.

Every outbound model request goes through :func:`send_with_retry`:

    response = await send_with_retry(
        lambda: provider.send(request),
        policy=RetryConfiguration.default().policy(),
        on_retry=lambda event: print(event.reason, event.delay_seconds),
    )

Transient failures (rate limits, 5xx, timeouts, network errors) are retried
up to ``max_retries`` times. When the provider attached rate-limit headers to
the failure (see :class:`RateLimitAwareError`) a positive suggested wait wins over
the computed backoff. Everything else propagates immediately as the
``LLMError`` subclass that describes it.
"""

from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Protocol, TypeVar, runtime_checkable

from structured_agent.errors import (
    LLMError,
    LLMNetworkError,
    LLMRateLimitError,
    LLMServerError,
    LLMTimeoutError,
    wrap_error,
)
from structured_agent.rate_limit import RateLimitInfo

logger = logging.getLogger(__name__)

T = TypeVar("T")


# ---------------------------------------------------------------------------
# Backoff
# ---------------------------------------------------------------------------


def exponential_backoff(attempt: int, base_delay: float = 1.0, max_delay: float = 60.0) -> float:
    """Capped exponential delay for 1-based *attempt*, before jitter."""
    return min(max_delay, base_delay * (2 ** (attempt - 1)))


def full_jitter(delay: float) -> float:
    """Scale *delay* by a uniform factor in ``[1, 2)``."""
    return delay * (1.0 + random.random())


# ---------------------------------------------------------------------------
# Policies
# ---------------------------------------------------------------------------


@runtime_checkable
class RetryPolicy(Protocol):
    """Decides whether a failed attempt is retried and how long to wait."""

    max_retries: int

    def should_retry(self, error: LLMError, attempt: int) -> bool: ...

    def delay(self, attempt: int, error: LLMError, rate_limit_info: RateLimitInfo | None) -> float: ...


@dataclass(frozen=True)
class ExponentialBackoffPolicy:
    """Exponential backoff with multiplicative jitter, capped at *max_delay*.

    Args:
        max_retries: How many times to retry on transient failure.
        base_delay: Delay before the first retry, before jitter (seconds).
        max_delay: Cap on the exponential part (seconds).
    """

    max_retries: int = 5
    base_delay: float = 1.0
    max_delay: float = 60.0

    def should_retry(self, error: LLMError, attempt: int) -> bool:
        if attempt > self.max_retries:
            return False
        return error.retryable

    def delay(self, attempt: int, error: LLMError, rate_limit_info: RateLimitInfo | None) -> float:
        if rate_limit_info is not None:
            suggested = rate_limit_info.suggested_wait_time
            if suggested is not None and suggested > 0:
                return suggested
        return full_jitter(exponential_backoff(attempt, self.base_delay, self.max_delay))


@dataclass(frozen=True)
class NoRetryPolicy:
    """Fail on the first error."""

    max_retries: int = 0

    def should_retry(self, error: LLMError, attempt: int) -> bool:
        return False

    def delay(self, attempt: int, error: LLMError, rate_limit_info: RateLimitInfo | None) -> float:
        return 0.0


# ---------------------------------------------------------------------------
# Events
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RetryEvent:
    """Fired before each backoff sleep."""

    attempt: int
    max_retries: int
    error: LLMError
    delay_seconds: float

    @property
    def reason(self) -> str:
        if isinstance(self.error, LLMRateLimitError):
            return "Rate limit exceeded"
        if isinstance(self.error, LLMServerError):
            return f"Server error ({self.error.status_code})"
        if isinstance(self.error, LLMTimeoutError):
            return "Request timeout"
        if isinstance(self.error, LLMNetworkError):
            return "Network error"
        return "Retryable error"

    @property
    def remaining_retries(self) -> int:
        return max(0, self.max_retries - self.attempt)


RetryEventHandler = Callable[[RetryEvent], None]


class RateLimitAwareError(Exception):
    """A provider failure carrying the rate-limit headers of its response."""

    def __init__(
        self,
        underlying: Exception,
        rate_limit_info: RateLimitInfo,
        status_code: int | None = None,
    ) -> None:
        super().__init__(str(underlying))
        self.underlying = underlying
        self.rate_limit_info = rate_limit_info
        self.status_code = status_code


class RetryCancelledError(Exception):
    """The caller cancelled while the retry loop was backing off."""

    def __init__(self, operation: str, last_error: LLMError) -> None:
        super().__init__(f"{operation} cancelled during retry: {last_error}")
        self.operation = operation
        self.last_error = last_error


# ---------------------------------------------------------------------------
# Retry loop
# ---------------------------------------------------------------------------


async def send_with_retry(
    send: Callable[[], Awaitable[T]],
    *,
    policy: RetryPolicy,
    on_retry: RetryEventHandler | None = None,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    operation: str = "send",
    is_cancelled: Callable[[], bool] | None = None,
) -> T:
    """Await ``send()`` until it succeeds or the policy gives up.

    Args:
        send: Zero-argument coroutine factory; called once per attempt.
        policy: Retry policy deciding retryability and delays.
        on_retry: Called with a :class:`RetryEvent` before each sleep.
        sleep: Awaitable sleep, injectable for tests.
        operation: Label used in log messages.
        is_cancelled: Checked after each backoff sleep; when it returns
            True no further attempt is sent.

    Raises:
        LLMError: The classified failure of the last attempt.
        RetryCancelledError: ``is_cancelled`` fired during a backoff.
    """
    max_attempts = policy.max_retries + 1

    for attempt in range(1, max_attempts + 1):
        rate_limit_info: RateLimitInfo | None = None
        try:
            result = await send()
            if attempt > 1:
                logger.info("%s succeeded after %d retries", operation, attempt - 1)
            return result
        except RateLimitAwareError as e:
            rate_limit_info = e.rate_limit_info
            raw: Exception = e.underlying
        except Exception as e:
            raw = e

        error = wrap_error(raw)
        if not policy.should_retry(error, attempt) or attempt >= max_attempts:
            if error is raw:
                raise error
            raise error from raw

        delay = policy.delay(attempt, error, rate_limit_info)
        if on_retry is not None:
            on_retry(
                RetryEvent(
                    attempt=attempt,
                    max_retries=policy.max_retries,
                    error=error,
                    delay_seconds=delay,
                )
            )
        logger.warning(
            "%s attempt %d/%d failed (retrying in %.1fs): %s",
            operation,
            attempt,
            max_attempts,
            delay,
            error,
        )
        await sleep(delay)
        if is_cancelled is not None and is_cancelled():
            logger.info("%s cancelled after attempt %d", operation, attempt)
            raise RetryCancelledError(operation, error)

    raise AssertionError("unreachable")  # pragma: no cover
