"""Tests for structured_agent.retry: backoff, policies, and the retry loop."""

from __future__ import annotations

from unittest.mock import patch

import pytest

from structured_agent.config import RetryConfiguration
from structured_agent.errors import (
    LLMAuthError,
    LLMNetworkError,
    LLMRateLimitError,
    LLMServerError,
    LLMTimeoutError,
)
from structured_agent.rate_limit import RateLimitInfo
from structured_agent.retry import (
    ExponentialBackoffPolicy,
    NoRetryPolicy,
    RateLimitAwareError,
    RetryCancelledError,
    RetryEvent,
    exponential_backoff,
    send_with_retry,
)


class _Sleeps:
    """Records requested sleeps instead of sleeping."""

    def __init__(self):
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


class _Flaky:
    """Fails with the queued errors, then returns ``result``."""

    def __init__(self, errors, result="ok"):
        self.errors = list(errors)
        self.result = result
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        if self.errors:
            raise self.errors.pop(0)
        return self.result


# ---------------------------------------------------------------------------
# Backoff math
# ---------------------------------------------------------------------------


class TestBackoff:
    def test_doubles_per_attempt(self):
        assert exponential_backoff(1, 1.0, 60.0) == 1.0
        assert exponential_backoff(2, 1.0, 60.0) == 2.0
        assert exponential_backoff(4, 1.0, 60.0) == 8.0

    def test_capped(self):
        assert exponential_backoff(10, 1.0, 60.0) == 60.0

    def test_jitter_bounds(self):
        policy = ExponentialBackoffPolicy(base_delay=1.0, max_delay=60.0)
        with patch("structured_agent.retry.random.random", return_value=0.0):
            assert policy.delay(3, LLMTimeoutError("t"), None) == 4.0
        with patch("structured_agent.retry.random.random", return_value=0.999):
            assert policy.delay(3, LLMTimeoutError("t"), None) == pytest.approx(7.996)

    def test_jitter_applies_after_cap(self):
        policy = ExponentialBackoffPolicy(base_delay=1.0, max_delay=5.0)
        with patch("structured_agent.retry.random.random", return_value=0.5):
            assert policy.delay(8, LLMTimeoutError("t"), None) == 7.5

    def test_suggested_wait_used_verbatim(self):
        policy = ExponentialBackoffPolicy()
        info = RateLimitInfo(retry_after=12.0)
        assert policy.delay(1, LLMRateLimitError("slow down"), info) == 12.0

    def test_zero_suggested_wait_falls_back(self):
        # a reset timestamp already in the past parses to 0.0
        policy = ExponentialBackoffPolicy(base_delay=1.0)
        info = RateLimitInfo(requests_reset_in=0.0)
        with patch("structured_agent.retry.random.random", return_value=0.0):
            assert policy.delay(3, LLMRateLimitError("x"), info) == 4.0

    def test_empty_rate_limit_info_falls_back(self):
        policy = ExponentialBackoffPolicy(base_delay=2.0)
        with patch("structured_agent.retry.random.random", return_value=0.0):
            assert policy.delay(1, LLMRateLimitError("x"), RateLimitInfo()) == 2.0


# ---------------------------------------------------------------------------
# Policies
# ---------------------------------------------------------------------------


class TestPolicies:
    def test_retryable_classes(self):
        policy = ExponentialBackoffPolicy(max_retries=3)
        assert policy.should_retry(LLMRateLimitError("x"), 1)
        assert policy.should_retry(LLMServerError("x", status_code=503), 1)
        assert policy.should_retry(LLMNetworkError("x"), 3)
        assert not policy.should_retry(LLMAuthError("x"), 1)

    def test_attempt_bound(self):
        policy = ExponentialBackoffPolicy(max_retries=2)
        assert policy.should_retry(LLMTimeoutError("x"), 2)
        assert not policy.should_retry(LLMTimeoutError("x"), 3)

    def test_no_retry(self):
        policy = NoRetryPolicy()
        assert not policy.should_retry(LLMTimeoutError("x"), 1)
        assert policy.delay(1, LLMTimeoutError("x"), None) == 0.0

    def test_configuration_maps_to_policy(self):
        assert isinstance(RetryConfiguration.disabled().policy(), NoRetryPolicy)
        policy = RetryConfiguration.conservative().policy()
        assert isinstance(policy, ExponentialBackoffPolicy)
        assert policy.max_retries == 3
        assert policy.base_delay == 2.0


class TestRetryEvent:
    def test_reason_and_remaining(self):
        event = RetryEvent(attempt=2, max_retries=5, error=LLMRateLimitError("x"), delay_seconds=1.0)
        assert event.reason == "Rate limit exceeded"
        assert event.remaining_retries == 3

    def test_server_reason_includes_status(self):
        event = RetryEvent(attempt=1, max_retries=1, error=LLMServerError("x", status_code=502), delay_seconds=0)
        assert event.reason == "Server error (502)"
        assert event.remaining_retries == 0


# ---------------------------------------------------------------------------
# send_with_retry
# ---------------------------------------------------------------------------


class TestSendWithRetry:
    @pytest.mark.asyncio
    async def test_success_first_try(self):
        send = _Flaky([])
        sleeps = _Sleeps()
        result = await send_with_retry(send, policy=ExponentialBackoffPolicy(), sleep=sleeps)
        assert result == "ok"
        assert send.calls == 1
        assert sleeps.delays == []

    @pytest.mark.asyncio
    async def test_transient_then_success(self):
        send = _Flaky([LLMTimeoutError("t1"), LLMServerError("boom", status_code=503)])
        sleeps = _Sleeps()
        events: list[RetryEvent] = []
        with patch("structured_agent.retry.random.random", return_value=0.0):
            result = await send_with_retry(
                send,
                policy=ExponentialBackoffPolicy(max_retries=5, base_delay=1.0),
                on_retry=events.append,
                sleep=sleeps,
            )
        assert result == "ok"
        assert send.calls == 3
        assert sleeps.delays == [1.0, 2.0]
        assert [e.attempt for e in events] == [1, 2]
        assert [e.delay_seconds for e in events] == sleeps.delays

    @pytest.mark.asyncio
    async def test_permanent_error_not_retried(self):
        send = _Flaky([LLMAuthError("bad key")])
        sleeps = _Sleeps()
        with pytest.raises(LLMAuthError):
            await send_with_retry(send, policy=ExponentialBackoffPolicy(), sleep=sleeps)
        assert send.calls == 1
        assert sleeps.delays == []

    @pytest.mark.asyncio
    async def test_gives_up_after_max_retries(self):
        send = _Flaky([LLMNetworkError(f"n{i}") for i in range(10)])
        sleeps = _Sleeps()
        with pytest.raises(LLMNetworkError, match="n3"):
            await send_with_retry(send, policy=ExponentialBackoffPolicy(max_retries=3), sleep=sleeps)
        assert send.calls == 4
        assert len(sleeps.delays) == 3

    @pytest.mark.asyncio
    async def test_disabled_retries(self):
        send = _Flaky([LLMRateLimitError("429")])
        with pytest.raises(LLMRateLimitError):
            await send_with_retry(send, policy=NoRetryPolicy(), sleep=_Sleeps())
        assert send.calls == 1

    @pytest.mark.asyncio
    async def test_raw_exceptions_are_classified(self):
        raw = TimeoutError()
        send = _Flaky([raw])
        with pytest.raises(LLMTimeoutError) as exc_info:
            await send_with_retry(send, policy=NoRetryPolicy(), sleep=_Sleeps())
        assert exc_info.value.original is raw
        assert exc_info.value.__cause__ is raw

    @pytest.mark.asyncio
    async def test_rate_limit_headers_drive_delay(self):
        info = RateLimitInfo(retry_after=9.0)
        send = _Flaky([RateLimitAwareError(LLMRateLimitError("429"), info, status_code=429)])
        sleeps = _Sleeps()
        result = await send_with_retry(send, policy=ExponentialBackoffPolicy(), sleep=sleeps)
        assert result == "ok"
        assert sleeps.delays == [9.0]

    @pytest.mark.asyncio
    async def test_past_reset_still_backs_off(self):
        info = RateLimitInfo(requests_reset_in=0.0)
        send = _Flaky([RateLimitAwareError(LLMRateLimitError("429"), info, status_code=429)] * 2)
        sleeps = _Sleeps()
        with patch("structured_agent.retry.random.random", return_value=0.0):
            await send_with_retry(send, policy=ExponentialBackoffPolicy(base_delay=1.0), sleep=sleeps)
        assert sleeps.delays == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_cancel_check_stops_after_sleep(self):
        send = _Flaky([LLMTimeoutError("t1"), LLMTimeoutError("t2")])
        sleeps = _Sleeps()
        with pytest.raises(RetryCancelledError) as exc_info:
            await send_with_retry(
                send,
                policy=ExponentialBackoffPolicy(max_retries=5),
                sleep=sleeps,
                operation="step 1",
                is_cancelled=lambda: len(sleeps.delays) > 0,
            )
        assert send.calls == 1
        assert len(sleeps.delays) == 1
        assert exc_info.value.operation == "step 1"
        assert isinstance(exc_info.value.last_error, LLMTimeoutError)

    @pytest.mark.asyncio
    async def test_cancel_check_not_consulted_on_success(self):
        send = _Flaky([])
        result = await send_with_retry(
            send, policy=ExponentialBackoffPolicy(), sleep=_Sleeps(), is_cancelled=lambda: True
        )
        assert result == "ok"

    @pytest.mark.asyncio
    async def test_rate_limit_aware_error_unwrapped_on_failure(self):
        underlying = LLMAuthError("denied")
        send = _Flaky([RateLimitAwareError(underlying, RateLimitInfo(), status_code=401)])
        with pytest.raises(LLMAuthError) as exc_info:
            await send_with_retry(send, policy=ExponentialBackoffPolicy(), sleep=_Sleeps())
        assert exc_info.value is underlying
