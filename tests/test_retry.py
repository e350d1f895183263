"""Tests for RetryPolicy and retry_async."""

import asyncio
from unittest.mock import AsyncMock, patch

import pytest

from switchboard.errors import (
    AuthenticationError,
    BadRequestError,
    NetworkError,
    RateLimitError,
    ServerError,
)
from switchboard.llm.retry import NO_RETRY, RetryPolicy, retry_async

NO_DELAY = RetryPolicy(max_attempts=3, initial_delay_s=0.0, jitter=False)


# ---------------------------------------------------------------------------
# Policy
# ---------------------------------------------------------------------------


class TestRetryPolicy:
    def test_defaults(self):
        policy = RetryPolicy()
        assert policy.max_attempts == 3
        assert policy.retry_rate_limits is False

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"max_attempts": 0},
            {"initial_delay_s": -1},
            {"backoff_multiplier": 0},
            {"max_delay_s": -0.5},
        ],
    )
    def test_invalid_values_rejected(self, kwargs):
        with pytest.raises(ValueError):
            RetryPolicy(**kwargs)

    def test_should_retry_by_error_kind(self):
        policy = RetryPolicy()
        assert policy.should_retry(ServerError("boom"))
        assert policy.should_retry(NetworkError("reset"))
        assert not policy.should_retry(AuthenticationError("bad key"))
        assert not policy.should_retry(BadRequestError("bad"))
        assert not policy.should_retry(RateLimitError("slow down"))
        assert not policy.should_retry(ValueError("not ours"))
        assert not policy.should_retry(asyncio.CancelledError())

    def test_rate_limit_opt_in(self):
        assert RetryPolicy(retry_rate_limits=True).should_retry(RateLimitError("slow down"))

    def test_backoff_is_exponential_and_capped(self):
        policy = RetryPolicy(initial_delay_s=1.0, backoff_multiplier=2.0, max_delay_s=5.0, jitter=False)
        assert [policy.backoff_delay(i) for i in (1, 2, 3, 4)] == [1.0, 2.0, 4.0, 5.0]

    def test_jitter_stays_within_half_to_full(self):
        policy = RetryPolicy(initial_delay_s=2.0, jitter=True)
        for _ in range(50):
            assert 1.0 <= policy.backoff_delay(1) <= 2.0


# ---------------------------------------------------------------------------
# retry_async
# ---------------------------------------------------------------------------


class TestRetryAsync:
    @pytest.mark.asyncio
    async def test_success_first_try(self):
        factory = AsyncMock(return_value="ok")
        assert await retry_async(factory, policy=NO_DELAY) == "ok"
        assert factory.call_count == 1

    @pytest.mark.asyncio
    async def test_server_error_retried_until_success(self):
        factory = AsyncMock(side_effect=[ServerError("500"), NetworkError("reset"), "ok"])
        assert await retry_async(factory, policy=NO_DELAY) == "ok"
        assert factory.call_count == 3

    @pytest.mark.asyncio
    async def test_gives_up_after_max_attempts(self):
        factory = AsyncMock(side_effect=ServerError("overloaded"))
        with pytest.raises(ServerError):
            await retry_async(factory, policy=NO_DELAY)
        assert factory.call_count == 3

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "error",
        [AuthenticationError("401"), BadRequestError("400"), RateLimitError("429")],
    )
    async def test_non_retryable_fail_immediately(self, error):
        factory = AsyncMock(side_effect=error)
        with pytest.raises(type(error)):
            await retry_async(factory, policy=NO_DELAY)
        assert factory.call_count == 1

    @pytest.mark.asyncio
    async def test_no_retry_policy_single_call(self):
        factory = AsyncMock(side_effect=ServerError("500"))
        with pytest.raises(ServerError):
            await retry_async(factory, policy=NO_RETRY)
        assert factory.call_count == 1

    @pytest.mark.asyncio
    async def test_rate_limit_waits_at_least_retry_after(self):
        policy = RetryPolicy(initial_delay_s=0.1, jitter=False, retry_rate_limits=True)
        factory = AsyncMock(side_effect=[RateLimitError("429", retry_after_seconds=7.0), "ok"])

        with patch("switchboard.llm.retry.asyncio.sleep", new=AsyncMock()) as sleep:
            assert await retry_async(factory, policy=policy) == "ok"

        sleep.assert_awaited_once_with(7.0)
        assert factory.call_count == 2

    @pytest.mark.asyncio
    async def test_backoff_delays_used_between_attempts(self):
        policy = RetryPolicy(initial_delay_s=0.5, backoff_multiplier=2.0, jitter=False)
        factory = AsyncMock(side_effect=[ServerError("a"), ServerError("b"), "ok"])

        with patch("switchboard.llm.retry.asyncio.sleep", new=AsyncMock()) as sleep:
            await retry_async(factory, policy=policy)

        assert [c.args[0] for c in sleep.await_args_list] == [0.5, 1.0]

    @pytest.mark.asyncio
    async def test_retries_are_logged(self, caplog):
        factory = AsyncMock(side_effect=[ServerError("overloaded"), "ok"])
        with caplog.at_level("WARNING", logger="switchboard.llm.retry"):
            await retry_async(factory, policy=NO_DELAY, operation="chat")
        assert "chat failed (attempt 1/3)" in caplog.text
