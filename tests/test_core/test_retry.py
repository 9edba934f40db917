"""
Test suite for RetryPolicy.
"""

import asyncio
from unittest.mock import AsyncMock, patch

import pytest

from orderflow.core.retry import RetryPolicy


class Transient(Exception):
    pass


class Permanent(Exception):
    pass


def is_transient(error: BaseException) -> bool:
    return isinstance(error, Transient)


class TestRetryPolicy:
    """Test backoff computation and the retry loop."""

    def test_delay_grows_and_is_capped(self):
        policy = RetryPolicy(max_attempts=5, initial_backoff=0.5, max_backoff=3.0)

        assert [policy.delay(n) for n in range(4)] == [0.5, 1.0, 2.0, 3.0]

    def test_custom_backoff_is_clamped_at_zero(self):
        policy = RetryPolicy(backoff=lambda attempt: attempt - 1)

        assert policy.delay(0) == 0.0
        assert policy.delay(3) == 2

    @pytest.mark.parametrize(
        "kwargs", [{"max_attempts": 0}, {"initial_backoff": -1}, {"max_backoff": -1}]
    )
    def test_invalid_policy(self, kwargs):
        with pytest.raises(ValueError):
            RetryPolicy(**kwargs)

    @pytest.mark.asyncio
    async def test_succeeds_after_transient_failures(self):
        func = AsyncMock(side_effect=[Transient(), Transient(), "done"])
        policy = RetryPolicy(max_attempts=3, initial_backoff=0.1, max_backoff=1.0)

        with patch("orderflow.core.retry.asyncio.sleep", new=AsyncMock()) as sleep:
            result = await policy.run("op", func, is_transient)

        assert result == "done"
        assert func.await_count == 3
        assert [c.args[0] for c in sleep.await_args_list] == [0.1, 0.2]

    @pytest.mark.asyncio
    async def test_permanent_error_is_not_retried(self):
        func = AsyncMock(side_effect=Permanent("nope"))

        with pytest.raises(Permanent):
            await RetryPolicy(initial_backoff=0).run("op", func, is_transient)

        assert func.await_count == 1

    @pytest.mark.asyncio
    async def test_last_error_is_raised_when_attempts_run_out(self):
        func = AsyncMock(side_effect=[Transient("first"), Transient("second")])
        policy = RetryPolicy(max_attempts=2, initial_backoff=0, max_backoff=0)

        with pytest.raises(Transient, match="second"):
            await policy.run("op", func, is_transient)

    @pytest.mark.asyncio
    async def test_no_retry_policy(self):
        func = AsyncMock(side_effect=Transient())

        with pytest.raises(Transient):
            await RetryPolicy.no_retry().run("op", func, is_transient)

        assert func.await_count == 1

    def test_max_elapsed_covers_every_attempt_and_delay(self):
        policy = RetryPolicy(max_attempts=3, initial_backoff=0.5, max_backoff=8.0)

        assert policy.max_elapsed(10.0) == 30.0 + 0.5 + 1.0
        assert RetryPolicy.no_retry().max_elapsed(10.0) == 10.0

    @pytest.mark.asyncio
    async def test_retries_complete_within_max_elapsed_deadline(self):
        calls = []

        async def slow_then_ok():
            calls.append(None)
            await asyncio.sleep(0.05)
            if len(calls) == 1:
                raise Transient()
            return "ok"

        policy = RetryPolicy(max_attempts=2, initial_backoff=0.01, max_backoff=0.01)

        result = await asyncio.wait_for(
            policy.run("op", slow_then_ok, is_transient), timeout=policy.max_elapsed(0.5)
        )

        assert result == "ok"
        assert len(calls) == 2
