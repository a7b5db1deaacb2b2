"""Tests for task retries."""

import asyncio

import pytest

from fleetplay.exceptions import ApplyError, UnreachableError
from fleetplay.retry import RetryConfig, RetryState, retry_with_backoff


class Flaky:
    """Fails a given number of times, then returns "done"."""

    def __init__(self, failures: int, error: Exception | None = None):
        self.failures = failures
        self.error = error
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        if self.calls <= self.failures:
            raise self.error or ApplyError(f"attempt {self.calls} failed")
        return "done"


class TestRetryConfig:
    """Tests for RetryConfig."""

    def test_defaults(self):
        """Test a task without retries makes one attempt."""
        config = RetryConfig()
        assert config.max_attempts == 1

    def test_constant_delay(self):
        """Test the delay stays constant without a backoff factor."""
        config = RetryConfig(retries=3, delay=2.0)
        assert [config.get_delay(n) for n in (1, 2, 3)] == [2.0, 2.0, 2.0]

    def test_backoff(self):
        """Test exponential backoff."""
        config = RetryConfig(retries=3, delay=1.0, backoff_factor=2.0)
        assert [config.get_delay(n) for n in (1, 2, 3)] == [1.0, 2.0, 4.0]

    def test_max_delay(self):
        """Test the delay is capped."""
        config = RetryConfig(retries=10, delay=10.0, backoff_factor=10.0, max_delay=60.0)
        assert config.get_delay(5) == 60.0


class TestRetryWithBackoff:
    """Tests for retry_with_backoff."""

    @pytest.mark.asyncio
    async def test_succeeds_first_time(self):
        """Test no retries when the first attempt works."""
        state = RetryState()
        assert await retry_with_backoff(Flaky(0), RetryConfig(retries=3, delay=0), state) == "done"
        assert state.attempts == 1
        assert state.succeeded

    @pytest.mark.asyncio
    async def test_succeeds_after_failures(self):
        """Test retries until an attempt succeeds."""
        func = Flaky(2)
        state = RetryState()
        assert await retry_with_backoff(func, RetryConfig(retries=3, delay=0), state) == "done"
        assert func.calls == 3
        assert state.attempts == 3
        assert not state.gave_up

    @pytest.mark.asyncio
    async def test_gives_up(self):
        """Test the last error propagates once retries are used up."""
        func = Flaky(10)
        state = RetryState()
        with pytest.raises(ApplyError) as exc_info:
            await retry_with_backoff(func, RetryConfig(retries=2, delay=0), state)
        assert func.calls == 3
        assert str(exc_info.value) == "attempt 3 failed"
        assert state.gave_up
        assert state.last_error == "attempt 3 failed"
        assert state.to_dict()["attempts"] == 3

    @pytest.mark.asyncio
    async def test_no_retries(self):
        """Test a single attempt without retries."""
        func = Flaky(1)
        with pytest.raises(ApplyError):
            await retry_with_backoff(func, RetryConfig(retries=0, delay=0))
        assert func.calls == 1

    @pytest.mark.asyncio
    async def test_unreachable_not_retried(self):
        """Test unreachable hosts are not retried."""
        func = Flaky(5, UnreachableError("web01", "connection refused"))
        with pytest.raises(UnreachableError):
            await retry_with_backoff(func, RetryConfig(retries=3, delay=0))
        assert func.calls == 1

    @pytest.mark.asyncio
    async def test_stop_event(self):
        """Test a stop request prevents further retries."""
        func = Flaky(5)
        stop = asyncio.Event()
        stop.set()
        state = RetryState()
        with pytest.raises(ApplyError):
            await retry_with_backoff(func, RetryConfig(retries=3, delay=0), state, stop_event=stop)
        assert func.calls == 1
        assert state.gave_up

    @pytest.mark.asyncio
    async def test_stop_during_delay(self):
        """Test a stop requested while waiting to retry ends the retries."""
        func = Flaky(5)
        stop = asyncio.Event()
        state = RetryState()
        with pytest.raises(ApplyError, match="attempt 1 failed"):
            await retry_with_backoff(
                func,
                RetryConfig(retries=3, delay=0),
                state,
                stop_event=stop,
                on_retry=lambda attempt, error, delay: stop.set(),
            )
        assert func.calls == 1
        assert state.attempts == 1
        assert state.gave_up
        assert not state.succeeded

    @pytest.mark.asyncio
    async def test_on_retry(self):
        """Test the retry callback sees each failed attempt."""
        calls = []
        await retry_with_backoff(
            Flaky(2),
            RetryConfig(retries=2, delay=0),
            on_retry=lambda attempt, error, delay: calls.append((attempt, error, delay)),
        )
        assert calls == [(1, "attempt 1 failed", 0.0), (2, "attempt 2 failed", 0.0)]
