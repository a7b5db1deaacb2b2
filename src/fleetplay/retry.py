"""Retry handling for tasks that declare `retries`.

A failed attempt (ApplyError) is retried after `delay` seconds until the
task's retries are used up. Unreachable hosts are never retried: the
connection is gone and the rest of the host's tasks are skipped anyway.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from .exceptions import ApplyError

logger = logging.getLogger(__name__)


@dataclass
class RetryConfig:
    """Configuration for retry behavior.

    Attributes:
        retries: Extra attempts after the first (0 = no retries)
        delay: Delay before each retry in seconds
        backoff_factor: Multiplier applied to the delay after each retry
            (1.0 keeps it constant)
        max_delay: Upper bound for the delay
    """

    retries: int = 0
    delay: float = 5.0
    backoff_factor: float = 1.0
    max_delay: float = 300.0

    @property
    def max_attempts(self) -> int:
        return self.retries + 1

    def get_delay(self, attempt: int) -> float:
        """Delay before the retry that follows `attempt` (1-based)."""
        delay = self.delay * (self.backoff_factor ** max(0, attempt - 1))
        return max(0.0, min(delay, self.max_delay))


@dataclass
class RetryState:
    """Tracks the attempts made for one task on one host.

    Attributes:
        attempts: Number of attempts made
        last_error: Message of the last failed attempt
        succeeded: Whether an attempt eventually succeeded
        gave_up: Whether retries were exhausted (or stopped) on failure
    """

    attempts: int = 0
    last_error: str = ""
    succeeded: bool = False
    gave_up: bool = False

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "attempts": self.attempts,
            "last_error": self.last_error,
            "succeeded": self.succeeded,
            "gave_up": self.gave_up,
        }


async def retry_with_backoff(
    func: Callable[[], Awaitable[Any]],
    config: RetryConfig,
    state: RetryState | None = None,
    description: str = "task",
    stop_event: asyncio.Event | None = None,
    on_retry: Callable[[int, str, float], None] | None = None,
) -> Any:
    """Call `func` until it succeeds or the retries are used up.

    Args:
        func: Coroutine function performing one attempt
        config: Retry configuration
        state: Optional state updated with the attempt count
        description: Used in log messages
        stop_event: When set, no further retries are started
        on_retry: Called with (attempt, error, delay) before each retry

    Returns:
        The value returned by the successful attempt

    Raises:
        ApplyError: From the last attempt when all attempts failed
        UnreachableError: Immediately, without retrying
    """
    state = state if state is not None else RetryState()
    while True:
        state.attempts += 1
        try:
            value = await func()
        except ApplyError as e:
            state.last_error = e.msg
            out_of_attempts = state.attempts >= config.max_attempts
            stopping = stop_event is not None and stop_event.is_set()
            if out_of_attempts or stopping:
                state.gave_up = True
                if config.retries:
                    logger.warning(f"{description} failed after {state.attempts} attempt(s): {e.msg}")
                raise
            delay = config.get_delay(state.attempts)
            logger.info(
                f"{description} failed (attempt {state.attempts}/{config.max_attempts}), "
                f"retrying in {delay:.1f}s: {e.msg}"
            )
            if on_retry is not None:
                on_retry(state.attempts, e.msg, delay)
            await asyncio.sleep(delay)
            if stop_event is not None and stop_event.is_set():
                state.gave_up = True
                logger.info(f"{description}: stop requested, not retrying")
                raise
            continue
        state.succeeded = True
        if state.attempts > 1:
            logger.info(f"{description} succeeded on attempt {state.attempts}")
        return value
