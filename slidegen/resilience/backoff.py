"""
Retry with jittered exponential backoff for external dependencies.

One utility replaces the ad-hoc retry chains of the client code:
- with_retry(): decorator form for module-level async functions
- BackoffPolicy: instance form built from ResilienceConfig, used by the
  credit client and the purchase provider
- jittered_interval(): polling interval with optional random spread

Retries only fire for the exception types a caller names. Callers name
connection-level failures only, so a request that may have been delivered is
never replayed blindly.
"""

import logging
import random
from collections.abc import Awaitable, Callable
from typing import TypeVar

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_random_exponential,
)

from slidegen.config import ResilienceConfig
from slidegen.observability.metrics import track_retry

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _log_before_sleep(operation: str) -> Callable[[RetryCallState], None]:
    def before_sleep(retry_state: RetryCallState) -> None:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        sleep_seconds = retry_state.next_action.sleep if retry_state.next_action else 0.0
        track_retry(operation)
        logger.warning(
            "Retrying after transient failure",
            extra={
                "operation": operation,
                "attempt": retry_state.attempt_number,
                "sleep_seconds": round(sleep_seconds, 3),
                "error_type": type(exc).__name__ if exc else None,
                "error": str(exc) if exc else None,
            },
        )

    return before_sleep


def with_retry(
    max_attempts: int = 3,
    min_wait: float = 0.5,
    max_wait: float = 8.0,
    exceptions: tuple[type[Exception], ...] = (Exception,),
    operation: str = "call",
):
    """
    Retry decorator with jittered exponential backoff.

    Args:
        max_attempts: Maximum number of attempts (first call included)
        min_wait: Minimum wait time in seconds
        max_wait: Maximum wait time in seconds
        exceptions: Exception types to retry on
        operation: Label used in retry logs and metrics

    Usage:
        @with_retry(max_attempts=3, exceptions=(httpx.ConnectError,), operation="credit")
        async def post_credit():
            return await client.post(...)
    """
    return retry(
        stop=stop_after_attempt(max_attempts),
        wait=wait_random_exponential(multiplier=min_wait or 1, min=min_wait, max=max_wait),
        retry=retry_if_exception_type(exceptions),
        before_sleep=_log_before_sleep(operation),
        reraise=True,
    )


class BackoffPolicy:
    """
    Configured retry policy for one dependency.

    Usage:
        policy = BackoffPolicy.from_config(settings.resilience, operation="provider")
        info = await policy.call(fetch_customer, user_id, exceptions=(httpx.TransportError,))
    """

    def __init__(
        self,
        max_attempts: int = 3,
        min_wait: float = 0.5,
        max_wait: float = 8.0,
        operation: str = "call",
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if max_wait < min_wait:
            raise ValueError("max_wait must be >= min_wait")
        self.max_attempts = max_attempts
        self.min_wait = min_wait
        self.max_wait = max_wait
        self.operation = operation

    @classmethod
    def from_config(cls, config: ResilienceConfig, operation: str) -> "BackoffPolicy":
        return cls(
            max_attempts=config.max_attempts,
            min_wait=config.min_wait_seconds,
            max_wait=config.max_wait_seconds,
            operation=operation,
        )

    def retrying(self, exceptions: tuple[type[Exception], ...]) -> AsyncRetrying:
        return AsyncRetrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_random_exponential(
                multiplier=self.min_wait or 1, min=self.min_wait, max=self.max_wait
            ),
            retry=retry_if_exception_type(exceptions),
            before_sleep=_log_before_sleep(self.operation),
            reraise=True,
        )

    async def call(
        self,
        func: Callable[..., Awaitable[T]],
        *args,
        exceptions: tuple[type[Exception], ...] = (Exception,),
        **kwargs,
    ) -> T:
        """
        Await func(*args, **kwargs), retrying on the given exception types.

        The last exception is re-raised once attempts are exhausted.
        """
        return await self.retrying(exceptions)(func, *args, **kwargs)


def jittered_interval(base_seconds: float, jitter_seconds: float = 0.0) -> float:
    """Polling interval plus a uniform random spread in [0, jitter_seconds]."""
    if jitter_seconds <= 0:
        return base_seconds
    return base_seconds + random.uniform(0.0, jitter_seconds)
