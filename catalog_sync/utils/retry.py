"""
Retry and timeout helpers for calls to external catalogs.
Categorizes errors as transient (retryable) or permanent (non-retryable).
"""

import asyncio
import functools
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TypeVar

import httpx
import structlog
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from catalog_sync.errors import ErrorAction, OperationTimeoutError, registered_action

logger = structlog.get_logger()

T = TypeVar("T")


def is_transient_error(exception: BaseException) -> bool:
    """
    Determine if an exception represents a transient error that should be retried.

    Args:
        exception: The exception to check

    Returns:
        True if error is transient (retryable), False otherwise
    """
    # Network/connection errors are transient
    if isinstance(exception, httpx.ConnectError | httpx.TimeoutException | httpx.NetworkError):
        return True

    if isinstance(exception, httpx.HTTPStatusError):
        status_code = exception.response.status_code
        # 5xx and rate limiting (429) are transient, other 4xx are permanent
        return 500 <= status_code < 600 or status_code == 429

    # Engine errors and timeouts follow the error policy table
    return registered_action(exception) is ErrorAction.RETRY


@dataclass(frozen=True)
class ResiliencePolicy:
    """Retry and timeout numbers applied to every external call."""

    max_attempts: int = 3
    initial_delay: float = 1.0
    multiplier: float = 2.0
    max_delay: float = 30.0
    timeout: float = 10.0

    @classmethod
    def from_settings(cls, settings) -> "ResiliencePolicy":
        return cls(
            max_attempts=settings.max_retry_attempts,
            initial_delay=settings.retry_initial_delay_seconds,
            multiplier=settings.retry_backoff_multiplier,
            max_delay=settings.retry_max_delay_seconds,
            timeout=settings.external_call_timeout_seconds,
        )


async def retry_async(
    op: Callable[[], Awaitable[T]],
    max_attempts: int = 3,
    initial_delay: float = 1.0,
    multiplier: float = 2.0,
    max_delay: float = 30.0,
    retry_on: Callable[[BaseException], bool] = is_transient_error,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """
    Run op with exponential backoff. Waits initial_delay * multiplier**(n-1),
    capped at max_delay, between attempts.

    Only errors accepted by retry_on are retried; anything else propagates on the
    first attempt. After the last attempt the final error is re-raised unchanged.

    Args:
        op: Zero-argument coroutine function to call
        max_attempts: Maximum number of attempts (including the first)
        initial_delay: Delay before the second attempt, in seconds
        multiplier: Exponential growth factor between delays
        max_delay: Upper bound for a single delay, in seconds
        retry_on: Predicate deciding whether an error is retryable
        sleep: Sleep coroutine (injected in tests)

    Returns:
        Result of the first successful attempt
    """
    retrying = AsyncRetrying(
        stop=stop_after_attempt(max_attempts),
        wait=wait_exponential(multiplier=initial_delay, exp_base=multiplier, max=max_delay),
        retry=retry_if_exception(retry_on),
        reraise=True,
        before_sleep=_log_retry_attempt,
        sleep=sleep,
    )
    return await retrying(op)


def retry_with_backoff(
    max_attempts: int = 3,
    initial_delay: float = 1.0,
    multiplier: float = 2.0,
    max_delay: float = 30.0,
):
    """
    Decorator for retrying coroutine functions with exponential backoff.
    Only retries on transient errors.

    Args:
        max_attempts: Maximum number of retry attempts
        initial_delay: Initial delay in seconds
        multiplier: Multiplier for exponential backoff
        max_delay: Maximum delay in seconds

    Returns:
        Decorated coroutine function with retry logic
    """

    def retry_decorator(func: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[T]]:
        @functools.wraps(func)
        async def wrapper(*args, **kwargs) -> T:
            return await retry_async(
                lambda: func(*args, **kwargs),
                max_attempts=max_attempts,
                initial_delay=initial_delay,
                multiplier=multiplier,
                max_delay=max_delay,
            )

        return wrapper

    return retry_decorator


async def with_timeout(
    op: Callable[[], Awaitable[T]], seconds: float, operation: str = "operation"
) -> T:
    """
    Race op against a timer.

    Raises:
        OperationTimeoutError: If op does not finish within the given seconds
    """
    try:
        return await asyncio.wait_for(op(), timeout=seconds)
    except asyncio.TimeoutError as e:
        raise OperationTimeoutError(operation, seconds) from e


async def call_with_resilience(
    op: Callable[[], Awaitable[T]],
    policy: ResiliencePolicy,
    operation: str = "external call",
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """Timeout-wrap every attempt of op, then retry transient failures."""
    return await retry_async(
        lambda: with_timeout(op, policy.timeout, operation),
        max_attempts=policy.max_attempts,
        initial_delay=policy.initial_delay,
        multiplier=policy.multiplier,
        max_delay=policy.max_delay,
        sleep=sleep,
    )


def _log_retry_attempt(retry_state: RetryCallState):
    """Log retry attempt before sleeping."""
    if retry_state.outcome is not None:
        exception = retry_state.outcome.exception()
        logger.warning(
            "Retrying after transient error",
            attempt=retry_state.attempt_number,
            exception=str(exception),
            exception_type=type(exception).__name__,
            wait_time=retry_state.next_action.sleep if retry_state.next_action else 0,
        )
