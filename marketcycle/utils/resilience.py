"""
Resilience Utils — One retry policy for every outbound call.

The chain client and the ranking feed client both route their network calls
through ``call_with_retry`` (or the ``retry_with_backoff`` decorator), so the
attempt budget, the backoff curve and the "what counts as transient" rule are
the same everywhere.

  - Bounded attempts (default 3) with exponential backoff and a delay cap
  - ``is_transient`` predicate decides what is retried; everything else
    (contract reverts, malformed payloads) propagates on the first failure
  - Optional per-attempt timeout; a timeout surfaces as ``TransientNetworkError``
"""

from __future__ import annotations

import asyncio
from functools import wraps
from typing import Any, Awaitable, Callable, TypeVar

import structlog
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from marketcycle.errors import TransientNetworkError, is_transient as default_is_transient

logger = structlog.get_logger(__name__)

T = TypeVar("T")

TransientPredicate = Callable[[BaseException], bool]


def _log_retry(operation: str) -> Callable[[RetryCallState], None]:
    def before_sleep(state: RetryCallState) -> None:
        exc = state.outcome.exception() if state.outcome else None
        logger.warning(
            "retry_attempt",
            operation=operation,
            attempt=state.attempt_number,
            wait_seconds=round(state.next_action.sleep, 2) if state.next_action else 0,
            error=str(exc),
        )

    return before_sleep


async def _with_timeout(
    fn: Callable[[], Awaitable[T]], timeout: float | None, operation: str
) -> T:
    if timeout is None:
        return await fn()
    try:
        return await asyncio.wait_for(fn(), timeout=timeout)
    except asyncio.TimeoutError as e:
        raise TransientNetworkError(
            f"{operation or 'call'} timed out after {timeout}s", service=operation
        ) from e


async def call_with_retry(
    fn: Callable[[], Awaitable[T]],
    *,
    operation: str = "",
    attempts: int = 3,
    initial_delay: float = 1.0,
    max_delay: float = 10.0,
    timeout: float | None = None,
    is_transient: TransientPredicate = default_is_transient,
) -> T:
    """
    Await ``fn()`` with bounded retries on transient failures.

    Args:
        fn: Zero-argument coroutine factory; called once per attempt.
        operation: Name used in retry logs.
        attempts: Total attempts including the first one.
        initial_delay: First backoff delay in seconds (0 disables sleeping).
        max_delay: Cap on any single backoff delay.
        timeout: Per-attempt timeout in seconds.
        is_transient: Predicate selecting which exceptions are retried.

    Raises:
        The last exception once attempts are exhausted, or the first
        non-transient exception immediately.
    """
    retrying = AsyncRetrying(
        stop=stop_after_attempt(max(1, attempts)),
        wait=wait_exponential(multiplier=initial_delay, min=initial_delay, max=max_delay),
        retry=retry_if_exception(is_transient),
        before_sleep=_log_retry(operation),
        reraise=True,
    )
    async for attempt in retrying:
        with attempt:
            return await _with_timeout(fn, timeout, operation)
    raise AssertionError("unreachable: tenacity reraises on exhaustion")


def retry_with_backoff(
    *,
    attempts: int = 3,
    initial_delay: float = 1.0,
    max_delay: float = 10.0,
    timeout: float | None = None,
    is_transient: TransientPredicate = default_is_transient,
) -> Callable:
    """Decorator form of ``call_with_retry`` for async functions and methods."""

    def decorator(func: Callable[..., Awaitable[Any]]) -> Callable[..., Awaitable[Any]]:
        @wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> Any:
            return await call_with_retry(
                lambda: func(*args, **kwargs),
                operation=func.__name__,
                attempts=attempts,
                initial_delay=initial_delay,
                max_delay=max_delay,
                timeout=timeout,
                is_transient=is_transient,
            )

        return wrapper

    return decorator
