"""
Tests for marketcycle.utils.resilience — bounded retry with backoff.
"""

import asyncio

import pytest
from unittest.mock import AsyncMock

from marketcycle.errors import ContractRevertError, RateLimitError, TransientNetworkError
from marketcycle.utils.resilience import call_with_retry, retry_with_backoff


@pytest.mark.asyncio
async def test_retries_transient_until_success():
    fn = AsyncMock(side_effect=[TransientNetworkError("a"), TransientNetworkError("b"), "ok"])

    result = await call_with_retry(fn, operation="op", attempts=3, initial_delay=0, max_delay=0)

    assert result == "ok"
    assert fn.await_count == 3


@pytest.mark.asyncio
async def test_reraises_after_exhausting_attempts():
    fn = AsyncMock(side_effect=RateLimitError("429"))

    with pytest.raises(RateLimitError):
        await call_with_retry(fn, attempts=3, initial_delay=0, max_delay=0)
    assert fn.await_count == 3


@pytest.mark.asyncio
async def test_non_transient_is_not_retried():
    fn = AsyncMock(side_effect=ContractRevertError("reverted"))

    with pytest.raises(ContractRevertError):
        await call_with_retry(fn, attempts=5, initial_delay=0, max_delay=0)
    fn.assert_awaited_once()


@pytest.mark.asyncio
async def test_custom_predicate_limits_retries():
    fn = AsyncMock(side_effect=RateLimitError("429"))

    with pytest.raises(RateLimitError):
        await call_with_retry(
            fn,
            attempts=3,
            initial_delay=0,
            max_delay=0,
            is_transient=lambda e: not isinstance(e, RateLimitError),
        )
    fn.assert_awaited_once()


@pytest.mark.asyncio
async def test_attempt_timeout_surfaces_as_transient():
    calls = 0

    async def slow():
        nonlocal calls
        calls += 1
        await asyncio.sleep(1)

    with pytest.raises(TransientNetworkError, match="timed out"):
        await call_with_retry(slow, operation="slow", attempts=2, initial_delay=0, max_delay=0, timeout=0.01)
    assert calls == 2


@pytest.mark.asyncio
async def test_decorator_form():
    attempts = []

    @retry_with_backoff(attempts=2, initial_delay=0, max_delay=0)
    async def flaky(value):
        attempts.append(value)
        if len(attempts) == 1:
            raise TransientNetworkError("first call fails")
        return value * 2

    assert await flaky(21) == 42
    assert attempts == [21, 21]
