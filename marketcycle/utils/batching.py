"""
Adaptive Batcher — Rate-limit-aware fan-out for per-entity feed lookups.

Processes a list of keys in concurrent batches, tuning throughput from the
outcome of each batch:

  Sustained success  → batch grows by one, inter-batch delay shrinks
  Any failure        → batch halves, delay grows (applied immediately)
  Rate-limit answer  → batch drops to the minimum, delay backs off
                       exponentially (or to the server's Retry-After),
                       and the rate-limited keys are re-queued

The delay between batches is back-pressure (``asyncio.sleep``), never rejection.
"""

from __future__ import annotations

import asyncio
from collections import deque
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Generic, Hashable, TypeVar

import structlog

from marketcycle.errors import RateLimitError

logger = structlog.get_logger(__name__)

K = TypeVar("K", bound=Hashable)
R = TypeVar("R")


@dataclass(frozen=True)
class BatchPolicy:
    min_size: int = 1
    initial_size: int = 5
    max_size: int = 20
    min_delay: float = 0.5
    initial_delay: float = 1.0
    max_delay: float = 60.0
    grow_after: int = 2  # consecutive clean batches before growing
    max_attempts: int = 3  # per key, counting rate-limited attempts


@dataclass
class BatchRunResult(Generic[K, R]):
    results: dict[K, R] = field(default_factory=dict)
    failures: dict[K, str] = field(default_factory=dict)
    missing: list[K] = field(default_factory=list)


class AdaptiveBatcher:
    """
    Runs ``fn(key)`` over many keys with adaptive batch size and pacing.

    State (current size, delay, streaks) persists across ``run()`` calls on
    the same instance, so one long-lived batcher keeps what it learned about
    the upstream between ingestion ticks.
    """

    def __init__(
        self,
        policy: BatchPolicy | None = None,
        *,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.policy = policy or BatchPolicy()
        self._sleep = sleep
        self.batch_size = self.policy.initial_size
        self.delay = self.policy.initial_delay
        self._success_streak = 0
        self._rate_limit_hits = 0

    # ── Adaptation ───────────────────────────────────────────────────

    def record_success(self) -> None:
        self._rate_limit_hits = 0
        self._success_streak += 1
        if self._success_streak >= self.policy.grow_after:
            self._success_streak = 0
            self.batch_size = min(self.policy.max_size, self.batch_size + 1)
            self.delay = max(self.policy.min_delay, self.delay * 0.75)

    def record_failure(self) -> None:
        self._success_streak = 0
        self.batch_size = max(self.policy.min_size, self.batch_size // 2)
        self.delay = min(self.policy.max_delay, self.delay * 1.5)

    def record_rate_limit(self, retry_after: float | None = None) -> None:
        self._success_streak = 0
        self._rate_limit_hits += 1
        self.batch_size = self.policy.min_size
        backoff = self.policy.initial_delay * (2 ** self._rate_limit_hits)
        self.delay = min(self.policy.max_delay, max(backoff, retry_after or 0.0))

    # ── Execution ────────────────────────────────────────────────────

    async def run(
        self,
        keys: list[K],
        fn: Callable[[K], Awaitable[R | None]],
        *,
        operation: str = "batch",
    ) -> BatchRunResult[K, R]:
        """
        Apply ``fn`` to every key. ``None`` results are reported as missing.

        Exceptions never escape: each key ends up in exactly one of
        ``results``, ``failures`` or ``missing``.
        """
        outcome: BatchRunResult[K, R] = BatchRunResult()
        queue: deque[tuple[K, int]] = deque((k, 0) for k in dict.fromkeys(keys))

        while queue:
            size = min(self.batch_size, len(queue))
            batch = [queue.popleft() for _ in range(size)]
            answers = await asyncio.gather(
                *(fn(key) for key, _ in batch), return_exceptions=True
            )

            rate_limited: list[tuple[K, int]] = []
            retry_after: float | None = None
            failed = False

            for (key, attempts), answer in zip(batch, answers):
                if isinstance(answer, RateLimitError):
                    retry_after = max(retry_after or 0.0, answer.retry_after or 0.0)
                    if attempts + 1 < self.policy.max_attempts:
                        rate_limited.append((key, attempts + 1))
                    else:
                        outcome.failures[key] = str(answer)
                elif isinstance(answer, Exception):
                    failed = True
                    outcome.failures[key] = str(answer)
                elif answer is None:
                    outcome.missing.append(key)
                else:
                    outcome.results[key] = answer

            if rate_limited or retry_after is not None:
                self.record_rate_limit(retry_after)
                queue.extendleft(reversed(rate_limited))
            elif failed:
                self.record_failure()
            else:
                self.record_success()

            logger.debug(
                "batch_completed",
                operation=operation,
                size=size,
                remaining=len(queue),
                next_batch_size=self.batch_size,
                next_delay=round(self.delay, 2),
            )

            if queue:
                await self._sleep(self.delay)

        if outcome.failures:
            logger.warning(
                "batch_failures",
                operation=operation,
                failed=len(outcome.failures),
                succeeded=len(outcome.results),
            )
        return outcome
