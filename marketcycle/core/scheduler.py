"""
CycleOrchestrator — Top-level control loop.

Runs three independent periodic tasks, coordinated by one shutdown event:

  - ranking_ingestion (hourly): snapshot → reconcile → deploy → refresh
    crashed-out entities
  - cycle_status (every few minutes): one state-machine transition
  - store_health (every minute): ping the store, flip the health flag

While the store is unhealthy the first two tasks do not fire, so nothing
acts on a store it cannot trust. Every tick runs under its own timeout and
error boundary: a failing or stalled tick is logged and the timer carries on.

The health flag is the only state held here; everything else lives in the
store, so any orchestrator instance can pick up after a restart.
"""

from __future__ import annotations

import asyncio
from typing import Awaitable, Callable

import structlog
from opentelemetry import trace

from marketcycle.config import CycleSettings
from marketcycle.connectors.ranking_feed import BaseRankingFeed
from marketcycle.core.state_machine import CycleStateMachine, ReconcileResult
from marketcycle.errors import FeedUnavailableError, StoreUnavailableError
from marketcycle.models import CycleStatus
from marketcycle.store.cycle_store import BaseCycleStore

logger = structlog.get_logger(__name__)
tracer = trace.get_tracer(__name__)


class CycleOrchestrator:
    def __init__(
        self,
        store: BaseCycleStore,
        feed: BaseRankingFeed,
        state_machine: CycleStateMachine,
        *,
        ingestion_interval: float = 3600,
        status_interval: float = 300,
        health_interval: float = 60,
        ingestion_timeout: float = 1200,
        status_timeout: float = 1200,
        health_timeout: float = 10,
    ):
        self._store = store
        self._feed = feed
        self.state_machine = state_machine
        self._schedule = {
            "ranking_ingestion": (ingestion_interval, ingestion_timeout),
            "cycle_status": (status_interval, status_timeout),
            "store_health": (health_interval, health_timeout),
        }
        self._healthy = True
        self._consecutive_health_failures = 0
        self._shutdown = asyncio.Event()
        self._tasks: list[asyncio.Task] = []

    @classmethod
    def from_settings(
        cls,
        settings: CycleSettings,
        store: BaseCycleStore,
        feed: BaseRankingFeed,
        state_machine: CycleStateMachine,
    ) -> CycleOrchestrator:
        return cls(
            store,
            feed,
            state_machine,
            ingestion_interval=settings.ingestion_interval_seconds,
            status_interval=settings.status_check_interval_seconds,
            health_interval=settings.health_check_interval_seconds,
            ingestion_timeout=settings.ingestion_timeout_seconds,
            status_timeout=settings.status_check_timeout_seconds,
            health_timeout=settings.health_check_timeout_seconds,
        )

    @property
    def healthy(self) -> bool:
        return self._healthy

    @property
    def running(self) -> bool:
        return any(not t.done() for t in self._tasks)

    def _mark_unhealthy(self, reason: str) -> None:
        if self._healthy:
            logger.error("orchestrator_suspended", reason=reason)
        self._healthy = False

    # ── Task bodies ──────────────────────────────────────────────────

    async def ingest_rankings(self) -> ReconcileResult | None:
        """One ingestion tick. Returns None when skipped."""
        if not self._healthy:
            logger.info("ingestion_suspended")
            return None

        _, status = await self.state_machine.current()
        if status != CycleStatus.ACTIVE:
            logger.debug("ingestion_not_active", status=status.value)
            return None

        try:
            snapshot = await self._feed.fetch_snapshot()
        except FeedUnavailableError as e:
            # Keep the last-known active set; try again next tick.
            logger.warning("ingestion_feed_unavailable", error=str(e), error_code=e.error_code)
            return None

        result = await self.state_machine.ingest(snapshot)
        if result is None:
            return None
        if result.to_deploy:
            await self.state_machine.deploy_pending(result.to_deploy)
        await self.state_machine.refresh_crashed_out()
        return result

    async def check_cycle_status(self) -> CycleStatus | None:
        """One status tick. Returns None when suspended."""
        if not self._healthy:
            logger.info("status_check_suspended")
            return None
        return await self.state_machine.check_status()

    async def check_store_health(self) -> bool:
        """Ping the store. A ping that stalls past the health timeout counts as failed."""
        _, timeout = self._schedule["store_health"]
        try:
            ok = await asyncio.wait_for(self._store.ping(), timeout=timeout)
        except asyncio.TimeoutError:
            self._store_health_failed(f"store ping timed out after {timeout}s")
            return False
        if ok:
            if not self._healthy:
                logger.info(
                    "orchestrator_resumed",
                    failed_checks=self._consecutive_health_failures,
                )
            self._healthy = True
            self._consecutive_health_failures = 0
        else:
            self._store_health_failed("store ping failed")
        return ok

    def _store_health_failed(self, reason: str) -> None:
        self._consecutive_health_failures += 1
        logger.warning(
            "store_health_check_failed",
            reason=reason,
            consecutive_failures=self._consecutive_health_failures,
        )
        self._mark_unhealthy(reason)

    # ── Timers ───────────────────────────────────────────────────────

    async def _tick(self, name: str, body: Callable[[], Awaitable[object]]) -> None:
        _, timeout = self._schedule[name]
        with tracer.start_as_current_span(f"scheduler.{name}") as span:
            try:
                await asyncio.wait_for(body(), timeout=timeout)
            except asyncio.TimeoutError:
                logger.error("scheduler_task_timed_out", task=name, timeout=timeout)
                span.set_status(trace.StatusCode.ERROR, "timeout")
                if name == "store_health":
                    self._store_health_failed(f"store health check timed out after {timeout}s")
            except StoreUnavailableError as e:
                span.record_exception(e)
                self._mark_unhealthy(str(e))
            except Exception as e:
                logger.exception("scheduler_task_failed", task=name, error=str(e))
                span.record_exception(e)
                span.set_status(trace.StatusCode.ERROR, str(e))

    async def _run_periodic(self, name: str, body: Callable[[], Awaitable[object]]) -> None:
        interval, _ = self._schedule[name]
        logger.info("scheduler_task_started", task=name, interval=interval)
        while not self._shutdown.is_set():
            await self._tick(name, body)
            try:
                await asyncio.wait_for(self._shutdown.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass
        logger.info("scheduler_task_stopped", task=name)

    async def start(self) -> None:
        """Run a first health check, then launch the three timers."""
        if self.running:
            return
        self._shutdown.clear()
        await self._tick("store_health", self.check_store_health)
        self._tasks = [
            asyncio.create_task(
                self._run_periodic("store_health", self.check_store_health),
                name="store_health",
            ),
            asyncio.create_task(
                self._run_periodic("cycle_status", self.check_cycle_status),
                name="cycle_status",
            ),
            asyncio.create_task(
                self._run_periodic("ranking_ingestion", self.ingest_rankings),
                name="ranking_ingestion",
            ),
        ]
        logger.info("orchestrator_started", healthy=self._healthy)

    async def stop(self) -> None:
        """Signal shutdown and cancel the timers."""
        self._shutdown.set()
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        logger.info("orchestrator_stopped")

    async def run(self) -> None:
        """Run until ``stop()`` is called (or the surrounding task is cancelled)."""
        await self.start()
        try:
            await self._shutdown.wait()
        finally:
            await self.stop()
