"""
Bootstrap — Wire the orchestrator's components from settings.

Every component is constructed once here and injected into the ones that
depend on it. Tests pass their own store / chain / feed doubles and get a
fully wired service graph around them.
"""

from __future__ import annotations

from dataclasses import dataclass

import structlog

from marketcycle.config import CycleSettings, get_settings
from marketcycle.connectors.chain import BaseChainClient, Web3ChainClient
from marketcycle.connectors.ranking_feed import BaseRankingFeed, RankingFeedClient
from marketcycle.core.bus import EventBus
from marketcycle.core.deployment import DeploymentCoordinator, DeploymentPolicy
from marketcycle.core.scheduler import CycleOrchestrator
from marketcycle.core.state_machine import CycleStateMachine
from marketcycle.store.archive import (
    BaseMindshareArchive,
    InMemoryMindshareArchive,
    RedisMindshareArchive,
)
from marketcycle.store.cycle_store import BaseCycleStore, create_cycle_store
from marketcycle.utils.clock import Clock, utcnow

logger = structlog.get_logger(__name__)


@dataclass
class CycleServices:
    settings: CycleSettings
    store: BaseCycleStore
    archive: BaseMindshareArchive
    feed: BaseRankingFeed
    chain: BaseChainClient
    bus: EventBus
    coordinator: DeploymentCoordinator
    state_machine: CycleStateMachine
    orchestrator: CycleOrchestrator

    async def close(self) -> None:
        await self.orchestrator.stop()
        await self.feed.teardown()
        await self.chain.teardown()
        await self.archive.close()
        await self.store.close()


def build_services(
    settings: CycleSettings | None = None,
    *,
    store: BaseCycleStore | None = None,
    archive: BaseMindshareArchive | None = None,
    feed: BaseRankingFeed | None = None,
    chain: BaseChainClient | None = None,
    bus: EventBus | None = None,
    clock: Clock = utcnow,
) -> CycleServices:
    """Build the full service graph, using the given doubles where provided."""
    settings = settings or get_settings()
    store = store or create_cycle_store(settings)
    if archive is None:
        archive = (
            InMemoryMindshareArchive()
            if settings.store_backend == "memory"
            else RedisMindshareArchive(
                settings.redis_url,
                prefix=settings.archive_key_prefix,
                socket_timeout=settings.redis_socket_timeout_seconds,
            )
        )
    feed = feed or RankingFeedClient.from_settings(settings)
    chain = chain or Web3ChainClient.from_settings(settings)
    bus = bus or EventBus()

    coordinator = DeploymentCoordinator(
        store, chain, bus, policy=DeploymentPolicy.from_settings(settings), clock=clock
    )
    state_machine = CycleStateMachine(
        store,
        chain,
        feed,
        coordinator,
        archive,
        bus,
        cycle_duration=settings.cycle_duration,
        buffer_duration=settings.buffer_duration,
        clock=clock,
    )
    orchestrator = CycleOrchestrator.from_settings(settings, store, feed, state_machine)

    logger.info(
        "services_built",
        store=repr(store),
        archive=repr(archive),
        feed=feed.name,
        chain=chain.name,
        environment=settings.environment,
    )
    return CycleServices(
        settings=settings,
        store=store,
        archive=archive,
        feed=feed,
        chain=chain,
        bus=bus,
        coordinator=coordinator,
        state_machine=state_machine,
        orchestrator=orchestrator,
    )
