from datetime import timedelta

import pytest
from opentelemetry import trace

from fakes import FakeChainClient, FakeRankingFeed, FrozenClock, ranked
from marketcycle.core.bus import EventBus
from marketcycle.core.deployment import DeploymentCoordinator, DeploymentPolicy
from marketcycle.core.scheduler import CycleOrchestrator
from marketcycle.core.state_machine import CycleStateMachine
from marketcycle.store.archive import InMemoryMindshareArchive
from marketcycle.store.cycle_store import InMemoryCycleStore


@pytest.fixture(autouse=True)
def disable_tracing():
    """Install a plain TracerProvider so spans never export to stdout during tests."""
    from opentelemetry.sdk.trace import TracerProvider
    trace.set_tracer_provider(TracerProvider())
    yield


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  Wired fixtures
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def store(clock):
    return InMemoryCycleStore(clock=clock)


@pytest.fixture
def archive():
    return InMemoryMindshareArchive()


@pytest.fixture
def chain():
    return FakeChainClient()


@pytest.fixture
def feed():
    return FakeRankingFeed([ranked(1, 5.0, rank=1), ranked(2, 3.0, rank=2)])


@pytest.fixture
def bus():
    return EventBus()


@pytest.fixture
def policy():
    return DeploymentPolicy(retry_initial_delay=0, retry_max_delay=0)


@pytest.fixture
def coordinator(store, chain, bus, policy, clock):
    return DeploymentCoordinator(store, chain, bus, policy=policy, clock=clock)


@pytest.fixture
def state_machine(store, chain, feed, coordinator, archive, bus, clock):
    return CycleStateMachine(
        store,
        chain,
        feed,
        coordinator,
        archive,
        bus,
        cycle_duration=timedelta(hours=72),
        buffer_duration=timedelta(hours=1),
        clock=clock,
    )


@pytest.fixture
def orchestrator(store, feed, state_machine):
    return CycleOrchestrator(
        store,
        feed,
        state_machine,
        ingestion_interval=0.01,
        status_interval=0.01,
        health_interval=0.01,
        ingestion_timeout=1,
        status_timeout=1,
        health_timeout=1,
    )
