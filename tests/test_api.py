"""
Tests for the HTTP API (system + cycle routers).

The app is built around an injected, in-memory service graph with the
orchestrator left stopped, so every request reads deterministic state.
"""

import asyncio
from unittest.mock import AsyncMock

import pytest
from fastapi.testclient import TestClient

from fakes import FakeChainClient, FakeRankingFeed, ranked
from marketcycle.api.app import create_app
from marketcycle.bootstrap import build_services
from marketcycle.config import CycleSettings
from marketcycle.core.bus import MARKET_DEPLOYED
from marketcycle.errors import RateLimitError
from marketcycle.store.cycle_store import InMemoryCycleStore
from marketcycle.version import VERSION


@pytest.fixture
def services():
    return build_services(
        CycleSettings(_env_file=None, store_backend="memory"),
        store=InMemoryCycleStore(),
        feed=FakeRankingFeed([ranked(1, 5.0, rank=1), ranked(2, 3.0, rank=2)]),
        chain=FakeChainClient(),
    )


@pytest.fixture
def client(services):
    with TestClient(create_app(services, start_orchestrator=False)) as c:
        yield c


def _genesis(services):
    async def run():
        outcome = await services.coordinator.deploy_market(1, is_genesis=True)
        await services.state_machine.record_deployment(outcome)

    asyncio.run(run())


# ── System ───────────────────────────────────────────────────────────


def test_root(client):
    response = client.get("/")

    assert response.status_code == 200
    assert response.json() == {"api": "MarketCycle API", "version": VERSION, "status": "online"}


def test_health_ok(client):
    response = client.get("/health")

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "healthy"
    assert body["store_reachable"] is True
    assert body["scheduler_running"] is False
    assert body["connectors"] == {"ranking_feed": True, "chain": True}


def test_health_degraded_when_store_down(client, services):
    services.store.available = False

    response = client.get("/health")

    assert response.status_code == 503
    assert response.json()["status"] == "degraded"
    assert response.json()["store_reachable"] is False


def test_health_reports_unhealthy_connector(client, services):
    async def failing_probe():
        raise RuntimeError("gateway down")

    services.feed.health_check = failing_probe

    response = client.get("/health")

    assert response.status_code == 200
    assert response.json()["connectors"]["ranking_feed"] is False


# ── Cycle ────────────────────────────────────────────────────────────


def test_cycle_before_genesis(client):
    response = client.get("/api/cycle")

    assert response.status_code == 200
    assert response.json() == {"status": "NOT_STARTED", "cycle": None}


def test_cycle_after_genesis(client, services):
    _genesis(services)

    body = client.get("/api/cycle").json()

    assert body["status"] == "ACTIVE"
    assert body["cycle"]["active_entities"][0]["id"] == 1
    assert body["cycle"]["active_entities"][0]["market_address"] == services.chain.markets[1]


def test_positions(client, services):
    assert client.get("/api/cycle/positions").json() == {"cycle_id": None, "positions": []}

    _genesis(services)
    body = client.get("/api/cycle/positions").json()

    assert body["cycle_id"].startswith("cycle-")
    assert body["positions"][0]["market_address"] == services.chain.markets[1]
    assert body["positions"][0]["active_token_ids"] == []


def test_store_outage_returns_error_envelope(client, services):
    services.store.available = False

    response = client.get("/api/cycle")

    assert response.status_code == 503
    error = response.json()["error"]
    assert error["error_code"] == "STORE_UNAVAILABLE"
    assert error["retryable"] is False


# ── Deployments ──────────────────────────────────────────────────────


def test_deployment_status_unknown(client):
    response = client.get("/api/deployments/42")

    assert response.status_code == 404
    assert response.json()["detail"] == "No deployment recorded for entity 42"


def test_deployment_status_completed(client, services):
    _genesis(services)

    response = client.get("/api/deployments/1")

    assert response.status_code == 200
    assert response.json() == {"entity_id": 1, "status": "completed"}


# ── Events ───────────────────────────────────────────────────────────


def test_events_history(client, services):
    _genesis(services)

    events = client.get(f"/api/events/{MARKET_DEPLOYED}").json()

    assert len(events) == 1
    assert events[0]["payload"]["entity_id"] == 1
    assert events[0]["payload"]["is_genesis"] is True


def test_events_limit_validated(client):
    assert client.get("/api/events/market.deployed?limit=0").status_code == 422
    assert client.get("/api/events/unknown.topic").json() == []


def test_rate_limit_error_sets_retry_after(client, services):
    services.state_machine.current = AsyncMock(
        side_effect=RateLimitError("slow down", retry_after=2.5, service="ranking_feed")
    )

    response = client.get("/api/cycle")

    assert response.status_code == 429
    assert response.headers["Retry-After"] == "3"
    assert response.json()["error"]["retry_after"] == 2.5
