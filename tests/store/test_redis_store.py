"""
Tests for marketcycle.store.cycle_store.RedisCycleStore against a mocked
``redis.asyncio`` client: key layout, TTLs, lock tokens and outage mapping.
"""

import json
from datetime import datetime, timedelta, timezone

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError
from unittest.mock import AsyncMock, MagicMock, patch

from marketcycle.errors import StoreUnavailableError
from marketcycle.models import CycleStatus, DeploymentStatus, MarketCycle, MarketPosition
from marketcycle.store.cycle_store import RedisCycleStore, StoreTTLs

NOW = datetime(2025, 1, 1, tzinfo=timezone.utc)


@pytest.fixture
def mock_redis_client():
    client = AsyncMock()
    client.get.return_value = None
    client.lrange.return_value = []
    client.register_script = MagicMock(return_value=AsyncMock(return_value=1))
    return client


@pytest.fixture
def store(mock_redis_client):
    with patch("marketcycle.store.cycle_store.redis.from_url", return_value=mock_redis_client):
        return RedisCycleStore(
            "redis://localhost:6379",
            prefix="market:",
            ttls=StoreTTLs(cycle=100, position=200, mindshare=300, lock=400, status=500),
        )


def _cycle():
    return MarketCycle(
        id="cycle-1",
        start_time=NOW,
        end_time=NOW + timedelta(hours=72),
        global_expiry=NOW + timedelta(hours=72),
    )


@pytest.mark.asyncio
async def test_current_cycle_pointer_has_no_ttl(store, mock_redis_client):
    await store.set_current_cycle_id("cycle-1")
    mock_redis_client.set.assert_called_once_with("market:cycle:current", "cycle-1")


@pytest.mark.asyncio
async def test_put_cycle_uses_cycle_ttl(store, mock_redis_client):
    cycle = _cycle()
    await store.put_cycle(cycle)

    mock_redis_client.set.assert_called_once_with(
        "market:cycle:data:cycle-1", cycle.model_dump_json(), ex=100
    )


@pytest.mark.asyncio
async def test_get_cycle_parses_json(store, mock_redis_client):
    cycle = _cycle()
    mock_redis_client.get.return_value = cycle.model_dump_json()

    assert await store.get_cycle("cycle-1") == cycle
    mock_redis_client.get.assert_called_once_with("market:cycle:data:cycle-1")


@pytest.mark.asyncio
async def test_cycle_status(store, mock_redis_client):
    await store.set_cycle_status("cycle-1", CycleStatus.ENDING)
    mock_redis_client.set.assert_called_once_with("market:cycle:status:cycle-1", "ENDING", ex=100)

    mock_redis_client.get.return_value = "BUFFER"
    assert await store.get_cycle_status("cycle-1") == CycleStatus.BUFFER


@pytest.mark.asyncio
async def test_market_position_uses_position_ttl(store, mock_redis_client):
    position = MarketPosition(market_address="0xm", cycle_id="cycle-1", active_token_ids=[1])
    await store.put_market_position("0xm", position)

    mock_redis_client.set.assert_called_once_with(
        "market:positions:0xm", position.model_dump_json(), ex=200
    )


@pytest.mark.asyncio
async def test_mindshare_history_list(store, mock_redis_client):
    await store.record_mindshare("0xm", 1.25)

    mock_redis_client.rpush.assert_called_once_with("market:mindshares:0xm", json.dumps(1.25))
    mock_redis_client.expire.assert_called_once_with("market:mindshares:0xm", 300)

    mock_redis_client.lrange.return_value = ["1.25", "2.5"]
    assert await store.get_mindshares("0xm") == [1.25, 2.5]


@pytest.mark.asyncio
async def test_lock_acquire_uses_set_nx_ex(store, mock_redis_client):
    mock_redis_client.set.return_value = True

    assert await store.acquire_deployment_lock(7) is True

    args, kwargs = mock_redis_client.set.call_args
    assert args[0] == "market:deployment:lock:7"
    assert kwargs == {"nx": True, "ex": 400}


@pytest.mark.asyncio
async def test_lock_contention(store, mock_redis_client):
    mock_redis_client.set.return_value = None
    assert await store.acquire_deployment_lock(7) is False


@pytest.mark.asyncio
async def test_release_runs_compare_and_delete_with_own_token(store, mock_redis_client):
    mock_redis_client.set.return_value = True
    await store.acquire_deployment_lock(7)
    token = mock_redis_client.set.call_args.args[1]

    await store.release_deployment_lock(7)

    release = mock_redis_client.register_script.return_value
    release.assert_awaited_once_with(keys=["market:deployment:lock:7"], args=[token])
    script = mock_redis_client.register_script.call_args.args[0]
    assert 'redis.call("get", KEYS[1]) == ARGV[1]' in script
    mock_redis_client.delete.assert_not_called()


@pytest.mark.asyncio
async def test_release_of_lost_lock_is_logged_not_raised(store, mock_redis_client):
    mock_redis_client.set.return_value = True
    await store.acquire_deployment_lock(7)
    mock_redis_client.register_script.return_value.return_value = 0

    with patch("marketcycle.store.cycle_store.logger") as log:
        await store.release_deployment_lock(7)

    log.warning.assert_called_once_with("deployment_lock_lost", entity_id=7)


@pytest.mark.asyncio
async def test_release_without_acquire_is_a_no_op(store, mock_redis_client):
    await store.release_deployment_lock(7)
    mock_redis_client.register_script.return_value.assert_not_awaited()


@pytest.mark.asyncio
async def test_deployment_status_ttl(store, mock_redis_client):
    await store.set_deployment_status(7, DeploymentStatus.FAILED)
    mock_redis_client.set.assert_called_once_with("market:deployment:status:7", "failed", ex=500)


@pytest.mark.asyncio
async def test_unconfirmed_deployment_tx_uses_status_ttl(store, mock_redis_client):
    await store.set_deployment_tx(7, "0xabc")
    mock_redis_client.set.assert_called_once_with("market:deployment:tx:7", "0xabc", ex=500)

    await store.clear_deployment_tx(7)
    mock_redis_client.delete.assert_called_once_with("market:deployment:tx:7")


@pytest.mark.asyncio
async def test_connection_errors_become_store_unavailable(store, mock_redis_client):
    mock_redis_client.get.side_effect = RedisConnectionError("refused")

    with pytest.raises(StoreUnavailableError) as exc_info:
        await store.get_current_cycle_id()
    assert exc_info.value.operation == "get_current_cycle_id"


@pytest.mark.asyncio
async def test_ping_never_raises(store, mock_redis_client):
    mock_redis_client.ping.return_value = True
    assert await store.ping() is True

    mock_redis_client.ping.side_effect = RedisConnectionError("refused")
    assert await store.ping() is False


def test_client_sockets_are_bounded():
    with patch("marketcycle.store.cycle_store.redis.from_url") as from_url:
        RedisCycleStore("redis://localhost:6379", socket_timeout=2.5)

    from_url.assert_called_once_with(
        "redis://localhost:6379",
        decode_responses=True,
        socket_timeout=2.5,
        socket_connect_timeout=2.5,
    )


@pytest.mark.asyncio
async def test_socket_timeout_becomes_store_unavailable(store, mock_redis_client):
    mock_redis_client.set.side_effect = RedisTimeoutError("Timeout reading from socket")

    with pytest.raises(StoreUnavailableError):
        await store.put_market_position(
            "0xm", MarketPosition(market_address="0xm", cycle_id="cycle-1")
        )

    mock_redis_client.ping.side_effect = RedisTimeoutError("Timeout reading from socket")
    assert await store.ping() is False
