"""
Tests for marketcycle.store.archive — mindshare archive backends.
"""

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError
from unittest.mock import AsyncMock, MagicMock, patch

from marketcycle.errors import StoreUnavailableError
from marketcycle.store.archive import (
    ArchivedMindshare,
    InMemoryMindshareArchive,
    RedisMindshareArchive,
)


class TestInMemoryArchive:
    @pytest.mark.asyncio
    async def test_store_get_clear(self):
        archive = InMemoryMindshareArchive()
        assert await archive.get("0xm") is None

        await archive.store("0xm", [1.0, 2.0], "cycle-1")
        assert await archive.get("0xm") == [1.0, 2.0]
        assert await archive.all() == {"0xm": [1.0, 2.0]}

        await archive.clear("0xm")
        assert await archive.get("0xm") is None

    @pytest.mark.asyncio
    async def test_append_extends_history(self):
        archive = InMemoryMindshareArchive()
        await archive.append("0xm", 1.0)
        await archive.append("0xm", 3)

        assert await archive.get("0xm") == [1.0, 3.0]


@pytest.fixture
def mock_redis_client():
    client = AsyncMock()
    client.get.return_value = None
    return client


@pytest.fixture
def redis_archive(mock_redis_client):
    with patch("marketcycle.store.archive.redis.from_url", return_value=mock_redis_client):
        return RedisMindshareArchive("redis://localhost:6379", prefix="mindshare:archive:")


class TestRedisArchive:
    @pytest.mark.asyncio
    async def test_store_has_no_ttl(self, redis_archive, mock_redis_client):
        await redis_archive.store("0xm", [1.5], "cycle-1")

        args, kwargs = mock_redis_client.set.call_args
        assert args[0] == "mindshare:archive:0xm"
        assert kwargs == {}
        record = ArchivedMindshare.model_validate_json(args[1])
        assert record.mindshares == [1.5]
        assert record.cycle_id == "cycle-1"

    @pytest.mark.asyncio
    async def test_get_missing_returns_none(self, redis_archive):
        assert await redis_archive.get("0xm") is None

    @pytest.mark.asyncio
    async def test_get_parses_record(self, redis_archive, mock_redis_client):
        mock_redis_client.get.return_value = ArchivedMindshare(
            market_address="0xm", mindshares=[2.0, 4.0]
        ).model_dump_json()

        assert await redis_archive.get("0xm") == [2.0, 4.0]

    @pytest.mark.asyncio
    async def test_all_scans_prefix(self, redis_archive, mock_redis_client):
        async def keys(match):
            for key in ["mindshare:archive:0xa", "mindshare:archive:0xb"]:
                yield key

        mock_redis_client.scan_iter = MagicMock(side_effect=keys)
        mock_redis_client.mget.return_value = [
            ArchivedMindshare(market_address="0xa", mindshares=[1.0]).model_dump_json(),
            None,
        ]

        assert await redis_archive.all() == {"0xa": [1.0]}
        mock_redis_client.scan_iter.assert_called_once_with(match="mindshare:archive:*")

    @pytest.mark.asyncio
    async def test_clear_deletes_key(self, redis_archive, mock_redis_client):
        await redis_archive.clear("0xm")
        mock_redis_client.delete.assert_called_once_with("mindshare:archive:0xm")

    @pytest.mark.asyncio
    async def test_connection_failures_become_store_unavailable(
        self, redis_archive, mock_redis_client
    ):
        mock_redis_client.set.side_effect = RedisConnectionError("refused")
        mock_redis_client.get.side_effect = RedisTimeoutError("Timeout reading from socket")

        with pytest.raises(StoreUnavailableError) as exc_info:
            await redis_archive.store("0xm", [1.0])
        assert exc_info.value.operation == "store"

        with pytest.raises(StoreUnavailableError) as exc_info:
            await redis_archive.append("0xm", 2.0)
        assert exc_info.value.operation == "get"
