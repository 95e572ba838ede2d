"""
MindshareArchive — Secondary persistence for crashed-out markets.

When an entity drops out of the ranking its market keeps trading until the
cycle ends, but the ranking feed no longer reports a score for it. The
archive keeps that market's mindshare history (keyed by market address) so
the cycle-end reset still has inputs. Entries are cleared when the entity
re-enters the ranking.

Two implementations:
  - InMemoryMindshareArchive: Dict-backed (dev/test).
  - RedisMindshareArchive: JSON records under a separate prefix, no TTL.
    Connection failures surface as ``StoreUnavailableError``, like the
    cycle store.
"""

from __future__ import annotations

import abc

import redis.asyncio as redis
import structlog
from pydantic import BaseModel, Field

from marketcycle.store.cycle_store import translate_redis_errors
from marketcycle.utils.clock import utcnow

logger = structlog.get_logger(__name__)


class ArchivedMindshare(BaseModel):
    market_address: str
    mindshares: list[float] = Field(default_factory=list)
    cycle_id: str | None = None
    updated_at: str = Field(default_factory=lambda: utcnow().isoformat())


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  BaseMindshareArchive — Abstract contract
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class BaseMindshareArchive(abc.ABC):
    """Keyed by market address. ``get`` returns None for unknown markets."""

    @abc.abstractmethod
    async def store(
        self, market: str, mindshares: list[float], cycle_id: str | None = None
    ) -> None:
        """Replace the archived history for *market*."""
        ...

    @abc.abstractmethod
    async def get(self, market: str) -> list[float] | None: ...

    @abc.abstractmethod
    async def clear(self, market: str) -> None: ...

    @abc.abstractmethod
    async def all(self) -> dict[str, list[float]]: ...

    async def append(self, market: str, score: float, cycle_id: str | None = None) -> None:
        history = await self.get(market) or []
        await self.store(market, [*history, float(score)], cycle_id)

    async def close(self) -> None:
        """Release connections. No-op by default."""


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  InMemoryMindshareArchive
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class InMemoryMindshareArchive(BaseMindshareArchive):
    def __init__(self) -> None:
        self._records: dict[str, ArchivedMindshare] = {}

    async def store(
        self, market: str, mindshares: list[float], cycle_id: str | None = None
    ) -> None:
        self._records[market] = ArchivedMindshare(
            market_address=market, mindshares=list(mindshares), cycle_id=cycle_id
        )

    async def get(self, market: str) -> list[float] | None:
        record = self._records.get(market)
        return list(record.mindshares) if record else None

    async def clear(self, market: str) -> None:
        self._records.pop(market, None)

    async def all(self) -> dict[str, list[float]]:
        return {m: list(r.mindshares) for m, r in self._records.items()}

    def __repr__(self) -> str:
        return f"<InMemoryMindshareArchive markets={len(self._records)}>"


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  RedisMindshareArchive
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class RedisMindshareArchive(BaseMindshareArchive):
    """
    Records outlive cycles, so keys carry no TTL; they are removed only by
    ``clear()`` when the entity re-enters the ranking.
    """

    def __init__(
        self,
        redis_url: str,
        prefix: str = "mindshare:archive:",
        *,
        socket_timeout: float | None = 5.0,
    ):
        self._client = redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._prefix = prefix

    def _key(self, market: str) -> str:
        return f"{self._prefix}{market}"

    @translate_redis_errors
    async def store(
        self, market: str, mindshares: list[float], cycle_id: str | None = None
    ) -> None:
        record = ArchivedMindshare(
            market_address=market, mindshares=list(mindshares), cycle_id=cycle_id
        )
        await self._client.set(self._key(market), record.model_dump_json())

    @translate_redis_errors
    async def get(self, market: str) -> list[float] | None:
        raw = await self._client.get(self._key(market))
        if raw is None:
            return None
        return ArchivedMindshare.model_validate_json(raw).mindshares

    @translate_redis_errors
    async def clear(self, market: str) -> None:
        await self._client.delete(self._key(market))

    @translate_redis_errors
    async def all(self) -> dict[str, list[float]]:
        keys = [k async for k in self._client.scan_iter(match=f"{self._prefix}*")]
        if not keys:
            return {}
        values = await self._client.mget(keys)
        result: dict[str, list[float]] = {}
        for value in values:
            if value is None:
                continue
            record = ArchivedMindshare.model_validate_json(value)
            result[record.market_address] = record.mindshares
        return result

    async def close(self) -> None:
        await self._client.aclose()

    def __repr__(self) -> str:
        return f"<RedisMindshareArchive prefix={self._prefix}>"
