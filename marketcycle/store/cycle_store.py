"""
CycleStore — Durable state for the market cycle orchestrator.

Holds everything the orchestrator needs to resume after a restart: the
current-cycle pointer, cycle records, the active / crashed-out entity lists,
per-market position records, per-market mindshare history, deployment
status, unconfirmed deployment transactions, and the per-entity deployment
locks.

Two implementations:
  - InMemoryCycleStore: Dict-backed with TTL emulation (dev/test).
  - RedisCycleStore: redis.asyncio, shared by every orchestrator process.

Key layout (prefix defaults to ``market:``)::

    {p}cycle:current                    current cycle id        (no TTL)
    {p}cycle:data:{cycle_id}            MarketCycle JSON        cycle TTL
    {p}cycle:status:{cycle_id}          CycleStatus             cycle TTL
    {p}cycle:entities:active:{cycle_id} list[RankedEntity]      cycle TTL
    {p}cycle:entities:crashed:{cycle_id} list[CrashedEntity]    cycle TTL
    {p}positions:{market}               MarketPosition JSON     position TTL
    {p}mindshares:{market}              Redis list of floats    history TTL
    {p}deployment:lock:{entity_id}      lock token              lock TTL
    {p}deployment:status:{entity_id}    DeploymentStatus        status TTL
    {p}deployment:tx:{entity_id}        unconfirmed tx hash     status TTL
"""

from __future__ import annotations

import abc
import functools
import json
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable

import redis.asyncio as redis
import structlog
from pydantic import TypeAdapter
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError

from marketcycle.config import CycleSettings
from marketcycle.errors import StoreUnavailableError
from marketcycle.models import (
    CrashedEntity,
    CycleStatus,
    DeploymentStatus,
    MarketCycle,
    MarketPosition,
    RankedEntity,
)
from marketcycle.utils.clock import Clock, utcnow

logger = structlog.get_logger(__name__)

# Deletes the lock only while it still holds the caller's token.
_RELEASE_LOCK = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
end
return 0
"""

_active_list = TypeAdapter(list[RankedEntity])
_crashed_list = TypeAdapter(list[CrashedEntity])


@dataclass(frozen=True)
class StoreTTLs:
    """Expiry policy per record family, in seconds."""

    cycle: int = 5 * 24 * 3600
    position: int = 5 * 24 * 3600
    mindshare: int = 5 * 24 * 3600
    lock: int = 300
    status: int = 3600

    @classmethod
    def from_settings(cls, settings: CycleSettings) -> StoreTTLs:
        return cls(
            cycle=settings.cycle_record_ttl_seconds,
            position=settings.market_position_ttl_seconds,
            mindshare=settings.mindshare_history_ttl_seconds,
            lock=settings.deployment_lock_ttl_seconds,
            status=settings.deployment_status_ttl_seconds,
        )


@dataclass(frozen=True)
class StoreKeys:
    prefix: str = "market:"

    def current_cycle(self) -> str:
        return f"{self.prefix}cycle:current"

    def cycle(self, cycle_id: str) -> str:
        return f"{self.prefix}cycle:data:{cycle_id}"

    def cycle_status(self, cycle_id: str) -> str:
        return f"{self.prefix}cycle:status:{cycle_id}"

    def active_entities(self, cycle_id: str) -> str:
        return f"{self.prefix}cycle:entities:active:{cycle_id}"

    def crashed_entities(self, cycle_id: str) -> str:
        return f"{self.prefix}cycle:entities:crashed:{cycle_id}"

    def position(self, market: str) -> str:
        return f"{self.prefix}positions:{market}"

    def mindshares(self, market: str) -> str:
        return f"{self.prefix}mindshares:{market}"

    def deployment_lock(self, entity_id: int) -> str:
        return f"{self.prefix}deployment:lock:{entity_id}"

    def deployment_status(self, entity_id: int) -> str:
        return f"{self.prefix}deployment:status:{entity_id}"

    def deployment_tx(self, entity_id: int) -> str:
        return f"{self.prefix}deployment:tx:{entity_id}"


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  BaseCycleStore — Abstract contract
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━

# Every write is visible to the next read from any process. Implementations
# must not cache cycle state on the client side.


class BaseCycleStore(abc.ABC):
    """Abstract contract for the orchestrator's persistent state."""

    @abc.abstractmethod
    async def ping(self) -> bool:
        """Return True if the store is reachable. Never raises."""
        ...

    async def close(self) -> None:
        """Release connections. No-op by default."""

    # ── Current cycle ────────────────────────────────────────────────

    @abc.abstractmethod
    async def get_current_cycle_id(self) -> str | None: ...

    @abc.abstractmethod
    async def set_current_cycle_id(self, cycle_id: str) -> None: ...

    @abc.abstractmethod
    async def get_cycle(self, cycle_id: str) -> MarketCycle | None: ...

    @abc.abstractmethod
    async def put_cycle(self, cycle: MarketCycle) -> None:
        """Write-through the full cycle record with the cycle TTL."""
        ...

    @abc.abstractmethod
    async def get_cycle_status(self, cycle_id: str) -> CycleStatus | None: ...

    @abc.abstractmethod
    async def set_cycle_status(self, cycle_id: str, status: CycleStatus) -> None: ...

    # ── Entity sets ──────────────────────────────────────────────────

    @abc.abstractmethod
    async def get_active_entities(self, cycle_id: str) -> list[RankedEntity]: ...

    @abc.abstractmethod
    async def set_active_entities(
        self, cycle_id: str, entities: list[RankedEntity]
    ) -> None: ...

    @abc.abstractmethod
    async def get_crashed_entities(self, cycle_id: str) -> list[CrashedEntity]: ...

    @abc.abstractmethod
    async def set_crashed_entities(
        self, cycle_id: str, entities: list[CrashedEntity]
    ) -> None: ...

    async def append_crashed_entity(self, cycle_id: str, entity: CrashedEntity) -> None:
        """Add *entity* to the crashed-out list unless its id is already there."""
        current = await self.get_crashed_entities(cycle_id)
        if any(e.id == entity.id for e in current):
            return
        await self.set_crashed_entities(cycle_id, [*current, entity])

    # ── Market positions ─────────────────────────────────────────────

    @abc.abstractmethod
    async def get_market_position(self, market: str) -> MarketPosition | None: ...

    @abc.abstractmethod
    async def put_market_position(self, market: str, position: MarketPosition) -> None: ...

    # ── Mindshare history ────────────────────────────────────────────

    @abc.abstractmethod
    async def record_mindshare(self, market: str, score: float) -> None:
        """Append one score to the market's history for the running cycle."""
        ...

    @abc.abstractmethod
    async def get_mindshares(self, market: str) -> list[float]: ...

    @abc.abstractmethod
    async def clear_mindshares(self, market: str) -> None: ...

    # ── Deployment coordination ──────────────────────────────────────

    @abc.abstractmethod
    async def acquire_deployment_lock(self, entity_id: int) -> bool:
        """Non-blocking, TTL-bound. True if this caller now holds the lock."""
        ...

    @abc.abstractmethod
    async def release_deployment_lock(self, entity_id: int) -> None:
        """Release a lock held by this caller. A lock taken over by another
        holder after TTL expiry is left alone."""
        ...

    @abc.abstractmethod
    async def set_deployment_status(
        self, entity_id: int, status: DeploymentStatus
    ) -> None: ...

    @abc.abstractmethod
    async def get_deployment_status(self, entity_id: int) -> DeploymentStatus | None: ...

    @abc.abstractmethod
    async def set_deployment_tx(self, entity_id: int, tx_hash: str) -> None:
        """Remember a broadcast deployment that has not confirmed yet."""
        ...

    @abc.abstractmethod
    async def get_deployment_tx(self, entity_id: int) -> str | None: ...

    @abc.abstractmethod
    async def clear_deployment_tx(self, entity_id: int) -> None: ...


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  InMemoryCycleStore — Dict-backed implementation
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class InMemoryCycleStore(BaseCycleStore):
    """
    In-memory store with per-key expiry, using the same key layout as Redis.

    Ideal for development, testing, and single-process runs. State is lost
    when the process exits. Expiry is evaluated lazily against the injected
    clock, so tests can move time forward to expire locks.
    """

    def __init__(
        self,
        *,
        ttls: StoreTTLs | None = None,
        prefix: str = "market:",
        clock: Clock = utcnow,
    ):
        self._data: dict[str, tuple[Any, datetime | None]] = {}
        self._ttls = ttls or StoreTTLs()
        self._keys = StoreKeys(prefix)
        self._clock = clock
        self._owner = uuid.uuid4().hex
        self.available = True

    # ── Internals ────────────────────────────────────────────────────

    def _check(self, operation: str) -> None:
        if not self.available:
            raise StoreUnavailableError("in-memory store marked unavailable", operation=operation)

    def _get(self, key: str) -> Any:
        entry = self._data.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at is not None and self._clock() >= expires_at:
            del self._data[key]
            return None
        return value

    def _set(self, key: str, value: Any, ttl: int | None = None) -> None:
        expires_at = self._clock() + timedelta(seconds=ttl) if ttl else None
        self._data[key] = (value, expires_at)

    # ── Contract ─────────────────────────────────────────────────────

    async def ping(self) -> bool:
        return self.available

    async def get_current_cycle_id(self) -> str | None:
        self._check("get_current_cycle_id")
        return self._get(self._keys.current_cycle())

    async def set_current_cycle_id(self, cycle_id: str) -> None:
        self._check("set_current_cycle_id")
        self._set(self._keys.current_cycle(), cycle_id)

    async def get_cycle(self, cycle_id: str) -> MarketCycle | None:
        self._check("get_cycle")
        raw = self._get(self._keys.cycle(cycle_id))
        return MarketCycle.model_validate_json(raw) if raw else None

    async def put_cycle(self, cycle: MarketCycle) -> None:
        self._check("put_cycle")
        self._set(self._keys.cycle(cycle.id), cycle.model_dump_json(), self._ttls.cycle)

    async def get_cycle_status(self, cycle_id: str) -> CycleStatus | None:
        self._check("get_cycle_status")
        raw = self._get(self._keys.cycle_status(cycle_id))
        return CycleStatus(raw) if raw else None

    async def set_cycle_status(self, cycle_id: str, status: CycleStatus) -> None:
        self._check("set_cycle_status")
        self._set(self._keys.cycle_status(cycle_id), status.value, self._ttls.cycle)

    async def get_active_entities(self, cycle_id: str) -> list[RankedEntity]:
        self._check("get_active_entities")
        raw = self._get(self._keys.active_entities(cycle_id))
        return _active_list.validate_json(raw) if raw else []

    async def set_active_entities(self, cycle_id: str, entities: list[RankedEntity]) -> None:
        self._check("set_active_entities")
        self._set(
            self._keys.active_entities(cycle_id),
            _active_list.dump_json(entities),
            self._ttls.cycle,
        )

    async def get_crashed_entities(self, cycle_id: str) -> list[CrashedEntity]:
        self._check("get_crashed_entities")
        raw = self._get(self._keys.crashed_entities(cycle_id))
        return _crashed_list.validate_json(raw) if raw else []

    async def set_crashed_entities(self, cycle_id: str, entities: list[CrashedEntity]) -> None:
        self._check("set_crashed_entities")
        self._set(
            self._keys.crashed_entities(cycle_id),
            _crashed_list.dump_json(entities),
            self._ttls.cycle,
        )

    async def get_market_position(self, market: str) -> MarketPosition | None:
        self._check("get_market_position")
        raw = self._get(self._keys.position(market))
        return MarketPosition.model_validate_json(raw) if raw else None

    async def put_market_position(self, market: str, position: MarketPosition) -> None:
        self._check("put_market_position")
        self._set(self._keys.position(market), position.model_dump_json(), self._ttls.position)

    async def record_mindshare(self, market: str, score: float) -> None:
        self._check("record_mindshare")
        history = list(self._get(self._keys.mindshares(market)) or [])
        history.append(float(score))
        self._set(self._keys.mindshares(market), history, self._ttls.mindshare)

    async def get_mindshares(self, market: str) -> list[float]:
        self._check("get_mindshares")
        return list(self._get(self._keys.mindshares(market)) or [])

    async def clear_mindshares(self, market: str) -> None:
        self._check("clear_mindshares")
        self._data.pop(self._keys.mindshares(market), None)

    async def acquire_deployment_lock(self, entity_id: int) -> bool:
        self._check("acquire_deployment_lock")
        key = self._keys.deployment_lock(entity_id)
        # No await between the check and the set, so this is atomic on the loop.
        if self._get(key) is not None:
            return False
        self._set(key, self._owner, self._ttls.lock)
        return True

    async def release_deployment_lock(self, entity_id: int) -> None:
        self._check("release_deployment_lock")
        key = self._keys.deployment_lock(entity_id)
        if self._get(key) == self._owner:
            del self._data[key]

    async def set_deployment_status(self, entity_id: int, status: DeploymentStatus) -> None:
        self._check("set_deployment_status")
        self._set(self._keys.deployment_status(entity_id), status.value, self._ttls.status)

    async def get_deployment_status(self, entity_id: int) -> DeploymentStatus | None:
        self._check("get_deployment_status")
        raw = self._get(self._keys.deployment_status(entity_id))
        return DeploymentStatus(raw) if raw else None

    async def set_deployment_tx(self, entity_id: int, tx_hash: str) -> None:
        self._check("set_deployment_tx")
        self._set(self._keys.deployment_tx(entity_id), tx_hash, self._ttls.status)

    async def get_deployment_tx(self, entity_id: int) -> str | None:
        self._check("get_deployment_tx")
        return self._get(self._keys.deployment_tx(entity_id))

    async def clear_deployment_tx(self, entity_id: int) -> None:
        self._check("clear_deployment_tx")
        self._data.pop(self._keys.deployment_tx(entity_id), None)

    # ── Introspection ────────────────────────────────────────────────

    @property
    def size(self) -> int:
        return len(self._data)

    def __repr__(self) -> str:
        return f"<InMemoryCycleStore keys={self.size}>"


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  RedisCycleStore — Redis-backed implementation
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


def translate_redis_errors(func: Callable) -> Callable:
    """Surface connection-level Redis failures as ``StoreUnavailableError``."""

    @functools.wraps(func)
    async def wrapper(self: Any, *args: Any, **kwargs: Any) -> Any:
        try:
            return await func(self, *args, **kwargs)
        except (RedisConnectionError, RedisTimeoutError) as e:
            logger.error("store_unavailable", operation=func.__name__, error=str(e))
            raise StoreUnavailableError(
                f"redis unavailable during {func.__name__}",
                operation=func.__name__,
                detail=str(e),
            ) from e

    return wrapper


class RedisCycleStore(BaseCycleStore):
    """
    Redis-backed store for distributed, multi-process deployments.

    Deployment locks use ``SET NX EX`` with a per-acquisition token. Release
    is a single Lua compare-and-delete, so a lock that expired and was
    re-acquired by another process is never stolen.
    """

    def __init__(
        self,
        redis_url: str,
        *,
        prefix: str = "market:",
        ttls: StoreTTLs | None = None,
        socket_timeout: float | None = 5.0,
    ):
        self._client = redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._release_lock = self._client.register_script(_RELEASE_LOCK)
        self._keys = StoreKeys(prefix)
        self._ttls = ttls or StoreTTLs()
        self._lock_tokens: dict[int, str] = {}

    @classmethod
    def from_settings(cls, settings: CycleSettings) -> RedisCycleStore:
        return cls(
            settings.redis_url,
            prefix=settings.redis_key_prefix,
            ttls=StoreTTLs.from_settings(settings),
            socket_timeout=settings.redis_socket_timeout_seconds,
        )

    async def ping(self) -> bool:
        try:
            return bool(await self._client.ping())
        except (RedisConnectionError, RedisTimeoutError, OSError) as e:
            logger.warning("store_ping_failed", error=str(e))
            return False

    async def close(self) -> None:
        await self._client.aclose()

    # ── Current cycle ────────────────────────────────────────────────

    @translate_redis_errors
    async def get_current_cycle_id(self) -> str | None:
        return await self._client.get(self._keys.current_cycle())

    @translate_redis_errors
    async def set_current_cycle_id(self, cycle_id: str) -> None:
        await self._client.set(self._keys.current_cycle(), cycle_id)

    @translate_redis_errors
    async def get_cycle(self, cycle_id: str) -> MarketCycle | None:
        raw = await self._client.get(self._keys.cycle(cycle_id))
        return MarketCycle.model_validate_json(raw) if raw else None

    @translate_redis_errors
    async def put_cycle(self, cycle: MarketCycle) -> None:
        await self._client.set(
            self._keys.cycle(cycle.id), cycle.model_dump_json(), ex=self._ttls.cycle
        )

    @translate_redis_errors
    async def get_cycle_status(self, cycle_id: str) -> CycleStatus | None:
        raw = await self._client.get(self._keys.cycle_status(cycle_id))
        return CycleStatus(raw) if raw else None

    @translate_redis_errors
    async def set_cycle_status(self, cycle_id: str, status: CycleStatus) -> None:
        await self._client.set(
            self._keys.cycle_status(cycle_id), status.value, ex=self._ttls.cycle
        )

    # ── Entity sets ──────────────────────────────────────────────────

    @translate_redis_errors
    async def get_active_entities(self, cycle_id: str) -> list[RankedEntity]:
        raw = await self._client.get(self._keys.active_entities(cycle_id))
        return _active_list.validate_json(raw) if raw else []

    @translate_redis_errors
    async def set_active_entities(self, cycle_id: str, entities: list[RankedEntity]) -> None:
        await self._client.set(
            self._keys.active_entities(cycle_id),
            _active_list.dump_json(entities).decode(),
            ex=self._ttls.cycle,
        )

    @translate_redis_errors
    async def get_crashed_entities(self, cycle_id: str) -> list[CrashedEntity]:
        raw = await self._client.get(self._keys.crashed_entities(cycle_id))
        return _crashed_list.validate_json(raw) if raw else []

    @translate_redis_errors
    async def set_crashed_entities(self, cycle_id: str, entities: list[CrashedEntity]) -> None:
        await self._client.set(
            self._keys.crashed_entities(cycle_id),
            _crashed_list.dump_json(entities).decode(),
            ex=self._ttls.cycle,
        )

    # ── Market positions ─────────────────────────────────────────────

    @translate_redis_errors
    async def get_market_position(self, market: str) -> MarketPosition | None:
        raw = await self._client.get(self._keys.position(market))
        return MarketPosition.model_validate_json(raw) if raw else None

    @translate_redis_errors
    async def put_market_position(self, market: str, position: MarketPosition) -> None:
        await self._client.set(
            self._keys.position(market), position.model_dump_json(), ex=self._ttls.position
        )

    # ── Mindshare history ────────────────────────────────────────────

    @translate_redis_errors
    async def record_mindshare(self, market: str, score: float) -> None:
        key = self._keys.mindshares(market)
        await self._client.rpush(key, json.dumps(float(score)))
        await self._client.expire(key, self._ttls.mindshare)

    @translate_redis_errors
    async def get_mindshares(self, market: str) -> list[float]:
        values = await self._client.lrange(self._keys.mindshares(market), 0, -1)
        return [float(v) for v in values or []]

    @translate_redis_errors
    async def clear_mindshares(self, market: str) -> None:
        await self._client.delete(self._keys.mindshares(market))

    # ── Deployment coordination ──────────────────────────────────────

    @translate_redis_errors
    async def acquire_deployment_lock(self, entity_id: int) -> bool:
        token = uuid.uuid4().hex
        acquired = await self._client.set(
            self._keys.deployment_lock(entity_id), token, nx=True, ex=self._ttls.lock
        )
        if acquired:
            self._lock_tokens[entity_id] = token
        return bool(acquired)

    @translate_redis_errors
    async def release_deployment_lock(self, entity_id: int) -> None:
        token = self._lock_tokens.pop(entity_id, None)
        if token is None:
            return
        released = await self._release_lock(
            keys=[self._keys.deployment_lock(entity_id)], args=[token]
        )
        if not released:
            logger.warning("deployment_lock_lost", entity_id=entity_id)

    @translate_redis_errors
    async def set_deployment_status(self, entity_id: int, status: DeploymentStatus) -> None:
        await self._client.set(
            self._keys.deployment_status(entity_id), status.value, ex=self._ttls.status
        )

    @translate_redis_errors
    async def get_deployment_status(self, entity_id: int) -> DeploymentStatus | None:
        raw = await self._client.get(self._keys.deployment_status(entity_id))
        return DeploymentStatus(raw) if raw else None

    @translate_redis_errors
    async def set_deployment_tx(self, entity_id: int, tx_hash: str) -> None:
        await self._client.set(self._keys.deployment_tx(entity_id), tx_hash, ex=self._ttls.status)

    @translate_redis_errors
    async def get_deployment_tx(self, entity_id: int) -> str | None:
        return await self._client.get(self._keys.deployment_tx(entity_id))

    @translate_redis_errors
    async def clear_deployment_tx(self, entity_id: int) -> None:
        await self._client.delete(self._keys.deployment_tx(entity_id))

    def __repr__(self) -> str:
        return f"<RedisCycleStore prefix={self._keys.prefix}>"


def create_cycle_store(settings: CycleSettings) -> BaseCycleStore:
    """Build the store selected by ``settings.store_backend``."""
    if settings.store_backend == "memory":
        return InMemoryCycleStore(
            ttls=StoreTTLs.from_settings(settings), prefix=settings.redis_key_prefix
        )
    return RedisCycleStore.from_settings(settings)


__all__ = [
    "BaseCycleStore",
    "InMemoryCycleStore",
    "RedisCycleStore",
    "StoreKeys",
    "StoreTTLs",
    "create_cycle_store",
]
