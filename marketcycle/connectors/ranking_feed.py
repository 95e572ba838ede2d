"""
RankingFeedClient — Async client for the external KOL ranking feed.

Pulls ranked-entity snapshots (``{id, mindshareScore, displayName}``) from
the feed gateway and, for entities that fell out of the ranking, fetches
individual per-entity data through the adaptive batcher.

An empty or malformed snapshot is an error (``InvalidSnapshotError``), never
"zero entities": the orchestrator must not reconcile against it.

Usage:
    feed = RankingFeedClient.from_settings(get_settings())
    entities = await feed.fetch_snapshot()
    fresh = await feed.refresh_entities([12, 34])
"""

from __future__ import annotations

import abc
import time
from typing import Any

import httpx
import structlog

from marketcycle.config import CycleSettings
from marketcycle.connectors.base import BaseConnector
from marketcycle.errors import (
    FeedUnavailableError,
    InvalidSnapshotError,
    MarketCycleError,
    RateLimitError,
    TransientNetworkError,
    is_transient,
)
from marketcycle.models import EntityMindshare, RankedEntity
from marketcycle.utils.batching import AdaptiveBatcher, BatchPolicy, BatchRunResult
from marketcycle.utils.resilience import call_with_retry

logger = structlog.get_logger(__name__)

SNAPSHOT_PATH = "/api/yapper/public_kol_mindshare_leaderboard"
ENTITY_PATH = "/api/yapper/public_kol_mindshare"


def _retry_without_rate_limits(exc: BaseException) -> bool:
    # Rate limits on per-entity lookups are left to the batcher's backoff.
    return is_transient(exc) and not isinstance(exc, RateLimitError)


# ── Payload parsing ──────────────────────────────────────────────────


def _first(item: dict, *names: str) -> Any:
    for name in names:
        if item.get(name) not in (None, ""):
            return item[name]
    return None


def parse_snapshot(payload: Any) -> list[RankedEntity]:
    """
    Validate a leaderboard payload into ranked entities, in feed order.

    Accepts a bare list or a ``{"data": [...]}`` envelope, and both the
    canonical (``id``/``mindshareScore``/``displayName``) and the gateway's
    native (``user_id``/``mindshare``/``username``) field names. Duplicate
    ids keep their first (highest-ranked) occurrence.

    Raises:
        InvalidSnapshotError: payload is empty, not a list, or an item lacks
            a usable id or score.
    """
    items = payload.get("data") if isinstance(payload, dict) else payload
    if not isinstance(items, list):
        raise InvalidSnapshotError(
            "ranking payload is not a list", detail=type(items).__name__
        )
    if not items:
        raise InvalidSnapshotError("ranking snapshot is empty")

    entities: dict[int, RankedEntity] = {}
    for position, item in enumerate(items, start=1):
        if not isinstance(item, dict):
            raise InvalidSnapshotError(f"ranking item {position} is not an object")
        raw_id = _first(item, "id", "user_id")
        raw_score = _first(item, "mindshareScore", "mindshare")
        try:
            entity_id = int(raw_id)
            score = float(raw_score)
        except (TypeError, ValueError) as e:
            raise InvalidSnapshotError(
                f"ranking item {position} has no valid id/score",
                detail=f"id={raw_id!r} score={raw_score!r}",
            ) from e
        if entity_id in entities:
            continue
        raw_rank = _first(item, "rank")
        entities[entity_id] = RankedEntity(
            id=entity_id,
            mindshare_score=score,
            display_name=str(_first(item, "displayName", "username", "name") or entity_id),
            rank=int(raw_rank) if raw_rank is not None else position,
        )
    return list(entities.values())


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  BaseRankingFeed — Contract consumed by the orchestrator
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class BaseRankingFeed(BaseConnector):
    """Ranking feed contract; per-entity refresh is shared by all implementations."""

    def __init__(self, *, batcher: AdaptiveBatcher | None = None):
        self.batcher = batcher or AdaptiveBatcher()

    @property
    def name(self) -> str:
        return "ranking_feed"

    @property
    def description(self) -> str:
        return "KOL mindshare ranking feed"

    @abc.abstractmethod
    async def fetch_snapshot(self) -> list[RankedEntity]:
        """
        Raises:
            FeedUnavailableError: the feed could not produce a usable snapshot
                (``InvalidSnapshotError`` for empty or malformed payloads).
        """
        ...

    @abc.abstractmethod
    async def fetch_entity(self, entity_id: int) -> EntityMindshare | None:
        """Fresh data for one entity, or None when the feed has none."""
        ...

    async def refresh_entities(
        self, entity_ids: list[int]
    ) -> BatchRunResult[int, EntityMindshare]:
        """Fetch per-entity data for many ids with adaptive pacing."""
        if not entity_ids:
            return BatchRunResult()
        return await self.batcher.run(
            entity_ids, self.fetch_entity, operation="refresh_entities"
        )


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  RankingFeedClient — httpx implementation
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class RankingFeedClient(BaseRankingFeed):
    """
    Production async client for the ranking gateway.

    Features:
    - httpx.AsyncClient with HTTP/2 and connection pooling
    - Bounded retries with exponential backoff on transient failures
    - 429 surfaced as ``RateLimitError`` (with ``Retry-After``)
    - Structured logging for every request
    """

    def __init__(
        self,
        base_url: str,
        *,
        token: str | None = None,
        top_n: int = 100,
        duration: str = "7d",
        timeout: float = 30.0,
        retry_attempts: int = 3,
        retry_initial_delay: float = 1.0,
        retry_max_delay: float = 10.0,
        health_cache_seconds: float = 300.0,
        batcher: AdaptiveBatcher | None = None,
    ):
        super().__init__(batcher=batcher)
        self._base_url = base_url
        self._top_n = top_n
        self._duration = duration
        self._timeout = timeout
        self._retry_attempts = retry_attempts
        self._retry_initial_delay = retry_initial_delay
        self._retry_max_delay = retry_max_delay
        self._health_cache_seconds = health_cache_seconds
        self._last_success: float | None = None

        headers = {
            "accept": "application/json, text/plain, */*",
            "content-type": "application/json",
        }
        if token:
            headers["authorization"] = f"Bearer {token}"
        self._client = httpx.AsyncClient(
            http2=True,
            headers=headers,
            timeout=httpx.Timeout(timeout, connect=10.0),
            limits=httpx.Limits(
                max_connections=20,
                max_keepalive_connections=10,
                keepalive_expiry=30.0,
            ),
        )

    @classmethod
    def from_settings(cls, settings: CycleSettings) -> RankingFeedClient:
        policy = BatchPolicy(
            min_size=settings.refresh_min_batch_size,
            initial_size=settings.refresh_initial_batch_size,
            max_size=settings.refresh_max_batch_size,
            min_delay=settings.refresh_min_delay_seconds,
            initial_delay=settings.refresh_initial_delay_seconds,
            max_delay=settings.refresh_max_delay_seconds,
            max_attempts=settings.refresh_max_attempts,
        )
        return cls(
            settings.ranking_feed_url,
            token=settings.ranking_feed_token.get_secret_value() or None,
            top_n=settings.ranking_top_n,
            duration=settings.ranking_duration,
            timeout=settings.call_timeout_seconds,
            retry_attempts=settings.retry_attempts,
            retry_initial_delay=settings.retry_initial_delay_seconds,
            retry_max_delay=settings.retry_max_delay_seconds,
            health_cache_seconds=settings.feed_health_cache_seconds,
            batcher=AdaptiveBatcher(policy),
        )

    # ── Transport ────────────────────────────────────────────────────

    async def _request(self, path: str, params: dict[str, Any]) -> Any:
        """POST one gateway call; map transport and status failures to typed errors."""
        start = time.monotonic()
        body = {"path": path, "method": "GET", "params": params, "body": {}}
        try:
            resp = await self._client.request(
                "POST", self._base_url, params=params, json=body
            )
        except httpx.ConnectError as e:
            raise TransientNetworkError(f"Connection failed: {e}", service=self.name) from e
        except httpx.TimeoutException as e:
            raise TransientNetworkError(f"Request timed out: {e}", service=self.name) from e

        latency_ms = (time.monotonic() - start) * 1000

        if resp.status_code == 429:
            retry_after = resp.headers.get("retry-after") if resp.headers else None
            logger.warning("feed_rate_limited", path=path, latency_ms=round(latency_ms))
            raise RateLimitError(
                "Rate limit exceeded",
                service=self.name,
                retry_after=float(retry_after) if retry_after else None,
            )
        if resp.status_code >= 500:
            raise TransientNetworkError(
                f"Feed error: {resp.status_code}", service=self.name, detail=resp.text
            )
        if resp.status_code >= 400:
            raise FeedUnavailableError(
                f"Feed rejected request: {resp.status_code}", detail=resp.text
            )

        logger.debug(
            "feed_request",
            path=path,
            status=resp.status_code,
            latency_ms=round(latency_ms),
            http_version=resp.http_version,
        )
        try:
            payload = resp.json()
        except ValueError as e:
            raise InvalidSnapshotError("Feed returned non-JSON body", detail=resp.text) from e
        self._last_success = time.monotonic()
        return payload

    # ── Snapshot ─────────────────────────────────────────────────────

    async def fetch_snapshot(self) -> list[RankedEntity]:
        params = {"duration": self._duration, "topic_id": "", "top_n": self._top_n}
        try:
            payload = await call_with_retry(
                lambda: self._request(SNAPSHOT_PATH, params),
                operation="fetch_snapshot",
                attempts=self._retry_attempts,
                initial_delay=self._retry_initial_delay,
                max_delay=self._retry_max_delay,
                timeout=self._timeout,
            )
        except FeedUnavailableError:
            raise
        except MarketCycleError as e:
            raise FeedUnavailableError(
                "Ranking feed unavailable", detail=str(e)
            ) from e

        entities = parse_snapshot(payload)
        logger.info("feed_snapshot_fetched", count=len(entities))
        return entities

    # ── Individual lookup ────────────────────────────────────────────

    async def fetch_entity(self, entity_id: int) -> EntityMindshare | None:
        params = {
            "kol": str(entity_id),
            "type": "kol",
            "duration": self._duration,
            "nft_filter": "true",
            "topic_id": "",
        }
        payload = await call_with_retry(
            lambda: self._request(ENTITY_PATH, params),
            operation="fetch_entity",
            attempts=self._retry_attempts,
            initial_delay=self._retry_initial_delay,
            max_delay=self._retry_max_delay,
            timeout=self._timeout,
            is_transient=_retry_without_rate_limits,
        )
        data = payload.get("data") if isinstance(payload, dict) else None
        if not isinstance(data, dict) or data.get("mindshare") is None:
            logger.warning("feed_entity_missing", entity_id=entity_id)
            return None
        return EntityMindshare(
            entity_id=entity_id,
            mindshare_score=float(data["mindshare"]),
            display_name=str(data.get("username") or entity_id),
            rank=int(data.get("rank") or 0),
        )

    # ── Lifecycle ────────────────────────────────────────────────────

    async def teardown(self) -> None:
        await self._client.aclose()

    async def health_check(self) -> bool:
        """
        Healthy if any gateway call succeeded within the cache window.

        Otherwise one unretried request for a single leaderboard entry, so a
        ``/health`` check never waits out the retry budget.
        """
        if (
            self._last_success is not None
            and time.monotonic() - self._last_success < self._health_cache_seconds
        ):
            return True
        params = {"duration": self._duration, "topic_id": "", "top_n": 1}
        try:
            await self._request(SNAPSHOT_PATH, params)
        except MarketCycleError as e:
            logger.warning("feed_health_check_failed", error=str(e), error_code=e.error_code)
            return False
        return True
