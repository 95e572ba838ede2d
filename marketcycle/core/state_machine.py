"""
CycleStateMachine — Lifecycle of the global market cycle.

    NOT_STARTED ──first deployment──▶ ACTIVE
    ACTIVE ──ingestion (now < end)──▶ ACTIVE      reconcile entity sets
    ACTIVE ──now >= end_time───────▶ ENDING       first close pass
    ENDING ──open positions left───▶ ENDING       close again
    ENDING ──all markets empty─────▶ BUFFER       reset markets
    BUFFER ──now >= buffer_end─────▶ ACTIVE       brand-new cycle record

Each status check advances at most one transition, so no state is ever
skipped. The store is the only source of truth: every method re-reads the
current cycle instead of caching it between ticks. Read-modify-write of the
cycle record is serialized in-process by an ``asyncio.Lock``; deployments
run outside it and feed back through ``record_deployment``.

If the ranking feed fails when a transition needs it, the machine holds its
current state and tries again on the next tick.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timedelta

import structlog

from marketcycle.connectors.chain import BaseChainClient
from marketcycle.connectors.ranking_feed import BaseRankingFeed
from marketcycle.core.bus import CYCLE_TRANSITIONED, ENTITY_CRASHED_OUT, EventBus
from marketcycle.core.deployment import DeploymentCoordinator
from marketcycle.errors import (
    FeedUnavailableError,
    LockContentionError,
    MarketCycleError,
)
from marketcycle.models import (
    CrashedEntity,
    CycleStatus,
    CycleTransitioned,
    DeploymentBatchResult,
    DeploymentOutcome,
    EntityCrashedOut,
    MarketCycle,
    MarketPosition,
    RankedEntity,
)
from marketcycle.store.archive import BaseMindshareArchive
from marketcycle.store.cycle_store import BaseCycleStore
from marketcycle.utils.clock import Clock, utcnow

logger = structlog.get_logger(__name__)


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  Reconciliation — pure diff of a cycle against a ranking snapshot
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


@dataclass
class ReconcileResult:
    cycle: MarketCycle
    newly_crashed: list[CrashedEntity] = field(default_factory=list)
    recovered: list[CrashedEntity] = field(default_factory=list)
    to_deploy: list[int] = field(default_factory=list)


def reconcile(
    cycle: MarketCycle, snapshot: list[RankedEntity], now: datetime
) -> ReconcileResult:
    """
    Diff *cycle* against a fresh snapshot. Does not mutate *cycle*.

    - Active set becomes the snapshot, each entity keeping any market
      address it already had (addresses are never replaced).
    - Previously active entities holding a market that are missing from the
      snapshot become crashed out at *now*, once.
    - Crashed-out entities present in the snapshot leave the crashed set.
    - Snapshot entities with no market are queued for deployment.
    - ``end_time`` is left alone.
    """
    known: dict[int, str] = {}
    for entity in [*cycle.active_entities, *cycle.crashed_out_entities]:
        if entity.market_address:
            known.setdefault(entity.id, entity.market_address)

    active: dict[int, RankedEntity] = {}
    for entity in snapshot:
        if entity.id in active:
            continue
        active[entity.id] = entity.model_copy(
            update={"market_address": known.get(entity.id, entity.market_address)}
        )

    recovered = [c for c in cycle.crashed_out_entities if c.id in active]
    crashed: dict[int, CrashedEntity] = {
        c.id: c for c in cycle.crashed_out_entities if c.id not in active
    }
    newly_crashed: list[CrashedEntity] = []
    for entity in cycle.active_entities:
        if entity.market_address and entity.id not in active and entity.id not in crashed:
            record = CrashedEntity.from_entity(entity, crashed_out_at=now)
            crashed[entity.id] = record
            newly_crashed.append(record)

    updated = cycle.model_copy(
        update={
            "active_entities": list(active.values()),
            "crashed_out_entities": list(crashed.values()),
        }
    )
    return ReconcileResult(
        cycle=updated,
        newly_crashed=newly_crashed,
        recovered=recovered,
        to_deploy=[e.id for e in active.values() if not e.market_address],
    )


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  CycleStateMachine
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class CycleStateMachine:
    """Evaluates and applies cycle transitions against the persistent store."""

    def __init__(
        self,
        store: BaseCycleStore,
        chain: BaseChainClient,
        feed: BaseRankingFeed,
        coordinator: DeploymentCoordinator,
        archive: BaseMindshareArchive,
        bus: EventBus,
        *,
        cycle_duration: timedelta = timedelta(hours=72),
        buffer_duration: timedelta = timedelta(hours=1),
        clock: Clock = utcnow,
    ):
        self._store = store
        self._chain = chain
        self._feed = feed
        self._coordinator = coordinator
        self._archive = archive
        self._bus = bus
        self._cycle_duration = cycle_duration
        self._buffer_duration = buffer_duration
        self._clock = clock
        self._lock = asyncio.Lock()

    # ── Reads ────────────────────────────────────────────────────────

    async def current(self) -> tuple[MarketCycle | None, CycleStatus]:
        """The current cycle and its status; ``(None, NOT_STARTED)`` before genesis."""
        cycle_id = await self._store.get_current_cycle_id()
        if cycle_id is None:
            return None, CycleStatus.NOT_STARTED
        cycle = await self._store.get_cycle(cycle_id)
        if cycle is None:
            logger.warning("current_cycle_record_missing", cycle_id=cycle_id)
            return None, CycleStatus.NOT_STARTED
        status = await self._store.get_cycle_status(cycle_id)
        if status is None:
            logger.warning("cycle_status_missing", cycle_id=cycle_id)
            status = CycleStatus.ACTIVE
        return cycle, status

    # ── Persistence helpers ──────────────────────────────────────────

    async def _save(self, cycle: MarketCycle) -> None:
        await self._store.put_cycle(cycle)
        await self._store.set_active_entities(cycle.id, cycle.active_entities)
        await self._store.set_crashed_entities(cycle.id, cycle.crashed_out_entities)

    async def _transition(
        self, cycle_id: str, from_status: CycleStatus, to_status: CycleStatus
    ) -> None:
        await self._store.set_cycle_status(cycle_id, to_status)
        logger.info(
            "cycle_transitioned",
            cycle_id=cycle_id,
            from_status=from_status.value,
            to_status=to_status.value,
        )
        await self._bus.publish(
            CYCLE_TRANSITIONED,
            CycleTransitioned(
                cycle_id=cycle_id,
                from_status=from_status,
                to_status=to_status,
                timestamp=self._clock(),
            ),
            sender="state_machine",
        )

    async def _ensure_position(self, market: str, cycle_id: str) -> None:
        position = await self._store.get_market_position(market)
        if position is None:
            position = MarketPosition(market_address=market, cycle_id=cycle_id)
        elif position.cycle_id != cycle_id:
            position = position.model_copy(update={"cycle_id": cycle_id, "is_active": True})
        else:
            return
        await self._store.put_market_position(market, position)

    # ── ACTIVE → ACTIVE: ranking ingestion ───────────────────────────

    async def ingest(self, snapshot: list[RankedEntity]) -> ReconcileResult | None:
        """
        Reconcile the current cycle against *snapshot*.

        Returns None (and changes nothing) unless the cycle is ACTIVE and
        before its end time.
        """
        if not snapshot:
            raise FeedUnavailableError("refusing to reconcile against an empty snapshot")

        async with self._lock:
            cycle, status = await self.current()
            now = self._clock()
            if cycle is None or status != CycleStatus.ACTIVE or now >= cycle.end_time:
                logger.info("ingestion_skipped", status=status.value)
                return None

            result = reconcile(cycle, snapshot, now)
            # Archive first: an unsaved crash is detected again on the next tick.
            for crashed in result.newly_crashed:
                history = await self._store.get_mindshares(crashed.market_address)
                await self._archive.store(crashed.market_address, history, cycle.id)
            await self._save(result.cycle)

        for entity in result.cycle.active_entities:
            if entity.market_address:
                await self._store.record_mindshare(entity.market_address, entity.mindshare_score)

        for crashed in result.newly_crashed:
            await self._bus.publish(
                ENTITY_CRASHED_OUT,
                EntityCrashedOut(
                    cycle_id=cycle.id,
                    entity_id=crashed.id,
                    market_address=crashed.market_address,
                    crashed_out_at=crashed.crashed_out_at,
                ),
                sender="state_machine",
            )

        for entity in result.recovered:
            await self._archive.clear(entity.market_address)

        logger.info(
            "rankings_reconciled",
            cycle_id=cycle.id,
            active=len(result.cycle.active_entities),
            crashed=len(result.cycle.crashed_out_entities),
            newly_crashed=[c.id for c in result.newly_crashed],
            recovered=[c.id for c in result.recovered],
            to_deploy=result.to_deploy,
        )
        return result

    async def refresh_crashed_out(self) -> int:
        """
        Pull fresh per-entity data for crashed-out entities and push it on-chain.

        Returns the number of entities refreshed. Failures are per entity.
        """
        cycle, status = await self.current()
        if cycle is None or status != CycleStatus.ACTIVE or not cycle.crashed_out_entities:
            return 0

        by_id = {c.id: c for c in cycle.crashed_out_entities}
        outcome = await self._feed.refresh_entities(list(by_id))

        refreshed = 0
        for entity_id, fresh in outcome.results.items():
            market = by_id[entity_id].market_address
            await self._store.record_mindshare(market, fresh.mindshare_score)
            await self._archive.append(market, fresh.mindshare_score, cycle.id)
            try:
                await self._chain.update_crashed_out_data(
                    entity_id, fresh.rank, fresh.mindshare_score
                )
                refreshed += 1
            except MarketCycleError as e:
                logger.error(
                    "crashed_out_update_failed",
                    entity_id=entity_id,
                    error=str(e),
                    error_code=e.error_code,
                )

        logger.info(
            "crashed_out_refreshed",
            refreshed=refreshed,
            missing=outcome.missing,
            failed=list(outcome.failures),
        )
        return refreshed

    # ── Deployments ──────────────────────────────────────────────────

    async def deploy_pending(
        self, entity_ids: list[int], *, is_genesis: bool = False
    ) -> DeploymentBatchResult:
        """Deploy markets for *entity_ids* and record every market that now exists."""
        if not entity_ids:
            return DeploymentBatchResult()
        result = await self._coordinator.deploy_missing_markets(entity_ids, is_genesis)
        for outcome in result.deployed:
            await self.record_deployment(outcome)
        return result

    async def record_deployment(
        self, outcome: DeploymentOutcome, entity: RankedEntity | None = None
    ) -> MarketCycle:
        """
        Attach a deployed market to the current cycle.

        While NOT_STARTED this starts the first cycle with the entity as its
        sole active member. An entity that already has a different market
        keeps it.
        """
        async with self._lock:
            cycle, status = await self.current()
            now = self._clock()
            market = outcome.market_address

            if cycle is None:
                cycle = self._new_cycle(
                    now,
                    [
                        RankedEntity(
                            id=outcome.entity_id,
                            mindshare_score=entity.mindshare_score if entity else 0.0,
                            display_name=entity.display_name if entity else str(outcome.entity_id),
                            rank=entity.rank if entity else None,
                            market_address=market,
                        )
                    ],
                )
                await self._save(cycle)
                await self._store.set_current_cycle_id(cycle.id)
                await self._ensure_position(market, cycle.id)
                await self._transition(cycle.id, CycleStatus.NOT_STARTED, CycleStatus.ACTIVE)
                logger.info("cycle_started", cycle_id=cycle.id, genesis_entity=outcome.entity_id)
                return cycle

            current = cycle.active_entity(outcome.entity_id) or cycle.crashed_entity(
                outcome.entity_id
            )
            if current is not None and current.market_address:
                if current.market_address != market:
                    logger.error(
                        "market_address_conflict",
                        entity_id=outcome.entity_id,
                        stored=current.market_address,
                        reported=market,
                    )
                await self._ensure_position(current.market_address, cycle.id)
                return cycle

            if current is not None:
                active = [
                    e.model_copy(update={"market_address": market})
                    if e.id == outcome.entity_id
                    else e
                    for e in cycle.active_entities
                ]
            else:
                base = entity or RankedEntity(
                    id=outcome.entity_id,
                    mindshare_score=0.0,
                    display_name=str(outcome.entity_id),
                )
                active = [
                    *cycle.active_entities,
                    base.model_copy(update={"market_address": market}),
                ]
            cycle = cycle.model_copy(update={"active_entities": active})
            await self._save(cycle)
            await self._ensure_position(market, cycle.id)
            logger.info(
                "deployment_recorded",
                cycle_id=cycle.id,
                entity_id=outcome.entity_id,
                market=market,
                status=status.value,
            )
            return cycle

    def _new_cycle(self, now: datetime, active: list[RankedEntity]) -> MarketCycle:
        end = now + self._cycle_duration
        return MarketCycle(
            id=f"cycle-{int(now.timestamp())}",
            start_time=now,
            end_time=end,
            global_expiry=end,
            active_entities=active,
        )

    # ── Status check ─────────────────────────────────────────────────

    async def check_status(self) -> CycleStatus:
        """Evaluate and apply at most one transition. Returns the resulting status."""
        cycle, status = await self.current()
        now = self._clock()

        if cycle is None:
            return await self._bootstrap()
        if status == CycleStatus.ACTIVE:
            if now >= cycle.end_time:
                return await self._begin_ending(cycle)
            return status
        if status == CycleStatus.ENDING:
            return await self._ending_tick(cycle)
        if status == CycleStatus.BUFFER:
            if cycle.buffer_end_time is None or now >= cycle.buffer_end_time:
                return await self._start_next_cycle(cycle)
            return status
        logger.warning("unexpected_cycle_status", cycle_id=cycle.id, status=status.value)
        return status

    # ── NOT_STARTED → ACTIVE ─────────────────────────────────────────

    async def _bootstrap(self) -> CycleStatus:
        try:
            snapshot = await self._feed.fetch_snapshot()
        except FeedUnavailableError as e:
            logger.warning("genesis_deferred", reason=str(e))
            return CycleStatus.NOT_STARTED

        top = min(snapshot, key=lambda e: e.rank if e.rank is not None else float("inf"))
        try:
            outcome = await self._coordinator.deploy_market(top.id, is_genesis=True)
        except LockContentionError:
            return CycleStatus.NOT_STARTED
        except MarketCycleError as e:
            logger.error("genesis_deployment_failed", entity_id=top.id, error=str(e))
            return CycleStatus.NOT_STARTED

        await self.record_deployment(outcome, top)
        return CycleStatus.ACTIVE

    # ── ACTIVE → ENDING ──────────────────────────────────────────────

    async def _begin_ending(self, cycle: MarketCycle) -> CycleStatus:
        async with self._lock:
            if await self._store.get_cycle_status(cycle.id) != CycleStatus.ACTIVE:
                return (await self.current())[1]
            await self._transition(cycle.id, CycleStatus.ACTIVE, CycleStatus.ENDING)
        await self._close_pass(cycle)
        return CycleStatus.ENDING

    # ── ENDING → ENDING | BUFFER ─────────────────────────────────────

    async def _close_pass(self, cycle: MarketCycle) -> bool:
        """
        Sync every tracked market's open ids from the chain and close them.

        Returns True only if every market was read successfully and had no
        open positions before this pass.
        """
        all_clear = True
        for market in cycle.tracked_markets():
            try:
                open_ids = await self._chain.get_open_positions(market)
            except MarketCycleError as e:
                logger.warning("open_positions_unreadable", market=market, error=str(e))
                position = await self._store.get_market_position(market)
                open_ids = list(position.active_token_ids) if position else []
                all_clear = False
            else:
                position = await self._store.get_market_position(market)
                if position is None or position.cycle_id != cycle.id:
                    position = MarketPosition(market_address=market, cycle_id=cycle.id)
                await self._store.put_market_position(
                    market, position.model_copy(update={"active_token_ids": open_ids})
                )

            if not open_ids:
                continue
            all_clear = False
            for position_id in open_ids:
                try:
                    await self._chain.close_position(market, position_id)
                except MarketCycleError as e:
                    logger.warning(
                        "close_position_failed",
                        market=market,
                        position_id=position_id,
                        error=str(e),
                    )
            logger.info("positions_close_attempted", market=market, count=len(open_ids))
        return all_clear

    async def _ending_tick(self, cycle: MarketCycle) -> CycleStatus:
        if not await self._close_pass(cycle):
            logger.info("cycle_still_ending", cycle_id=cycle.id)
            return CycleStatus.ENDING
        return await self._enter_buffer(cycle)

    async def _reset_inputs(
        self, cycle: MarketCycle, skip: set[str]
    ) -> dict[str, list[float]]:
        inputs: dict[str, list[float]] = {}
        for entity in cycle.active_entities:
            if entity.market_address and entity.market_address not in skip:
                history = await self._store.get_mindshares(entity.market_address)
                inputs[entity.market_address] = history or [entity.mindshare_score]
        for crashed in cycle.crashed_out_entities:
            if crashed.market_address in inputs or crashed.market_address in skip:
                continue
            history = await self._store.get_mindshares(crashed.market_address)
            if not history:
                history = await self._archive.get(crashed.market_address) or []
            if not history:
                logger.warning(
                    "reset_without_mindshare",
                    entity_id=crashed.id,
                    market=crashed.market_address,
                )
            inputs[crashed.market_address] = history
        return inputs

    async def _enter_buffer(self, cycle: MarketCycle) -> CycleStatus:
        """
        Reset every tracked market, then move ENDING → BUFFER.

        A market's history is cleared only after its reset confirmed, and the
        position record remembers the reset so a later pass never repeats it.
        Any failed reset keeps the cycle in ENDING for the next tick.
        """
        positions = {m: await self._store.get_market_position(m) for m in cycle.tracked_markets()}
        already_reset = {
            m for m, p in positions.items() if p is not None and p.reset_cycle_id == cycle.id
        }
        failed: list[str] = []
        for market, mindshares in (await self._reset_inputs(cycle, already_reset)).items():
            try:
                await self._chain.reset_market(market, mindshares)
            except MarketCycleError as e:
                logger.error(
                    "market_reset_failed", market=market, error=str(e), error_code=e.error_code
                )
                failed.append(market)
                continue
            position = positions.get(market) or MarketPosition(
                market_address=market, cycle_id=cycle.id
            )
            await self._store.put_market_position(
                market,
                position.model_copy(
                    update={"active_token_ids": [], "cycle_id": cycle.id, "reset_cycle_id": cycle.id}
                ),
            )
            await self._store.clear_mindshares(market)

        if failed:
            logger.warning("cycle_reset_incomplete", cycle_id=cycle.id, failed=failed)
            return CycleStatus.ENDING

        async with self._lock:
            if await self._store.get_cycle_status(cycle.id) != CycleStatus.ENDING:
                return (await self.current())[1]
            latest = await self._store.get_cycle(cycle.id) or cycle
            buffered = latest.model_copy(
                update={"buffer_end_time": self._clock() + self._buffer_duration}
            )
            await self._store.put_cycle(buffered)
            await self._transition(cycle.id, CycleStatus.ENDING, CycleStatus.BUFFER)
        return CycleStatus.BUFFER

    # ── BUFFER → ACTIVE ──────────────────────────────────────────────

    async def _start_next_cycle(self, previous: MarketCycle) -> CycleStatus:
        try:
            snapshot = await self._feed.fetch_snapshot()
        except FeedUnavailableError as e:
            logger.warning("cycle_restart_deferred", cycle_id=previous.id, reason=str(e))
            return CycleStatus.BUFFER

        async with self._lock:
            if await self._store.get_current_cycle_id() != previous.id:
                return (await self.current())[1]
            if await self._store.get_cycle_status(previous.id) != CycleStatus.BUFFER:
                return (await self.current())[1]

            now = self._clock()
            known = {
                e.id: e.market_address
                for e in [*previous.active_entities, *previous.crashed_out_entities]
                if e.market_address
            }
            active: dict[int, RankedEntity] = {}
            for entity in snapshot:
                if entity.id not in active:
                    active[entity.id] = entity.model_copy(
                        update={"market_address": known.get(entity.id, entity.market_address)}
                    )
            cycle = self._new_cycle(now, list(active.values()))
            await self._save(cycle)
            await self._store.set_cycle_status(cycle.id, CycleStatus.ACTIVE)
            await self._store.set_current_cycle_id(cycle.id)
            await self._store.set_cycle_status(previous.id, CycleStatus.ENDED)
            for entity in cycle.active_entities:
                if entity.market_address:
                    await self._ensure_position(entity.market_address, cycle.id)
            await self._bus.publish(
                CYCLE_TRANSITIONED,
                CycleTransitioned(
                    cycle_id=cycle.id,
                    from_status=CycleStatus.BUFFER,
                    to_status=CycleStatus.ACTIVE,
                    timestamp=now,
                ),
                sender="state_machine",
            )
            logger.info(
                "cycle_restarted",
                previous_cycle_id=previous.id,
                cycle_id=cycle.id,
                active=len(cycle.active_entities),
            )

        await self.deploy_pending(
            [e.id for e in cycle.active_entities if not e.market_address]
        )
        return CycleStatus.ACTIVE
