"""
Domain Models — Shared Pydantic models for the market cycle service.

Defines the core data structures used across the orchestrator:
  - CycleStatus / DeploymentStatus: lifecycle enums
  - RankedEntity / CrashedEntity: ranking feed subjects and their markets
  - MarketCycle: the single "current" trading period
  - MarketPosition: per-market tracking of open position ids
  - FeeData / TransactionReceipt / ChainEvent: chain client results
  - Deployment results and emitted domain events
"""

from __future__ import annotations

import enum
from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

from marketcycle.utils.clock import utcnow


# ── Lifecycle Enums ──────────────────────────────────────────────────


class CycleStatus(str, enum.Enum):
    """Lifecycle of the current market cycle.

    ``ENDED`` only ever marks a retired (superseded) cycle record.
    """

    NOT_STARTED = "NOT_STARTED"
    ACTIVE = "ACTIVE"
    ENDING = "ENDING"
    BUFFER = "BUFFER"
    ENDED = "ENDED"


class DeploymentStatus(str, enum.Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


# ── Ranked Entities ──────────────────────────────────────────────────


class RankedEntity(BaseModel):
    """A ranked subject (KOL) from the feed, with its market once deployed."""

    id: int
    mindshare_score: float
    display_name: str
    rank: int | None = None
    market_address: str | None = None


class CrashedEntity(RankedEntity):
    """A market-holding entity that dropped out of the latest ranking."""

    market_address: str
    crashed_out_at: datetime

    @classmethod
    def from_entity(cls, entity: RankedEntity, crashed_out_at: datetime) -> CrashedEntity:
        return cls(**entity.model_dump(), crashed_out_at=crashed_out_at)


class EntityMindshare(BaseModel):
    """Fresh per-entity data from the feed's individual lookup."""

    entity_id: int
    mindshare_score: float
    display_name: str
    rank: int = 0


# ── Cycle & Positions ────────────────────────────────────────────────


class MarketCycle(BaseModel):
    """A fixed-duration trading period shared by all markets."""

    id: str
    start_time: datetime
    end_time: datetime
    buffer_end_time: datetime | None = None
    global_expiry: datetime
    active_entities: list[RankedEntity] = Field(default_factory=list)
    crashed_out_entities: list[CrashedEntity] = Field(default_factory=list)

    def tracked_markets(self) -> list[str]:
        """Every market address this cycle is responsible for, active first."""
        seen: dict[str, None] = {}
        for entity in [*self.active_entities, *self.crashed_out_entities]:
            if entity.market_address:
                seen.setdefault(entity.market_address, None)
        return list(seen)

    def active_entity(self, entity_id: int) -> RankedEntity | None:
        return next((e for e in self.active_entities if e.id == entity_id), None)

    def crashed_entity(self, entity_id: int) -> CrashedEntity | None:
        return next((e for e in self.crashed_out_entities if e.id == entity_id), None)


class MarketPosition(BaseModel):
    """Tracking record for the open position ids of one market."""

    market_address: str
    cycle_id: str
    active_token_ids: list[int] = Field(default_factory=list)
    is_active: bool = True
    reset_cycle_id: str | None = None


# ── Chain Results ────────────────────────────────────────────────────


class FeeData(BaseModel):
    """Network fee suggestion (EIP-1559), all values in wei."""

    base_fee_per_gas: int
    max_fee_per_gas: int
    max_priority_fee_per_gas: int


class ChainEvent(BaseModel):
    """A decoded contract event from a transaction receipt."""

    name: str
    args: dict[str, Any] = Field(default_factory=dict)


class TransactionReceipt(BaseModel):
    tx_hash: str
    status: int = 1
    block_number: int | None = None
    gas_used: int | None = None
    events: list[ChainEvent] = Field(default_factory=list)

    def find_event(self, name: str) -> ChainEvent | None:
        return next((e for e in self.events if e.name == name), None)


# ── Deployment Results ───────────────────────────────────────────────


class DeploymentOutcome(BaseModel):
    """A market that exists for an entity after a deployment attempt."""

    entity_id: int
    market_address: str
    tx_hash: str | None = None
    reused: bool = False  # True when the market already existed on-chain


class DeploymentBatchResult(BaseModel):
    deployed: list[DeploymentOutcome] = Field(default_factory=list)
    failed: dict[int, str] = Field(default_factory=dict)
    skipped: list[int] = Field(default_factory=list)

    @property
    def addresses(self) -> list[str]:
        return [o.market_address for o in self.deployed]


# ── Domain Events ────────────────────────────────────────────────────


class MarketDeployed(BaseModel):
    entity_id: int
    market_address: str
    timestamp: datetime = Field(default_factory=utcnow)
    tx_hash: str | None = None
    is_genesis: bool = False


class MarketDeploymentFailed(BaseModel):
    entity_id: int
    reason: str
    error_code: str = ""
    timestamp: datetime = Field(default_factory=utcnow)


class CycleTransitioned(BaseModel):
    cycle_id: str
    from_status: CycleStatus
    to_status: CycleStatus
    timestamp: datetime = Field(default_factory=utcnow)


class EntityCrashedOut(BaseModel):
    cycle_id: str
    entity_id: int
    market_address: str
    crashed_out_at: datetime
