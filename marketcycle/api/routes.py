"""
Cycle API — Read-only inspection of the orchestrator's persisted state.

Endpoints:
  GET /api/cycle                       current cycle and its status
  GET /api/cycle/positions             open position ids per tracked market
  GET /api/deployments/{entity_id}     last recorded deployment status
  GET /api/events/{topic}              recent domain events for a topic
"""

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel

from marketcycle.api.deps import get_services
from marketcycle.bootstrap import CycleServices
from marketcycle.core.bus import DomainEvent
from marketcycle.models import CycleStatus, DeploymentStatus, MarketCycle, MarketPosition

router = APIRouter(prefix="/api")


class CycleResponse(BaseModel):
    status: CycleStatus
    cycle: MarketCycle | None = None


class PositionsResponse(BaseModel):
    cycle_id: str | None = None
    positions: list[MarketPosition]


class DeploymentStatusResponse(BaseModel):
    entity_id: int
    status: DeploymentStatus


@router.get("/cycle", response_model=CycleResponse, tags=["Cycle"])
async def get_cycle(services: CycleServices = Depends(get_services)):
    cycle, status = await services.state_machine.current()
    return CycleResponse(status=status, cycle=cycle)


@router.get("/cycle/positions", response_model=PositionsResponse, tags=["Cycle"])
async def get_positions(services: CycleServices = Depends(get_services)):
    cycle, _ = await services.state_machine.current()
    if cycle is None:
        return PositionsResponse(positions=[])

    positions = []
    for market in cycle.tracked_markets():
        position = await services.store.get_market_position(market)
        if position is not None:
            positions.append(position)
    return PositionsResponse(cycle_id=cycle.id, positions=positions)


@router.get(
    "/deployments/{entity_id}",
    response_model=DeploymentStatusResponse,
    tags=["Deployments"],
)
async def get_deployment_status(
    entity_id: int, services: CycleServices = Depends(get_services)
):
    status = await services.store.get_deployment_status(entity_id)
    if status is None:
        raise HTTPException(
            status_code=404, detail=f"No deployment recorded for entity {entity_id}"
        )
    return DeploymentStatusResponse(entity_id=entity_id, status=status)


@router.get("/events/{topic}", response_model=list[DomainEvent], tags=["Events"])
async def get_events(
    topic: str,
    limit: int = Query(default=50, ge=1, le=100),
    services: CycleServices = Depends(get_services),
):
    return services.bus.history(topic, limit=limit)
