from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from marketcycle.api.deps import get_services
from marketcycle.bootstrap import CycleServices
from marketcycle.version import APP_NAME, VERSION

router = APIRouter(tags=["System"])


class HealthResponse(BaseModel):
    status: str
    version: str
    service: str
    store_reachable: bool
    scheduler_healthy: bool
    scheduler_running: bool
    connectors: dict[str, bool]


@router.get("/health", response_model=HealthResponse)
async def health(services: CycleServices = Depends(get_services)):
    store_ok = await services.store.ping()
    orchestrator = services.orchestrator
    connectors = {}
    for connector in (services.feed, services.chain):
        info = await connector.get_info()
        connectors[info.name] = info.healthy

    healthy = store_ok and orchestrator.healthy
    body = HealthResponse(
        status="healthy" if healthy else "degraded",
        version=VERSION,
        service=APP_NAME,
        store_reachable=store_ok,
        scheduler_healthy=orchestrator.healthy,
        scheduler_running=orchestrator.running,
        connectors=connectors,
    )
    return JSONResponse(status_code=200 if healthy else 503, content=body.model_dump())


@router.get("/")
async def root():
    return {"api": f"{APP_NAME} API", "version": VERSION, "status": "online"}
