"""
App factory — FastAPI application with the orchestrator in its lifespan.

The service graph is built on startup (or injected for tests), the
scheduler is started alongside the HTTP server, and everything is torn
down on shutdown.
"""

from __future__ import annotations

from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI

from marketcycle.api.errors import market_cycle_error_handler
from marketcycle.api.routes import router as cycle_router
from marketcycle.api.system import router as system_router
from marketcycle.bootstrap import CycleServices, build_services
from marketcycle.config import CycleSettings, get_settings
from marketcycle.errors import MarketCycleError
from marketcycle.logging import setup_logging
from marketcycle.version import APP_NAME, VERSION

logger = structlog.get_logger(__name__)


# ── OpenAPI Tag Metadata ─────────────────────────────────────────────
OPENAPI_TAGS = [
    {
        "name": "Cycle",
        "description": "The current market cycle, its status and the open "
        "positions of every market it tracks.",
    },
    {
        "name": "Deployments",
        "description": "Per-entity market deployment status (pending, "
        "completed, failed), retained for an hour after each attempt.",
    },
    {
        "name": "Events",
        "description": "Recent domain events from the in-process event bus.",
    },
    {
        "name": "System",
        "description": "Health checks and service info.",
    },
]


def create_app(
    services: CycleServices | None = None,
    *,
    settings: CycleSettings | None = None,
    start_orchestrator: bool = True,
) -> FastAPI:
    """Create the app. Injected *services* are used as-is and not closed on shutdown."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned = services is None
        cfg = settings or (services.settings if services else get_settings())
        if owned:
            setup_logging(cfg.log_level, json_output=cfg.json_logs)
        graph = services or build_services(cfg)
        app.state.services = graph

        logger.info(
            "service_starting",
            version=VERSION,
            service=APP_NAME,
            environment=cfg.environment,
        )
        await graph.feed.setup()
        await graph.chain.setup()
        if start_orchestrator:
            await graph.orchestrator.start()
        logger.info("service_ready", orchestrator_running=graph.orchestrator.running)

        yield

        logger.info("service_shutting_down")
        if owned:
            await graph.close()
        else:
            await graph.orchestrator.stop()
        logger.info("service_shutdown_complete")

    app = FastAPI(
        title="MarketCycle — KOL Market Cycle Orchestrator",
        version=VERSION,
        lifespan=lifespan,
        openapi_tags=OPENAPI_TAGS,
        docs_url="/docs",
        redoc_url="/redoc",
    )
    if services is not None:
        app.state.services = services

    app.add_exception_handler(MarketCycleError, market_cycle_error_handler)
    app.include_router(system_router)
    app.include_router(cycle_router)
    return app
