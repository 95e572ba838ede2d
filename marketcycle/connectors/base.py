"""
BaseConnector — Common surface of the ranking feed and chain clients.

Both collaborators are built once in ``bootstrap.build_services``, set up and
torn down by the app lifespan (or the CLI), and probed by ``GET /health``
through ``get_info()``.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod

import structlog
from pydantic import BaseModel

logger = structlog.get_logger(__name__)


class ConnectorInfo(BaseModel):
    name: str
    description: str
    healthy: bool = True


class BaseConnector(ABC):
    """``name`` and ``description`` are required; the lifecycle hooks default to no-ops."""

    @property
    @abstractmethod
    def name(self) -> str: ...

    @property
    @abstractmethod
    def description(self) -> str: ...

    async def setup(self) -> None:
        """Open clients / pools. Called once before the scheduler starts."""

    async def teardown(self) -> None:
        """Close clients / pools. Must be safe to call more than once."""

    async def health_check(self) -> bool:
        return True

    async def get_info(self, *, probe_timeout: float = 10.0) -> ConnectorInfo:
        """Probe ``health_check`` once. A probe that raises or stalls reports unhealthy."""
        try:
            healthy = bool(await asyncio.wait_for(self.health_check(), timeout=probe_timeout))
        except asyncio.TimeoutError:
            logger.warning("connector_probe_timed_out", connector=self.name, timeout=probe_timeout)
            healthy = False
        except Exception as e:
            logger.warning("connector_probe_failed", connector=self.name, error=str(e))
            healthy = False
        return ConnectorInfo(name=self.name, description=self.description, healthy=healthy)

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.name}>"
