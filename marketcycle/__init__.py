"""
MarketCycle — KOL Market Cycle Orchestrator.

Keeps one prediction market per top-ranked KOL, deploys markets exactly
once, and drives every market through a fixed-duration cycle:
trade, settle, reset, start over.
"""

from marketcycle.bootstrap import CycleServices, build_services
from marketcycle.config import CycleSettings, get_settings
from marketcycle.core import (
    CycleOrchestrator,
    CycleStateMachine,
    DeploymentCoordinator,
    EventBus,
)
from marketcycle.models import CycleStatus, DeploymentStatus, MarketCycle
from marketcycle.version import VERSION

__all__ = [
    "CycleServices",
    "build_services",
    "CycleSettings",
    "get_settings",
    "CycleOrchestrator",
    "CycleStateMachine",
    "DeploymentCoordinator",
    "EventBus",
    "CycleStatus",
    "DeploymentStatus",
    "MarketCycle",
    "VERSION",
]
