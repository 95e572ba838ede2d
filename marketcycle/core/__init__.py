"""Cycle lifecycle, deployment coordination, scheduling and domain events."""

from marketcycle.core.bus import DomainEvent, EventBus, Subscription
from marketcycle.core.deployment import DeploymentCoordinator, DeploymentPolicy
from marketcycle.core.scheduler import CycleOrchestrator
from marketcycle.core.state_machine import CycleStateMachine, ReconcileResult, reconcile

__all__ = [
    "DomainEvent",
    "EventBus",
    "Subscription",
    "DeploymentCoordinator",
    "DeploymentPolicy",
    "CycleOrchestrator",
    "CycleStateMachine",
    "ReconcileResult",
    "reconcile",
]
