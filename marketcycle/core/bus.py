"""
EventBus — Domain events announced by the orchestrator.

The deployment coordinator and the state machine publish what they did;
notification hooks and the HTTP surface consume it. One bus is built at
startup and injected into every publisher.

Topics (``domain.verb``):
  - ``market.deployed``            MarketDeployed
  - ``market.deployment_failed``   MarketDeploymentFailed
  - ``cycle.transitioned``         CycleTransitioned
  - ``entity.crashed_out``         EntityCrashedOut

Subscriptions take ``fnmatch`` patterns, so ``"market.*"`` sees every
deployment outcome. A handler that raises is logged and counted; it never
reaches the publisher or the other handlers. The last ``history_limit``
events of each topic are kept for ``GET /api/events/{topic}``.

Usage::

    bus = EventBus()
    bus.subscribe("market.*", notify_operators)
    await bus.publish(MARKET_DEPLOYED, MarketDeployed(...), sender="deployment")
"""

from __future__ import annotations

import asyncio
import fnmatch
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable
from uuid import uuid4

import structlog
from opentelemetry import trace
from pydantic import BaseModel, Field

from marketcycle.utils.clock import utcnow

logger = structlog.get_logger(__name__)
tracer = trace.get_tracer(__name__)

MARKET_DEPLOYED = "market.deployed"
MARKET_DEPLOYMENT_FAILED = "market.deployment_failed"
CYCLE_TRANSITIONED = "cycle.transitioned"
ENTITY_CRASHED_OUT = "entity.crashed_out"


class DomainEvent(BaseModel):
    """Envelope for every published event. ``payload`` is always JSON-safe."""

    topic: str
    sender: str = ""
    payload: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=utcnow)
    correlation_id: str = Field(default_factory=lambda: uuid4().hex[:16])


EventHandler = Callable[[DomainEvent], Awaitable[None]]


@dataclass(frozen=True)
class Subscription:
    topic_pattern: str
    handler: EventHandler = field(repr=False)
    id: str = field(default_factory=lambda: uuid4().hex[:12])

    def matches(self, topic: str) -> bool:
        return fnmatch.fnmatchcase(topic, self.topic_pattern)


@dataclass
class _Counters:
    published: int = 0
    delivered: int = 0
    errors: int = 0


class EventBus:
    def __init__(self, *, history_limit: int = 100) -> None:
        self._subscriptions: dict[str, Subscription] = {}
        self._history_limit = history_limit
        self._history: dict[str, deque[DomainEvent]] = {}
        self._counters = _Counters()

    def subscribe(self, topic_pattern: str, handler: EventHandler) -> Subscription:
        sub = Subscription(topic_pattern=topic_pattern, handler=handler)
        self._subscriptions[sub.id] = sub
        return sub

    def unsubscribe(self, subscription: Subscription) -> bool:
        """Returns False if the subscription was already gone."""
        return self._subscriptions.pop(subscription.id, None) is not None

    async def publish(
        self,
        topic: str,
        payload: BaseModel | dict[str, Any] | None = None,
        *,
        sender: str = "",
        correlation_id: str | None = None,
    ) -> DomainEvent:
        """
        Record *payload* under *topic* and deliver it to every matching handler.

        Pydantic payloads are dumped in JSON mode. Handler failures are
        counted, never raised.
        """
        body = payload.model_dump(mode="json") if isinstance(payload, BaseModel) else payload
        event = DomainEvent(topic=topic, sender=sender, payload=body or {})
        if correlation_id:
            event.correlation_id = correlation_id

        self._remember(event)
        handlers = [s.handler for s in self._subscriptions.values() if s.matches(topic)]

        with tracer.start_as_current_span(
            "bus.publish",
            attributes={"topic": topic, "sender": sender, "subscribers": len(handlers)},
        ) as span:
            outcomes = await asyncio.gather(*(self._deliver(h, event) for h in handlers))
            delivered = sum(outcomes)
            failed = len(outcomes) - delivered
            self._counters.delivered += delivered
            self._counters.errors += failed
            span.set_attribute("delivered", delivered)
            span.set_attribute("errors", failed)

        logger.debug(
            "event_published",
            topic=topic,
            sender=sender,
            delivered=delivered,
            errors=failed,
        )
        return event

    def _remember(self, event: DomainEvent) -> None:
        buffer = self._history.get(event.topic)
        if buffer is None:
            buffer = self._history[event.topic] = deque(maxlen=self._history_limit)
        buffer.append(event)
        self._counters.published += 1

    @staticmethod
    async def _deliver(handler: EventHandler, event: DomainEvent) -> bool:
        try:
            await handler(event)
        except Exception as e:
            logger.error(
                "event_handler_failed",
                topic=event.topic,
                handler=getattr(handler, "__name__", repr(handler)),
                error=str(e),
                error_type=type(e).__name__,
            )
            return False
        return True

    # ── Introspection ────────────────────────────────────────────────

    def history(self, topic: str, *, limit: int = 50) -> list[DomainEvent]:
        """Recent events for an exact topic, newest first."""
        events = list(self._history.get(topic, ()))
        return events[::-1][:limit]

    @property
    def subscription_count(self) -> int:
        return len(self._subscriptions)

    @property
    def stats(self) -> dict[str, int]:
        return {
            "published": self._counters.published,
            "delivered": self._counters.delivered,
            "errors": self._counters.errors,
        }

    def clear(self) -> None:
        self._subscriptions.clear()
        self._history.clear()
        self._counters = _Counters()

    def __repr__(self) -> str:
        return f"<EventBus subscriptions={self.subscription_count} published={self._counters.published}>"
