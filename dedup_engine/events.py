"""Typed engine events delivered through per-subscriber queues.

Producers call ``EventBus.publish`` which never blocks: each subscriber owns
a bounded ``asyncio.Queue`` and an event that does not fit is dropped for
that subscriber with a warning.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, FrozenSet, Iterable, List, Optional

from dedup_engine.utils.logger import log_debug, log_warning


class EventType(str, Enum):
    DUPLICATE_DETECTED = "duplicate_detected"
    DUPLICATE_MERGED = "duplicate_merged"
    DUPLICATE_REVIEWED = "duplicate_reviewed"
    MERGE_ERROR = "merge_error"
    WORKFLOW_CREATED = "workflow_created"
    WORKFLOW_COMPLETED = "workflow_completed"
    WORKFLOW_FAILED = "workflow_failed"
    BATCH_PROGRESS = "batch_progress"
    BATCH_COMPLETED = "batch_completed"
    BATCH_FAILED = "batch_failed"
    BATCH_CANCELLED = "batch_cancelled"
    DETECTION_ERROR = "detection_error"
    RULE_UPDATED = "rule_updated"
    STRATEGY_UPDATED = "strategy_updated"


@dataclass(frozen=True)
class EngineEvent:
    type: EventType
    payload: Dict[str, Any]
    timestamp: datetime = field(default_factory=datetime.now)


class Subscription:
    """A subscriber's view of the bus."""

    def __init__(self, bus: "EventBus", types: Optional[FrozenSet[EventType]], maxsize: int):
        self._bus = bus
        self.types = types
        self.queue: "asyncio.Queue[EngineEvent]" = asyncio.Queue(maxsize=maxsize)
        self.dropped = 0

    def wants(self, event_type: EventType) -> bool:
        return self.types is None or event_type in self.types

    async def get(self) -> EngineEvent:
        return await self.queue.get()

    def get_nowait(self) -> EngineEvent:
        return self.queue.get_nowait()

    def drain(self) -> List[EngineEvent]:
        """Return and remove every queued event."""
        events = []
        while not self.queue.empty():
            events.append(self.queue.get_nowait())
        return events

    def close(self) -> None:
        self._bus.unsubscribe(self)


class EventBus:
    """Fan-out of ``EngineEvent``s to independent subscribers."""

    def __init__(self, default_maxsize: int = 1000):
        self.default_maxsize = default_maxsize
        self._subscriptions: List[Subscription] = []

    def subscribe(
        self, types: Optional[Iterable[EventType]] = None, maxsize: Optional[int] = None
    ) -> Subscription:
        subscription = Subscription(
            self,
            frozenset(types) if types is not None else None,
            self.default_maxsize if maxsize is None else maxsize,
        )
        self._subscriptions.append(subscription)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        if subscription in self._subscriptions:
            self._subscriptions.remove(subscription)

    def publish(self, event_type: EventType, **payload: Any) -> EngineEvent:
        event = EngineEvent(type=event_type, payload=payload)
        for subscription in list(self._subscriptions):
            if not subscription.wants(event_type):
                continue
            try:
                subscription.queue.put_nowait(event)
            except asyncio.QueueFull:
                subscription.dropped += 1
                log_warning(
                    "Event dropped, subscriber queue full",
                    event_type=event_type.value,
                    dropped=subscription.dropped,
                )
        log_debug("Event published", event_type=event_type.value)
        return event

    @property
    def subscriber_count(self) -> int:
        return len(self._subscriptions)
