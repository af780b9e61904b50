"""
Outbound domain events.

Responsibility:
    Defines the events the kernel emits for dashboards and the notification
    collaborator, and the ``EventPublisher`` capability through which they
    leave the kernel.

Architecture position:
    Kernel > Domain -- pure data plus an abstract port.  Services append
    events to an ``EventBuffer`` while a transaction is open; the
    orchestrator hands the buffer to the side-effect dispatcher only after
    the commit succeeds, so a rolled-back transition never emits anything
    and a publisher failure never rolls back a committed transition.

Every event carries: entity id, old/new status, actor, timestamp.
"""

from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from dispatch_kernel.logging_config import get_logger

logger = get_logger("domain.events")


class EventType(str, Enum):
    ORDER_STATUS_CHANGED = "OrderStatusChanged"
    DELIVERY_STATUS_CHANGED = "DeliveryStatusChanged"
    STOCK_BELOW_REORDER_POINT = "StockBelowReorderPoint"
    TASK_OVERDUE = "TaskOverdue"


@dataclass(frozen=True)
class DomainEvent:
    """A fact that already happened and was committed."""

    event_type: EventType
    entity_id: str
    old_status: str | None
    new_status: str | None
    actor: str
    occurred_at: datetime
    detail: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "event_type": self.event_type.value,
            "entity_id": self.entity_id,
            "old_status": self.old_status,
            "new_status": self.new_status,
            "actor": self.actor,
            "occurred_at": self.occurred_at.isoformat(),
            "detail": dict(self.detail),
        }


class EventBuffer:
    """Collects events raised inside one transaction attempt."""

    def __init__(self) -> None:
        self._events: list[DomainEvent] = []

    def add(self, event: DomainEvent) -> None:
        self._events.append(event)

    def drain(self) -> list[DomainEvent]:
        events, self._events = self._events, []
        return events

    def __len__(self) -> int:
        return len(self._events)


class EventPublisher(ABC):
    """Port to the notification / dashboard collaborator."""

    @abstractmethod
    def publish(self, event: DomainEvent) -> None:
        ...


class LoggingPublisher(EventPublisher):
    """Default publisher: writes each event as a structured log line."""

    def publish(self, event: DomainEvent) -> None:
        logger.info("domain_event_published", extra=event.to_dict())


class RecordingPublisher(EventPublisher):
    """In-memory publisher for tests and local tooling."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.events: list[DomainEvent] = []

    def publish(self, event: DomainEvent) -> None:
        with self._lock:
            self.events.append(event)

    def of_type(self, event_type: EventType) -> list[DomainEvent]:
        with self._lock:
            return [e for e in self.events if e.event_type == event_type]

    def clear(self) -> None:
        with self._lock:
            self.events.clear()
