"""
BaseService -- abstract base for all kernel services.

Responsibility:
    Provides the common constructor and session-handling contract for
    every lifecycle service.  Each service receives a SQLAlchemy
    ``Session``, the injected ``Clock`` and the ``EventBuffer`` of the
    current transaction attempt.

Architecture position:
    Kernel > Services -- imperative shell infrastructure.

Invariants enforced:
    Transaction boundaries: services ``flush()`` within the caller's
    transaction and never commit or roll back themselves.  The
    DispatchOrchestrator (or a test harness) owns commit, rollback and
    retry, so an order confirmation and its stock reservation land
    together or not at all.

    Events are buffered, never published from here.  A rolled-back
    attempt discards its buffer with the session.
"""

from __future__ import annotations

from abc import ABC
from datetime import datetime
from typing import Any, Generic, TypeVar
from uuid import UUID

from sqlalchemy.orm import Session

from dispatch_kernel.db.base import Base
from dispatch_kernel.domain.clock import Clock, SystemClock
from dispatch_kernel.domain.events import DomainEvent, EventBuffer
from dispatch_kernel.exceptions import NotFoundError, ValidationError

ModelType = TypeVar("ModelType", bound=Base)


class BaseService(ABC, Generic[ModelType]):
    """
    Abstract base class for all kernel services.

    Non-goals:
        - Does NOT manage transaction lifecycle (commit/rollback).
        - Does NOT provide list/report queries; those belong in
          ``dispatch_kernel/selectors/``.
    """

    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
        events: EventBuffer | None = None,
    ):
        self.session = session
        self.clock = clock or SystemClock()
        self.events = events if events is not None else EventBuffer()

    def _emit(self, event: DomainEvent) -> None:
        self.events.add(event)


def as_uuid(value: UUID | str, entity_type: str) -> UUID:
    """Coerce an id from the boundary; an unparseable id names no entity."""
    if isinstance(value, UUID):
        return value
    try:
        return UUID(str(value))
    except ValueError:
        raise NotFoundError(entity_type, value)


def require_text(value: object, field: str, **context: Any) -> str:
    """Non-blank string, stripped."""
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"{field} is required", field=field, **context)
    return value.strip()


def require_aware(value: datetime | None, field: str) -> datetime | None:
    if value is not None and (not isinstance(value, datetime) or value.tzinfo is None):
        raise ValidationError(f"{field} must be a timezone-aware datetime", field=field)
    return value
