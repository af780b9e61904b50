"""
Domain DTOs -- frozen value objects passed across the kernel boundary.

Responsibility:
    Immutable snapshots of orders, deliveries, tasks and stock returned by
    services and the orchestrator, plus the input value objects callers
    build (order lines, proof of delivery).  Snapshots carry NO database
    identity beyond their ids and NO I/O.

Architecture position:
    Kernel > Domain -- pure data.  Services convert ORM rows into these
    before returning, so callers never hold a live ORM object.

Idempotent replays store a snapshot as JSON (``to_dict``) and rebuild it
with ``from_dict``; the round trip must be lossless.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any
from uuid import UUID

from dispatch_kernel.domain.statuses import (
    OPEN_TASK_STATES,
    DeliveryStatus,
    MovementType,
    OrderStatus,
    QRFreshness,
    TaskStatus,
)


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def _dt(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value is not None else None


def _uuid(value: str | None) -> UUID | None:
    return UUID(value) if value is not None else None


# ---------------------------------------------------------------------------
# Inputs
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class OrderLine:
    """One product line of an order.  List order is irrelevant."""

    product_id: str
    quantity: int
    unit_price: Decimal

    @property
    def line_total(self) -> Decimal:
        return self.unit_price * self.quantity

    def to_dict(self) -> dict[str, Any]:
        return {
            "product_id": self.product_id,
            "quantity": self.quantity,
            "unit_price": str(self.unit_price),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> OrderLine:
        return cls(
            product_id=data["product_id"],
            quantity=int(data["quantity"]),
            unit_price=Decimal(str(data["unit_price"])),
        )


@dataclass(frozen=True)
class StockRequest:
    """Quantity of one product to reserve, release or consume."""

    product_id: str
    quantity: int


@dataclass(frozen=True)
class Proof:
    """
    Proof of delivery supplied by the driver at hand-over.

    ``delivered_to`` is mandatory (checked by the delivery manager, not
    here, so that the error carries the delivery's current status).
    """

    delivered_to: str
    signature_ref: str | None = None
    photo_ref: str | None = None
    notes: str | None = None


@dataclass(frozen=True)
class ManualVerification:
    """Fallback identity check when the QR code cannot be scanned."""

    order_number: str
    customer_name: str


# ---------------------------------------------------------------------------
# Snapshots
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class HistoryRecord:
    """One immutable status-history entry."""

    from_status: str | None
    to_status: str
    actor: str
    timestamp: datetime
    notes: str | None = None
    action: str = "STATUS"

    def to_dict(self) -> dict[str, Any]:
        return {
            "from_status": self.from_status,
            "to_status": self.to_status,
            "actor": self.actor,
            "timestamp": _iso(self.timestamp),
            "notes": self.notes,
            "action": self.action,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> HistoryRecord:
        return cls(
            from_status=data["from_status"],
            to_status=data["to_status"],
            actor=data["actor"],
            timestamp=_dt(data["timestamp"]),
            notes=data.get("notes"),
            action=data.get("action", "STATUS"),
        )


@dataclass(frozen=True)
class OrderSnapshot:
    """Read-only view of an order and its history."""

    id: UUID
    order_number: str
    customer_id: str
    customer_name: str | None
    items: tuple[OrderLine, ...]
    status: OrderStatus
    total_amount: Decimal
    delivery_address: str
    version: int
    created_at: datetime
    updated_at: datetime
    history: tuple[HistoryRecord, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": str(self.id),
            "order_number": self.order_number,
            "customer_id": self.customer_id,
            "customer_name": self.customer_name,
            "items": [line.to_dict() for line in self.items],
            "status": self.status.value,
            "total_amount": str(self.total_amount),
            "delivery_address": self.delivery_address,
            "version": self.version,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
            "history": [h.to_dict() for h in self.history],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> OrderSnapshot:
        return cls(
            id=UUID(data["id"]),
            order_number=data["order_number"],
            customer_id=data["customer_id"],
            customer_name=data.get("customer_name"),
            items=tuple(OrderLine.from_dict(i) for i in data["items"]),
            status=OrderStatus(data["status"]),
            total_amount=Decimal(data["total_amount"]),
            delivery_address=data["delivery_address"],
            version=data["version"],
            created_at=_dt(data["created_at"]),
            updated_at=_dt(data["updated_at"]),
            history=tuple(HistoryRecord.from_dict(h) for h in data.get("history", [])),
        )


@dataclass(frozen=True)
class DeliverySnapshot:
    """Read-only view of a delivery."""

    id: UUID
    order_id: UUID
    tracking_number: str
    driver_id: str | None
    status: DeliveryStatus
    status_version: int
    version: int
    scheduled_time: datetime | None = None
    start_time: datetime | None = None
    completed_at: datetime | None = None
    delivered_to: str | None = None
    proof_id: UUID | None = None
    history: tuple[HistoryRecord, ...] = ()

    @property
    def is_terminal(self) -> bool:
        return self.status in (
            DeliveryStatus.DELIVERED,
            DeliveryStatus.FAILED,
            DeliveryStatus.CANCELED,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": str(self.id),
            "order_id": str(self.order_id),
            "tracking_number": self.tracking_number,
            "driver_id": self.driver_id,
            "status": self.status.value,
            "status_version": self.status_version,
            "version": self.version,
            "scheduled_time": _iso(self.scheduled_time),
            "start_time": _iso(self.start_time),
            "completed_at": _iso(self.completed_at),
            "delivered_to": self.delivered_to,
            "proof_id": str(self.proof_id) if self.proof_id else None,
            "history": [h.to_dict() for h in self.history],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> DeliverySnapshot:
        return cls(
            id=UUID(data["id"]),
            order_id=UUID(data["order_id"]),
            tracking_number=data["tracking_number"],
            driver_id=data.get("driver_id"),
            status=DeliveryStatus(data["status"]),
            status_version=data["status_version"],
            version=data["version"],
            scheduled_time=_dt(data.get("scheduled_time")),
            start_time=_dt(data.get("start_time")),
            completed_at=_dt(data.get("completed_at")),
            delivered_to=data.get("delivered_to"),
            proof_id=_uuid(data.get("proof_id")),
            history=tuple(HistoryRecord.from_dict(h) for h in data.get("history", [])),
        )


@dataclass(frozen=True)
class DeliveryIssueRecord:
    """A problem reported from the road and whether it has been dealt with."""

    id: UUID
    delivery_id: UUID
    outcome: DeliveryStatus
    description: str
    reported_by: str
    reported_at: datetime
    resolved: bool
    resolved_by: str | None = None
    resolved_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": str(self.id),
            "delivery_id": str(self.delivery_id),
            "outcome": self.outcome.value,
            "description": self.description,
            "reported_by": self.reported_by,
            "reported_at": _iso(self.reported_at),
            "resolved": self.resolved,
            "resolved_by": self.resolved_by,
            "resolved_at": _iso(self.resolved_at),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> DeliveryIssueRecord:
        return cls(
            id=UUID(data["id"]),
            delivery_id=UUID(data["delivery_id"]),
            outcome=DeliveryStatus(data["outcome"]),
            description=data["description"],
            reported_by=data["reported_by"],
            reported_at=_dt(data["reported_at"]),
            resolved=data["resolved"],
            resolved_by=data.get("resolved_by"),
            resolved_at=_dt(data.get("resolved_at")),
        )


@dataclass(frozen=True)
class ScanResult:
    """
    Outcome of a QR scan or manual verification.

    ``delivery`` is None when the token did not resolve to a known delivery.
    ``reason`` explains INVALID outcomes.
    """

    freshness: QRFreshness
    delivery: DeliverySnapshot | None
    token_version: int | None = None
    live_version: int | None = None
    reason: str | None = None

    @property
    def delivery_id(self) -> UUID | None:
        return self.delivery.id if self.delivery is not None else None


@dataclass(frozen=True)
class TaskSnapshot:
    """Read-only view of a staff task."""

    id: UUID
    type: str
    title: str
    description: str | None
    assignee_id: str | None
    status: TaskStatus
    priority: int
    due_date: datetime | None
    completed_at: datetime | None
    version: int
    created_at: datetime

    def is_overdue(self, now: datetime) -> bool:
        """Derived, never stored: past due and still open."""
        return (
            self.due_date is not None
            and now > self.due_date
            and self.status in OPEN_TASK_STATES
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": str(self.id),
            "type": self.type,
            "title": self.title,
            "description": self.description,
            "assignee_id": self.assignee_id,
            "status": self.status.value,
            "priority": self.priority,
            "due_date": _iso(self.due_date),
            "completed_at": _iso(self.completed_at),
            "version": self.version,
            "created_at": _iso(self.created_at),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TaskSnapshot:
        return cls(
            id=UUID(data["id"]),
            type=data["type"],
            title=data["title"],
            description=data.get("description"),
            assignee_id=data.get("assignee_id"),
            status=TaskStatus(data["status"]),
            priority=data["priority"],
            due_date=_dt(data.get("due_date")),
            completed_at=_dt(data.get("completed_at")),
            version=data["version"],
            created_at=_dt(data["created_at"]),
        )


@dataclass(frozen=True)
class StockLevel:
    """
    Current stock position of one product.

    ``available`` is the canonical availability figure used everywhere:
    on hand minus reserved.
    """

    product_id: str
    on_hand: int
    reserved: int
    reorder_point: int = 0

    @property
    def available(self) -> int:
        return self.on_hand - self.reserved

    @property
    def is_low(self) -> bool:
        return self.available <= self.reorder_point

    def to_dict(self) -> dict[str, Any]:
        return {
            "product_id": self.product_id,
            "on_hand": self.on_hand,
            "reserved": self.reserved,
            "reorder_point": self.reorder_point,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> StockLevel:
        return cls(**data)


@dataclass(frozen=True)
class StockMovementRecord:
    """One immutable stock ledger entry."""

    id: UUID
    product_id: str
    type: MovementType
    quantity: int
    reason: str
    timestamp: datetime
    resulting_on_hand: int
    seq: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": str(self.id),
            "product_id": self.product_id,
            "type": self.type.value,
            "quantity": self.quantity,
            "reason": self.reason,
            "timestamp": _iso(self.timestamp),
            "resulting_on_hand": self.resulting_on_hand,
            "seq": self.seq,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> StockMovementRecord:
        return cls(
            id=UUID(data["id"]),
            product_id=data["product_id"],
            type=MovementType(data["type"]),
            quantity=data["quantity"],
            reason=data["reason"],
            timestamp=_dt(data["timestamp"]),
            resulting_on_hand=data["resulting_on_hand"],
            seq=data["seq"],
        )


@dataclass(frozen=True)
class BulkResult:
    """Partial-success report for chunked bulk operations."""

    succeeded_ids: tuple[UUID, ...] = ()
    failed: dict[UUID, str] = field(default_factory=dict)

    @property
    def all_succeeded(self) -> bool:
        return not self.failed
