"""
Status enums and transition tables -- the single source of lifecycle truth.

Responsibility:
    One enumerated status type per entity plus one transition table each.
    Every service validates transitions through ``can_transition`` against
    these tables; no screen or service re-implements the rules.

Architecture position:
    Kernel > Domain -- pure functional core, zero I/O.

State machines:

    Order:
        PENDING            -> CONFIRMED | CANCELED
        CONFIRMED          -> PREPARING | CANCELED
        PREPARING          -> READY_FOR_DISPATCH | CANCELED
        READY_FOR_DISPATCH -> OUT_FOR_DELIVERY | CANCELED
        OUT_FOR_DELIVERY   -> DELIVERED | CANCELED
        DELIVERED, CANCELED: terminal

    Delivery:
        ASSIGNED   -> IN_TRANSIT | CANCELED
        IN_TRANSIT -> DELIVERED | DELAYED | FAILED | CANCELED
        DELAYED    -> IN_TRANSIT | FAILED | CANCELED
        DELIVERED, FAILED, CANCELED: terminal

    Task:
        PENDING     -> IN_PROGRESS | CANCELED
        IN_PROGRESS -> COMPLETED | PENDING | CANCELED
        COMPLETED, CANCELED: terminal
"""

from __future__ import annotations

from enum import Enum
from typing import TypeVar


class OrderStatus(str, Enum):
    """Lifecycle of a customer order."""

    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    PREPARING = "PREPARING"
    READY_FOR_DISPATCH = "READY_FOR_DISPATCH"
    OUT_FOR_DELIVERY = "OUT_FOR_DELIVERY"
    DELIVERED = "DELIVERED"
    CANCELED = "CANCELED"


ORDER_TRANSITIONS: dict[OrderStatus, frozenset[OrderStatus]] = {
    OrderStatus.PENDING: frozenset({OrderStatus.CONFIRMED, OrderStatus.CANCELED}),
    OrderStatus.CONFIRMED: frozenset({OrderStatus.PREPARING, OrderStatus.CANCELED}),
    OrderStatus.PREPARING: frozenset({OrderStatus.READY_FOR_DISPATCH, OrderStatus.CANCELED}),
    OrderStatus.READY_FOR_DISPATCH: frozenset({OrderStatus.OUT_FOR_DELIVERY, OrderStatus.CANCELED}),
    OrderStatus.OUT_FOR_DELIVERY: frozenset({OrderStatus.DELIVERED, OrderStatus.CANCELED}),
    OrderStatus.DELIVERED: frozenset(),
    OrderStatus.CANCELED: frozenset(),
}

# Entered only by the delivery manager on completion, never by a caller
ORDER_INTERNAL_TARGETS: frozenset[OrderStatus] = frozenset({OrderStatus.DELIVERED})

# Statuses in which the order's items hold a stock reservation
ORDER_RESERVED_STATES: frozenset[OrderStatus] = frozenset({
    OrderStatus.CONFIRMED,
    OrderStatus.PREPARING,
    OrderStatus.READY_FOR_DISPATCH,
    OrderStatus.OUT_FOR_DELIVERY,
})


class DeliveryStatus(str, Enum):
    """Lifecycle of a delivery task."""

    ASSIGNED = "ASSIGNED"
    IN_TRANSIT = "IN_TRANSIT"
    DELAYED = "DELAYED"
    DELIVERED = "DELIVERED"
    FAILED = "FAILED"
    CANCELED = "CANCELED"


DELIVERY_TRANSITIONS: dict[DeliveryStatus, frozenset[DeliveryStatus]] = {
    DeliveryStatus.ASSIGNED: frozenset({DeliveryStatus.IN_TRANSIT, DeliveryStatus.CANCELED}),
    DeliveryStatus.IN_TRANSIT: frozenset({
        DeliveryStatus.DELIVERED,
        DeliveryStatus.DELAYED,
        DeliveryStatus.FAILED,
        DeliveryStatus.CANCELED,
    }),
    DeliveryStatus.DELAYED: frozenset({
        DeliveryStatus.IN_TRANSIT,
        DeliveryStatus.FAILED,
        DeliveryStatus.CANCELED,
    }),
    DeliveryStatus.DELIVERED: frozenset(),
    DeliveryStatus.FAILED: frozenset(),
    DeliveryStatus.CANCELED: frozenset(),
}

# Outcomes a driver may report from the road
DELIVERY_ISSUE_OUTCOMES: frozenset[DeliveryStatus] = frozenset({
    DeliveryStatus.DELAYED,
    DeliveryStatus.FAILED,
})


class TaskStatus(str, Enum):
    """Lifecycle of a staff task."""

    PENDING = "PENDING"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    CANCELED = "CANCELED"


TASK_TRANSITIONS: dict[TaskStatus, frozenset[TaskStatus]] = {
    TaskStatus.PENDING: frozenset({TaskStatus.IN_PROGRESS, TaskStatus.CANCELED}),
    TaskStatus.IN_PROGRESS: frozenset({
        TaskStatus.COMPLETED,
        TaskStatus.PENDING,
        TaskStatus.CANCELED,
    }),
    TaskStatus.COMPLETED: frozenset(),
    TaskStatus.CANCELED: frozenset(),
}

# Only these can run late; a finished or canceled task is never overdue.
OPEN_TASK_STATES: frozenset[TaskStatus] = frozenset({TaskStatus.PENDING, TaskStatus.IN_PROGRESS})


class MovementType(str, Enum):
    """Stock ledger movement kinds."""

    IN = "IN"
    OUT = "OUT"
    ADJUST = "ADJUST"


class ReservationKind(str, Enum):
    """Reservation log entry kinds."""

    RESERVE = "RESERVE"
    RELEASE = "RELEASE"
    CONSUME = "CONSUME"


class QRFreshness(str, Enum):
    """Outcome of a QR scan or manual verification."""

    FRESH = "FRESH"
    STALE = "STALE"
    INVALID = "INVALID"
    MANUAL_OVERRIDE = "MANUAL_OVERRIDE"


class ScanContext(str, Enum):
    """Where in the hand-over chain a code was checked."""

    PICKUP = "PICKUP"
    DROPOFF = "DROPOFF"


class ProofVerification(str, Enum):
    """How a delivery's proof was verified before completion."""

    QR_FRESH = "QR_FRESH"
    QR_STALE_OVERRIDE = "QR_STALE_OVERRIDE"
    MANUAL_OVERRIDE = "MANUAL_OVERRIDE"
    NONE = "NONE"


S = TypeVar("S", bound=Enum)


def can_transition(table: dict[S, frozenset[S]], current: S, target: S) -> bool:
    """True iff ``target`` is listed as reachable from ``current``."""
    return target in table.get(current, frozenset())


def is_terminal(table: dict[S, frozenset[S]], status: S) -> bool:
    """Terminal statuses have no outgoing transitions."""
    return not table.get(status)


def terminal_states(table: dict[S, frozenset[S]]) -> frozenset[S]:
    return frozenset(s for s, targets in table.items() if not targets)
