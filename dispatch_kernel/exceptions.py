"""
Typed Exception Hierarchy for the Dispatch Kernel.

===============================================================================
WHY TYPED EXCEPTIONS
===============================================================================

Staff screens, driver apps and the admin console all call the same
transition API.  They must be able to react to a failure without parsing
message strings:

  1. Every error has a TYPED exception class (catch by type, not message)
  2. Every exception has a CODE attribute (machine-readable, API-safe)
  3. Exceptions carry structured DATA, including the entity's current
     (unchanged) status so a caller can resynchronize without a re-fetch

Example:
    try:
        orchestrator.transition_order(order_id, OrderStatus.CONFIRMED, actor)
    except InsufficientStockError as e:
        show_shortages(e.shortages)          # structured data
        refresh_badge(e.current_status)      # still PENDING

===============================================================================
EXCEPTION HIERARCHY
===============================================================================

    DispatchKernelError (base)
    |
    +-- ValidationError
    |   +-- IdempotencyKeyReuseError
    |
    +-- NotFoundError
    |
    +-- InvalidTransitionError
    |
    +-- InsufficientStockError
    |
    +-- ConflictError
    |
    +-- QRTokenError
    |   +-- InvalidQRTokenError
    |   +-- StaleQRTokenError
    |
    +-- ImmutabilityViolationError

===============================================================================
ERROR CODES - QUICK REFERENCE
===============================================================================

Code                      | When Raised                               | Retried?
--------------------------|-------------------------------------------|---------
VALIDATION_ERROR          | Malformed input                           | no
IDEMPOTENCY_KEY_REUSED    | Same key, different operation/payload     | no
NOT_FOUND                 | Unknown order/delivery/task/product       | no
INVALID_TRANSITION        | Target not reachable from current status  | no
INSUFFICIENT_STOCK        | Reservation or OUT movement short         | no
CONFLICT                  | Lost an optimistic-version race, retries  | yes (bounded,
                          | exhausted                                 |  internally)
INVALID_QR_TOKEN          | Tag mismatch, unknown id, bad manual data | no
STALE_QR_TOKEN            | Token older than live status version and  | no
                          | no override supplied                      |
IMMUTABILITY_VIOLATION    | UPDATE/DELETE of an append-only row       | no

===============================================================================
"""

from __future__ import annotations

from typing import Any


class DispatchKernelError(Exception):
    """
    Base exception for all dispatch kernel errors.

    All subclasses define a ``code`` class attribute for machine-readable
    error identification.
    """

    code: str = "DISPATCH_KERNEL_ERROR"


class _EntityError(DispatchKernelError):
    """Error tied to one entity; always reports the entity's current status."""

    code: str = "ENTITY_ERROR"

    def __init__(
        self,
        message: str,
        *,
        entity_type: str | None = None,
        entity_id: Any = None,
        current_status: Any = None,
    ):
        self.entity_type = entity_type
        self.entity_id = str(entity_id) if entity_id is not None else None
        self.current_status = getattr(current_status, "value", current_status)
        super().__init__(message)


# Input validation


class ValidationError(_EntityError):
    """Malformed input."""

    code: str = "VALIDATION_ERROR"

    def __init__(
        self,
        message: str,
        *,
        field: str | None = None,
        entity_type: str | None = None,
        entity_id: Any = None,
        current_status: Any = None,
    ):
        self.field = field
        super().__init__(
            message,
            entity_type=entity_type,
            entity_id=entity_id,
            current_status=current_status,
        )


class IdempotencyKeyReuseError(ValidationError):
    """
    An idempotency key was replayed for a different request.

    Replays must carry the same operation, entity and target; anything else
    is a client bug and is never silently applied.
    """

    code: str = "IDEMPOTENCY_KEY_REUSED"

    def __init__(self, key: str, operation: str, original_operation: str):
        self.key = key
        self.operation = operation
        self.original_operation = original_operation
        super().__init__(
            f"Idempotency key {key!r} was already used for "
            f"{original_operation}; cannot reuse it for {operation}",
            field="idempotency_key",
        )


class NotFoundError(_EntityError):
    """Entity with given ID was not found."""

    code: str = "NOT_FOUND"

    def __init__(self, entity_type: str, entity_id: Any):
        super().__init__(
            f"{entity_type} not found: {entity_id}",
            entity_type=entity_type,
            entity_id=entity_id,
        )


# State machine


class InvalidTransitionError(_EntityError):
    """Target status is not reachable from the entity's current status."""

    code: str = "INVALID_TRANSITION"

    def __init__(
        self,
        entity_type: str,
        entity_id: Any,
        current_status: Any,
        target_status: Any,
        reason: str | None = None,
    ):
        self.target_status = getattr(target_status, "value", target_status)
        self.reason = reason
        current = getattr(current_status, "value", current_status)
        message = (
            f"{entity_type} {entity_id}: cannot transition "
            f"{current} -> {self.target_status}"
        )
        if reason:
            message = f"{message} ({reason})"
        super().__init__(
            message,
            entity_type=entity_type,
            entity_id=entity_id,
            current_status=current_status,
        )


# Inventory


class InsufficientStockError(_EntityError):
    """
    Reservation or outbound movement failed for lack of stock.

    ``shortages`` lists every short product so the caller can show them
    all at once: ``[{"product_id", "requested", "available"}, ...]``.
    """

    code: str = "INSUFFICIENT_STOCK"

    def __init__(
        self,
        shortages: list[dict[str, Any]],
        *,
        entity_type: str | None = None,
        entity_id: Any = None,
        current_status: Any = None,
    ):
        self.shortages = shortages
        names = ", ".join(
            f"{s['product_id']} (requested {s['requested']}, available {s['available']})"
            for s in shortages
        )
        super().__init__(
            f"Insufficient stock: {names}",
            entity_type=entity_type,
            entity_id=entity_id,
            current_status=current_status,
        )


# Concurrency


class ConflictError(_EntityError):
    """Optimistic-version race lost and internal retries exhausted."""

    code: str = "CONFLICT"

    def __init__(
        self,
        entity_type: str | None,
        entity_id: Any,
        attempts: int,
        current_status: Any = None,
    ):
        self.attempts = attempts
        super().__init__(
            f"Concurrent modification of {entity_type or 'entity'} {entity_id} "
            f"after {attempts} attempt(s)",
            entity_type=entity_type,
            entity_id=entity_id,
            current_status=current_status,
        )


# QR verification


class QRTokenError(_EntityError):
    """Base exception for QR token verification failures."""

    code: str = "QR_TOKEN_ERROR"


class InvalidQRTokenError(QRTokenError):
    """Token failed the integrity check, names an unknown delivery, or manual data mismatched."""

    code: str = "INVALID_QR_TOKEN"

    def __init__(
        self,
        reason: str,
        *,
        delivery_id: Any = None,
        current_status: Any = None,
    ):
        self.reason = reason
        super().__init__(
            f"Invalid QR token: {reason}",
            entity_type="Delivery",
            entity_id=delivery_id,
            current_status=current_status,
        )


class StaleQRTokenError(QRTokenError):
    """Token is authentic but predates the delivery's current status version."""

    code: str = "STALE_QR_TOKEN"

    def __init__(
        self,
        delivery_id: Any,
        token_version: int,
        live_version: int,
        current_status: Any = None,
    ):
        self.token_version = token_version
        self.live_version = live_version
        super().__init__(
            f"Stale QR token for delivery {delivery_id}: "
            f"token version {token_version}, live version {live_version}",
            entity_type="Delivery",
            entity_id=delivery_id,
            current_status=current_status,
        )


# Immutability


class ImmutabilityViolationError(DispatchKernelError):
    """Attempted to modify or delete an append-only record."""

    code: str = "IMMUTABILITY_VIOLATION"

    def __init__(self, entity_type: str, entity_id: Any, reason: str):
        self.entity_type = entity_type
        self.entity_id = str(entity_id)
        self.reason = reason
        super().__init__(
            f"Immutability violation on {entity_type} {entity_id}: {reason}"
        )
