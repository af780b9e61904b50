"""
DeliveryManager -- delivery status state machine.

Responsibility:
    Creates delivery tasks for dispatch-ready orders and moves them
    through DELIVERY_TRANSITIONS.  Drives the two order transitions that
    belong to the road: OUT_FOR_DELIVERY when the driver starts, DELIVERED
    when the hand-over is completed.

Architecture position:
    Kernel > Services -- imperative shell.  Uses OrderLifecycleManager in
    the same session.  ProofCaptureService calls ``complete`` and, at
    pickup, ``apply_status``.

Invariants enforced:
    - A delivery can only be created for a READY_FOR_DISPATCH order that
      has no non-terminal delivery.
    - ``status_version`` increments exactly once per accepted status
      transition.  Rejected calls and driver reassignments leave it alone.
    - Each accepted change appends one delivery_history row.
    - Completion requires a non-empty ``delivered_to``.

Failure modes:
    - InvalidTransitionError: target unreachable, order not dispatchable,
      no driver assigned at start.
    - ValidationError: missing proof recipient, wrong driver, bad outcome.
    - NotFoundError: unknown delivery, order or issue.
"""

from __future__ import annotations

from collections.abc import Mapping
from datetime import datetime
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import select

from dispatch_kernel.domain.dtos import DeliveryIssueRecord, DeliverySnapshot, Proof
from dispatch_kernel.domain.events import DomainEvent, EventType
from dispatch_kernel.domain.statuses import (
    DELIVERY_ISSUE_OUTCOMES,
    DELIVERY_TRANSITIONS,
    DeliveryStatus,
    OrderStatus,
    ProofVerification,
    can_transition,
    terminal_states,
)
from dispatch_kernel.exceptions import InvalidTransitionError, NotFoundError, ValidationError
from dispatch_kernel.logging_config import get_logger
from dispatch_kernel.models.delivery import Delivery, DeliveryHistory, DeliveryIssue, ProofOfDelivery
from dispatch_kernel.services.base import BaseService, as_uuid, require_aware, require_text
from dispatch_kernel.services.order_lifecycle import OrderLifecycleManager
from dispatch_kernel.utils.identifiers import generate_tracking_number

logger = get_logger("services.delivery_manager")

ACTIVE_DELIVERY_STATES = frozenset(DeliveryStatus) - terminal_states(DELIVERY_TRANSITIONS)


def coerce_delivery_status(value: DeliveryStatus | str) -> DeliveryStatus:
    try:
        return DeliveryStatus(value)
    except ValueError:
        raise ValidationError(f"Unknown delivery status {value!r}", field="target")


def proof_from_payload(payload: Mapping[str, Any]) -> Proof:
    """Build a Proof from a driver-app payload (snake_case or camelCase keys)."""
    return Proof(
        delivered_to=payload.get("delivered_to", payload.get("deliveredTo")) or "",
        signature_ref=payload.get("signature_ref", payload.get("signatureRef")),
        photo_ref=payload.get("photo_ref", payload.get("photoRef")),
        notes=payload.get("notes"),
    )


class DeliveryManager(BaseService[Delivery]):
    """Delivery creation, assignment and status transitions."""

    def __init__(self, session, clock=None, events=None, orders: OrderLifecycleManager | None = None):
        super().__init__(session, clock, events)
        self.orders = orders or OrderLifecycleManager(session, self.clock, self.events)

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------

    def load(self, delivery_id: UUID | str, *, lock: bool = False) -> Delivery:
        delivery_id = as_uuid(delivery_id, "Delivery")
        delivery = self.session.get(Delivery, delivery_id, with_for_update=lock)
        if delivery is None:
            raise NotFoundError("Delivery", delivery_id)
        return delivery

    def get(self, delivery_id: UUID | str) -> DeliverySnapshot:
        return self.load(delivery_id).to_dto()

    def active_for_order(self, order_id: UUID) -> Delivery | None:
        return self.session.execute(
            select(Delivery).where(
                Delivery.order_id == order_id,
                Delivery.status.in_(ACTIVE_DELIVERY_STATES),
            )
        ).scalar_one_or_none()

    # ------------------------------------------------------------------
    # Creation and assignment
    # ------------------------------------------------------------------

    def create_task(
        self,
        order_id: UUID | str,
        *,
        actor: str,
        driver_id: str | None = None,
        scheduled_time: datetime | None = None,
    ) -> DeliverySnapshot:
        """Open a delivery for a dispatch-ready order, optionally with a driver."""
        if driver_id is not None:
            driver_id = require_text(driver_id, "driver_id")
        require_aware(scheduled_time, "scheduled_time")

        order = self.orders.load(order_id, lock=True)
        if order.status != OrderStatus.READY_FOR_DISPATCH:
            raise InvalidTransitionError(
                "Order",
                order.id,
                order.status,
                DeliveryStatus.ASSIGNED,
                reason="a delivery needs an order in READY_FOR_DISPATCH",
            )
        active = self.active_for_order(order.id)
        if active is not None:
            raise InvalidTransitionError(
                "Delivery",
                active.id,
                active.status,
                DeliveryStatus.ASSIGNED,
                reason=f"order {order.order_number} already has an active delivery",
            )

        now = self.clock.now()
        delivery = Delivery(
            order_id=order.id,
            tracking_number=generate_tracking_number(now),
            driver_id=driver_id,
            status=DeliveryStatus.ASSIGNED,
            scheduled_time=scheduled_time,
            status_version=0,
            created_at=now,
            updated_at=now,
            created_by=actor,
        )
        delivery.history = [
            DeliveryHistory(
                seq=1,
                action="STATUS",
                from_status=None,
                to_status=DeliveryStatus.ASSIGNED,
                status_version=0,
                driver_id=driver_id,
                actor=actor,
                timestamp=now,
            )
        ]
        delivery.issues = []
        self.session.add(delivery)
        self.session.flush()

        logger.info(
            "delivery_created",
            extra={
                "delivery_id": delivery.id,
                "order_id": order.id,
                "tracking_number": delivery.tracking_number,
                "driver_id": driver_id,
            },
        )
        self._emit_changed(delivery, None, actor, None)
        return delivery.to_dto()

    def assign(self, delivery_id: UUID | str, driver_id: str, *, actor: str) -> DeliverySnapshot:
        """
        Set or replace the driver while the delivery is still ASSIGNED.

        Reassignment is recorded in history as a REASSIGN row but is not a
        status transition: ``status_version`` stays put, so QR tokens
        already printed for the delivery remain fresh.
        """
        driver_id = require_text(driver_id, "driver_id")
        delivery = self.load(delivery_id, lock=True)
        if delivery.status != DeliveryStatus.ASSIGNED:
            raise InvalidTransitionError(
                "Delivery",
                delivery.id,
                delivery.status,
                DeliveryStatus.ASSIGNED,
                reason="drivers can only be assigned before the delivery starts",
            )
        if delivery.driver_id == driver_id:
            return delivery.to_dto()

        previous = delivery.driver_id
        now = self.clock.now()
        delivery.driver_id = driver_id
        delivery.updated_at = now
        delivery.updated_by = actor
        delivery.history.append(
            DeliveryHistory(
                seq=len(delivery.history) + 1,
                action="REASSIGN",
                from_status=delivery.status,
                to_status=delivery.status,
                status_version=delivery.status_version,
                driver_id=driver_id,
                actor=actor,
                timestamp=now,
                notes=f"driver {previous or '-'} -> {driver_id}",
            )
        )
        self.session.flush()

        logger.info(
            "delivery_driver_assigned",
            extra={
                "delivery_id": delivery.id,
                "previous_driver_id": previous,
                "driver_id": driver_id,
            },
        )
        return delivery.to_dto()

    # ------------------------------------------------------------------
    # Status transitions
    # ------------------------------------------------------------------

    def start(self, delivery_id: UUID | str, driver_id: str | None, *, actor: str) -> DeliverySnapshot:
        """
        ASSIGNED -> IN_TRANSIT; the order goes OUT_FOR_DELIVERY.

        ``driver_id`` must name the assigned driver; a missing or different
        id is a ValidationError.
        """
        delivery = self.load(delivery_id, lock=True)
        self._check(delivery, DeliveryStatus.IN_TRANSIT)
        if delivery.driver_id is None:
            raise InvalidTransitionError(
                "Delivery",
                delivery.id,
                delivery.status,
                DeliveryStatus.IN_TRANSIT,
                reason="no driver assigned",
            )
        self._check_driver(delivery, driver_id)

        delivery.start_time = self.clock.now()
        self._apply(delivery, DeliveryStatus.IN_TRANSIT, actor, None)
        self.orders.mark_out_for_delivery(delivery.order_id, actor=actor)
        return delivery.to_dto()

    def resume(self, delivery_id: UUID | str, driver_id: str | None, *, actor: str) -> DeliverySnapshot:
        """DELAYED -> IN_TRANSIT.  ``start_time`` keeps the first departure."""
        delivery = self.load(delivery_id, lock=True)
        if delivery.status != DeliveryStatus.DELAYED:
            raise InvalidTransitionError(
                "Delivery",
                delivery.id,
                delivery.status,
                DeliveryStatus.IN_TRANSIT,
                reason="only a delayed delivery can be resumed",
            )
        self._check_driver(delivery, driver_id)
        self._apply(delivery, DeliveryStatus.IN_TRANSIT, actor, "resumed")
        return delivery.to_dto()

    def complete(
        self,
        delivery_id: UUID | str,
        proof: Proof,
        *,
        actor: str,
        verification: ProofVerification = ProofVerification.NONE,
    ) -> DeliverySnapshot:
        """
        IN_TRANSIT -> DELIVERED with proof of delivery; closes the order.

        Raises:
            InvalidTransitionError: delivery not IN_TRANSIT (including
                already DELIVERED).
            ValidationError: ``proof.delivered_to`` is blank.
        """
        delivery = self.load(delivery_id, lock=True)
        self._check(delivery, DeliveryStatus.DELIVERED)
        delivered_to = require_text(
            proof.delivered_to,
            "delivered_to",
            entity_type="Delivery",
            entity_id=delivery.id,
            current_status=delivery.status,
        )

        now = self.clock.now()
        record = ProofOfDelivery(
            id=uuid4(),
            delivery_id=delivery.id,
            delivered_to=delivered_to,
            signature_ref=proof.signature_ref,
            photo_ref=proof.photo_ref,
            notes=proof.notes,
            verification=ProofVerification(verification),
            captured_by=actor,
            captured_at=now,
        )
        self.session.add(record)

        delivery.delivered_to = delivered_to
        delivery.completed_at = now
        delivery.proof_id = record.id
        self._apply(delivery, DeliveryStatus.DELIVERED, actor, proof.notes)
        self.orders.mark_delivered(delivery.order_id, actor=actor)

        logger.info(
            "delivery_completed",
            extra={
                "delivery_id": delivery.id,
                "order_id": delivery.order_id,
                "verification": record.verification.value,
                "has_signature": proof.signature_ref is not None,
                "has_photo": proof.photo_ref is not None,
            },
        )
        return delivery.to_dto()

    def report_issue(
        self,
        delivery_id: UUID | str,
        reason: str,
        *,
        actor: str,
        outcome: DeliveryStatus | str = DeliveryStatus.DELAYED,
    ) -> DeliverySnapshot:
        """Record a problem from the road and move to DELAYED or FAILED."""
        outcome = coerce_delivery_status(outcome)
        if outcome not in DELIVERY_ISSUE_OUTCOMES:
            raise ValidationError(
                f"An issue can only lead to {sorted(s.value for s in DELIVERY_ISSUE_OUTCOMES)}",
                field="outcome",
            )
        reason = require_text(reason, "reason")
        delivery = self.load(delivery_id, lock=True)
        self._check(delivery, outcome)

        delivery.issues.append(
            DeliveryIssue(
                outcome=outcome,
                description=reason,
                reported_by=actor,
                reported_at=self.clock.now(),
                resolved=False,
            )
        )
        self._apply(delivery, outcome, actor, reason)
        logger.warning(
            "delivery_issue_reported",
            extra={
                "delivery_id": delivery.id,
                "outcome": outcome.value,
                "reason": reason,
            },
        )
        return delivery.to_dto()

    def resolve_issue(self, issue_id: UUID | str, *, actor: str) -> DeliveryIssueRecord:
        """Mark an issue dealt with.  Resolving twice is a no-op."""
        issue_id = as_uuid(issue_id, "DeliveryIssue")
        issue = self.session.get(DeliveryIssue, issue_id)
        if issue is None:
            raise NotFoundError("DeliveryIssue", issue_id)
        if not issue.resolved:
            issue.resolved = True
            issue.resolved_by = actor
            issue.resolved_at = self.clock.now()
            self.session.flush()
            logger.info(
                "delivery_issue_resolved",
                extra={"issue_id": issue.id, "delivery_id": issue.delivery_id},
            )
        return issue.to_dto()

    def cancel(self, delivery_id: UUID | str, *, actor: str, reason: str | None = None) -> DeliverySnapshot:
        """Any non-terminal status -> CANCELED.  The order is left as it is."""
        delivery = self.load(delivery_id, lock=True)
        self._apply(delivery, DeliveryStatus.CANCELED, actor, reason)
        return delivery.to_dto()

    def cancel_active_for_order(self, order_id: UUID, *, actor: str, reason: str) -> DeliverySnapshot | None:
        """Cascade of an order cancellation."""
        delivery = self.active_for_order(order_id)
        if delivery is None:
            return None
        self._apply(delivery, DeliveryStatus.CANCELED, actor, reason)
        return delivery.to_dto()

    def apply_status(
        self,
        delivery_id: UUID | str,
        target: DeliveryStatus | str,
        payload: Mapping[str, Any] | None = None,
        *,
        actor: str,
        verification: ProofVerification = ProofVerification.NONE,
    ) -> DeliverySnapshot:
        """
        Route a generic status update to the operation that owns it.

        ``payload`` keys: ``driver_id`` (start / resume), ``delivered_to``,
        ``signature_ref``, ``photo_ref``, ``notes`` (DELIVERED), ``reason``
        (DELAYED / FAILED / CANCELED).
        """
        target = coerce_delivery_status(target)
        payload = payload or {}

        if target == DeliveryStatus.IN_TRANSIT:
            delivery = self.load(delivery_id)
            if delivery.status == DeliveryStatus.DELAYED:
                return self.resume(delivery_id, payload.get("driver_id"), actor=actor)
            return self.start(delivery_id, payload.get("driver_id"), actor=actor)
        if target == DeliveryStatus.DELIVERED:
            return self.complete(
                delivery_id,
                proof_from_payload(payload),
                actor=actor,
                verification=verification,
            )
        if target in DELIVERY_ISSUE_OUTCOMES:
            return self.report_issue(
                delivery_id,
                payload.get("reason") or "",
                actor=actor,
                outcome=target,
            )
        if target == DeliveryStatus.CANCELED:
            return self.cancel(delivery_id, actor=actor, reason=payload.get("reason"))

        delivery = self.load(delivery_id)
        raise InvalidTransitionError("Delivery", delivery.id, delivery.status, target)

    # ------------------------------------------------------------------

    def _check(self, delivery: Delivery, target: DeliveryStatus) -> None:
        if not can_transition(DELIVERY_TRANSITIONS, delivery.status, target):
            logger.info(
                "delivery_transition_rejected",
                extra={
                    "delivery_id": delivery.id,
                    "from_status": delivery.status.value,
                    "to_status": target.value,
                },
            )
            raise InvalidTransitionError("Delivery", delivery.id, delivery.status, target)

    def _check_driver(self, delivery: Delivery, driver_id: str | None) -> None:
        if not isinstance(driver_id, str) or not driver_id.strip():
            message = "driver_id is required to move a delivery IN_TRANSIT"
        elif driver_id != delivery.driver_id:
            message = f"Delivery {delivery.tracking_number} is assigned to another driver"
        else:
            return
        logger.warning(
            "delivery_driver_mismatch",
            extra={"delivery_id": delivery.id, "driver_id": driver_id},
        )
        raise ValidationError(
            message,
            field="driver_id",
            entity_type="Delivery",
            entity_id=delivery.id,
            current_status=delivery.status,
        )

    def _apply(self, delivery: Delivery, target: DeliveryStatus, actor: str, notes: str | None) -> None:
        self._check(delivery, target)
        current = delivery.status
        now = self.clock.now()
        delivery.status = target
        delivery.status_version += 1
        delivery.updated_at = now
        delivery.updated_by = actor
        delivery.history.append(
            DeliveryHistory(
                seq=len(delivery.history) + 1,
                action="STATUS",
                from_status=current,
                to_status=target,
                status_version=delivery.status_version,
                driver_id=delivery.driver_id,
                actor=actor,
                timestamp=now,
                notes=notes,
            )
        )
        self.session.flush()

        logger.info(
            "delivery_transitioned",
            extra={
                "delivery_id": delivery.id,
                "from_status": current.value,
                "to_status": target.value,
                "status_version": delivery.status_version,
            },
        )
        self._emit_changed(delivery, current, actor, notes)

    def _emit_changed(
        self,
        delivery: Delivery,
        old_status: DeliveryStatus | None,
        actor: str,
        notes: str | None,
    ) -> None:
        self._emit(
            DomainEvent(
                event_type=EventType.DELIVERY_STATUS_CHANGED,
                entity_id=str(delivery.id),
                old_status=old_status.value if old_status else None,
                new_status=delivery.status.value,
                actor=actor,
                occurred_at=self.clock.now(),
                detail={
                    "order_id": str(delivery.order_id),
                    "tracking_number": delivery.tracking_number,
                    "status_version": delivery.status_version,
                    "driver_id": delivery.driver_id,
                    "notes": notes,
                },
            )
        )
