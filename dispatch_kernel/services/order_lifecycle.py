"""
OrderLifecycleManager -- order status state machine.

Responsibility:
    Creates orders and moves them through ORDER_TRANSITIONS, applying the
    stock consequences of each step through the InventoryLedger:

        -> CONFIRMED   reserve every item (all or nothing)
        -> CANCELED    release whatever the order still holds and cancel
                       its active delivery
        -> DELIVERED   consume the reservation (OUT movements)

Architecture position:
    Kernel > Services -- imperative shell.  Called by the orchestrator for
    caller-initiated transitions and by DeliveryManager for the two
    transitions a delivery drives (OUT_FOR_DELIVERY on start, DELIVERED
    on completion).

Invariants enforced:
    - A transition not listed in ORDER_TRANSITIONS raises
      InvalidTransitionError and changes nothing (status, history, stock).
    - DELIVERED is never accepted from a caller; only mark_delivered()
      enters it.
    - Each accepted transition appends exactly one order_history row and
      emits one OrderStatusChanged event.
    - Terminal orders are archived (``archived_at``), never deleted.

Failure modes:
    - ValidationError: malformed order input or unknown target status.
    - NotFoundError: unknown order id.
    - InvalidTransitionError: target unreachable from current status.
    - InsufficientStockError: confirmation short on stock; carries the
      order's unchanged status.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from typing import Any
from uuid import UUID

from dispatch_kernel.domain.dtos import OrderLine, OrderSnapshot, StockRequest
from dispatch_kernel.domain.events import DomainEvent, EventType
from dispatch_kernel.domain.order_rules import compute_total, normalize_order_lines
from dispatch_kernel.domain.statuses import (
    ORDER_INTERNAL_TARGETS,
    ORDER_RESERVED_STATES,
    ORDER_TRANSITIONS,
    OrderStatus,
    can_transition,
    is_terminal,
)
from dispatch_kernel.exceptions import (
    InsufficientStockError,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)
from dispatch_kernel.logging_config import get_logger
from dispatch_kernel.models.order import Order, OrderHistory, OrderItem
from dispatch_kernel.selectors.inventory_selector import InventorySelector
from dispatch_kernel.services.base import BaseService, as_uuid, require_text
from dispatch_kernel.services.inventory_ledger import InventoryLedger
from dispatch_kernel.utils.identifiers import generate_order_number

logger = get_logger("services.order_lifecycle")


def coerce_order_status(value: OrderStatus | str) -> OrderStatus:
    try:
        return OrderStatus(value)
    except ValueError:
        raise ValidationError(f"Unknown order status {value!r}", field="target")


class OrderLifecycleManager(BaseService[Order]):
    """
    Order creation and status transitions.

    Contract:
        Public methods return OrderSnapshot DTOs.  ``load`` is the one
        method handing out the ORM row, for sibling services sharing the
        same session.
    """

    def __init__(self, session, clock=None, events=None, ledger: InventoryLedger | None = None):
        super().__init__(session, clock, events)
        self.ledger = ledger or InventoryLedger(session, self.clock, self.events)

    def load(self, order_id: UUID | str, *, lock: bool = False) -> Order:
        order_id = as_uuid(order_id, "Order")
        order = self.session.get(Order, order_id, with_for_update=lock)
        if order is None:
            raise NotFoundError("Order", order_id)
        return order

    def get(self, order_id: UUID | str) -> OrderSnapshot:
        return self.load(order_id).to_dto()

    def create_order(
        self,
        customer_id: str,
        items: Iterable[OrderLine | Mapping[str, Any]],
        delivery_address: str,
        *,
        actor: str,
        customer_name: str | None = None,
        notes: str | None = None,
    ) -> OrderSnapshot:
        """Create a PENDING order with its opening history entry."""
        customer_id = require_text(customer_id, "customer_id")
        delivery_address = require_text(delivery_address, "delivery_address")
        if customer_name is not None:
            customer_name = require_text(customer_name, "customer_name")
        lines = normalize_order_lines(items)

        now = self.clock.now()
        order = Order(
            order_number=generate_order_number(now),
            customer_id=customer_id,
            customer_name=customer_name,
            status=OrderStatus.PENDING,
            total_amount=compute_total(lines),
            delivery_address=delivery_address,
            created_at=now,
            updated_at=now,
            created_by=actor,
        )
        order.items = [
            OrderItem(
                line_no=line_no,
                product_id=line.product_id,
                quantity=line.quantity,
                unit_price=line.unit_price,
            )
            for line_no, line in enumerate(lines, start=1)
        ]
        order.history = [
            OrderHistory(
                seq=1,
                from_status=None,
                to_status=OrderStatus.PENDING,
                actor=actor,
                timestamp=now,
                notes=notes,
            )
        ]
        self.session.add(order)
        self.session.flush()

        logger.info(
            "order_created",
            extra={
                "order_id": order.id,
                "order_number": order.order_number,
                "customer_id": customer_id,
                "line_count": len(lines),
                "total_amount": order.total_amount,
            },
        )
        self._emit_changed(order, None, actor, notes)
        return order.to_dto()

    def transition(
        self,
        order_id: UUID | str,
        target: OrderStatus | str,
        *,
        actor: str,
        notes: str | None = None,
    ) -> OrderSnapshot:
        """
        Caller-initiated transition.

        Raises:
            InvalidTransitionError: unreachable target, or DELIVERED (which
                only a completed delivery may set).
        """
        target = coerce_order_status(target)
        order = self.load(order_id, lock=True)
        if target in ORDER_INTERNAL_TARGETS:
            raise InvalidTransitionError(
                "Order",
                order.id,
                order.status,
                target,
                reason="set automatically when the delivery is completed",
            )
        return self._apply(order, target, actor, notes).to_dto()

    def mark_out_for_delivery(self, order_id: UUID, *, actor: str) -> OrderSnapshot:
        """Delivery started.  No-op if the order is already out for delivery."""
        order = self.load(order_id, lock=True)
        if order.status == OrderStatus.OUT_FOR_DELIVERY:
            return order.to_dto()
        return self._apply(order, OrderStatus.OUT_FOR_DELIVERY, actor, "delivery started").to_dto()

    def mark_delivered(self, order_id: UUID, *, actor: str, notes: str | None = None) -> OrderSnapshot:
        """Delivery completed: consume the reservation and close the order."""
        order = self.load(order_id, lock=True)
        return self._apply(order, OrderStatus.DELIVERED, actor, notes or "delivery completed").to_dto()

    # ------------------------------------------------------------------

    def _held_requests(self, order: Order) -> tuple[StockRequest, ...]:
        held = InventorySelector(self.session).held_for_order(order.id)
        return tuple(StockRequest(product_id=p, quantity=q) for p, q in held.items())

    def _apply(self, order: Order, target: OrderStatus, actor: str, notes: str | None) -> Order:
        current = order.status
        if not can_transition(ORDER_TRANSITIONS, current, target):
            logger.info(
                "order_transition_rejected",
                extra={
                    "order_id": order.id,
                    "from_status": current.value,
                    "to_status": target.value,
                },
            )
            raise InvalidTransitionError("Order", order.id, current, target)

        if target == OrderStatus.CONFIRMED:
            lines = [item.to_dto() for item in order.items]
            try:
                self.ledger.reserve(order.id, lines, actor=actor)
            except InsufficientStockError as exc:
                raise InsufficientStockError(
                    exc.shortages,
                    entity_type="Order",
                    entity_id=order.id,
                    current_status=current,
                ) from exc
        elif target == OrderStatus.CANCELED:
            if current in ORDER_RESERVED_STATES:
                held = self._held_requests(order)
                if held:
                    self.ledger.release(order.id, held, actor=actor)
            self._cancel_active_delivery(order, actor, notes)
        elif target == OrderStatus.DELIVERED:
            held = self._held_requests(order)
            if held:
                self.ledger.consume(
                    order.id,
                    held,
                    actor=actor,
                    reason=f"order {order.order_number} delivered",
                )

        now = self.clock.now()
        order.status = target
        order.updated_at = now
        order.updated_by = actor
        if is_terminal(ORDER_TRANSITIONS, target):
            order.archived_at = now
        order.history.append(
            OrderHistory(
                seq=len(order.history) + 1,
                from_status=current,
                to_status=target,
                actor=actor,
                timestamp=now,
                notes=notes,
            )
        )
        self.session.flush()

        logger.info(
            "order_transitioned",
            extra={
                "order_id": order.id,
                "order_number": order.order_number,
                "from_status": current.value,
                "to_status": target.value,
            },
        )
        self._emit_changed(order, current, actor, notes)
        return order

    def _cancel_active_delivery(self, order: Order, actor: str, notes: str | None) -> None:
        # Imported here: DeliveryManager depends on this module
        from dispatch_kernel.services.delivery_manager import DeliveryManager

        deliveries = DeliveryManager(self.session, self.clock, self.events, orders=self)
        deliveries.cancel_active_for_order(order.id, actor=actor, reason=notes or "order canceled")

    def _emit_changed(
        self,
        order: Order,
        old_status: OrderStatus | None,
        actor: str,
        notes: str | None,
    ) -> None:
        self._emit(
            DomainEvent(
                event_type=EventType.ORDER_STATUS_CHANGED,
                entity_id=str(order.id),
                old_status=old_status.value if old_status else None,
                new_status=order.status.value,
                actor=actor,
                occurred_at=self.clock.now(),
                detail={"order_number": order.order_number, "notes": notes},
            )
        )
