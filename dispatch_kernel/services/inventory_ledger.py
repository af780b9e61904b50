"""
InventoryLedger -- the single arbiter of stock quantities.

Responsibility:
    Owns every change to ``on_hand`` and ``reserved``.  Reservations,
    releases and consumption come from the order lifecycle; manual IN /
    OUT / ADJUST movements come from admins.  No other component computes
    or mutates stock figures.

Architecture position:
    Kernel > Services -- imperative shell.  Called by OrderLifecycleManager
    and by the orchestrator for admin stock movements.

Invariants enforced:
    - available == on_hand - reserved, and 0 <= reserved <= on_hand at all
      times (also a CHECK constraint on stock_items).
    - on_hand equals the sum of committed movement deltas in stock_ledger.
    - A multi-item reservation is all-or-nothing: every shortfall is
      collected first and nothing is written if any product is short.
    - Stock rows are locked in product_id order (SELECT ... FOR UPDATE on
      PostgreSQL) so two orders with overlapping items cannot deadlock.
      Version columns catch the same race on SQLite.

Failure modes:
    - InsufficientStockError: reservation shortfall, OUT below zero or
      below the reserved quantity, ADJUST below the reserved quantity.
    - NotFoundError: movement against an unregistered product.
    - ValidationError: malformed quantities, empty reasons, duplicate
      registration, releasing more than is held.

Audit relevance:
    Every quantity change appends a stock_ledger or stock_reservations
    row.  StockBelowReorderPoint fires when available crosses from above
    the reorder point to at-or-below it.
"""

from __future__ import annotations

from collections.abc import Iterable
from uuid import UUID

from sqlalchemy import select

from dispatch_kernel.domain.dtos import OrderLine, StockLevel, StockMovementRecord, StockRequest
from dispatch_kernel.domain.events import DomainEvent, EventType
from dispatch_kernel.domain.order_rules import stock_requests
from dispatch_kernel.domain.statuses import MovementType, ReservationKind
from dispatch_kernel.exceptions import InsufficientStockError, NotFoundError, ValidationError
from dispatch_kernel.logging_config import get_logger
from dispatch_kernel.models.inventory import ReservationEntry, StockItem, StockMovement
from dispatch_kernel.selectors.inventory_selector import InventorySelector, LedgerVerification
from dispatch_kernel.services.base import BaseService

logger = get_logger("services.inventory_ledger")


def _require_quantity(quantity: object, *, allow_zero: bool = False) -> int:
    if isinstance(quantity, bool) or not isinstance(quantity, int):
        raise ValidationError("Quantity must be an integer", field="quantity")
    if quantity < 0 or (quantity == 0 and not allow_zero):
        raise ValidationError(
            "Quantity must be positive" if not allow_zero else "Quantity must be >= 0",
            field="quantity",
        )
    return quantity


class InventoryLedger(BaseService[StockItem]):
    """
    Stock reservation, consumption and movement service.

    Non-goals:
        - Does NOT know about order statuses; callers decide when to
          reserve, release or consume.
    """

    def _lock(self, product_ids: Iterable[str]) -> dict[str, StockItem]:
        ordered = sorted(set(product_ids))
        rows = self.session.execute(
            select(StockItem)
            .where(StockItem.product_id.in_(ordered))
            .order_by(StockItem.product_id)
            .with_for_update()
        ).scalars()
        return {row.product_id: row for row in rows}

    def _lock_one(self, product_id: str) -> StockItem:
        row = self._lock([product_id]).get(product_id)
        if row is None:
            raise NotFoundError("StockItem", product_id)
        return row

    def _touch(self, row: StockItem, actor: str) -> None:
        row.updated_at = self.clock.now()
        row.updated_by = actor

    def _check_reorder_point(self, row: StockItem, available_before: int, actor: str) -> None:
        if available_before > row.reorder_point >= row.available:
            self._emit_low_stock(row, actor)

    def _emit_low_stock(self, row: StockItem, actor: str) -> None:
        logger.warning(
            "stock_below_reorder_point",
            extra={
                "product_id": row.product_id,
                "available": row.available,
                "reorder_point": row.reorder_point,
            },
        )
        self._emit(
            DomainEvent(
                event_type=EventType.STOCK_BELOW_REORDER_POINT,
                entity_id=row.product_id,
                old_status=None,
                new_status=None,
                actor=actor,
                occurred_at=self.clock.now(),
                detail={
                    "on_hand": row.on_hand,
                    "reserved": row.reserved,
                    "available": row.available,
                    "reorder_point": row.reorder_point,
                },
            )
        )

    def _append_movement(
        self,
        row: StockItem,
        movement_type: MovementType,
        delta: int,
        reason: str,
        actor: str,
        order_id: UUID | None = None,
    ) -> StockMovement:
        row.on_hand += delta
        row.last_seq += 1
        movement = StockMovement(
            product_id=row.product_id,
            seq=row.last_seq,
            type=movement_type,
            quantity=delta,
            reason=reason,
            resulting_on_hand=row.on_hand,
            order_id=order_id,
            actor=actor,
            timestamp=self.clock.now(),
        )
        self.session.add(movement)
        return movement

    def _append_reservation(
        self,
        row: StockItem,
        order_id: UUID,
        kind: ReservationKind,
        quantity: int,
        actor: str,
    ) -> None:
        self.session.add(
            ReservationEntry(
                product_id=row.product_id,
                order_id=order_id,
                kind=kind,
                quantity=quantity,
                actor=actor,
                timestamp=self.clock.now(),
            )
        )

    # ------------------------------------------------------------------
    # Catalog
    # ------------------------------------------------------------------

    def register_product(
        self,
        product_id: str,
        *,
        actor: str,
        reorder_point: int = 0,
        initial_on_hand: int = 0,
        name: str | None = None,
    ) -> StockLevel:
        """
        Create the stock row for a product.

        A non-zero ``initial_on_hand`` is booked as an IN movement so the
        ledger sum still reproduces on_hand.
        """
        if not isinstance(product_id, str) or not product_id.strip():
            raise ValidationError("product_id is required", field="product_id")
        product_id = product_id.strip()
        _require_quantity(reorder_point, allow_zero=True)
        _require_quantity(initial_on_hand, allow_zero=True)

        existing = self.session.execute(
            select(StockItem.id).where(StockItem.product_id == product_id)
        ).scalar_one_or_none()
        if existing is not None:
            raise ValidationError(
                f"Product {product_id} is already registered",
                field="product_id",
                entity_type="StockItem",
                entity_id=product_id,
            )

        now = self.clock.now()
        row = StockItem(
            product_id=product_id,
            name=name,
            on_hand=0,
            reserved=0,
            reorder_point=reorder_point,
            last_seq=0,
            created_at=now,
            updated_at=now,
            created_by=actor,
        )
        self.session.add(row)
        if initial_on_hand:
            self._append_movement(row, MovementType.IN, initial_on_hand, "initial stock", actor)
        self.session.flush()

        logger.info(
            "product_registered",
            extra={
                "product_id": product_id,
                "on_hand": row.on_hand,
                "reorder_point": reorder_point,
            },
        )
        return row.to_dto()

    def set_reorder_point(self, product_id: str, reorder_point: int, *, actor: str) -> StockLevel:
        _require_quantity(reorder_point, allow_zero=True)
        row = self._lock_one(product_id)
        previous = row.reorder_point
        row.reorder_point = reorder_point
        self._touch(row, actor)
        # Raising the threshold to or above current availability counts as crossing it
        if previous < row.available <= reorder_point:
            self._emit_low_stock(row, actor)
        self.session.flush()
        return row.to_dto()

    # ------------------------------------------------------------------
    # Reservations
    # ------------------------------------------------------------------

    def reserve(
        self,
        order_id: UUID,
        items: Iterable[OrderLine | StockRequest],
        *,
        actor: str,
    ) -> tuple[StockLevel, ...]:
        """
        Hold stock for every item of an order, or for none of them.

        Raises:
            InsufficientStockError: listing every short product with the
                quantity requested and the quantity available.
        """
        requests = stock_requests(items)
        rows = self._lock(r.product_id for r in requests)

        shortages = []
        for req in requests:
            row = rows.get(req.product_id)
            available = row.available if row is not None else 0
            if available < req.quantity:
                shortages.append({
                    "product_id": req.product_id,
                    "requested": req.quantity,
                    "available": available,
                })
        if shortages:
            logger.info(
                "stock_reservation_rejected",
                extra={"order_id": order_id, "shortages": shortages},
            )
            raise InsufficientStockError(shortages, entity_type="Order", entity_id=order_id)

        for req in requests:
            row = rows[req.product_id]
            available_before = row.available
            row.reserved += req.quantity
            self._touch(row, actor)
            self._append_reservation(row, order_id, ReservationKind.RESERVE, req.quantity, actor)
            self._check_reorder_point(row, available_before, actor)

        self.session.flush()
        logger.info(
            "stock_reserved",
            extra={
                "order_id": order_id,
                "items": {r.product_id: r.quantity for r in requests},
            },
        )
        return tuple(rows[r.product_id].to_dto() for r in requests)

    def _held(self, order_id: UUID, requests: tuple[StockRequest, ...]) -> dict[str, StockItem]:
        rows = self._lock(r.product_id for r in requests)
        held = InventorySelector(self.session).held_for_order(order_id)
        for req in requests:
            if req.product_id not in rows:
                raise NotFoundError("StockItem", req.product_id)
            if held.get(req.product_id, 0) < req.quantity:
                raise ValidationError(
                    f"Order {order_id} holds {held.get(req.product_id, 0)} of "
                    f"{req.product_id}, cannot release {req.quantity}",
                    field="quantity",
                    entity_type="StockItem",
                    entity_id=req.product_id,
                )
        return rows

    def release(
        self,
        order_id: UUID,
        items: Iterable[OrderLine | StockRequest],
        *,
        actor: str,
    ) -> tuple[StockLevel, ...]:
        """Return an order's held quantities to available stock."""
        requests = stock_requests(items)
        rows = self._held(order_id, requests)
        for req in requests:
            row = rows[req.product_id]
            row.reserved -= req.quantity
            self._touch(row, actor)
            self._append_reservation(row, order_id, ReservationKind.RELEASE, req.quantity, actor)

        self.session.flush()
        logger.info(
            "stock_released",
            extra={
                "order_id": order_id,
                "items": {r.product_id: r.quantity for r in requests},
            },
        )
        return tuple(rows[r.product_id].to_dto() for r in requests)

    def consume(
        self,
        order_id: UUID,
        items: Iterable[OrderLine | StockRequest],
        *,
        actor: str,
        reason: str,
    ) -> tuple[StockMovementRecord, ...]:
        """
        Turn an order's reservation into outbound movements.

        Each product gets a CONSUME reservation entry and an OUT ledger
        movement; available is unchanged (both on_hand and reserved drop).
        """
        requests = stock_requests(items)
        rows = self._held(order_id, requests)
        movements = []
        for req in requests:
            row = rows[req.product_id]
            row.reserved -= req.quantity
            self._touch(row, actor)
            self._append_reservation(row, order_id, ReservationKind.CONSUME, req.quantity, actor)
            movements.append(
                self._append_movement(row, MovementType.OUT, -req.quantity, reason, actor, order_id)
            )

        self.session.flush()
        logger.info(
            "stock_consumed",
            extra={
                "order_id": order_id,
                "items": {r.product_id: r.quantity for r in requests},
            },
        )
        return tuple(m.to_dto() for m in movements)

    # ------------------------------------------------------------------
    # Movements
    # ------------------------------------------------------------------

    def commit_movement(
        self,
        product_id: str,
        movement_type: MovementType | str,
        quantity: int,
        reason: str,
        *,
        actor: str,
    ) -> StockMovementRecord:
        """
        Apply one admin stock movement.

        IN adds ``quantity``; OUT subtracts it; ADJUST sets on_hand to
        ``quantity`` (a stock count) and records the signed difference.
        """
        try:
            movement_type = MovementType(movement_type)
        except ValueError:
            raise ValidationError(f"Unknown movement type {movement_type!r}", field="type")
        if not isinstance(reason, str) or not reason.strip():
            raise ValidationError("A movement needs a reason", field="reason")
        _require_quantity(quantity, allow_zero=movement_type == MovementType.ADJUST)

        row = self._lock_one(product_id)
        available_before = row.available

        if movement_type == MovementType.IN:
            delta = quantity
        elif movement_type == MovementType.OUT:
            if quantity > row.available:
                raise InsufficientStockError(
                    [{
                        "product_id": product_id,
                        "requested": quantity,
                        "available": row.available,
                    }],
                    entity_type="StockItem",
                    entity_id=product_id,
                )
            delta = -quantity
        else:
            if quantity < row.reserved:
                raise InsufficientStockError(
                    [{
                        "product_id": product_id,
                        "requested": row.reserved,
                        "available": quantity,
                    }],
                    entity_type="StockItem",
                    entity_id=product_id,
                )
            delta = quantity - row.on_hand

        movement = self._append_movement(row, movement_type, delta, reason.strip(), actor)
        self._touch(row, actor)
        self._check_reorder_point(row, available_before, actor)
        self.session.flush()

        logger.info(
            "stock_movement_committed",
            extra={
                "product_id": product_id,
                "movement_type": movement_type.value,
                "delta": delta,
                "resulting_on_hand": row.on_hand,
                "seq": movement.seq,
            },
        )
        return movement.to_dto()

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def level(self, product_id: str) -> StockLevel:
        level = InventorySelector(self.session).level(product_id)
        if level is None:
            raise NotFoundError("StockItem", product_id)
        return level

    def available(self, product_id: str) -> int:
        return self.level(product_id).available

    def replay_on_hand(self, product_id: str) -> int:
        return InventorySelector(self.session).replay_on_hand(product_id)

    def verify(self, product_id: str) -> LedgerVerification:
        result = InventorySelector(self.session).verify(product_id)
        if result is None:
            raise NotFoundError("StockItem", product_id)
        if not result.ok:
            logger.error("stock_ledger_mismatch", extra=vars(result))
        return result
