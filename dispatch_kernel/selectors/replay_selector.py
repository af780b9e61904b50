"""
Module: dispatch_kernel.selectors.replay_selector
Responsibility: Rebuild each snapshot row from its append-only log and compare.

    order_history     -> orders.status
    delivery_history  -> deliveries.status, status_version, driver_id
    task_history      -> tasks.status
    stock_ledger /
    stock_reservations -> stock_items.on_hand, reserved

Architecture position: Kernel > Selectors.  Read-only; used by the
    orchestrator's verify_ledger() and the CLI.

A replay walks the log from empty state.  Every entry must continue from
where the previous one left off and follow the transition table; the
final state must equal the cached row.  Any break is reported, never
repaired here.
"""

from collections.abc import Iterable
from dataclasses import dataclass, field
from enum import Enum
from uuid import UUID

from sqlalchemy import select

from dispatch_kernel.domain.statuses import (
    DELIVERY_TRANSITIONS,
    ORDER_TRANSITIONS,
    TASK_TRANSITIONS,
    can_transition,
)
from dispatch_kernel.models.delivery import Delivery
from dispatch_kernel.models.order import Order
from dispatch_kernel.models.task import Task
from dispatch_kernel.selectors.base import BaseSelector
from dispatch_kernel.selectors.inventory_selector import InventorySelector


@dataclass(frozen=True)
class ReplayResult:
    entity_type: str
    entity_id: str
    cached: dict[str, object]
    replayed: dict[str, object]
    problems: tuple[str, ...] = field(default_factory=tuple)

    @property
    def consistent(self) -> bool:
        return not self.problems and self.cached == self.replayed


def _walk(
    rows: Iterable,
    table: dict[Enum, frozenset[Enum]],
    problems: list[str],
) -> Enum | None:
    state = None
    for row in rows:
        if row.from_status != state:
            problems.append(
                f"seq {row.seq}: starts from {getattr(row.from_status, 'value', None)}, "
                f"log was at {getattr(state, 'value', None)}"
            )
        elif state is not None and not can_transition(table, state, row.to_status):
            problems.append(f"seq {row.seq}: {state.value} -> {row.to_status.value} not allowed")
        state = row.to_status
    return state


class ReplaySelector(BaseSelector[Order]):
    def replay_order(self, order: Order) -> ReplayResult:
        problems: list[str] = []
        status = _walk(order.history, ORDER_TRANSITIONS, problems)
        return ReplayResult(
            "Order",
            str(order.id),
            cached={"status": order.status},
            replayed={"status": status},
            problems=tuple(problems),
        )

    def replay_delivery(self, delivery: Delivery) -> ReplayResult:
        problems: list[str] = []
        status_rows = [h for h in delivery.history if h.action == "STATUS"]
        status = _walk(status_rows, DELIVERY_TRANSITIONS, problems)
        driver = None
        for row in delivery.history:
            driver = row.driver_id if row.action == "REASSIGN" or row.seq == 1 else driver
        return ReplayResult(
            "Delivery",
            str(delivery.id),
            cached={
                "status": delivery.status,
                "status_version": delivery.status_version,
                "driver_id": delivery.driver_id,
            },
            replayed={
                "status": status,
                "status_version": len(status_rows) - 1,
                "driver_id": driver,
            },
            problems=tuple(problems),
        )

    def replay_task(self, task: Task) -> ReplayResult:
        problems: list[str] = []
        status = _walk(task.history, TASK_TRANSITIONS, problems)
        return ReplayResult(
            "Task",
            str(task.id),
            cached={"status": task.status},
            replayed={"status": status},
            problems=tuple(problems),
        )

    def replay_stock(self, product_id: str) -> ReplayResult:
        check = InventorySelector(self.session).verify(product_id)
        if check is None:
            return ReplayResult("StockItem", product_id, {}, {}, ("unknown product",))
        problems = []
        if not 0 <= check.cached_reserved <= check.cached_on_hand:
            problems.append(f"reserved {check.cached_reserved} outside 0..{check.cached_on_hand}")
        return ReplayResult(
            "StockItem",
            product_id,
            cached={"on_hand": check.cached_on_hand, "reserved": check.cached_reserved},
            replayed={"on_hand": check.replayed_on_hand, "reserved": check.replayed_reserved},
            problems=tuple(problems),
        )

    def replay_entity(self, entity_type: str, entity_id: UUID | str) -> ReplayResult | None:
        if entity_type == "StockItem":
            return self.replay_stock(str(entity_id))
        model, replay = {
            "Order": (Order, self.replay_order),
            "Delivery": (Delivery, self.replay_delivery),
            "Task": (Task, self.replay_task),
        }[entity_type]
        row = self.session.get(model, entity_id if isinstance(entity_id, UUID) else UUID(str(entity_id)))
        return replay(row) if row is not None else None

    def verify_all(self) -> list[ReplayResult]:
        """Replay every snapshot row; returns only the inconsistent ones."""
        results: list[ReplayResult] = []
        for model, replay in (
            (Order, self.replay_order),
            (Delivery, self.replay_delivery),
            (Task, self.replay_task),
        ):
            for row in self.session.execute(select(model)).scalars():
                results.append(replay(row))
        for check in InventorySelector(self.session).verify_all():
            results.append(self.replay_stock(check.product_id))
        return [r for r in results if not r.consistent]
