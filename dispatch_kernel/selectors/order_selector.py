"""
Module: dispatch_kernel.selectors.order_selector
Responsibility: Order reads for staff screens (by id, by number, by status).
Architecture position: Kernel > Selectors.
"""

from uuid import UUID

from sqlalchemy import select

from dispatch_kernel.domain.dtos import HistoryRecord, OrderSnapshot
from dispatch_kernel.domain.statuses import OrderStatus
from dispatch_kernel.models.order import Order, OrderHistory
from dispatch_kernel.selectors.base import BaseSelector


class OrderSelector(BaseSelector[Order]):
    def get(self, order_id: UUID) -> OrderSnapshot | None:
        order = self.session.get(Order, order_id)
        return order.to_dto() if order is not None else None

    def by_number(self, order_number: str) -> OrderSnapshot | None:
        order = self.session.execute(
            select(Order).where(Order.order_number == order_number)
        ).scalar_one_or_none()
        return order.to_dto() if order is not None else None

    def list_by_status(
        self,
        status: OrderStatus | str | None = None,
        *,
        include_archived: bool = False,
    ) -> list[OrderSnapshot]:
        stmt = select(Order).order_by(Order.created_at, Order.order_number)
        if status is not None:
            stmt = stmt.where(Order.status == OrderStatus(status))
        if not include_archived:
            stmt = stmt.where(Order.archived_at.is_(None))
        return [order.to_dto() for order in self.session.execute(stmt).scalars()]

    def history(self, order_id: UUID) -> list[HistoryRecord]:
        rows = self.session.execute(
            select(OrderHistory)
            .where(OrderHistory.order_id == order_id)
            .order_by(OrderHistory.seq)
        ).scalars()
        return [row.to_dto() for row in rows]
