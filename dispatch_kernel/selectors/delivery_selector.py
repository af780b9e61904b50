"""
Module: dispatch_kernel.selectors.delivery_selector
Responsibility: Delivery reads for dispatchers and driver apps.
Architecture position: Kernel > Selectors.
"""

from uuid import UUID

from sqlalchemy import select

from dispatch_kernel.domain.dtos import DeliveryIssueRecord, DeliverySnapshot
from dispatch_kernel.domain.statuses import DeliveryStatus
from dispatch_kernel.models.delivery import Delivery, DeliveryIssue
from dispatch_kernel.selectors.base import BaseSelector


class DeliverySelector(BaseSelector[Delivery]):
    def get(self, delivery_id: UUID) -> DeliverySnapshot | None:
        delivery = self.session.get(Delivery, delivery_id)
        return delivery.to_dto() if delivery is not None else None

    def for_order(self, order_id: UUID) -> list[DeliverySnapshot]:
        """Every delivery attempt for an order, oldest first."""
        rows = self.session.execute(
            select(Delivery)
            .where(Delivery.order_id == order_id)
            .order_by(Delivery.created_at, Delivery.tracking_number)
        ).scalars()
        return [d.to_dto() for d in rows]

    def for_driver(
        self,
        driver_id: str,
        status: DeliveryStatus | str | None = None,
    ) -> list[DeliverySnapshot]:
        stmt = (
            select(Delivery)
            .where(Delivery.driver_id == driver_id)
            .order_by(Delivery.scheduled_time, Delivery.created_at)
        )
        if status is not None:
            stmt = stmt.where(Delivery.status == DeliveryStatus(status))
        return [d.to_dto() for d in self.session.execute(stmt).scalars()]

    def open_issues(self, delivery_id: UUID | None = None) -> list[DeliveryIssueRecord]:
        stmt = (
            select(DeliveryIssue)
            .where(DeliveryIssue.resolved.is_(False))
            .order_by(DeliveryIssue.reported_at)
        )
        if delivery_id is not None:
            stmt = stmt.where(DeliveryIssue.delivery_id == delivery_id)
        return [issue.to_dto() for issue in self.session.execute(stmt).scalars()]
