"""
Module: dispatch_kernel.models.delivery
Responsibility: ORM persistence for deliveries, their status history,
    driver-reported issues and captured proofs of delivery.
Architecture position: Kernel > Models.  May import from db/, domain/statuses
    and models/order (foreign key target only).

Invariants enforced:
    - At most one non-terminal delivery per order (partial unique index
      ``uq_delivery_active_order``; the service checks first, the index is
      the race backstop).
    - ``status_version`` moves by exactly one per accepted status change.
    - ``version`` is the optimistic-lock column; it also moves on driver
      reassignment, which ``status_version`` does not.
    - DeliveryHistory and ProofOfDelivery rows are append-only.
"""

from __future__ import annotations

from datetime import datetime
from uuid import UUID

from sqlalchemy import Boolean, Enum as SAEnum, ForeignKey, Index, Integer, String, UniqueConstraint, text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from dispatch_kernel.db.base import Base, TrackedBase
from dispatch_kernel.domain.dtos import DeliveryIssueRecord, DeliverySnapshot, HistoryRecord
from dispatch_kernel.domain.statuses import DeliveryStatus, ProofVerification

_ACTIVE_DELIVERY = text("status IN ('ASSIGNED', 'IN_TRANSIT', 'DELAYED')")


def _enum(enum_cls):
    return SAEnum(enum_cls, native_enum=False, length=32, validate_strings=True)


class Delivery(TrackedBase):
    """Current-state snapshot of one delivery attempt for an order."""

    __tablename__ = "deliveries"

    __table_args__ = (
        UniqueConstraint("tracking_number", name="uq_delivery_tracking_number"),
        Index("idx_delivery_order", "order_id"),
        Index("idx_delivery_driver_status", "driver_id", "status"),
        Index(
            "uq_delivery_active_order",
            "order_id",
            unique=True,
            sqlite_where=_ACTIVE_DELIVERY,
            postgresql_where=_ACTIVE_DELIVERY,
        ),
    )

    order_id: Mapped[UUID] = mapped_column(ForeignKey("orders.id"), nullable=False)
    tracking_number: Mapped[str] = mapped_column(String(32), nullable=False)
    driver_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    status: Mapped[DeliveryStatus] = mapped_column(_enum(DeliveryStatus), nullable=False)
    scheduled_time: Mapped[datetime | None] = mapped_column(nullable=True)
    start_time: Mapped[datetime | None] = mapped_column(nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(nullable=True)
    delivered_to: Mapped[str | None] = mapped_column(String(200), nullable=True)
    proof_id: Mapped[UUID | None] = mapped_column(nullable=True)
    status_version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    history: Mapped[list[DeliveryHistory]] = relationship(
        back_populates="delivery",
        lazy="selectin",
        order_by="DeliveryHistory.seq",
    )
    issues: Mapped[list[DeliveryIssue]] = relationship(
        back_populates="delivery",
        lazy="selectin",
        order_by="DeliveryIssue.reported_at",
    )

    __mapper_args__ = {"version_id_col": version}

    def __repr__(self) -> str:
        return f"<Delivery {self.tracking_number} {self.status.value} v{self.status_version}>"

    def to_dto(self) -> DeliverySnapshot:
        """Convert ORM model to frozen domain DTO."""
        return DeliverySnapshot(
            id=self.id,
            order_id=self.order_id,
            tracking_number=self.tracking_number,
            driver_id=self.driver_id,
            status=self.status,
            status_version=self.status_version,
            version=self.version,
            scheduled_time=self.scheduled_time,
            start_time=self.start_time,
            completed_at=self.completed_at,
            delivered_to=self.delivered_to,
            proof_id=self.proof_id,
            history=tuple(h.to_dto() for h in self.history),
        )


class DeliveryHistory(Base):
    """
    Append-only log of accepted delivery changes.

    ``action`` is ``STATUS`` for status transitions (from/to set) and
    ``REASSIGN`` for driver changes (from/to both equal the current status).
    Only STATUS rows advance ``status_version``.
    """

    __tablename__ = "delivery_history"
    __append_only__ = True

    __table_args__ = (
        UniqueConstraint("delivery_id", "seq", name="uq_delivery_history_seq"),
        Index("idx_delivery_history_delivery", "delivery_id"),
    )

    delivery_id: Mapped[UUID] = mapped_column(ForeignKey("deliveries.id"), nullable=False)
    seq: Mapped[int] = mapped_column(Integer, nullable=False)
    action: Mapped[str] = mapped_column(String(16), nullable=False, default="STATUS")
    from_status: Mapped[DeliveryStatus | None] = mapped_column(_enum(DeliveryStatus), nullable=True)
    to_status: Mapped[DeliveryStatus] = mapped_column(_enum(DeliveryStatus), nullable=False)
    status_version: Mapped[int] = mapped_column(Integer, nullable=False)
    driver_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    actor: Mapped[str] = mapped_column(String(100), nullable=False)
    timestamp: Mapped[datetime] = mapped_column(nullable=False)
    notes: Mapped[str | None] = mapped_column(String(2000), nullable=True)

    delivery: Mapped[Delivery] = relationship(back_populates="history")

    def to_dto(self) -> HistoryRecord:
        return HistoryRecord(
            from_status=self.from_status.value if self.from_status else None,
            to_status=self.to_status.value,
            actor=self.actor,
            timestamp=self.timestamp,
            notes=self.notes,
            action=self.action,
        )


class DeliveryIssue(Base):
    """Operational note raised from the road; only ``resolved`` ever changes."""

    __tablename__ = "delivery_issues"

    __table_args__ = (Index("idx_delivery_issue_open", "delivery_id", "resolved"),)

    delivery_id: Mapped[UUID] = mapped_column(ForeignKey("deliveries.id"), nullable=False)
    outcome: Mapped[DeliveryStatus] = mapped_column(_enum(DeliveryStatus), nullable=False)
    description: Mapped[str] = mapped_column(String(2000), nullable=False)
    reported_by: Mapped[str] = mapped_column(String(100), nullable=False)
    reported_at: Mapped[datetime] = mapped_column(nullable=False)
    resolved: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    resolved_by: Mapped[str | None] = mapped_column(String(100), nullable=True)
    resolved_at: Mapped[datetime | None] = mapped_column(nullable=True)

    delivery: Mapped[Delivery] = relationship(back_populates="issues")

    def to_dto(self) -> DeliveryIssueRecord:
        return DeliveryIssueRecord(
            id=self.id,
            delivery_id=self.delivery_id,
            outcome=self.outcome,
            description=self.description,
            reported_by=self.reported_by,
            reported_at=self.reported_at,
            resolved=self.resolved,
            resolved_by=self.resolved_by,
            resolved_at=self.resolved_at,
        )


class ProofOfDelivery(Base):
    """Evidence captured at hand-over.  Immutable once written."""

    __tablename__ = "delivery_proofs"
    __append_only__ = True

    __table_args__ = (UniqueConstraint("delivery_id", name="uq_delivery_proof_delivery"),)

    delivery_id: Mapped[UUID] = mapped_column(ForeignKey("deliveries.id"), nullable=False)
    delivered_to: Mapped[str] = mapped_column(String(200), nullable=False)
    signature_ref: Mapped[str | None] = mapped_column(String(500), nullable=True)
    photo_ref: Mapped[str | None] = mapped_column(String(500), nullable=True)
    notes: Mapped[str | None] = mapped_column(String(2000), nullable=True)
    verification: Mapped[ProofVerification] = mapped_column(_enum(ProofVerification), nullable=False)
    captured_by: Mapped[str] = mapped_column(String(100), nullable=False)
    captured_at: Mapped[datetime] = mapped_column(nullable=False)
