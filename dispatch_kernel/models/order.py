"""
Module: dispatch_kernel.models.order
Responsibility: ORM persistence for orders, their item lines and their
    append-only status history.
Architecture position: Kernel > Models.  May import from db/ and domain/statuses.

Invariants enforced:
    - total_amount == sum(quantity * unit_price) (computed by the service at
      creation; items are append-only so it can never drift).
    - order_number is unique.
    - Optimistic versioning: ``version`` is the mapper's version_id_col, so
      any UPDATE issued against a stale read raises StaleDataError.
    - OrderItem and OrderHistory rows are append-only (db/immutability.py).

Audit relevance:
    ``order_history`` is the canonical record of who moved an order, when,
    and why.  The ``orders`` row is a cache: replaying ``order_history``
    from empty state reproduces its status.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from uuid import UUID

from sqlalchemy import CheckConstraint, Enum as SAEnum, ForeignKey, Index, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from dispatch_kernel.db.base import Base, TrackedBase
from dispatch_kernel.domain.dtos import HistoryRecord, OrderLine, OrderSnapshot
from dispatch_kernel.domain.statuses import OrderStatus


def _status_type(enum_cls):
    return SAEnum(enum_cls, native_enum=False, length=32, validate_strings=True)


class Order(TrackedBase):
    """
    Current-state snapshot of a customer order.

    Contract:
        Mutated only by OrderLifecycleManager.  Never deleted; terminal
        orders are archived by stamping ``archived_at``.
    """

    __tablename__ = "orders"

    __table_args__ = (
        UniqueConstraint("order_number", name="uq_order_number"),
        Index("idx_order_status", "status"),
        Index("idx_order_customer", "customer_id"),
        CheckConstraint("total_amount >= 0", name="ck_order_total_nonneg"),
    )

    order_number: Mapped[str] = mapped_column(String(32), nullable=False)
    customer_id: Mapped[str] = mapped_column(String(100), nullable=False)
    customer_name: Mapped[str | None] = mapped_column(String(200), nullable=True)
    status: Mapped[OrderStatus] = mapped_column(_status_type(OrderStatus), nullable=False)
    total_amount: Mapped[Decimal] = mapped_column(nullable=False)
    delivery_address: Mapped[str] = mapped_column(String(2000), nullable=False)
    archived_at: Mapped[datetime | None] = mapped_column(nullable=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    items: Mapped[list[OrderItem]] = relationship(
        back_populates="order",
        lazy="selectin",
        order_by="OrderItem.line_no",
    )
    history: Mapped[list[OrderHistory]] = relationship(
        back_populates="order",
        lazy="selectin",
        order_by="OrderHistory.seq",
    )

    __mapper_args__ = {"version_id_col": version}

    def __repr__(self) -> str:
        return f"<Order {self.order_number} {self.status.value}>"

    def to_dto(self) -> OrderSnapshot:
        """Convert ORM model to frozen domain DTO."""
        return OrderSnapshot(
            id=self.id,
            order_number=self.order_number,
            customer_id=self.customer_id,
            customer_name=self.customer_name,
            items=tuple(item.to_dto() for item in self.items),
            status=self.status,
            total_amount=self.total_amount,
            delivery_address=self.delivery_address,
            version=self.version,
            created_at=self.created_at,
            updated_at=self.updated_at,
            history=tuple(h.to_dto() for h in self.history),
        )


class OrderItem(Base):
    """One product line.  Immutable once the order exists."""

    __tablename__ = "order_items"
    __append_only__ = True

    __table_args__ = (
        UniqueConstraint("order_id", "line_no", name="uq_order_item_line"),
        CheckConstraint("quantity > 0", name="ck_order_item_qty_positive"),
        CheckConstraint("unit_price >= 0", name="ck_order_item_price_nonneg"),
    )

    order_id: Mapped[UUID] = mapped_column(ForeignKey("orders.id"), nullable=False)
    line_no: Mapped[int] = mapped_column(Integer, nullable=False)
    product_id: Mapped[str] = mapped_column(String(64), nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    unit_price: Mapped[Decimal] = mapped_column(nullable=False)

    order: Mapped[Order] = relationship(back_populates="items")

    def to_dto(self) -> OrderLine:
        return OrderLine(
            product_id=self.product_id,
            quantity=self.quantity,
            unit_price=self.unit_price,
        )


class OrderHistory(Base):
    """Append-only status transition record: {from, to, actor, timestamp, notes}."""

    __tablename__ = "order_history"
    __append_only__ = True

    __table_args__ = (
        UniqueConstraint("order_id", "seq", name="uq_order_history_seq"),
        Index("idx_order_history_order", "order_id"),
    )

    order_id: Mapped[UUID] = mapped_column(ForeignKey("orders.id"), nullable=False)
    seq: Mapped[int] = mapped_column(Integer, nullable=False)
    from_status: Mapped[OrderStatus | None] = mapped_column(_status_type(OrderStatus), nullable=True)
    to_status: Mapped[OrderStatus] = mapped_column(_status_type(OrderStatus), nullable=False)
    actor: Mapped[str] = mapped_column(String(100), nullable=False)
    timestamp: Mapped[datetime] = mapped_column(nullable=False)
    notes: Mapped[str | None] = mapped_column(String(2000), nullable=True)

    order: Mapped[Order] = relationship(back_populates="history")

    def to_dto(self) -> HistoryRecord:
        return HistoryRecord(
            from_status=self.from_status.value if self.from_status else None,
            to_status=self.to_status.value,
            actor=self.actor,
            timestamp=self.timestamp,
            notes=self.notes,
        )
