"""
Module: dispatch_kernel.models.inventory
Responsibility: ORM persistence for per-product stock positions, the
    append-only stock movement ledger and the append-only reservation log.
Architecture position: Kernel > Models.  Written ONLY by InventoryLedger.

Invariants enforced:
    - 0 <= reserved <= on_hand (CHECK constraint ``ck_stock_reserved_bounds``).
    - on_hand == sum of movement deltas in ``stock_ledger`` for the product.
    - reserved == RESERVE - RELEASE - CONSUME in ``stock_reservations``.
    - Ledger ``seq`` is per-product, gap-free and monotonic; the UNIQUE
      (product_id, seq) constraint turns a lost race into IntegrityError.

Audit relevance:
    ``stock_items`` is a cache.  ``stock_ledger`` is the record of truth for
    on-hand quantities; ``stock_reservations`` for holds.
"""

from datetime import datetime
from uuid import UUID

from sqlalchemy import CheckConstraint, Enum as SAEnum, Index, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from dispatch_kernel.db.base import Base, TrackedBase
from dispatch_kernel.domain.dtos import StockLevel, StockMovementRecord
from dispatch_kernel.domain.statuses import MovementType, ReservationKind


class StockItem(TrackedBase):
    """Current stock position of one product."""

    __tablename__ = "stock_items"

    __table_args__ = (
        UniqueConstraint("product_id", name="uq_stock_item_product"),
        CheckConstraint("reserved >= 0 AND reserved <= on_hand", name="ck_stock_reserved_bounds"),
        CheckConstraint("reorder_point >= 0", name="ck_stock_reorder_point_nonneg"),
    )

    product_id: Mapped[str] = mapped_column(String(64), nullable=False)
    name: Mapped[str | None] = mapped_column(String(200), nullable=True)
    on_hand: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    reserved: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    reorder_point: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_seq: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}

    @property
    def available(self) -> int:
        return self.on_hand - self.reserved

    def __repr__(self) -> str:
        return f"<StockItem {self.product_id} on_hand={self.on_hand} reserved={self.reserved}>"

    def to_dto(self) -> StockLevel:
        return StockLevel(
            product_id=self.product_id,
            on_hand=self.on_hand,
            reserved=self.reserved,
            reorder_point=self.reorder_point,
        )


class StockMovement(Base):
    """
    One committed change to on-hand quantity.

    ``quantity`` is always the signed delta applied to on_hand: positive for
    IN, negative for OUT, either sign for ADJUST.  Summing it per product
    reproduces on_hand.
    """

    __tablename__ = "stock_ledger"
    __append_only__ = True

    __table_args__ = (
        UniqueConstraint("product_id", "seq", name="uq_stock_ledger_seq"),
        Index("idx_stock_ledger_product", "product_id"),
    )

    product_id: Mapped[str] = mapped_column(String(64), nullable=False)
    seq: Mapped[int] = mapped_column(Integer, nullable=False)
    type: Mapped[MovementType] = mapped_column(
        SAEnum(MovementType, native_enum=False, length=16, validate_strings=True),
        nullable=False,
    )
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    reason: Mapped[str] = mapped_column(String(2000), nullable=False)
    resulting_on_hand: Mapped[int] = mapped_column(Integer, nullable=False)
    order_id: Mapped[UUID | None] = mapped_column(nullable=True)
    actor: Mapped[str] = mapped_column(String(100), nullable=False)
    timestamp: Mapped[datetime] = mapped_column(nullable=False)

    def to_dto(self) -> StockMovementRecord:
        return StockMovementRecord(
            id=self.id,
            product_id=self.product_id,
            type=self.type,
            quantity=self.quantity,
            reason=self.reason,
            timestamp=self.timestamp,
            resulting_on_hand=self.resulting_on_hand,
            seq=self.seq,
        )


class ReservationEntry(Base):
    """One hold placed, released or consumed against an order."""

    __tablename__ = "stock_reservations"
    __append_only__ = True

    __table_args__ = (
        Index("idx_stock_reservation_product", "product_id"),
        Index("idx_stock_reservation_order", "order_id"),
        CheckConstraint("quantity > 0", name="ck_stock_reservation_qty_positive"),
    )

    product_id: Mapped[str] = mapped_column(String(64), nullable=False)
    order_id: Mapped[UUID] = mapped_column(nullable=False)
    kind: Mapped[ReservationKind] = mapped_column(
        SAEnum(ReservationKind, native_enum=False, length=16, validate_strings=True),
        nullable=False,
    )
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    actor: Mapped[str] = mapped_column(String(100), nullable=False)
    timestamp: Mapped[datetime] = mapped_column(nullable=False)
