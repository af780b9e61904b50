"""
Module: dispatch_kernel.selectors.inventory_selector
Responsibility: Read access to stock positions, the movement ledger and the
    reservation log, plus replay of both logs for ledger verification.
Architecture position: Kernel > Selectors.

Invariants checked (never enforced here):
    - on_hand == sum(stock_ledger.quantity) for the product.
    - reserved == RESERVE - RELEASE - CONSUME over stock_reservations.
"""

from dataclasses import dataclass
from uuid import UUID

from sqlalchemy import case, func, select

from dispatch_kernel.domain.dtos import StockLevel, StockMovementRecord
from dispatch_kernel.domain.statuses import ReservationKind
from dispatch_kernel.models.inventory import ReservationEntry, StockItem, StockMovement
from dispatch_kernel.selectors.base import BaseSelector


@dataclass(frozen=True)
class LedgerVerification:
    """Cached stock position compared with the position replayed from the logs."""

    product_id: str
    cached_on_hand: int
    replayed_on_hand: int
    cached_reserved: int
    replayed_reserved: int

    @property
    def ok(self) -> bool:
        return (
            self.cached_on_hand == self.replayed_on_hand
            and self.cached_reserved == self.replayed_reserved
            and 0 <= self.cached_reserved <= self.cached_on_hand
        )


_SIGNED_RESERVATION = case(
    (ReservationEntry.kind == ReservationKind.RESERVE, ReservationEntry.quantity),
    else_=-ReservationEntry.quantity,
)


class InventorySelector(BaseSelector[StockItem]):
    """Read-only stock queries."""

    def level(self, product_id: str) -> StockLevel | None:
        item = self.session.execute(
            select(StockItem).where(StockItem.product_id == product_id)
        ).scalar_one_or_none()
        return item.to_dto() if item is not None else None

    def levels(self, low_only: bool = False) -> list[StockLevel]:
        """All stock positions ordered by product id; optionally only low ones."""
        items = self.session.execute(
            select(StockItem).order_by(StockItem.product_id)
        ).scalars()
        result = [item.to_dto() for item in items]
        if low_only:
            result = [level for level in result if level.is_low]
        return result

    def movements(self, product_id: str, limit: int | None = None) -> list[StockMovementRecord]:
        """Ledger entries for a product, oldest first."""
        stmt = (
            select(StockMovement)
            .where(StockMovement.product_id == product_id)
            .order_by(StockMovement.seq)
        )
        if limit is not None:
            stmt = stmt.limit(limit)
        return [m.to_dto() for m in self.session.execute(stmt).scalars()]

    def replay_on_hand(self, product_id: str) -> int:
        total = self.session.execute(
            select(func.coalesce(func.sum(StockMovement.quantity), 0)).where(
                StockMovement.product_id == product_id
            )
        ).scalar_one()
        return int(total)

    def replay_reserved(self, product_id: str) -> int:
        total = self.session.execute(
            select(func.coalesce(func.sum(_SIGNED_RESERVATION), 0)).where(
                ReservationEntry.product_id == product_id
            )
        ).scalar_one()
        return int(total)

    def held_for_order(self, order_id: UUID) -> dict[str, int]:
        """Net quantity still reserved for an order, per product (zeros dropped)."""
        rows = self.session.execute(
            select(ReservationEntry.product_id, func.sum(_SIGNED_RESERVATION))
            .where(ReservationEntry.order_id == order_id)
            .group_by(ReservationEntry.product_id)
            .order_by(ReservationEntry.product_id)
        ).all()
        return {product_id: int(qty) for product_id, qty in rows if qty}

    def verify(self, product_id: str) -> LedgerVerification | None:
        level = self.level(product_id)
        if level is None:
            return None
        return LedgerVerification(
            product_id=product_id,
            cached_on_hand=level.on_hand,
            replayed_on_hand=self.replay_on_hand(product_id),
            cached_reserved=level.reserved,
            replayed_reserved=self.replay_reserved(product_id),
        )

    def verify_all(self) -> list[LedgerVerification]:
        product_ids = self.session.execute(
            select(StockItem.product_id).order_by(StockItem.product_id)
        ).scalars().all()
        return [self.verify(pid) for pid in product_ids]
