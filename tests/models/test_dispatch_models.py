"""
Model-level guarantees: append-only logs, CHECK constraints, uniqueness,
and timezone handling.

These run against the ORM directly (no services) to prove the database
itself refuses states the services are supposed to never produce.
"""

from datetime import datetime, timedelta, timezone
from uuid import uuid4

import pytest
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, StatementError

from dispatch_kernel.domain.dtos import Proof
from dispatch_kernel.domain.statuses import DeliveryStatus, OrderStatus, ReservationKind
from dispatch_kernel.exceptions import ImmutabilityViolationError
from dispatch_kernel.models import (
    Delivery,
    OrderHistory,
    ReservationEntry,
    StockItem,
    StockMovement,
)
from dispatch_kernel.services.delivery_manager import DeliveryManager
from dispatch_kernel.services.inventory_ledger import InventoryLedger
from dispatch_kernel.services.order_lifecycle import OrderLifecycleManager

STAFF = "staff-1"


@pytest.fixture
def ledger(session, clock, events):
    return InventoryLedger(session, clock, events)


@pytest.fixture
def orders(session, clock, events, ledger):
    return OrderLifecycleManager(session, clock, events, ledger=ledger)


@pytest.fixture
def order(orders):
    return orders.create_order(
        "cust-1",
        [{"product_id": "SKU-A", "quantity": 1, "unit_price": "5"}],
        "1 Main St",
        actor=STAFF,
    )


class TestAppendOnly:
    def test_history_row_cannot_be_updated(self, session, order):
        row = session.execute(select(OrderHistory)).scalars().first()
        row.notes = "rewritten"

        with pytest.raises(ImmutabilityViolationError) as exc:
            session.flush()
        assert exc.value.entity_type == "OrderHistory"

    def test_history_row_cannot_be_deleted(self, session, order):
        row = session.execute(select(OrderHistory)).scalars().first()
        session.delete(row)

        with pytest.raises(ImmutabilityViolationError):
            session.flush()

    def test_ledger_row_cannot_be_updated(self, session, ledger):
        ledger.register_product("SKU-A", actor=STAFF, initial_on_hand=5)
        row = session.execute(select(StockMovement)).scalars().one()
        row.quantity = 50

        with pytest.raises(ImmutabilityViolationError):
            session.flush()

    def test_snapshot_rows_remain_mutable(self, session, ledger):
        ledger.register_product("SKU-A", actor=STAFF, initial_on_hand=5)
        item = session.execute(select(StockItem)).scalars().one()
        item.name = "Widget"
        session.flush()


class TestConstraints:
    def test_reserved_cannot_exceed_on_hand(self, session, ledger):
        ledger.register_product("SKU-A", actor=STAFF, initial_on_hand=5)
        item = session.execute(select(StockItem)).scalars().one()
        item.reserved = 6

        with pytest.raises(IntegrityError):
            session.flush()

    def test_reserved_cannot_go_negative(self, session, ledger):
        ledger.register_product("SKU-A", actor=STAFF, initial_on_hand=5)
        item = session.execute(select(StockItem)).scalars().one()
        item.reserved = -1

        with pytest.raises(IntegrityError):
            session.flush()

    def test_reservation_quantity_must_be_positive(self, session, clock):
        session.add(
            ReservationEntry(
                product_id="SKU-A",
                order_id=uuid4(),
                kind=ReservationKind.RESERVE,
                quantity=0,
                actor=STAFF,
                timestamp=clock.now(),
            )
        )
        with pytest.raises(IntegrityError):
            session.flush()

    def test_one_active_delivery_per_order(self, session, clock, order):
        now = clock.now()
        for tracking in ("TRK-000001-AAAAAA", "TRK-000001-BBBBBB"):
            session.add(
                Delivery(
                    order_id=order.id,
                    tracking_number=tracking,
                    status=DeliveryStatus.ASSIGNED,
                    status_version=0,
                    created_at=now,
                    updated_at=now,
                    created_by=STAFF,
                )
            )
        with pytest.raises(IntegrityError):
            session.flush()

    def test_finished_delivery_frees_the_order(self, session, clock, events, orders, ledger):
        ledger.register_product("SKU-A", actor=STAFF, initial_on_hand=5)
        order = orders.create_order(
            "cust-1",
            [{"product_id": "SKU-A", "quantity": 1, "unit_price": "5"}],
            "1 Main St",
            actor=STAFF,
        )
        for target in (OrderStatus.CONFIRMED, OrderStatus.PREPARING, OrderStatus.READY_FOR_DISPATCH):
            orders.transition(order.id, target, actor=STAFF)
        deliveries = DeliveryManager(session, clock, events, orders=orders)
        first = deliveries.create_task(order.id, actor=STAFF, driver_id="driver-1")
        deliveries.start(first.id, "driver-1", actor="driver-1")
        deliveries.apply_status(first.id, DeliveryStatus.FAILED, {"reason": "no access"}, actor="driver-1")

        now = clock.now()
        session.add(
            Delivery(
                order_id=order.id,
                tracking_number="TRK-000002-CCCCCC",
                status=DeliveryStatus.ASSIGNED,
                status_version=0,
                created_at=now,
                updated_at=now,
                created_by=STAFF,
            )
        )
        session.flush()


class TestTimestamps:
    def test_timestamps_come_back_aware_utc(self, session, ledger, clock):
        ledger.register_product("SKU-A", actor=STAFF, initial_on_hand=5)
        session.expire_all()

        movement = session.execute(select(StockMovement)).scalars().one()

        assert movement.timestamp.tzinfo is not None
        assert movement.timestamp == clock.now()

    def test_naive_datetime_rejected(self, session):
        session.add(
            ReservationEntry(
                product_id="SKU-A",
                order_id=uuid4(),
                kind=ReservationKind.RESERVE,
                quantity=1,
                actor=STAFF,
                timestamp=datetime(2024, 1, 1, 12, 0),
            )
        )
        with pytest.raises(StatementError):
            session.flush()

    def test_other_offsets_normalized(self, session):
        local = datetime(2024, 1, 1, 14, 0, tzinfo=timezone(timedelta(hours=2)))
        session.add(
            ReservationEntry(
                product_id="SKU-A",
                order_id=uuid4(),
                kind=ReservationKind.RESERVE,
                quantity=1,
                actor=STAFF,
                timestamp=local,
            )
        )
        session.flush()
        session.expire_all()

        entry = session.execute(select(ReservationEntry)).scalars().one()
        assert entry.timestamp == datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)
        assert entry.timestamp.utcoffset() == timedelta(0)


def test_proof_input_is_frozen():
    proof = Proof(delivered_to="Ada")
    with pytest.raises(AttributeError):
        proof.delivered_to = "Bob"
