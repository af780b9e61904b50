"""
OrderLifecycleManager tests.

Kernel-level: services share one session and one event buffer; nothing
commits.
"""

from decimal import Decimal

import pytest

from dispatch_kernel.domain.events import EventType
from dispatch_kernel.domain.statuses import OrderStatus
from dispatch_kernel.exceptions import (
    InsufficientStockError,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)
from dispatch_kernel.services.inventory_ledger import InventoryLedger
from dispatch_kernel.services.order_lifecycle import OrderLifecycleManager

STAFF = "staff-1"
ITEMS = [
    {"product_id": "SKU-A", "quantity": 5, "unit_price": "2.00"},
    {"product_id": "SKU-B", "quantity": 3, "unit_price": "1.25"},
]


@pytest.fixture
def ledger(session, clock, events):
    return InventoryLedger(session, clock, events)


@pytest.fixture
def orders(session, clock, events, ledger):
    return OrderLifecycleManager(session, clock, events, ledger=ledger)


@pytest.fixture
def stocked(ledger):
    ledger.register_product("SKU-A", actor=STAFF, initial_on_hand=10)
    ledger.register_product("SKU-B", actor=STAFF, initial_on_hand=10)
    return ledger


def _advance(orders, order, *targets):
    for target in targets:
        order = orders.transition(order.id, target, actor=STAFF)
    return order


class TestCreateOrder:
    def test_new_order_is_pending_with_one_history_entry(self, orders):
        order = orders.create_order("cust-1", ITEMS, "1 Main St", actor=STAFF, customer_name="Ada")

        assert order.status == OrderStatus.PENDING
        assert order.order_number.startswith("ORD-")
        assert order.total_amount == Decimal("13.75")
        assert [(h.from_status, h.to_status) for h in order.history] == [(None, "PENDING")]
        assert order.history[0].actor == STAFF

    def test_created_event_has_no_old_status(self, orders, events):
        order = orders.create_order("cust-1", ITEMS, "1 Main St", actor=STAFF)

        (event,) = events.drain()
        assert event.event_type == EventType.ORDER_STATUS_CHANGED
        assert event.entity_id == str(order.id)
        assert event.old_status is None
        assert event.new_status == "PENDING"

    def test_creation_does_not_touch_stock(self, orders, stocked):
        orders.create_order("cust-1", ITEMS, "1 Main St", actor=STAFF)
        assert stocked.level("SKU-A").reserved == 0

    @pytest.mark.parametrize("field,kwargs", [
        ("customer_id", {"customer_id": " "}),
        ("delivery_address", {"delivery_address": ""}),
        ("items", {"items": []}),
    ])
    def test_required_fields(self, orders, field, kwargs):
        args = {"customer_id": "cust-1", "items": ITEMS, "delivery_address": "1 Main St"}
        args.update(kwargs)
        with pytest.raises(ValidationError) as exc:
            orders.create_order(args["customer_id"], args["items"], args["delivery_address"], actor=STAFF)
        assert exc.value.field == field

    def test_order_numbers_are_unique(self, orders):
        numbers = {orders.create_order("cust-1", ITEMS, "1 Main St", actor=STAFF).order_number for _ in range(20)}
        assert len(numbers) == 20


class TestConfirm:
    def test_confirm_reserves_every_item(self, orders, stocked):
        order = orders.create_order("cust-1", ITEMS, "1 Main St", actor=STAFF)

        orders.transition(order.id, OrderStatus.CONFIRMED, actor=STAFF)

        assert stocked.level("SKU-A").reserved == 5
        assert stocked.level("SKU-B").reserved == 3

    def test_shortage_leaves_order_pending_and_stock_untouched(self, orders, ledger):
        ledger.register_product("SKU-A", actor=STAFF, initial_on_hand=10)
        ledger.register_product("SKU-B", actor=STAFF, initial_on_hand=2)
        order = orders.create_order("cust-1", ITEMS, "1 Main St", actor=STAFF)

        with pytest.raises(InsufficientStockError) as exc:
            orders.transition(order.id, OrderStatus.CONFIRMED, actor=STAFF)

        assert exc.value.current_status == "PENDING"
        assert exc.value.entity_id == str(order.id)
        assert exc.value.shortages == [{"product_id": "SKU-B", "requested": 3, "available": 2}]
        reloaded = orders.get(order.id)
        assert reloaded.status == OrderStatus.PENDING
        assert len(reloaded.history) == 1
        assert ledger.level("SKU-A").reserved == 0


class TestTransitions:
    def test_happy_path_history(self, orders, stocked):
        order = orders.create_order("cust-1", ITEMS, "1 Main St", actor=STAFF)
        order = _advance(
            orders,
            order,
            OrderStatus.CONFIRMED,
            OrderStatus.PREPARING,
            OrderStatus.READY_FOR_DISPATCH,
        )

        assert order.status == OrderStatus.READY_FOR_DISPATCH
        assert [h.to_status for h in order.history] == [
            "PENDING", "CONFIRMED", "PREPARING", "READY_FOR_DISPATCH",
        ]
        assert [h.from_status for h in order.history[1:]] == ["PENDING", "CONFIRMED", "PREPARING"]

    def test_invalid_transition_changes_nothing(self, orders, events):
        order = orders.create_order("cust-1", ITEMS, "1 Main St", actor=STAFF)
        events.drain()

        with pytest.raises(InvalidTransitionError) as exc:
            orders.transition(order.id, OrderStatus.PREPARING, actor=STAFF)

        assert exc.value.current_status == "PENDING"
        assert exc.value.target_status == "PREPARING"
        after = orders.get(order.id)
        assert after.status == OrderStatus.PENDING
        assert after.history == order.history
        assert events.drain() == []

    def test_delivered_cannot_be_requested_directly(self, orders, stocked):
        order = orders.create_order("cust-1", ITEMS, "1 Main St", actor=STAFF)
        order = _advance(
            orders,
            order,
            OrderStatus.CONFIRMED,
            OrderStatus.PREPARING,
            OrderStatus.READY_FOR_DISPATCH,
        )
        with pytest.raises(InvalidTransitionError):
            orders.transition(order.id, OrderStatus.DELIVERED, actor=STAFF)

    def test_unknown_status_string_rejected(self, orders):
        order = orders.create_order("cust-1", ITEMS, "1 Main St", actor=STAFF)
        with pytest.raises(ValidationError):
            orders.transition(order.id, "SHIPPED", actor=STAFF)

    def test_status_strings_accepted(self, orders, stocked):
        order = orders.create_order("cust-1", ITEMS, "1 Main St", actor=STAFF)
        assert orders.transition(order.id, "CONFIRMED", actor=STAFF).status == OrderStatus.CONFIRMED

    def test_unknown_order(self, orders):
        with pytest.raises(NotFoundError):
            orders.transition("not-a-uuid", OrderStatus.CONFIRMED, actor=STAFF)


class TestCancel:
    def test_cancel_pending_order(self, orders):
        order = orders.create_order("cust-1", ITEMS, "1 Main St", actor=STAFF)
        canceled = orders.transition(order.id, OrderStatus.CANCELED, actor=STAFF, notes="customer request")

        assert canceled.status == OrderStatus.CANCELED
        assert canceled.history[-1].notes == "customer request"

    def test_cancel_releases_reservation(self, orders, stocked):
        order = orders.create_order("cust-1", ITEMS, "1 Main St", actor=STAFF)
        _advance(orders, order, OrderStatus.CONFIRMED, OrderStatus.PREPARING)

        orders.transition(order.id, OrderStatus.CANCELED, actor=STAFF)

        assert stocked.level("SKU-A").reserved == 0
        assert stocked.level("SKU-A").on_hand == 10

    def test_canceled_is_terminal(self, orders):
        order = orders.create_order("cust-1", ITEMS, "1 Main St", actor=STAFF)
        orders.transition(order.id, OrderStatus.CANCELED, actor=STAFF)
        with pytest.raises(InvalidTransitionError) as exc:
            orders.transition(order.id, OrderStatus.CONFIRMED, actor=STAFF)
        assert exc.value.current_status == "CANCELED"
