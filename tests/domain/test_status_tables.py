"""
Transition tables for orders, deliveries and tasks.

The tables in domain/statuses.py are the only source of lifecycle rules;
these tests pin them down and check the helper predicates against them
with generated status pairs.
"""

import pytest
from hypothesis import given
from hypothesis import strategies as st

from dispatch_kernel.domain.statuses import (
    DELIVERY_TRANSITIONS,
    ORDER_INTERNAL_TARGETS,
    ORDER_RESERVED_STATES,
    ORDER_TRANSITIONS,
    TASK_TRANSITIONS,
    DeliveryStatus,
    OrderStatus,
    TaskStatus,
    can_transition,
    is_terminal,
    terminal_states,
)

ALL_TABLES = [
    ("order", ORDER_TRANSITIONS, OrderStatus),
    ("delivery", DELIVERY_TRANSITIONS, DeliveryStatus),
    ("task", TASK_TRANSITIONS, TaskStatus),
]


class TestTableShape:
    @pytest.mark.parametrize("name,table,enum", ALL_TABLES, ids=[t[0] for t in ALL_TABLES])
    def test_every_status_has_a_row(self, name, table, enum):
        assert set(table) == set(enum)

    @pytest.mark.parametrize("name,table,enum", ALL_TABLES, ids=[t[0] for t in ALL_TABLES])
    def test_no_self_loops(self, name, table, enum):
        for status, targets in table.items():
            assert status not in targets

    @pytest.mark.parametrize("name,table,enum", ALL_TABLES, ids=[t[0] for t in ALL_TABLES])
    def test_targets_are_members_of_the_enum(self, name, table, enum):
        for targets in table.values():
            assert all(isinstance(t, enum) for t in targets)

    def test_order_terminal_states(self):
        assert terminal_states(ORDER_TRANSITIONS) == {OrderStatus.DELIVERED, OrderStatus.CANCELED}

    def test_delivery_terminal_states(self):
        assert terminal_states(DELIVERY_TRANSITIONS) == {
            DeliveryStatus.DELIVERED,
            DeliveryStatus.FAILED,
            DeliveryStatus.CANCELED,
        }

    def test_task_terminal_states(self):
        assert terminal_states(TASK_TRANSITIONS) == {TaskStatus.COMPLETED, TaskStatus.CANCELED}


class TestOrderTable:
    def test_happy_path_is_linear(self):
        path = [
            OrderStatus.PENDING,
            OrderStatus.CONFIRMED,
            OrderStatus.PREPARING,
            OrderStatus.READY_FOR_DISPATCH,
            OrderStatus.OUT_FOR_DELIVERY,
            OrderStatus.DELIVERED,
        ]
        for current, target in zip(path, path[1:]):
            assert can_transition(ORDER_TRANSITIONS, current, target)

    def test_every_non_terminal_status_can_cancel(self):
        for status, targets in ORDER_TRANSITIONS.items():
            if targets:
                assert OrderStatus.CANCELED in targets

    def test_no_status_is_skipped(self):
        assert not can_transition(ORDER_TRANSITIONS, OrderStatus.PENDING, OrderStatus.PREPARING)
        assert not can_transition(ORDER_TRANSITIONS, OrderStatus.CONFIRMED, OrderStatus.DELIVERED)

    def test_delivered_is_internal_only(self):
        assert ORDER_INTERNAL_TARGETS == {OrderStatus.DELIVERED}

    def test_reserved_states_are_between_confirmation_and_delivery(self):
        assert OrderStatus.PENDING not in ORDER_RESERVED_STATES
        assert OrderStatus.DELIVERED not in ORDER_RESERVED_STATES
        assert OrderStatus.OUT_FOR_DELIVERY in ORDER_RESERVED_STATES


class TestDeliveryTable:
    def test_delayed_can_resume(self):
        assert can_transition(DELIVERY_TRANSITIONS, DeliveryStatus.DELAYED, DeliveryStatus.IN_TRANSIT)

    def test_assigned_cannot_complete_directly(self):
        assert not can_transition(DELIVERY_TRANSITIONS, DeliveryStatus.ASSIGNED, DeliveryStatus.DELIVERED)

    def test_delayed_cannot_complete_directly(self):
        assert not can_transition(DELIVERY_TRANSITIONS, DeliveryStatus.DELAYED, DeliveryStatus.DELIVERED)


class TestTaskTable:
    def test_pause_returns_to_pending(self):
        assert can_transition(TASK_TRANSITIONS, TaskStatus.IN_PROGRESS, TaskStatus.PENDING)

    def test_pending_cannot_complete(self):
        assert not can_transition(TASK_TRANSITIONS, TaskStatus.PENDING, TaskStatus.COMPLETED)


class TestPredicates:
    @given(st.sampled_from(OrderStatus), st.sampled_from(OrderStatus))
    def test_order_can_transition_matches_table(self, current, target):
        assert can_transition(ORDER_TRANSITIONS, current, target) == (target in ORDER_TRANSITIONS[current])

    @given(st.sampled_from(DeliveryStatus), st.sampled_from(DeliveryStatus))
    def test_delivery_can_transition_matches_table(self, current, target):
        assert can_transition(DELIVERY_TRANSITIONS, current, target) == (
            target in DELIVERY_TRANSITIONS[current]
        )

    @given(st.sampled_from(TaskStatus), st.sampled_from(TaskStatus))
    def test_task_can_transition_matches_table(self, current, target):
        assert can_transition(TASK_TRANSITIONS, current, target) == (target in TASK_TRANSITIONS[current])

    @given(st.sampled_from(DeliveryStatus), st.sampled_from(DeliveryStatus))
    def test_terminal_states_accept_nothing(self, current, target):
        if is_terminal(DELIVERY_TRANSITIONS, current):
            assert not can_transition(DELIVERY_TRANSITIONS, current, target)

    @given(st.lists(st.sampled_from(OrderStatus), max_size=12))
    def test_random_walk_never_leaves_a_terminal_state(self, targets):
        state = OrderStatus.PENDING
        for target in targets:
            if can_transition(ORDER_TRANSITIONS, state, target):
                assert not is_terminal(ORDER_TRANSITIONS, state)
                state = target
        assert state in ORDER_TRANSITIONS
