"""TaskScheduler state machine and overdue derivation."""

from datetime import timedelta

import pytest

from dispatch_kernel.domain.events import EventType
from dispatch_kernel.domain.statuses import TaskStatus
from dispatch_kernel.exceptions import InvalidTransitionError, ValidationError
from dispatch_kernel.selectors import TaskSelector
from dispatch_kernel.services.task_scheduler import TaskScheduler, is_overdue

STAFF = "staff-1"


@pytest.fixture
def tasks(session, clock, events):
    return TaskScheduler(session, clock, events)


class TestCreate:
    def test_defaults(self, tasks):
        task = tasks.create_task("PICK", "Pick order 17", actor=STAFF)

        assert task.status == TaskStatus.PENDING
        assert task.priority == 0
        assert task.due_date is None
        assert task.completed_at is None

    @pytest.mark.parametrize("kwargs,field", [
        ({"type": " "}, "type"),
        ({"title": ""}, "title"),
        ({"priority": "high"}, "priority"),
        ({"assignee_id": ""}, "assignee_id"),
    ])
    def test_validation(self, tasks, kwargs, field):
        args = {"type": "PICK", "title": "Pick", **kwargs}
        type_, title = args.pop("type"), args.pop("title")
        with pytest.raises(ValidationError) as exc:
            tasks.create_task(type_, title, actor=STAFF, **args)
        assert exc.value.field == field

    def test_naive_due_date_rejected(self, tasks, clock):
        with pytest.raises(ValidationError):
            tasks.create_task("PICK", "Pick", actor=STAFF, due_date=clock.now().replace(tzinfo=None))


class TestTransitions:
    def test_full_cycle_with_pause(self, tasks, clock):
        task = tasks.create_task("PACK", "Pack order 17", actor=STAFF)
        tasks.start(task.id, actor=STAFF)
        tasks.pause(task.id, actor=STAFF, notes="lunch")
        tasks.start(task.id, actor=STAFF)
        clock.advance(60)
        done = tasks.complete(task.id, actor=STAFF)

        assert done.status == TaskStatus.COMPLETED
        assert done.completed_at == clock.now()

    def test_pause_requires_in_progress(self, tasks):
        task = tasks.create_task("PACK", "Pack", actor=STAFF)
        with pytest.raises(InvalidTransitionError) as exc:
            tasks.pause(task.id, actor=STAFF)
        assert exc.value.current_status == "PENDING"

    def test_pending_cannot_complete(self, tasks):
        task = tasks.create_task("PACK", "Pack", actor=STAFF)
        with pytest.raises(InvalidTransitionError):
            tasks.complete(task.id, actor=STAFF)
        assert tasks.get(task.id).status == TaskStatus.PENDING

    def test_completed_is_terminal(self, tasks):
        task = tasks.create_task("PACK", "Pack", actor=STAFF)
        tasks.start(task.id, actor=STAFF)
        tasks.complete(task.id, actor=STAFF)
        with pytest.raises(InvalidTransitionError):
            tasks.cancel(task.id, actor=STAFF)

    def test_finished_task_cannot_be_reassigned(self, tasks):
        task = tasks.create_task("PACK", "Pack", actor=STAFF)
        tasks.cancel(task.id, actor=STAFF)
        with pytest.raises(InvalidTransitionError):
            tasks.assign(task.id, "staff-2", actor=STAFF)

    def test_assign(self, tasks):
        task = tasks.create_task("PACK", "Pack", actor=STAFF)
        assert tasks.assign(task.id, "staff-2", actor=STAFF).assignee_id == "staff-2"


class TestOverdue:
    def test_overdue_is_derived_from_clock(self, tasks, clock):
        task = tasks.create_task("PICK", "Pick", actor=STAFF, due_date=clock.now() + timedelta(hours=1))
        assert not is_overdue(task, clock.now())

        clock.advance(hours=2)
        assert is_overdue(task, clock.now())
        assert task.is_overdue(clock.now())

    def test_exactly_due_is_not_overdue(self, tasks, clock):
        task = tasks.create_task("PICK", "Pick", actor=STAFF, due_date=clock.now())
        assert not is_overdue(task, clock.now())

    def test_completed_task_is_never_overdue(self, tasks, clock):
        task = tasks.create_task("PICK", "Pick", actor=STAFF, due_date=clock.now())
        tasks.start(task.id, actor=STAFF)
        done = tasks.complete(task.id, actor=STAFF)
        clock.advance(hours=5)
        assert not is_overdue(done, clock.now())

    def test_canceled_task_is_never_overdue(self, tasks, clock):
        task = tasks.create_task("PICK", "Pick", actor=STAFF, due_date=clock.now())
        canceled = tasks.cancel(task.id, actor=STAFF)
        clock.advance(hours=5)

        assert not is_overdue(canceled, clock.now())
        assert not canceled.is_overdue(clock.now())
        assert canceled.id not in {t.id for t in tasks.find_overdue()}

    def test_find_overdue_only_open_tasks(self, tasks, clock):
        due = clock.now() + timedelta(minutes=30)
        late = tasks.create_task("PICK", "Late", actor=STAFF, due_date=due)
        started = tasks.create_task("PICK", "Started", actor=STAFF, due_date=due)
        tasks.start(started.id, actor=STAFF)
        canceled = tasks.create_task("PICK", "Canceled", actor=STAFF, due_date=due)
        tasks.cancel(canceled.id, actor=STAFF)
        tasks.create_task("PICK", "No due date", actor=STAFF)

        clock.advance(hours=1)

        assert {t.id for t in tasks.find_overdue()} == {late.id, started.id}

    def test_flag_overdue_emits_one_event_per_task(self, tasks, clock, events):
        task = tasks.create_task("PICK", "Late", actor=STAFF, due_date=clock.now())
        clock.advance(1)

        tasks.flag_overdue(actor="scheduler")

        (event,) = events.drain()
        assert event.event_type == EventType.TASK_OVERDUE
        assert event.entity_id == str(task.id)
        assert event.actor == "scheduler"


class TestListing:
    def test_priority_then_due_date_then_creation(self, tasks, session, clock):
        now = clock.now()
        low = tasks.create_task("PICK", "low", actor=STAFF, priority=1)
        high_late = tasks.create_task("PICK", "high late", actor=STAFF, priority=5, due_date=now + timedelta(days=2))
        high_soon = tasks.create_task("PICK", "high soon", actor=STAFF, priority=5, due_date=now + timedelta(days=1))
        high_none = tasks.create_task("PICK", "high none", actor=STAFF, priority=5)

        listed = TaskSelector(session).list_tasks()

        assert [t.id for t in listed] == [high_soon.id, high_late.id, high_none.id, low.id]

    def test_filters(self, tasks, session):
        tasks.create_task("PICK", "a", actor=STAFF, assignee_id="staff-2")
        tasks.create_task("PACK", "b", actor=STAFF, assignee_id="staff-2")
        tasks.create_task("PACK", "c", actor=STAFF)

        selector = TaskSelector(session)
        assert [t.title for t in selector.list_tasks(type="PACK", assignee_id="staff-2")] == ["b"]
        assert len(selector.list_tasks(status="PENDING")) == 3
