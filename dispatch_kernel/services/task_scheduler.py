"""
TaskScheduler -- generic staff task state machine.

Responsibility:
    Creates staff tasks (picking, packing, restocking, ...), assigns them
    and moves them through TASK_TRANSITIONS.  "Overdue" is derived from
    the clock and the due date; it is never stored.

Architecture position:
    Kernel > Services.  Bulk updates are chunked by the orchestrator,
    one task per transaction, so this service only ever handles one task
    at a time.

Invariants enforced:
    - Transitions outside TASK_TRANSITIONS raise InvalidTransitionError.
    - ``completed_at`` is stamped on entering COMPLETED.
    - Each accepted transition appends one task_history row.
"""

from __future__ import annotations

from datetime import datetime
from uuid import UUID

from sqlalchemy import func, select

from dispatch_kernel.domain.dtos import TaskSnapshot
from dispatch_kernel.domain.events import DomainEvent, EventType
from dispatch_kernel.domain.statuses import OPEN_TASK_STATES, TASK_TRANSITIONS, TaskStatus, can_transition, is_terminal
from dispatch_kernel.exceptions import InvalidTransitionError, NotFoundError, ValidationError
from dispatch_kernel.logging_config import get_logger
from dispatch_kernel.models.task import Task, TaskHistory
from dispatch_kernel.selectors.task_selector import TaskSelector
from dispatch_kernel.services.base import BaseService, as_uuid, require_aware, require_text

logger = get_logger("services.task_scheduler")


def coerce_task_status(value: TaskStatus | str) -> TaskStatus:
    try:
        return TaskStatus(value)
    except ValueError:
        raise ValidationError(f"Unknown task status {value!r}", field="target")


def is_overdue(task: TaskSnapshot | Task, now: datetime) -> bool:
    """now > due_date while the task is PENDING or IN_PROGRESS."""
    return task.due_date is not None and now > task.due_date and task.status in OPEN_TASK_STATES


class TaskScheduler(BaseService[Task]):
    def load(self, task_id: UUID | str, *, lock: bool = False) -> Task:
        task_id = as_uuid(task_id, "Task")
        task = self.session.get(Task, task_id, with_for_update=lock)
        if task is None:
            raise NotFoundError("Task", task_id)
        return task

    def get(self, task_id: UUID | str) -> TaskSnapshot:
        return self.load(task_id).to_dto()

    def create_task(
        self,
        type: str,
        title: str,
        *,
        actor: str,
        description: str | None = None,
        assignee_id: str | None = None,
        priority: int = 0,
        due_date: datetime | None = None,
    ) -> TaskSnapshot:
        type = require_text(type, "type")
        title = require_text(title, "title")
        if isinstance(priority, bool) or not isinstance(priority, int):
            raise ValidationError("priority must be an integer", field="priority")
        require_aware(due_date, "due_date")
        if assignee_id is not None:
            assignee_id = require_text(assignee_id, "assignee_id")

        now = self.clock.now()
        last_seq = self.session.execute(select(func.max(Task.created_seq))).scalar_one()
        task = Task(
            type=type,
            title=title,
            description=description,
            assignee_id=assignee_id,
            status=TaskStatus.PENDING,
            priority=priority,
            due_date=due_date,
            created_seq=(last_seq or 0) + 1,
            created_at=now,
            updated_at=now,
            created_by=actor,
        )
        task.history = [
            TaskHistory(
                seq=1,
                from_status=None,
                to_status=TaskStatus.PENDING,
                actor=actor,
                timestamp=now,
            )
        ]
        self.session.add(task)
        self.session.flush()

        logger.info(
            "task_created",
            extra={
                "task_id": task.id,
                "task_type": type,
                "priority": priority,
                "assignee_id": assignee_id,
            },
        )
        return task.to_dto()

    def assign(self, task_id: UUID | str, assignee_id: str, *, actor: str) -> TaskSnapshot:
        assignee_id = require_text(assignee_id, "assignee_id")
        task = self.load(task_id, lock=True)
        if is_terminal(TASK_TRANSITIONS, task.status):
            raise InvalidTransitionError(
                "Task",
                task.id,
                task.status,
                task.status,
                reason="a finished task cannot be reassigned",
            )
        if task.assignee_id != assignee_id:
            task.assignee_id = assignee_id
            task.updated_at = self.clock.now()
            task.updated_by = actor
            self.session.flush()
            logger.info("task_assigned", extra={"task_id": task.id, "assignee_id": assignee_id})
        return task.to_dto()

    def transition(
        self,
        task_id: UUID | str,
        target: TaskStatus | str,
        *,
        actor: str,
        notes: str | None = None,
    ) -> TaskSnapshot:
        target = coerce_task_status(target)
        task = self.load(task_id, lock=True)
        current = task.status
        if not can_transition(TASK_TRANSITIONS, current, target):
            logger.info(
                "task_transition_rejected",
                extra={
                    "task_id": task.id,
                    "from_status": current.value,
                    "to_status": target.value,
                },
            )
            raise InvalidTransitionError("Task", task.id, current, target)

        now = self.clock.now()
        task.status = target
        if target == TaskStatus.COMPLETED:
            task.completed_at = now
        task.updated_at = now
        task.updated_by = actor
        task.history.append(
            TaskHistory(
                seq=len(task.history) + 1,
                from_status=current,
                to_status=target,
                actor=actor,
                timestamp=now,
                notes=notes,
            )
        )
        self.session.flush()

        logger.info(
            "task_transitioned",
            extra={
                "task_id": task.id,
                "from_status": current.value,
                "to_status": target.value,
            },
        )
        return task.to_dto()

    def start(self, task_id: UUID | str, *, actor: str) -> TaskSnapshot:
        return self.transition(task_id, TaskStatus.IN_PROGRESS, actor=actor)

    def pause(self, task_id: UUID | str, *, actor: str, notes: str | None = None) -> TaskSnapshot:
        """IN_PROGRESS -> PENDING."""
        task = self.load(task_id, lock=True)
        if task.status != TaskStatus.IN_PROGRESS:
            raise InvalidTransitionError(
                "Task",
                task.id,
                task.status,
                TaskStatus.PENDING,
                reason="only a task in progress can be paused",
            )
        return self.transition(task_id, TaskStatus.PENDING, actor=actor, notes=notes)

    def complete(self, task_id: UUID | str, *, actor: str, notes: str | None = None) -> TaskSnapshot:
        return self.transition(task_id, TaskStatus.COMPLETED, actor=actor, notes=notes)

    def cancel(self, task_id: UUID | str, *, actor: str, notes: str | None = None) -> TaskSnapshot:
        return self.transition(task_id, TaskStatus.CANCELED, actor=actor, notes=notes)

    # ------------------------------------------------------------------
    # Overdue
    # ------------------------------------------------------------------

    def find_overdue(self) -> list[TaskSnapshot]:
        return TaskSelector(self.session).find_overdue(self.clock.now())

    def flag_overdue(self, *, actor: str) -> list[TaskSnapshot]:
        """Emit TaskOverdue for every open task past its due date."""
        now = self.clock.now()
        overdue = TaskSelector(self.session).find_overdue(now)
        for task in overdue:
            self._emit(
                DomainEvent(
                    event_type=EventType.TASK_OVERDUE,
                    entity_id=str(task.id),
                    old_status=task.status.value,
                    new_status=task.status.value,
                    actor=actor,
                    occurred_at=now,
                    detail={
                        "title": task.title,
                        "assignee_id": task.assignee_id,
                        "due_date": task.due_date.isoformat(),
                    },
                )
            )
        if overdue:
            logger.warning("tasks_overdue", extra={"count": len(overdue)})
        return overdue
