"""
Module: dispatch_kernel.selectors.task_selector
Responsibility: Task list and overdue queries for staff dashboards.
Architecture position: Kernel > Selectors.

Ordering contract for every list: priority descending, due date ascending
(tasks without a due date last), then creation order.
"""

from datetime import datetime

from sqlalchemy import select

from dispatch_kernel.domain.dtos import TaskSnapshot
from dispatch_kernel.domain.statuses import OPEN_TASK_STATES, TaskStatus
from dispatch_kernel.models.task import Task
from dispatch_kernel.selectors.base import BaseSelector

_ORDERING = (
    Task.priority.desc(),
    Task.due_date.is_(None),
    Task.due_date.asc(),
    Task.created_seq.asc(),
)


class TaskSelector(BaseSelector[Task]):
    def list_tasks(
        self,
        *,
        status: TaskStatus | str | None = None,
        type: str | None = None,
        assignee_id: str | None = None,
        priority: int | None = None,
    ) -> list[TaskSnapshot]:
        stmt = select(Task)
        if status is not None:
            stmt = stmt.where(Task.status == TaskStatus(status))
        if type is not None:
            stmt = stmt.where(Task.type == type)
        if assignee_id is not None:
            stmt = stmt.where(Task.assignee_id == assignee_id)
        if priority is not None:
            stmt = stmt.where(Task.priority == priority)
        stmt = stmt.order_by(*_ORDERING)
        return [task.to_dto() for task in self.session.execute(stmt).scalars()]

    def find_overdue(self, now: datetime) -> list[TaskSnapshot]:
        """Tasks past due that are still open (PENDING or IN_PROGRESS)."""
        stmt = (
            select(Task)
            .where(
                Task.due_date.is_not(None),
                Task.due_date < now,
                Task.status.in_(OPEN_TASK_STATES),
            )
            .order_by(*_ORDERING)
        )
        return [task.to_dto() for task in self.session.execute(stmt).scalars()]
