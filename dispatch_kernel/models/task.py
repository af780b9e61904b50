"""
Module: dispatch_kernel.models.task
Responsibility: ORM persistence for staff tasks and their status history.
Architecture position: Kernel > Models.

Invariants enforced:
    - ``completed_at`` is set iff status == COMPLETED.
    - "Overdue" is never stored; it is derived from due_date and the clock.
    - TaskHistory rows are append-only.
"""

from __future__ import annotations

from datetime import datetime
from uuid import UUID

from sqlalchemy import Enum as SAEnum, ForeignKey, Index, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from dispatch_kernel.db.base import Base, TrackedBase
from dispatch_kernel.domain.dtos import HistoryRecord, TaskSnapshot
from dispatch_kernel.domain.statuses import TaskStatus


def _enum():
    return SAEnum(TaskStatus, native_enum=False, length=32, validate_strings=True)


class Task(TrackedBase):
    __tablename__ = "tasks"

    __table_args__ = (
        Index("idx_task_status_priority", "status", "priority"),
        Index("idx_task_assignee", "assignee_id"),
        Index("idx_task_due", "due_date"),
    )

    type: Mapped[str] = mapped_column(String(50), nullable=False)
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[str | None] = mapped_column(String(2000), nullable=True)
    assignee_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    status: Mapped[TaskStatus] = mapped_column(_enum(), nullable=False)
    priority: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    due_date: Mapped[datetime | None] = mapped_column(nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(nullable=True)
    # Creation order tiebreak for list ordering
    created_seq: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    history: Mapped[list[TaskHistory]] = relationship(
        back_populates="task",
        lazy="selectin",
        order_by="TaskHistory.seq",
    )

    __mapper_args__ = {"version_id_col": version}

    def to_dto(self) -> TaskSnapshot:
        return TaskSnapshot(
            id=self.id,
            type=self.type,
            title=self.title,
            description=self.description,
            assignee_id=self.assignee_id,
            status=self.status,
            priority=self.priority,
            due_date=self.due_date,
            completed_at=self.completed_at,
            version=self.version,
            created_at=self.created_at,
        )


class TaskHistory(Base):
    __tablename__ = "task_history"
    __append_only__ = True

    __table_args__ = (UniqueConstraint("task_id", "seq", name="uq_task_history_seq"),)

    task_id: Mapped[UUID] = mapped_column(ForeignKey("tasks.id"), nullable=False)
    seq: Mapped[int] = mapped_column(Integer, nullable=False)
    from_status: Mapped[TaskStatus | None] = mapped_column(_enum(), nullable=True)
    to_status: Mapped[TaskStatus] = mapped_column(_enum(), nullable=False)
    actor: Mapped[str] = mapped_column(String(100), nullable=False)
    timestamp: Mapped[datetime] = mapped_column(nullable=False)
    notes: Mapped[str | None] = mapped_column(String(2000), nullable=True)

    task: Mapped[Task] = relationship(back_populates="history")

    def to_dto(self) -> HistoryRecord:
        return HistoryRecord(
            from_status=self.from_status.value if self.from_status else None,
            to_status=self.to_status.value,
            actor=self.actor,
            timestamp=self.timestamp,
            notes=self.notes,
        )
