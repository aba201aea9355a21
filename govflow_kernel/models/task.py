"""
Module: govflow_kernel.models.task
Responsibility: ORM persistence for officer work items.

Invariants enforced:
    - At most one open (PENDING or IN_PROGRESS) task per application: partial
      unique index, backed by TaskService which completes the active task
      before opening the next one.
    - role_required is always one of the allowed roles of the task's state.
    - A COMPLETED task is frozen (db/immutability.py).
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING
from uuid import UUID

from sqlalchemy import ForeignKey, Index, String, text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from govflow_kernel.db.base import TimestampedBase, UUIDString
from govflow_kernel.db.types import enum_column

if TYPE_CHECKING:
    from govflow_kernel.models.application import Application


class TaskStatus(str, Enum):
    PENDING = "PENDING"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"


OPEN_TASK_STATUSES = (TaskStatus.PENDING, TaskStatus.IN_PROGRESS)

_OPEN_PREDICATE = text("status IN ('PENDING', 'IN_PROGRESS')")


class Task(TimestampedBase):
    """
    One officer action required for an (application, state) pair.

    Contract:
        Created by TaskService when a transition enters an OFFICER state.
        Claimed from the role pool (assignee set, IN_PROGRESS) and completed
        by the transition that leaves the state.
    """

    __tablename__ = "tasks"

    __table_args__ = (
        Index(
            "uq_tasks_one_open_per_application",
            "application_id",
            unique=True,
            sqlite_where=_OPEN_PREDICATE,
            postgresql_where=_OPEN_PREDICATE,
        ),
        Index("idx_tasks_inbox", "role_required", "status", "sla_due_at"),
        Index("idx_tasks_assignee", "assignee_id", "status"),
    )

    application_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("applications.id"), nullable=False
    )
    arn: Mapped[str] = mapped_column(String(64), nullable=False)
    state_id: Mapped[str] = mapped_column(String(100), nullable=False)
    role_required: Mapped[str] = mapped_column(String(100), nullable=False)
    assignee_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    status: Mapped[TaskStatus] = mapped_column(
        enum_column(TaskStatus), nullable=False, default=TaskStatus.PENDING
    )
    sla_due_at: Mapped[datetime | None] = mapped_column(nullable=True)
    sla_breached_at: Mapped[datetime | None] = mapped_column(nullable=True)
    claimed_at: Mapped[datetime | None] = mapped_column(nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(nullable=True)
    completed_by: Mapped[str | None] = mapped_column(String(100), nullable=True)
    decision: Mapped[str | None] = mapped_column(String(50), nullable=True)
    remarks: Mapped[str | None] = mapped_column(String(4000), nullable=True)

    application: Mapped[Application] = relationship("Application", back_populates="tasks")

    def __repr__(self) -> str:
        return f"<Task {self.id} {self.arn}@{self.state_id} {self.status.value}>"

    @property
    def is_open(self) -> bool:
        return self.status in OPEN_TASK_STATUSES
