"""
TaskService -- officer work items, role pools and SLA bookkeeping.

Responsibility:
    Creates the task for an officer state, completes it when the
    application leaves the state, lets posted officers claim and release
    pool tasks, serves the inbox, loads per-authority working calendars
    and records SLA pause/resume and breaches.

Architecture position:
    Kernel > Services.  The SLA arithmetic itself lives in
    ``govflow_engines.sla``; callers pass computed deadlines in.

Invariants enforced:
    - At most one open task per application (checked here, backed by a
      partial unique index).
    - role_required is the state's task role, which is one of the state's
      allowed roles.
    - Claim and release are compare-and-swap UPDATEs on (status,
      assignee_id); a lost race raises TaskAlreadyClaimedError.
    - The inbox only returns tasks whose (authority, role) matches an
      active posting of the caller.

Failure modes:
    - TaskNotFoundError, ForbiddenError, TaskAlreadyClaimedError,
      ValidationError (bad inbox arguments), ConcurrencyConflictError (a
      second open task).
"""

from __future__ import annotations

from datetime import datetime
from typing import Sequence
from uuid import UUID

from sqlalchemy import and_, or_, select, update

from govflow_kernel.domain.calendar import DEFAULT_NON_WORKING_WEEKDAYS, WorkingCalendar
from govflow_kernel.domain.dtos import InboxTask
from govflow_kernel.domain.workflow import StateDef
from govflow_kernel.exceptions import (
    ConcurrencyConflictError,
    ForbiddenError,
    TaskAlreadyClaimedError,
    TaskNotFoundError,
    ValidationError,
)
from govflow_kernel.logging_config import get_logger
from govflow_kernel.models.application import Application
from govflow_kernel.models.authority import AuthorityCalendar, AuthorityHoliday, OfficerPosting
from govflow_kernel.models.task import OPEN_TASK_STATUSES, Task, TaskStatus
from govflow_kernel.services.base import BaseService

logger = get_logger("services.task")

MAX_INBOX_LIMIT = 500


def _as_uuid(task_id: UUID | str) -> UUID:
    if isinstance(task_id, UUID):
        return task_id
    try:
        return UUID(str(task_id))
    except ValueError as exc:
        raise TaskNotFoundError(str(task_id)) from exc


class TaskService(BaseService):
    """Task lifecycle within the caller's transaction."""

    # Calendars and postings

    def calendar_for(self, authority_id: str) -> WorkingCalendar:
        """Working calendar of an authority; Sat/Sun off when none is stored."""
        row = self.session.execute(
            select(AuthorityCalendar).where(AuthorityCalendar.authority_id == authority_id)
        ).scalar_one_or_none()
        weekdays = (
            frozenset(row.non_working_weekdays)
            if row is not None and row.non_working_weekdays is not None
            else DEFAULT_NON_WORKING_WEEKDAYS
        )
        holidays = self.session.execute(
            select(AuthorityHoliday.holiday_date).where(
                AuthorityHoliday.authority_id == authority_id
            )
        ).scalars().all()
        return WorkingCalendar(non_working_weekdays=weekdays, holidays=frozenset(holidays))

    def roles_for(self, user_id: str, authority_id: str | None = None) -> set[tuple[str, str]]:
        """(authority_id, role_id) pairs the user is actively posted to."""
        stmt = select(OfficerPosting.authority_id, OfficerPosting.role_id).where(
            OfficerPosting.user_id == user_id,
            OfficerPosting.active.is_(True),
        )
        if authority_id is not None:
            stmt = stmt.where(OfficerPosting.authority_id == authority_id)
        return {(a, r) for a, r in self.session.execute(stmt).all()}

    def post_officer(self, user_id: str, authority_id: str, role_id: str) -> OfficerPosting:
        posting = OfficerPosting(user_id=user_id, authority_id=authority_id, role_id=role_id)
        self.session.add(posting)
        self.session.flush()
        return posting

    # Lifecycle

    def get_task(self, task_id: UUID | str) -> Task:
        task = self.session.get(Task, _as_uuid(task_id))
        if task is None:
            raise TaskNotFoundError(str(task_id))
        return task

    def active_task(self, application: Application) -> Task | None:
        return self.session.execute(
            select(Task).where(
                Task.application_id == application.id,
                Task.status.in_(OPEN_TASK_STATUSES),
            )
        ).scalar_one_or_none()

    def create_task(
        self,
        application: Application,
        state: StateDef,
        sla_due_at: datetime | None,
    ) -> Task:
        """Open the task for an officer state."""
        role = state.effective_task_role
        if not state.requires_task or role is None:
            raise ValueError(f"State {state.state_id} does not take officer tasks")
        if self.active_task(application) is not None:
            raise ConcurrencyConflictError(
                "Application", application.arn, "Application already has an open task"
            )

        task = Task(
            application_id=application.id,
            arn=application.arn,
            state_id=state.state_id,
            role_required=role,
            status=TaskStatus.PENDING,
            sla_due_at=sla_due_at,
            created_at=self.clock.now(),
            updated_at=self.clock.now(),
        )
        self.session.add(task)
        self.session.flush()
        logger.info(
            "task_created",
            extra={
                "task_id": str(task.id),
                "arn": application.arn,
                "state_id": state.state_id,
                "role_required": role,
                "sla_due_at": sla_due_at.isoformat() if sla_due_at else None,
            },
        )
        return task

    def complete_task(
        self,
        task: Task,
        actor_id: str,
        outcome: str,
        remarks: str | None = None,
    ) -> Task:
        if task.status == TaskStatus.COMPLETED:
            raise ConcurrencyConflictError("Task", str(task.id), "Task is already completed")
        now = self.clock.now()
        if task.assignee_id is None:
            task.assignee_id = actor_id
            task.claimed_at = now
        task.status = TaskStatus.COMPLETED
        task.completed_at = now
        task.completed_by = actor_id
        task.decision = outcome
        task.remarks = remarks
        task.updated_at = now
        self.session.flush()
        logger.info(
            "task_completed",
            extra={"task_id": str(task.id), "arn": task.arn, "outcome": outcome},
        )
        return task

    # Role pool

    def _check_posting(self, task: Task, user_id: str) -> Application:
        application = self.session.get(Application, task.application_id)
        if (application.authority_id, task.role_required) not in self.roles_for(
            user_id, application.authority_id
        ):
            raise ForbiddenError(
                f"User {user_id} is not posted as {task.role_required} "
                f"at authority {application.authority_id}",
                actor_id=user_id,
                required_roles=[task.role_required],
            )
        return application

    def claim_task(self, task_id: UUID | str, user_id: str) -> Task:
        """Take an unassigned PENDING task from the pool."""
        task = self.get_task(task_id)
        self._check_posting(task, user_id)

        now = self.clock.now()
        result = self.session.execute(
            update(Task)
            .where(
                Task.id == task.id,
                Task.status == TaskStatus.PENDING,
                Task.assignee_id.is_(None),
            )
            .values(
                assignee_id=user_id,
                status=TaskStatus.IN_PROGRESS,
                claimed_at=now,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        self.session.refresh(task)
        if result.rowcount != 1:
            logger.info(
                "task_claim_conflict",
                extra={"task_id": str(task.id), "user_id": user_id, "assignee_id": task.assignee_id},
            )
            raise TaskAlreadyClaimedError(str(task.id), task.assignee_id)

        logger.info("task_claimed", extra={"task_id": str(task.id), "user_id": user_id})
        return task

    def release_task(self, task_id: UUID | str, user_id: str) -> Task:
        """Return a claimed task to the pool.  Only the assignee may release."""
        task = self.get_task(task_id)
        if task.status != TaskStatus.IN_PROGRESS or task.assignee_id != user_id:
            raise ForbiddenError(
                f"Task {task.id} is not claimed by {user_id}", actor_id=user_id
            )

        result = self.session.execute(
            update(Task)
            .where(
                Task.id == task.id,
                Task.status == TaskStatus.IN_PROGRESS,
                Task.assignee_id == user_id,
            )
            .values(
                assignee_id=None,
                status=TaskStatus.PENDING,
                claimed_at=None,
                updated_at=self.clock.now(),
            )
            .execution_options(synchronize_session=False)
        )
        self.session.refresh(task)
        if result.rowcount != 1:
            raise ConcurrencyConflictError("Task", str(task.id))

        logger.info("task_released", extra={"task_id": str(task.id), "user_id": user_id})
        return task

    # Inbox

    def get_inbox_tasks(
        self,
        user_id: str,
        authority_id: str | None = None,
        status: TaskStatus | str = TaskStatus.PENDING,
        limit: int = 50,
        offset: int = 0,
    ) -> list[InboxTask]:
        """
        Tasks the caller can act on, most urgent first.

        PENDING lists the unassigned pool for the caller's postings;
        IN_PROGRESS lists the caller's claimed tasks.  Ordered by
        sla_due_at ascending (tasks without a deadline last), then
        created_at.
        """
        if not isinstance(limit, int) or isinstance(limit, bool) or not 1 <= limit <= MAX_INBOX_LIMIT:
            raise ValidationError(f"limit must be between 1 and {MAX_INBOX_LIMIT}", field="limit")
        if not isinstance(offset, int) or isinstance(offset, bool) or offset < 0:
            raise ValidationError("offset must be >= 0", field="offset")
        try:
            status = TaskStatus(status)
        except ValueError as exc:
            raise ValidationError(f"Invalid task status: {status!r}", field="status") from exc
        if status == TaskStatus.COMPLETED:
            raise ValidationError("Completed tasks are not listed in the inbox", field="status")

        postings = self.roles_for(user_id, authority_id)
        if not postings:
            return []

        posting_filter = or_(*[
            and_(Application.authority_id == a, Task.role_required == r)
            for a, r in sorted(postings)
        ])
        stmt = (
            select(Task, Application)
            .join(Application, Task.application_id == Application.id)
            .where(Task.status == status, posting_filter)
        )
        if status == TaskStatus.PENDING:
            stmt = stmt.where(Task.assignee_id.is_(None))
        else:
            stmt = stmt.where(Task.assignee_id == user_id)

        stmt = (
            stmt.order_by(
                Task.sla_due_at.is_(None),
                Task.sla_due_at.asc(),
                Task.created_at.asc(),
                Task.id.asc(),
            )
            .limit(limit)
            .offset(offset)
        )
        rows = self.session.execute(stmt).all()
        return [InboxTask.from_model(task, app) for task, app in rows]

    # SLA

    def pause_sla(self, application: Application, paused_at: datetime, remaining_days: int) -> None:
        application.sla_paused_at = paused_at
        application.sla_remaining_days = remaining_days
        logger.info(
            "sla_paused",
            extra={"arn": application.arn, "remaining_days": remaining_days},
        )

    def resume_sla(self, application: Application) -> int | None:
        """Clear the pause; returns the frozen budget (None if not paused)."""
        remaining = application.sla_remaining_days
        if application.sla_paused_at is None:
            return None
        application.sla_paused_at = None
        application.sla_remaining_days = None
        logger.info("sla_resumed", extra={"arn": application.arn, "remaining_days": remaining})
        return remaining

    def find_breached_tasks(self, now: datetime, limit: int = 500) -> Sequence[Task]:
        """Open tasks past their deadline that have not been flagged yet."""
        return self.session.execute(
            select(Task)
            .join(Application, Task.application_id == Application.id)
            .where(
                Task.status.in_(OPEN_TASK_STATUSES),
                Task.sla_due_at.is_not(None),
                Task.sla_due_at < now,
                Task.sla_breached_at.is_(None),
                Application.sla_paused_at.is_(None),
            )
            .order_by(Task.sla_due_at)
            .limit(limit)
        ).scalars().all()

    def mark_breached(self, task: Task, now: datetime) -> None:
        task.sla_breached_at = now
        task.updated_at = now
        self.session.flush()
        logger.warning(
            "sla_breached",
            extra={
                "task_id": str(task.id),
                "arn": task.arn,
                "state_id": task.state_id,
                "sla_due_at": task.sla_due_at.isoformat() if task.sla_due_at else None,
            },
        )
