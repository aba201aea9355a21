"""ORM models for the workflow kernel."""

from govflow_kernel.models.action_dispatch import (
    ActionDeadLetter,
    ActionDispatch,
    DispatchStatus,
)
from govflow_kernel.models.application import Application
from govflow_kernel.models.audit_event import AuditEvent, AuditEventType
from govflow_kernel.models.authority import AuthorityCalendar, AuthorityHoliday, OfficerPosting
from govflow_kernel.models.decision import Decision
from govflow_kernel.models.document import ApplicationDocument
from govflow_kernel.models.query_cycle import QueryCycle, QueryStatus
from govflow_kernel.models.task import OPEN_TASK_STATUSES, Task, TaskStatus


def import_all_models() -> None:
    """Make sure every table is registered on Base.metadata."""
    # SequenceCounter lives beside its service.
    import govflow_kernel.services.sequence_service  # noqa: F401


__all__ = [
    "ActionDeadLetter",
    "ActionDispatch",
    "Application",
    "ApplicationDocument",
    "AuditEvent",
    "AuditEventType",
    "AuthorityCalendar",
    "AuthorityHoliday",
    "Decision",
    "DispatchStatus",
    "OPEN_TASK_STATUSES",
    "OfficerPosting",
    "QueryCycle",
    "QueryStatus",
    "Task",
    "TaskStatus",
    "import_all_models",
]
