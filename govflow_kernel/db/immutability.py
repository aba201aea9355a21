"""
Module: govflow_kernel.db.immutability
Responsibility: ORM-level immutability enforcement.  SQLAlchemy mapper event
    listeners block modification of append-only and write-once records before
    the SQL reaches the database.
Architecture position: Kernel > DB.  Imports models lazily inside the
    register/unregister functions to avoid circular imports.

  Layer 1: THIS FILE (ORM event listeners)
  Layer 2: db/triggers.py (database triggers)

Invariants enforced:
    - AuditEvent: never updated, never deleted.
    - Decision: never updated, never deleted.
    - Application: never deleted; submission_snapshot is write-once.
    - Task: a COMPLETED task is frozen.
    - ActionDeadLetter: never deleted (resolution is recorded, not erased).

Failure modes:
    - ImmutabilityViolationError raised from the flush that attempted the
      modification.  The surrounding transaction must be rolled back.
"""

from sqlalchemy import event
from sqlalchemy.orm import attributes

from govflow_kernel.exceptions import ImmutabilityViolationError
from govflow_kernel.logging_config import get_logger

logger = get_logger("db.immutability")


def _blocked(entity_type: str, target, operation: str, reason: str):
    logger.error(
        "immutability_violation_blocked",
        extra={
            "entity_type": entity_type,
            "entity_id": str(target.id),
            "operation": operation,
        },
    )
    raise ImmutabilityViolationError(
        entity_type=entity_type,
        entity_id=str(target.id),
        reason=reason,
    )


def _reject_audit_event_update(mapper, connection, target):
    _blocked("AuditEvent", target, "UPDATE", "Audit events are append-only")


def _reject_audit_event_delete(mapper, connection, target):
    _blocked("AuditEvent", target, "DELETE", "Audit events are append-only")


def _reject_decision_update(mapper, connection, target):
    _blocked("Decision", target, "UPDATE", "Decisions are immutable once written")


def _reject_decision_delete(mapper, connection, target):
    _blocked("Decision", target, "DELETE", "Decisions are immutable once written")


def _reject_application_delete(mapper, connection, target):
    _blocked("Application", target, "DELETE", "Applications are never deleted")


def _check_application_snapshot(mapper, connection, target):
    history = attributes.get_history(target, "submission_snapshot")
    if history.deleted and any(value is not None for value in history.deleted):
        _blocked(
            "Application",
            target,
            "UPDATE",
            "submission_snapshot is write-once",
        )


def _check_completed_task(mapper, connection, target):
    history = attributes.get_history(target, "status")
    previous = history.deleted[0] if history.deleted else target.status
    if str(getattr(previous, "value", previous)) == "COMPLETED":
        _blocked("Task", target, "UPDATE", "Completed tasks are frozen")


def _reject_dead_letter_delete(mapper, connection, target):
    _blocked("ActionDeadLetter", target, "DELETE", "Dead letters are retained for follow-up")


def _listeners():
    from govflow_kernel.models.action_dispatch import ActionDeadLetter
    from govflow_kernel.models.application import Application
    from govflow_kernel.models.audit_event import AuditEvent
    from govflow_kernel.models.decision import Decision
    from govflow_kernel.models.task import Task

    return [
        (AuditEvent, "before_update", _reject_audit_event_update),
        (AuditEvent, "before_delete", _reject_audit_event_delete),
        (Decision, "before_update", _reject_decision_update),
        (Decision, "before_delete", _reject_decision_delete),
        (Application, "before_delete", _reject_application_delete),
        (Application, "before_update", _check_application_snapshot),
        (Task, "before_update", _check_completed_task),
        (ActionDeadLetter, "before_delete", _reject_dead_letter_delete),
    ]


def register_immutability_listeners() -> None:
    """
    Register all immutability enforcement event listeners (idempotent).

    Call this after models are imported and before any database work.
    """
    for target, name, fn in _listeners():
        if not event.contains(target, name, fn):
            event.listen(target, name, fn)


def unregister_immutability_listeners() -> None:
    """
    Remove immutability enforcement event listeners.

    WARNING: Only use this in tests that deliberately tamper with records
    to verify detection.
    """
    for target, name, fn in _listeners():
        if event.contains(target, name, fn):
            event.remove(target, name, fn)
