"""
Typed Exception Hierarchy for the Workflow Kernel.

===============================================================================
ERROR TAXONOMY
===============================================================================

Every error raised by the engine is a typed exception with a class-level
``code`` (machine-readable, API-safe) and a ``category`` that maps it onto
the public taxonomy returned to callers:

    GovflowError (base)
    |
    +-- ValidationError                   VALIDATION_ERROR
    |   +-- ApplicationNotFoundError      APPLICATION_NOT_FOUND
    |   +-- TaskNotFoundError             TASK_NOT_FOUND
    |   +-- QueryNotFoundError            QUERY_NOT_FOUND
    |   +-- QueryNotPendingError          QUERY_NOT_PENDING
    |   +-- FieldsNotUnlockedError        FIELDS_NOT_UNLOCKED
    |   +-- MandatoryItemsMissingError    MANDATORY_ITEMS_MISSING
    |
    +-- GuardFailedError                  GUARD_FAILED
    +-- ForbiddenError                    FORBIDDEN
    +-- TransitionNotFoundError           TRANSITION_NOT_FOUND
    |
    +-- ConcurrencyConflictError          CONCURRENCY_CONFLICT
    |   +-- TaskAlreadyClaimedError       TASK_ALREADY_CLAIMED
    |
    +-- QueryBudgetExhaustedError         QUERY_BUDGET_EXHAUSTED
    +-- ActionDispatchFailureError        ACTION_DISPATCH_FAILURE
    +-- AuditChainBrokenError             AUDIT_CHAIN_BROKEN
    |
    +-- WorkflowConfigError
    |   +-- WorkflowNotFoundError         WORKFLOW_NOT_FOUND
    |   +-- WorkflowDefinitionError       WORKFLOW_DEFINITION_INVALID
    |   +-- WorkflowChecksumMismatchError WORKFLOW_CHECKSUM_MISMATCH
    |
    +-- ImmutabilityViolationError        IMMUTABILITY_VIOLATION

===============================================================================
PROPAGATION
===============================================================================

Engine-internal errors are returned to the caller (the transition
executor converts them into ``TransitionResult`` values).  Only
``AuditChainBrokenError`` is a system-health alarm: it halts automated
processing and is never auto-repaired.

    try:
        service.raise_query(...)
    except QueryBudgetExhaustedError as e:
        return {"error": e.code, "max_cycles": e.max_cycles}

Configuration errors (WorkflowConfigError) are raised at definition load
time, never during evaluation.
"""

from typing import Any


class GovflowError(Exception):
    """
    Base exception for all workflow engine errors.

    Subclasses carry a ``code`` class attribute and store their context as
    attributes so the error survives logging and serialization.
    """

    code: str = "GOVFLOW_ERROR"
    category: str | None = None

    @classmethod
    def error_category(cls) -> str:
        return cls.category or cls.code

    def details(self) -> dict[str, Any]:
        return {}

    def to_dict(self) -> dict[str, Any]:
        return {
            "code": self.code,
            "category": self.error_category(),
            "message": str(self),
            "details": self.details(),
        }


# Validation


class ValidationError(GovflowError):
    """Malformed request; recoverable by the caller."""

    code: str = "VALIDATION_ERROR"

    def __init__(self, message: str, field: str | None = None):
        self.field = field
        super().__init__(message)

    def details(self) -> dict[str, Any]:
        return {"field": self.field} if self.field else {}


class ApplicationNotFoundError(ValidationError):
    code: str = "APPLICATION_NOT_FOUND"
    category = "VALIDATION_ERROR"

    def __init__(self, arn: str):
        self.arn = arn
        super().__init__(f"Application not found: {arn}")

    def details(self) -> dict[str, Any]:
        return {"arn": self.arn}


class TaskNotFoundError(ValidationError):
    code: str = "TASK_NOT_FOUND"
    category = "VALIDATION_ERROR"

    def __init__(self, task_id: str):
        self.task_id = task_id
        super().__init__(f"Task not found: {task_id}")

    def details(self) -> dict[str, Any]:
        return {"task_id": self.task_id}


class QueryNotFoundError(ValidationError):
    code: str = "QUERY_NOT_FOUND"
    category = "VALIDATION_ERROR"

    def __init__(self, arn: str, query_id: str):
        self.arn = arn
        self.query_id = query_id
        super().__init__(f"Query {query_id} not found for application {arn}")

    def details(self) -> dict[str, Any]:
        return {"arn": self.arn, "query_id": self.query_id}


class QueryNotPendingError(ValidationError):
    code: str = "QUERY_NOT_PENDING"
    category = "VALIDATION_ERROR"

    def __init__(self, query_id: str, status: str):
        self.query_id = query_id
        self.status = status
        super().__init__(f"Query {query_id} is {status}, expected PENDING")

    def details(self) -> dict[str, Any]:
        return {"query_id": self.query_id, "status": self.status}


class FieldsNotUnlockedError(ValidationError):
    """Citizen attempted to edit fields the query did not unlock."""

    code: str = "FIELDS_NOT_UNLOCKED"
    category = "VALIDATION_ERROR"

    def __init__(self, locked_fields: list[str]):
        self.locked_fields = sorted(locked_fields)
        super().__init__(
            f"Fields are not editable for this query: {', '.join(self.locked_fields)}"
        )

    def details(self) -> dict[str, Any]:
        return {"locked_fields": self.locked_fields}


class MandatoryItemsMissingError(ValidationError):
    """Query response left unlocked mandatory items unaddressed."""

    code: str = "MANDATORY_ITEMS_MISSING"
    category = "VALIDATION_ERROR"

    def __init__(self, missing_fields: list[str], missing_doc_types: list[str]):
        self.missing_fields = sorted(missing_fields)
        self.missing_doc_types = sorted(missing_doc_types)
        parts = []
        if self.missing_fields:
            parts.append(f"fields {', '.join(self.missing_fields)}")
        if self.missing_doc_types:
            parts.append(f"documents {', '.join(self.missing_doc_types)}")
        super().__init__(f"Query response is missing mandatory {' and '.join(parts)}")

    def details(self) -> dict[str, Any]:
        return {
            "missing_fields": self.missing_fields,
            "missing_doc_types": self.missing_doc_types,
        }


# Transition rejection


class GuardFailedError(GovflowError):
    """The transition's guard evaluated false."""

    code: str = "GUARD_FAILED"

    def __init__(self, transition_id: str, condition: str, reason: str | None = None):
        self.transition_id = transition_id
        self.condition = condition
        self.reason = reason or f"Condition not satisfied: {condition}"
        super().__init__(f"Guard failed for {transition_id}: {self.reason}")

    def details(self) -> dict[str, Any]:
        return {
            "transition_id": self.transition_id,
            "condition": self.condition,
            "reason": self.reason,
        }


class ForbiddenError(GovflowError):
    """Actor lacks the role (or task ownership) required for the operation."""

    code: str = "FORBIDDEN"

    def __init__(self, message: str, actor_id: str | None = None,
                 required_roles: list[str] | None = None):
        self.actor_id = actor_id
        self.required_roles = list(required_roles or [])
        super().__init__(message)

    def details(self) -> dict[str, Any]:
        return {"actor_id": self.actor_id, "required_roles": self.required_roles}


class TransitionNotFoundError(GovflowError):
    """Transition unknown or not valid from the current state (stale client)."""

    code: str = "TRANSITION_NOT_FOUND"

    def __init__(self, transition_id: str, current_state: str | None = None):
        self.transition_id = transition_id
        self.current_state = current_state
        super().__init__(
            f"Transition {transition_id} is not available from state {current_state}"
        )

    def details(self) -> dict[str, Any]:
        return {"transition_id": self.transition_id, "current_state": self.current_state}


# Concurrency


class ConcurrencyConflictError(GovflowError):
    """Optimistic version clash; the caller retries."""

    code: str = "CONCURRENCY_CONFLICT"

    def __init__(self, entity_type: str, entity_id: str, message: str | None = None):
        self.entity_type = entity_type
        self.entity_id = entity_id
        super().__init__(
            message or f"Concurrent modification of {entity_type} {entity_id}"
        )

    def details(self) -> dict[str, Any]:
        return {"entity_type": self.entity_type, "entity_id": self.entity_id}


class TaskAlreadyClaimedError(ConcurrencyConflictError):
    code: str = "TASK_ALREADY_CLAIMED"
    category = "CONCURRENCY_CONFLICT"

    def __init__(self, task_id: str, assignee_id: str | None):
        self.assignee_id = assignee_id
        super().__init__(
            "Task", task_id, f"Task {task_id} is not available to claim"
        )

    def details(self) -> dict[str, Any]:
        return {**super().details(), "assignee_id": self.assignee_id}


# Query loop


class QueryBudgetExhaustedError(GovflowError):
    """Raising another query would exceed queryPolicy.max_cycles."""

    code: str = "QUERY_BUDGET_EXHAUSTED"

    def __init__(self, arn: str, query_count: int, max_cycles: int):
        self.arn = arn
        self.query_count = query_count
        self.max_cycles = max_cycles
        super().__init__(
            f"Application {arn} has used {query_count} of {max_cycles} query cycles"
        )

    def details(self) -> dict[str, Any]:
        return {"arn": self.arn, "query_count": self.query_count, "max_cycles": self.max_cycles}


# Side effects


class ActionDispatchFailureError(GovflowError):
    """A dispatched action failed. Retried internally, never surfaced synchronously."""

    code: str = "ACTION_DISPATCH_FAILURE"

    def __init__(self, idempotency_key: str, kind: str, reason: str):
        self.idempotency_key = idempotency_key
        self.kind = kind
        self.reason = reason
        super().__init__(f"Action {kind} ({idempotency_key}) failed: {reason}")

    def details(self) -> dict[str, Any]:
        return {"idempotency_key": self.idempotency_key, "kind": self.kind, "reason": self.reason}


# Audit


class AuditChainBrokenError(GovflowError):
    """Audit hash chain validation failed. Fatal; requires manual investigation."""

    code: str = "AUDIT_CHAIN_BROKEN"

    def __init__(self, event_id: str | None, reason: str, checked_count: int,
                 expected: str | None = None, actual: str | None = None):
        self.event_id = event_id
        self.reason = reason
        self.checked_count = checked_count
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Audit chain broken at event {event_id} ({reason}) "
            f"after {checked_count} verified events"
        )

    def details(self) -> dict[str, Any]:
        return {
            "event_id": self.event_id,
            "reason": self.reason,
            "checked_count": self.checked_count,
            "expected": self.expected,
            "actual": self.actual,
        }


# Configuration


class WorkflowConfigError(GovflowError):
    code: str = "WORKFLOW_CONFIG_ERROR"


class WorkflowNotFoundError(WorkflowConfigError):
    code: str = "WORKFLOW_NOT_FOUND"

    def __init__(self, service_key: str, version: str | None):
        self.service_key = service_key
        self.version = version
        super().__init__(f"No workflow definition for {service_key}@{version}")

    def details(self) -> dict[str, Any]:
        return {"service_key": self.service_key, "version": self.version}


class WorkflowDefinitionError(WorkflowConfigError):
    """Definition failed validation at load time."""

    code: str = "WORKFLOW_DEFINITION_INVALID"

    def __init__(self, source: str, errors: list[str]):
        self.source = source
        self.errors = list(errors)
        summary = "; ".join(self.errors[:5])
        if len(self.errors) > 5:
            summary += f" (+{len(self.errors) - 5} more)"
        super().__init__(f"Invalid workflow definition {source}: {summary}")

    def details(self) -> dict[str, Any]:
        return {"source": self.source, "errors": self.errors}


class WorkflowChecksumMismatchError(WorkflowConfigError):
    """Pinned definition fingerprint no longer matches the loaded definition."""

    code: str = "WORKFLOW_CHECKSUM_MISMATCH"

    def __init__(self, service_key: str, version: str, expected: str, actual: str):
        self.service_key = service_key
        self.version = version
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Workflow {service_key}@{version} changed after it was pinned: "
            f"{expected[:16]}... != {actual[:16]}..."
        )

    def details(self) -> dict[str, Any]:
        return {
            "service_key": self.service_key,
            "version": self.version,
            "expected": self.expected,
            "actual": self.actual,
        }


# Immutability


class ImmutabilityViolationError(GovflowError):
    """Attempted modification of an append-only or write-once record."""

    code: str = "IMMUTABILITY_VIOLATION"

    def __init__(self, entity_type: str, entity_id: str, reason: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.reason = reason
        super().__init__(f"Cannot modify {entity_type} {entity_id}: {reason}")

    def details(self) -> dict[str, Any]:
        return {"entity_type": self.entity_type, "entity_id": self.entity_id}
