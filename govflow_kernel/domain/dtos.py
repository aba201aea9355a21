"""
DTOs -- immutable data crossing the service boundary.

Responsibility:
    Actor identity, transition results, inbox rows and audit verification
    reports.  Services return these instead of ORM entities so callers never
    hold live rows outside a session.

Architecture position:
    Kernel > Domain -- pure, zero I/O.  ``from_model()`` converters are only
    called from the service layer.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from types import MappingProxyType
from typing import TYPE_CHECKING, Any, Iterable, Mapping

from govflow_kernel.domain.workflow import ActorType

if TYPE_CHECKING:
    from govflow_kernel.models.application import Application
    from govflow_kernel.models.audit_event import AuditEvent
    from govflow_kernel.models.task import Task


def deep_freeze(value: Any) -> Any:
    """Recursively convert dicts to read-only mappings and lists to tuples."""
    if isinstance(value, Mapping):
        return MappingProxyType({k: deep_freeze(v) for k, v in value.items()})
    if isinstance(value, (list, tuple)):
        return tuple(deep_freeze(v) for v in value)
    return value


def thaw(value: Any) -> Any:
    """Inverse of deep_freeze, producing JSON-ready dicts and lists."""
    if isinstance(value, Mapping):
        return {k: thaw(v) for k, v in value.items()}
    if isinstance(value, tuple):
        return [thaw(v) for v in value]
    return value


@dataclass(frozen=True)
class Actor:
    """Who is asking.  Roles are compared as a set."""

    actor_id: str
    roles: frozenset[str] = frozenset()
    actor_type: ActorType = ActorType.OFFICER

    @classmethod
    def of(cls, actor_id: str, roles: Iterable[str] = (),
           actor_type: ActorType = ActorType.OFFICER) -> Actor:
        return cls(actor_id=actor_id, roles=frozenset(roles), actor_type=actor_type)

    @classmethod
    def system(cls, actor_id: str = "system") -> Actor:
        return cls(actor_id=actor_id, roles=frozenset(), actor_type=ActorType.SYSTEM)

    @property
    def is_system(self) -> bool:
        return self.actor_type == ActorType.SYSTEM

    def to_dict(self) -> dict[str, Any]:
        return {
            "actor_id": self.actor_id,
            "actor_type": self.actor_type.value,
            "roles": sorted(self.roles),
        }


@dataclass(frozen=True)
class TransitionResult:
    """Outcome of one execute_transition call.

    On success ``new_state`` is set and ``error_code`` is None.  On failure
    the application is unchanged and ``error_code`` carries the taxonomy
    code of the typed error.
    """

    success: bool
    arn: str
    transition_id: str
    new_state: str | None = None
    previous_state: str | None = None
    task_id: str | None = None
    query_id: str | None = None
    audit_event_id: str | None = None
    action_keys: tuple[str, ...] = ()
    error_code: str | None = None
    error_category: str | None = None
    error_message: str | None = None
    details: Mapping[str, Any] = field(default_factory=lambda: MappingProxyType({}))

    @classmethod
    def failed(cls, arn: str, transition_id: str, error: Any,
               current_state: str | None = None) -> TransitionResult:
        return cls(
            success=False,
            arn=arn,
            transition_id=transition_id,
            previous_state=current_state,
            error_code=error.code,
            error_category=error.error_category(),
            error_message=str(error),
            details=MappingProxyType(dict(error.details())),
        )

    def to_dict(self) -> dict[str, Any]:
        if self.success:
            out: dict[str, Any] = {"new_state": self.new_state}
            if self.task_id:
                out["task_id"] = self.task_id
            if self.query_id:
                out["query_id"] = self.query_id
            return out
        return {
            "error": self.error_category,
            "code": self.error_code,
            "message": self.error_message,
            "details": dict(self.details),
        }


@dataclass(frozen=True)
class InboxTask:
    """One row of an officer's inbox."""

    task_id: str
    arn: str
    service_key: str
    authority_id: str
    state_id: str
    role_required: str
    status: str
    assignee_id: str | None
    sla_due_at: datetime | None
    created_at: datetime

    @classmethod
    def from_model(cls, task: Task, application: Application) -> InboxTask:
        return cls(
            task_id=str(task.id),
            arn=application.arn,
            service_key=application.service_key,
            authority_id=application.authority_id,
            state_id=task.state_id,
            role_required=task.role_required,
            status=task.status.value,
            assignee_id=task.assignee_id,
            sla_due_at=task.sla_due_at,
            created_at=task.created_at,
        )


@dataclass(frozen=True)
class ChainMismatch:
    """First broken link found by chain verification."""

    event_id: str
    seq: int
    reason: str
    expected: str | None
    actual: str | None


@dataclass(frozen=True)
class ChainVerification:
    """Result of replaying the audit chain from genesis."""

    ok: bool
    checked_count: int
    mismatch: ChainMismatch | None = None

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"ok": self.ok, "checked_count": self.checked_count}
        if self.mismatch is not None:
            out["mismatch"] = {
                "event_id": self.mismatch.event_id,
                "seq": self.mismatch.seq,
                "reason": self.mismatch.reason,
                "expected": self.mismatch.expected,
                "actual": self.mismatch.actual,
            }
        return out


@dataclass(frozen=True)
class AuditTrailEntry:
    """One audit event as seen by a reader of an application's history."""

    event_id: str
    seq: int
    event_type: str
    actor_id: str
    actor_type: str
    occurred_at: datetime
    payload: Mapping[str, Any]
    prev_hash: str
    hash: str

    @classmethod
    def from_model(cls, event: AuditEvent) -> AuditTrailEntry:
        return cls(
            event_id=str(event.event_id),
            seq=event.seq,
            event_type=event.event_type,
            actor_id=event.actor_id,
            actor_type=event.actor_type,
            occurred_at=event.occurred_at,
            payload=deep_freeze(event.payload or {}),
            prev_hash=event.prev_hash,
            hash=event.hash,
        )
