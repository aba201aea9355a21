"""
Pure domain layer.

Value objects and DTOs with NO dependencies on:
- ORM (SQLAlchemy)
- Database
- I/O

All domain objects are immutable and deterministic.
"""

from govflow_kernel.domain.calendar import WorkingCalendar
from govflow_kernel.domain.clock import Clock, DeterministicClock, SystemClock
from govflow_kernel.domain.dtos import (
    Actor,
    AuditTrailEntry,
    ChainMismatch,
    ChainVerification,
    InboxTask,
    TransitionResult,
)
from govflow_kernel.domain.workflow import (
    ActionKind,
    ActionSpec,
    ActorType,
    CarryRounding,
    DecisionKind,
    DisposalType,
    Guard,
    QueryPolicy,
    ReturnRule,
    SlaCarryPolicy,
    StateDef,
    TransitionDef,
    TriggerType,
    WorkflowDefinition,
)

__all__ = [
    "ActionKind",
    "ActionSpec",
    "Actor",
    "ActorType",
    "AuditTrailEntry",
    "CarryRounding",
    "ChainMismatch",
    "ChainVerification",
    "Clock",
    "DecisionKind",
    "DeterministicClock",
    "DisposalType",
    "Guard",
    "InboxTask",
    "QueryPolicy",
    "ReturnRule",
    "SlaCarryPolicy",
    "StateDef",
    "SystemClock",
    "TransitionDef",
    "TransitionResult",
    "TriggerType",
    "WorkflowDefinition",
    "WorkingCalendar",
]
