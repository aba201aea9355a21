"""
Canonical workflow definition types (``govflow_kernel.domain.workflow``).

Responsibility
--------------
Pure value objects describing a versioned, immutable workflow: states,
transitions, action lists and the query policy.  A definition is loaded
once by the config registry and pinned to an application at submission;
nothing in the engine mutates it afterwards.

Architecture position
---------------------
**Kernel domain layer** -- pure value objects.  ZERO I/O.  No imports
from ``db/``, ``services/``, or outer layers.

Invariants enforced
-------------------
* Transitions reference only states in ``WorkflowDefinition.states``
  (checked by the config validator before construction).
* Action kinds form a closed enumeration (``ActionKind``).
* Collections are tuples / read-only mappings; definitions are frozen.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any, Mapping


class ActorType(str, Enum):
    CITIZEN = "CITIZEN"
    OFFICER = "OFFICER"
    SYSTEM = "SYSTEM"


class TriggerType(str, Enum):
    MANUAL = "manual"
    SYSTEM = "system"


class ActionKind(str, Enum):
    """Closed set of side-effect kinds a transition may request."""

    ASSIGN_TASK = "ASSIGN_TASK"
    NOTIFY = "NOTIFY"
    GENERATE_OUTPUT = "GENERATE_OUTPUT"
    CALL_INTEGRATION = "CALL_INTEGRATION"


class DecisionKind(str, Enum):
    APPROVE = "APPROVE"
    REJECT = "REJECT"
    RETURN = "RETURN"
    PARTIAL_APPROVE = "PARTIAL_APPROVE"


class DisposalType(str, Enum):
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    PARTIALLY_APPROVED = "PARTIALLY_APPROVED"


DISPOSAL_FOR_DECISION: Mapping[DecisionKind, DisposalType] = MappingProxyType({
    DecisionKind.APPROVE: DisposalType.APPROVED,
    DecisionKind.REJECT: DisposalType.REJECTED,
    DecisionKind.PARTIAL_APPROVE: DisposalType.PARTIALLY_APPROVED,
})


class ReturnRule(str, Enum):
    """Where a query response sends the application."""

    ORIGIN = "ORIGIN"
    FIXED = "FIXED"


class CarryRounding(str, Enum):
    """How a partial working day left at the pause instant is carried."""

    FLOOR = "floor"  # dropped
    CEIL = "ceil"    # counted as a whole day


_EMPTY: Mapping[str, Any] = MappingProxyType({})


@dataclass(frozen=True)
class Guard:
    """A rule expression that must evaluate true for a transition to fire.

    Contract: frozen, validated at load time.  ``message`` overrides the
    failing-condition text reported to the caller.
    """
    expression: str
    message: str | None = None


@dataclass(frozen=True)
class ActionSpec:
    """One side effect requested by a transition.

    ``action_id`` is unique within its transition and feeds the dispatch
    idempotency key.
    """
    action_id: str
    kind: ActionKind
    params: Mapping[str, Any] = field(default_factory=lambda: _EMPTY)


@dataclass(frozen=True)
class StateDef:
    """A workflow node.

    Contract: OFFICER states that are not terminal require a task; the task
    role is ``task_role`` or the first allowed role.
    """
    state_id: str
    actor_type: ActorType
    allowed_roles: tuple[str, ...] = ()
    terminal: bool = False
    task_role: str | None = None
    sla_days: int | None = None
    description: str = ""

    @property
    def requires_task(self) -> bool:
        return self.actor_type == ActorType.OFFICER and not self.terminal

    @property
    def effective_task_role(self) -> str | None:
        if self.task_role:
            return self.task_role
        return self.allowed_roles[0] if self.allowed_roles else None


@dataclass(frozen=True)
class TransitionDef:
    """A directed edge of the workflow graph.

    ``to_state`` is None only for query-response transitions whose target
    is resolved from the query's origin state.  ``outcome`` is the label
    recorded on the completed task (FORWARD, QUERY, APPROVE, ...).
    """
    transition_id: str
    from_state: str
    to_state: str | None
    trigger: TriggerType = TriggerType.MANUAL
    allowed_roles: tuple[str, ...] = ()
    guard: Guard | None = None
    actions: tuple[ActionSpec, ...] = ()
    decision: DecisionKind | None = None
    outcome: str | None = None
    raises_query: bool = False
    responds_to_query: bool = False
    description: str = ""

    @property
    def is_system(self) -> bool:
        return self.trigger == TriggerType.SYSTEM

    @property
    def task_outcome(self) -> str:
        if self.outcome:
            return self.outcome
        if self.decision is not None:
            return self.decision.value
        if self.raises_query:
            return "QUERY"
        return "FORWARD"


@dataclass(frozen=True)
class SlaCarryPolicy:
    """Carry-forward rule for an SLA budget frozen by a query.

    remaining = whole working-day steps from the pause instant that land on
    or before the due instant, plus one for a trailing partial day under
    CEIL; never below ``minimum_remaining_days``.
    """
    rounding: CarryRounding = CarryRounding.FLOOR
    minimum_remaining_days: int = 0


@dataclass(frozen=True)
class QueryPolicy:
    """Bounds and routing of the query/resubmission loop."""
    max_cycles: int = 3
    pause_sla: bool = True
    return_rule: ReturnRule = ReturnRule.ORIGIN
    return_state: str | None = None
    response_days: int = 15
    sla_carry: SlaCarryPolicy = field(default_factory=SlaCarryPolicy)
    expiry_transition: str | None = None


@dataclass(frozen=True)
class WorkflowDefinition:
    """An immutable, versioned workflow bundle.

    Contract:
        Constructed only by the config loader after validation.  Pinned to
        applications by (service_key, version, checksum).
    """
    service_key: str
    version: str
    name: str
    initial_state: str
    states: Mapping[str, StateDef]
    transitions: tuple[TransitionDef, ...]
    query_policy: QueryPolicy
    checksum: str
    submit_transition: str | None = None
    description: str = ""

    def state(self, state_id: str) -> StateDef | None:
        return self.states.get(state_id)

    def transition(self, transition_id: str) -> TransitionDef | None:
        for transition in self.transitions:
            if transition.transition_id == transition_id:
                return transition
        return None

    def transitions_from(self, state_id: str) -> tuple[TransitionDef, ...]:
        return tuple(t for t in self.transitions if t.from_state == state_id)

    def query_transitions_from(self, state_id: str) -> tuple[TransitionDef, ...]:
        return tuple(t for t in self.transitions_from(state_id) if t.raises_query)

    def response_transitions_from(self, state_id: str) -> tuple[TransitionDef, ...]:
        return tuple(t for t in self.transitions_from(state_id) if t.responds_to_query)

    def system_transitions_from(self, state_id: str) -> tuple[TransitionDef, ...]:
        return tuple(t for t in self.transitions_from(state_id) if t.is_system)

    @property
    def terminal_states(self) -> frozenset[str]:
        return frozenset(s.state_id for s in self.states.values() if s.terminal)
