"""
Workflow Definition Validator (``govflow_config.validator``).

Responsibility
--------------
Validates a raw (YAML-parsed) workflow definition before it is turned
into frozen domain objects, so malformed definitions fail at load time
and never during evaluation.

Architecture position
---------------------
**Config layer** -- load-time validation.  Called by
``govflow_config.loader`` before parsing.

Invariants enforced
-------------------
* State and transition ids are unique; every transition references
  declared states.
* Guard expressions pass the restricted AST validator (``guard_ast.py``).
* Action kinds belong to the closed ``ActionKind`` set; action ids are
  unique per transition and usable inside idempotency keys.
* Terminal states have no outgoing transitions.
* Query-raise transitions target a citizen state; query-response
  transitions leave one and resolve their target from the query origin.
* Query policy bounds are sane and reference existing states and
  transitions.

Failure modes
-------------
* Validation errors (``ConfigValidationResult.errors``)  -> the definition
  MUST NOT be loaded.
* Validation warnings  -> loaded, but should be reviewed (unreachable
  states, manual officer transitions without roles).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from govflow_config.guard_ast import validate_guard_expression
from govflow_kernel.domain.workflow import (
    ActionKind,
    ActorType,
    CarryRounding,
    DecisionKind,
    ReturnRule,
    TriggerType,
)

_ACTION_KINDS = frozenset(k.value for k in ActionKind)
_ACTOR_TYPES = frozenset(a.value for a in ActorType)
_DECISIONS = frozenset(d.value for d in DecisionKind)
_TRIGGERS = frozenset(t.value for t in TriggerType)
_RETURN_RULES = frozenset(r.value for r in ReturnRule)
_ROUNDINGS = frozenset(r.value for r in CarryRounding)


@dataclass
class ConfigValidationResult:
    """
    Result of definition validation.

    Contract
    --------
    * ``is_valid`` returns ``True`` only when ``errors`` is empty.
    * Warnings do not block loading but should be reviewed.
    """

    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return len(self.errors) == 0

    def add_error(self, msg: str) -> None:
        self.errors.append(msg)

    def add_warning(self, msg: str) -> None:
        self.warnings.append(msg)


def validate_definition(raw: dict[str, Any]) -> ConfigValidationResult:
    """
    Validate a raw workflow definition mapping.

    Postconditions:
        - Returns a ``ConfigValidationResult`` with errors and warnings.
        - A definition with errors MUST NOT be loaded.
    """
    result = ConfigValidationResult()

    if not isinstance(raw, dict):
        result.add_error("Definition must be a mapping")
        return result

    for key in ("service_key", "version", "initial_state", "states", "transitions"):
        if raw.get(key) in (None, "", []):
            result.add_error(f"Missing required key: {key}")
    if not result.is_valid:
        return result

    states = _validate_states(raw["states"], result)
    transitions = _validate_transitions(raw["transitions"], states, result)

    if raw["initial_state"] not in states:
        result.add_error(f"initial_state '{raw['initial_state']}' is not a declared state")

    submit = raw.get("submit_transition")
    if submit is not None:
        t = transitions.get(submit)
        if t is None:
            result.add_error(f"submit_transition '{submit}' is not a declared transition")
        elif t.get("from") != raw["initial_state"]:
            result.add_error(
                f"submit_transition '{submit}' must leave initial_state '{raw['initial_state']}'"
            )

    _validate_query_policy(raw.get("query_policy") or {}, states, transitions, result)
    _validate_reachability(raw["initial_state"], states, transitions, result)

    return result


def _validate_states(raw_states: Any, result: ConfigValidationResult) -> dict[str, dict]:
    states: dict[str, dict] = {}
    if not isinstance(raw_states, list):
        result.add_error("states must be a list")
        return states

    for entry in raw_states:
        if not isinstance(entry, dict) or not entry.get("id"):
            result.add_error(f"State entry without id: {entry!r}")
            continue
        state_id = entry["id"]
        if state_id in states:
            result.add_error(f"Duplicate state: {state_id}")
            continue
        states[state_id] = entry

        actor_type = entry.get("actor_type")
        if actor_type not in _ACTOR_TYPES:
            result.add_error(f"State '{state_id}' has invalid actor_type: {actor_type!r}")
            continue

        roles = entry.get("allowed_roles") or []
        if not isinstance(roles, list):
            result.add_error(f"State '{state_id}' allowed_roles must be a list")
            roles = []
        task_role = entry.get("task_role")
        if task_role is not None and task_role not in roles:
            result.add_error(
                f"State '{state_id}' task_role '{task_role}' is not one of its allowed_roles"
            )
        if actor_type == ActorType.OFFICER.value and not entry.get("terminal") and not roles:
            result.add_error(f"Officer state '{state_id}' declares no allowed_roles")

        sla_days = entry.get("sla_days")
        if sla_days is not None and (not isinstance(sla_days, int) or sla_days < 0):
            result.add_error(f"State '{state_id}' sla_days must be a non-negative integer")

    return states


def _validate_transitions(
    raw_transitions: Any,
    states: dict[str, dict],
    result: ConfigValidationResult,
) -> dict[str, dict]:
    transitions: dict[str, dict] = {}
    if not isinstance(raw_transitions, list):
        result.add_error("transitions must be a list")
        return transitions

    for entry in raw_transitions:
        if not isinstance(entry, dict) or not entry.get("id"):
            result.add_error(f"Transition entry without id: {entry!r}")
            continue
        tid = entry["id"]
        if tid in transitions:
            result.add_error(f"Duplicate transition: {tid}")
            continue
        if ":" in tid:
            result.add_error(f"Transition id '{tid}' must not contain ':'")
        transitions[tid] = entry

        source, target = entry.get("from"), entry.get("to")
        responds = bool(entry.get("responds_to_query"))
        raises = bool(entry.get("raises_query"))

        if source not in states:
            result.add_error(f"Transition '{tid}' from unknown state: {source!r}")
        elif states[source].get("terminal"):
            result.add_error(f"Transition '{tid}' leaves terminal state '{source}'")

        if target is None:
            if not responds:
                result.add_error(f"Transition '{tid}' has no target state")
        elif responds:
            result.add_error(
                f"Query response transition '{tid}' must not declare 'to'; "
                "the return state comes from query_policy"
            )
        elif target not in states:
            result.add_error(f"Transition '{tid}' to unknown state: {target!r}")

        trigger = entry.get("trigger", TriggerType.MANUAL.value)
        if trigger not in _TRIGGERS:
            result.add_error(f"Transition '{tid}' has invalid trigger: {trigger!r}")
        elif (
            trigger == TriggerType.MANUAL.value
            and source in states
            and states[source].get("actor_type") == ActorType.OFFICER.value
            and not entry.get("allowed_roles")
        ):
            result.add_warning(f"Manual transition '{tid}' declares no allowed_roles")

        decision = entry.get("decision")
        if decision is not None and decision not in _DECISIONS:
            result.add_error(f"Transition '{tid}' has invalid decision: {decision!r}")

        if raises and responds:
            result.add_error(f"Transition '{tid}' cannot both raise and answer a query")
        if raises and target in states and states[target].get("actor_type") != ActorType.CITIZEN.value:
            result.add_error(f"Query transition '{tid}' must target a citizen state")
        if responds and source in states and states[source].get("actor_type") != ActorType.CITIZEN.value:
            result.add_error(f"Query response transition '{tid}' must leave a citizen state")

        guard = entry.get("guard")
        if guard is not None:
            expression = guard.get("expression") if isinstance(guard, dict) else guard
            for err in validate_guard_expression(expression):
                result.add_error(
                    f"Transition '{tid}' guard: {err.message} (expression: {expression})"
                )

        _validate_actions(tid, entry.get("actions") or [], result)

    return transitions


def _validate_actions(tid: str, actions: Any, result: ConfigValidationResult) -> None:
    if not isinstance(actions, list):
        result.add_error(f"Transition '{tid}' actions must be a list")
        return
    seen: set[str] = set()
    for index, action in enumerate(actions):
        if not isinstance(action, dict):
            result.add_error(f"Transition '{tid}' action #{index} must be a mapping")
            continue
        kind = action.get("kind")
        if kind not in _ACTION_KINDS:
            result.add_error(f"Transition '{tid}' has unknown action kind: {kind!r}")
        action_id = action.get("id") or (kind.lower() if isinstance(kind, str) else None)
        if not action_id:
            continue
        if ":" in action_id:
            result.add_error(f"Transition '{tid}' action id '{action_id}' must not contain ':'")
        if action_id in seen:
            result.add_error(f"Transition '{tid}' has duplicate action id: {action_id}")
        seen.add(action_id)
        params = action.get("params", {})
        if not isinstance(params, dict):
            result.add_error(f"Transition '{tid}' action '{action_id}' params must be a mapping")


def _validate_query_policy(
    policy: dict[str, Any],
    states: dict[str, dict],
    transitions: dict[str, dict],
    result: ConfigValidationResult,
) -> None:
    max_cycles = policy.get("max_cycles", 3)
    if not isinstance(max_cycles, int) or max_cycles < 0:
        result.add_error("query_policy.max_cycles must be a non-negative integer")

    response_days = policy.get("response_days", 15)
    if not isinstance(response_days, int) or response_days <= 0:
        result.add_error("query_policy.response_days must be a positive integer")

    rule = policy.get("return_rule", ReturnRule.ORIGIN.value)
    if rule not in _RETURN_RULES:
        result.add_error(f"query_policy.return_rule is invalid: {rule!r}")
    elif rule == ReturnRule.FIXED.value:
        if policy.get("return_state") not in states:
            result.add_error("query_policy.return_state must name a declared state")

    carry = policy.get("sla_carry") or {}
    rounding = carry.get("rounding", CarryRounding.FLOOR.value)
    if rounding not in _ROUNDINGS:
        result.add_error(f"query_policy.sla_carry.rounding is invalid: {rounding!r}")
    minimum = carry.get("minimum_remaining_days", 0)
    if not isinstance(minimum, int) or minimum < 0:
        result.add_error("query_policy.sla_carry.minimum_remaining_days must be >= 0")

    expiry = policy.get("expiry_transition")
    if expiry is not None:
        t = transitions.get(expiry)
        if t is None:
            result.add_error(f"query_policy.expiry_transition '{expiry}' is not declared")
        elif t.get("trigger") != TriggerType.SYSTEM.value:
            result.add_error(f"query_policy.expiry_transition '{expiry}' must be a system transition")


def _validate_reachability(
    initial: str,
    states: dict[str, dict],
    transitions: dict[str, dict],
    result: ConfigValidationResult,
) -> None:
    """Warn about states no transition path reaches from the initial state."""
    if initial not in states:
        return
    edges: dict[str, set[str]] = {}
    responders: set[str] = set()
    for t in transitions.values():
        if t.get("to") is None:
            responders.add(t.get("from"))
        else:
            edges.setdefault(t.get("from"), set()).add(t["to"])

    # Query responses return to whichever state raised the query.
    raisers = {t.get("from") for t in transitions.values() if t.get("raises_query")}
    for source in responders:
        edges.setdefault(source, set()).update(raisers)

    seen = {initial}
    frontier = [initial]
    while frontier:
        for nxt in edges.get(frontier.pop(), ()):
            if nxt not in seen:
                seen.add(nxt)
                frontier.append(nxt)

    for state_id in states:
        if state_id not in seen:
            result.add_warning(f"State '{state_id}' is unreachable from '{initial}'")
