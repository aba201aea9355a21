"""
Workflow Loader (``govflow_config.loader``).

Responsibility
--------------
Loads workflow definition YAML files and parses them into frozen
``govflow_kernel.domain.workflow`` objects.  Callers should obtain
definitions through ``ConfigRegistry``; the loader is the registry's
parsing back end and is used directly by tooling and tests.

Architecture position
---------------------
**Config layer** -- infrastructure tooling.  Depends on kernel domain
types and the config validator; never on services.

Invariants enforced
-------------------
* Every raw definition passes ``validate_definition`` before parsing;
  failures raise ``WorkflowDefinitionError`` listing every error.
* Every parsed object is a frozen dataclass; collections are tuples and
  read-only mappings.
* ``compute_checksum`` is a deterministic SHA-256 over the canonical JSON
  form of the raw definition, so re-serialising the YAML does not change
  it but any semantic edit does.

Failure modes
-------------
* Missing YAML file  -> ``FileNotFoundError`` propagates.
* Malformed YAML  -> ``WorkflowDefinitionError``.
* Structural errors  -> ``WorkflowDefinitionError``.
"""

from __future__ import annotations

from pathlib import Path
from types import MappingProxyType
from typing import Any

import yaml

from govflow_config.validator import validate_definition
from govflow_kernel.domain.dtos import deep_freeze
from govflow_kernel.domain.workflow import (
    ActionKind,
    ActionSpec,
    ActorType,
    CarryRounding,
    DecisionKind,
    Guard,
    QueryPolicy,
    ReturnRule,
    SlaCarryPolicy,
    StateDef,
    TransitionDef,
    TriggerType,
    WorkflowDefinition,
)
from govflow_kernel.exceptions import WorkflowDefinitionError
from govflow_kernel.logging_config import get_logger
from govflow_kernel.utils.hashing import hash_payload

logger = get_logger("config.loader")


def load_yaml_file(path: Path) -> dict[str, Any]:
    """
    Load a single YAML file and return its contents as a dict.

    Raises:
        FileNotFoundError: if the file does not exist.
        WorkflowDefinitionError: if the file is not valid YAML.
    """
    with open(path) as f:
        try:
            return yaml.safe_load(f) or {}
        except yaml.YAMLError as exc:
            raise WorkflowDefinitionError(str(path), [f"YAML error: {exc}"]) from exc


def normalize_raw(raw: dict[str, Any]) -> dict[str, Any]:
    """Coerce YAML scalars that must be strings (``version: 1.0`` parses as float)."""
    normalized = dict(raw)
    if normalized.get("version") is not None:
        normalized["version"] = str(normalized["version"])
    return normalized


def compute_checksum(raw: dict[str, Any]) -> str:
    """SHA-256 of the canonical JSON form of a raw definition."""
    return hash_payload(normalize_raw(raw))


def parse_guard(data: Any) -> Guard | None:
    if data is None:
        return None
    if isinstance(data, str):
        return Guard(expression=data.strip())
    return Guard(expression=str(data["expression"]).strip(), message=data.get("message"))


def parse_action(data: dict[str, Any]) -> ActionSpec:
    kind = ActionKind(data["kind"])
    return ActionSpec(
        action_id=data.get("id") or kind.value.lower(),
        kind=kind,
        params=deep_freeze(data.get("params") or {}),
    )


def parse_state(data: dict[str, Any]) -> StateDef:
    return StateDef(
        state_id=data["id"],
        actor_type=ActorType(data["actor_type"]),
        allowed_roles=tuple(data.get("allowed_roles") or ()),
        terminal=bool(data.get("terminal", False)),
        task_role=data.get("task_role"),
        sla_days=data.get("sla_days"),
        description=data.get("description", ""),
    )


def parse_transition(data: dict[str, Any]) -> TransitionDef:
    decision = data.get("decision")
    return TransitionDef(
        transition_id=data["id"],
        from_state=data["from"],
        to_state=data.get("to"),
        trigger=TriggerType(data.get("trigger", TriggerType.MANUAL.value)),
        allowed_roles=tuple(data.get("allowed_roles") or ()),
        guard=parse_guard(data.get("guard")),
        actions=tuple(parse_action(a) for a in data.get("actions") or ()),
        decision=DecisionKind(decision) if decision else None,
        outcome=data.get("outcome"),
        raises_query=bool(data.get("raises_query", False)),
        responds_to_query=bool(data.get("responds_to_query", False)),
        description=data.get("description", ""),
    )


def parse_query_policy(data: dict[str, Any]) -> QueryPolicy:
    carry = data.get("sla_carry") or {}
    return QueryPolicy(
        max_cycles=data.get("max_cycles", 3),
        pause_sla=bool(data.get("pause_sla", True)),
        return_rule=ReturnRule(data.get("return_rule", ReturnRule.ORIGIN.value)),
        return_state=data.get("return_state"),
        response_days=data.get("response_days", 15),
        sla_carry=SlaCarryPolicy(
            rounding=CarryRounding(carry.get("rounding", CarryRounding.FLOOR.value)),
            minimum_remaining_days=carry.get("minimum_remaining_days", 0),
        ),
        expiry_transition=data.get("expiry_transition"),
    )


def parse_definition(raw: dict[str, Any], source: str = "<memory>") -> WorkflowDefinition:
    """
    Validate and parse a raw definition mapping.

    Postconditions:
        - Returns a frozen ``WorkflowDefinition`` whose ``checksum`` is
          ``compute_checksum(raw)``.

    Raises:
        WorkflowDefinitionError: if validation reports any error.
    """
    raw = normalize_raw(raw)
    result = validate_definition(raw)
    if not result.is_valid:
        logger.error(
            "workflow_definition_invalid",
            extra={"source": source, "error_count": len(result.errors)},
        )
        raise WorkflowDefinitionError(source, result.errors)
    for warning in result.warnings:
        logger.warning("workflow_definition_warning", extra={"source": source, "warning": warning})

    states = {s["id"]: parse_state(s) for s in raw["states"]}
    return WorkflowDefinition(
        service_key=raw["service_key"],
        version=raw["version"],
        name=raw.get("name", raw["service_key"]),
        initial_state=raw["initial_state"],
        states=MappingProxyType(states),
        transitions=tuple(parse_transition(t) for t in raw["transitions"]),
        query_policy=parse_query_policy(raw.get("query_policy") or {}),
        checksum=compute_checksum(raw),
        submit_transition=raw.get("submit_transition"),
        description=raw.get("description", ""),
    )


def load_definition_file(path: Path) -> WorkflowDefinition:
    """Load, validate and parse one ``<version>.yaml`` file."""
    return parse_definition(load_yaml_file(path), source=str(path))
