"""
govflow_config -- workflow definitions: loading, validation, caching.

Responsibility:
    Turns YAML workflow definitions into frozen, fingerprinted
    ``WorkflowDefinition`` objects and serves them through
    ``ConfigRegistry``.  Ships the built-in workflow sets under ``sets/``.

Architecture position:
    Configuration -- sits above ``govflow_kernel`` and below
    ``govflow_services``.  The kernel MUST NEVER import from this package.

Invariants enforced:
    - Load-time validation: structure, guard AST and action kinds are
      checked before a definition is usable.
    - Fingerprint pinning: when an APPROVED_FINGERPRINT file lists a
      version, its computed checksum must match.
    - Deterministic checksums: the same YAML content always produces the
      same checksum.
"""

from __future__ import annotations

from pathlib import Path

from govflow_config.guard_ast import GuardASTError, validate_guard_expression
from govflow_config.integrity import verify_fingerprint_pin, write_fingerprint_pin
from govflow_config.loader import compute_checksum, load_definition_file, parse_definition
from govflow_config.registry import (
    ConfigRegistry,
    DirectoryWorkflowSource,
    InMemoryWorkflowSource,
)
from govflow_config.validator import ConfigValidationResult, validate_definition

# Built-in workflow sets
DEFAULT_SETS_DIR = Path(__file__).parent / "sets"


def default_registry(sets_dir: Path | None = None) -> ConfigRegistry:
    """Registry over a directory of workflow sets (the built-in ones by default)."""
    return ConfigRegistry(DirectoryWorkflowSource(sets_dir or DEFAULT_SETS_DIR))


__all__ = [
    "ConfigRegistry",
    "ConfigValidationResult",
    "DEFAULT_SETS_DIR",
    "DirectoryWorkflowSource",
    "GuardASTError",
    "InMemoryWorkflowSource",
    "compute_checksum",
    "default_registry",
    "load_definition_file",
    "parse_definition",
    "validate_definition",
    "validate_guard_expression",
    "verify_fingerprint_pin",
    "write_fingerprint_pin",
]
