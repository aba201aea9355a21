"""
Module: govflow_engines
Responsibility:
    Pure calculation engines: guard evaluation and SLA working-day
    arithmetic.

Architecture position:
    Engines -- pure calculation layer, zero I/O.
    May only import govflow_kernel.domain (and sibling engine modules).
    MUST NOT import govflow_config or govflow_services.

Invariants enforced:
    - Purity: engines never read the clock; "now" is a parameter.
    - Determinism: identical inputs always produce identical outputs.
"""

from govflow_engines.guards import (
    UNDEFINED,
    GuardOutcome,
    build_context,
    evaluate,
    evaluate_value,
    explain,
)
from govflow_engines.sla import (
    add_working_days,
    carry_remaining_days,
    compute_due_at,
    is_breached,
    resume_due_at,
    working_days_between,
)

__all__ = [
    "UNDEFINED",
    "GuardOutcome",
    "add_working_days",
    "build_context",
    "carry_remaining_days",
    "compute_due_at",
    "evaluate",
    "evaluate_value",
    "explain",
    "is_breached",
    "resume_due_at",
    "working_days_between",
]
