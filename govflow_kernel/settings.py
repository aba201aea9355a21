"""
Runtime settings read from the environment.

Workflow behaviour lives in the YAML definitions; these are the
deployment knobs (database, workflow sets, dispatcher and sweeper
tuning).  Every value has a default so a bare environment runs locally
against SQLite.

    GOVFLOW_DATABASE_URL              sqlite:///govflow.db
    GOVFLOW_WORKFLOW_DIR              (built-in sets)
    GOVFLOW_LOG_LEVEL                 INFO
    GOVFLOW_DISPATCH_MAX_ATTEMPTS     5
    GOVFLOW_DISPATCH_BASE_DELAY       30    (seconds)
    GOVFLOW_DISPATCH_MAX_DELAY        3600  (seconds)
    GOVFLOW_DISPATCH_WORKERS          2
    GOVFLOW_CONFLICT_RETRIES          3
    GOVFLOW_SWEEP_INTERVAL            60    (seconds)
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Mapping

_PREFIX = "GOVFLOW_"


@dataclass(frozen=True)
class GovflowSettings:
    database_url: str = "sqlite:///govflow.db"
    workflow_dir: str | None = None
    log_level: str = "INFO"
    dispatch_max_attempts: int = 5
    dispatch_base_delay: float = 30.0
    dispatch_max_delay: float = 3600.0
    dispatch_workers: int = 2
    max_conflict_retries: int = 3
    sweep_interval: float = 60.0

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> GovflowSettings:
        """Build settings from ``GOVFLOW_*`` variables (``os.environ`` by default).

        Raises:
            ValueError: if a numeric variable does not parse.
        """
        env = os.environ if environ is None else environ
        defaults = cls()

        def _get(name: str, default, cast):
            raw = env.get(_PREFIX + name)
            if raw is None or raw == "":
                return default
            try:
                return cast(raw)
            except ValueError as exc:
                raise ValueError(f"Invalid value for {_PREFIX}{name}: {raw!r}") from exc

        return cls(
            database_url=_get("DATABASE_URL", defaults.database_url, str),
            workflow_dir=_get("WORKFLOW_DIR", defaults.workflow_dir, str),
            log_level=_get("LOG_LEVEL", defaults.log_level, str).upper(),
            dispatch_max_attempts=_get("DISPATCH_MAX_ATTEMPTS", defaults.dispatch_max_attempts, int),
            dispatch_base_delay=_get("DISPATCH_BASE_DELAY", defaults.dispatch_base_delay, float),
            dispatch_max_delay=_get("DISPATCH_MAX_DELAY", defaults.dispatch_max_delay, float),
            dispatch_workers=_get("DISPATCH_WORKERS", defaults.dispatch_workers, int),
            max_conflict_retries=_get("CONFLICT_RETRIES", defaults.max_conflict_retries, int),
            sweep_interval=_get("SWEEP_INTERVAL", defaults.sweep_interval, float),
        )
