"""
ConfigRegistry -- versioned, cached access to workflow definitions.

Responsibility:
    The single read path for workflow definitions at runtime.  Definitions
    are loaded from a source on first use, validated, fingerprinted and
    cached by (service_key, version).  Cached definitions are frozen and
    shared across threads.

Architecture position:
    Configuration.  Consumed by the transition executor and the workflow
    service facade through ``load_workflow``.

Invariants enforced:
    - A cached entry is immutable; the only way to change what a key
      resolves to is ``invalidate()`` / ``reload()``.
    - ``load_workflow(..., expected_checksum=...)`` refuses a definition
      whose checksum differs from the one pinned on an application.
    - Cache access is serialized by a lock; loading happens outside it so
      slow sources do not block readers of other keys.

Failure modes:
    - WorkflowNotFoundError for an unknown service key or version.
    - WorkflowDefinitionError for invalid definitions.
    - WorkflowChecksumMismatchError for pin or pinned-checksum mismatches.
"""

from __future__ import annotations

import re
import threading
from pathlib import Path
from typing import Any, Mapping, Protocol

from govflow_config.integrity import verify_fingerprint_pin
from govflow_config.loader import load_yaml_file, parse_definition
from govflow_kernel.domain.workflow import WorkflowDefinition
from govflow_kernel.exceptions import (
    WorkflowChecksumMismatchError,
    WorkflowNotFoundError,
)
from govflow_kernel.logging_config import get_logger

logger = get_logger("config.registry")


def version_sort_key(version: str) -> tuple:
    """Order dotted numeric versions numerically, anything else after them."""
    parts = re.split(r"[.\-]", version)
    if all(p.isdigit() for p in parts):
        return (0, tuple(int(p) for p in parts))
    return (1, version)


class WorkflowSource(Protocol):
    """Where raw definitions come from."""

    def load_raw(self, service_key: str, version: str) -> tuple[dict[str, Any], str]:
        """Return (raw definition, source label) or raise WorkflowNotFoundError."""
        ...

    def versions(self, service_key: str) -> list[str]:
        ...

    def verify_pin(self, definition: WorkflowDefinition) -> None:
        ...


class DirectoryWorkflowSource:
    """Definitions stored as ``<root>/<service_key>/<version>.yaml``."""

    def __init__(self, root: Path):
        self._root = Path(root)

    @property
    def root(self) -> Path:
        return self._root

    def _path(self, service_key: str, version: str) -> Path:
        return self._root / service_key / f"{version}.yaml"

    def load_raw(self, service_key: str, version: str) -> tuple[dict[str, Any], str]:
        path = self._path(service_key, version)
        if not path.is_file():
            raise WorkflowNotFoundError(service_key, version)
        return load_yaml_file(path), str(path)

    def versions(self, service_key: str) -> list[str]:
        service_dir = self._root / service_key
        if not service_dir.is_dir():
            return []
        return sorted((p.stem for p in service_dir.glob("*.yaml")), key=version_sort_key)

    def verify_pin(self, definition: WorkflowDefinition) -> None:
        verify_fingerprint_pin(
            definition.service_key,
            definition.version,
            definition.checksum,
            self._root / definition.service_key,
        )


class InMemoryWorkflowSource:
    """Raw definitions held in memory, keyed by (service_key, version)."""

    def __init__(self, definitions: list[dict[str, Any]] | None = None):
        self._raw: dict[tuple[str, str], dict[str, Any]] = {}
        self._lock = threading.Lock()
        for raw in definitions or ():
            self.put(raw)

    def put(self, raw: dict[str, Any]) -> None:
        key = (raw["service_key"], str(raw["version"]))
        with self._lock:
            self._raw[key] = raw

    def load_raw(self, service_key: str, version: str) -> tuple[dict[str, Any], str]:
        with self._lock:
            raw = self._raw.get((service_key, version))
        if raw is None:
            raise WorkflowNotFoundError(service_key, version)
        return raw, f"memory:{service_key}@{version}"

    def versions(self, service_key: str) -> list[str]:
        with self._lock:
            found = [v for (s, v) in self._raw if s == service_key]
        return sorted(found, key=version_sort_key)

    def verify_pin(self, definition: WorkflowDefinition) -> None:
        return None


class ConfigRegistry:
    """
    Explicitly owned cache of workflow definitions.

    Contract:
        ``load_workflow`` is read-only from the caller's point of view and
        always returns the same object for a key until it is invalidated.
    """

    def __init__(self, source: WorkflowSource):
        self._source = source
        self._cache: dict[tuple[str, str], WorkflowDefinition] = {}
        self._lock = threading.Lock()

    @property
    def source(self) -> WorkflowSource:
        return self._source

    def load_workflow(
        self,
        service_key: str,
        version: str | None = None,
        expected_checksum: str | None = None,
    ) -> WorkflowDefinition:
        """
        Return the definition for (service_key, version).

        ``version=None`` resolves to the latest available version.

        Raises:
            WorkflowNotFoundError, WorkflowDefinitionError,
            WorkflowChecksumMismatchError.
        """
        if version is None:
            version = self.latest_version(service_key)

        key = (service_key, version)
        with self._lock:
            definition = self._cache.get(key)

        if definition is None:
            raw, label = self._source.load_raw(service_key, version)
            parsed = parse_definition(raw, source=label)
            if (parsed.service_key, parsed.version) != key:
                raise WorkflowNotFoundError(service_key, version)
            self._source.verify_pin(parsed)
            with self._lock:
                definition = self._cache.setdefault(key, parsed)
            logger.info(
                "workflow_definition_loaded",
                extra={
                    "service_key": service_key,
                    "version": version,
                    "checksum": definition.checksum,
                    "state_count": len(definition.states),
                    "transition_count": len(definition.transitions),
                },
            )

        if expected_checksum is not None and expected_checksum != definition.checksum:
            raise WorkflowChecksumMismatchError(
                service_key, version, expected_checksum, definition.checksum
            )
        return definition

    def latest_version(self, service_key: str) -> str:
        versions = self._source.versions(service_key)
        if not versions:
            raise WorkflowNotFoundError(service_key, None)
        return versions[-1]

    def invalidate(self, service_key: str | None = None, version: str | None = None) -> int:
        """Drop cached entries; returns how many were removed."""
        with self._lock:
            keys = [
                k for k in self._cache
                if (service_key is None or k[0] == service_key)
                and (version is None or k[1] == version)
            ]
            for k in keys:
                del self._cache[k]
        if keys:
            logger.info(
                "workflow_cache_invalidated",
                extra={"service_key": service_key, "version": version, "removed": len(keys)},
            )
        return len(keys)

    def reload(self, service_key: str, version: str) -> WorkflowDefinition:
        self.invalidate(service_key, version)
        return self.load_workflow(service_key, version)

    def cached_keys(self) -> Mapping[tuple[str, str], str]:
        """(service_key, version) -> checksum for every cached definition."""
        with self._lock:
            return {k: d.checksum for k, d in self._cache.items()}
