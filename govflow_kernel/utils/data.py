"""
Helpers for nested form data.

Form payloads are nested JSON objects.  Field keys are dotted paths to
leaves ("property.plot_no").  A key that names an object also covers every
leaf beneath it.
"""

import copy
from typing import Any, Iterator


def leaf_paths(data: dict[str, Any], prefix: str = "") -> Iterator[str]:
    """Yield the dotted path of every leaf value (lists count as leaves)."""
    for key, value in data.items():
        path = f"{prefix}.{key}" if prefix else str(key)
        if isinstance(value, dict) and value:
            yield from leaf_paths(value, path)
        else:
            yield path


def path_is_covered(path: str, allowed: set[str] | frozenset[str]) -> bool:
    """True if ``path`` equals an allowed key or lies under one."""
    parts = path.split(".")
    return any(".".join(parts[:i]) in allowed for i in range(1, len(parts) + 1))


def deep_merge(base: dict[str, Any], updates: dict[str, Any]) -> dict[str, Any]:
    """Return a new dict with ``updates`` merged into ``base`` recursively."""
    merged = copy.deepcopy(base)
    for key, value in updates.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = deep_merge(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def get_path(data: Any, path: str, default: Any = None) -> Any:
    current = data
    for part in path.split("."):
        if isinstance(current, dict) and part in current:
            current = current[part]
        else:
            return default
    return current
