#!/usr/bin/env python3
"""
Approve a workflow definition by writing its checksum to the service's
APPROVED_FINGERPRINT file.

Usage:
    python scripts/approve_workflow.py <definition.yaml>

The script:
  1. Loads the YAML file
  2. Validates it (structure, guards, actions, reachability)
  3. Computes the canonical checksum
  4. Adds or replaces the version's line in APPROVED_FINGERPRINT

Once a version is pinned, editing its YAML without re-running approval
makes the registry refuse to load it.
"""

import sys
from pathlib import Path

# Add project root to path
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))

from govflow_config.integrity import write_fingerprint_pin
from govflow_config.loader import compute_checksum, load_yaml_file, normalize_raw
from govflow_config.validator import validate_definition


def approve(path: Path) -> str:
    """Validate the definition and pin its checksum; returns the checksum."""
    print(f"Loading definition: {path}")
    raw = normalize_raw(load_yaml_file(path))
    print(f"  service_key: {raw.get('service_key')}")
    print(f"  version:     {raw.get('version')}")

    print("Validating...")
    result = validate_definition(raw)
    if not result.is_valid:
        print("VALIDATION FAILED:")
        for err in result.errors:
            print(f"  ERROR: {err}")
        sys.exit(1)
    for w in result.warnings:
        print(f"  WARNING: {w}")

    checksum = compute_checksum(raw)
    print(f"  checksum: {checksum}")
    pin_path = write_fingerprint_pin(path.parent, str(raw["version"]), checksum)
    print(f"Wrote {pin_path}")
    return checksum


def main():
    if len(sys.argv) != 2:
        print("Usage: approve_workflow.py <definition.yaml>", file=sys.stderr)
        sys.exit(2)

    target = Path(sys.argv[1])
    if not target.is_file():
        print(f"Error: file not found: {target}", file=sys.stderr)
        sys.exit(1)

    approve(target)
    print("Done. Definition is now pinned.")


if __name__ == "__main__":
    main()
