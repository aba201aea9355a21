"""
Configuration Integrity -- fingerprint pinning for approved workflows.

When a service directory contains an APPROVED_FINGERPRINT file, each
listed version's computed checksum must match the pinned value.  This
prevents unauthorized or accidental edits to workflow versions that are
already in use.

The pin file holds one ``<version> <sha256>`` pair per line; blank lines
and ``#`` comments are ignored.  Versions without a pin are not checked
(draft/dev workflow).
"""

from __future__ import annotations

from pathlib import Path

from govflow_kernel.exceptions import WorkflowChecksumMismatchError

PINFILE_NAME = "APPROVED_FINGERPRINT"


def read_pinned_fingerprints(service_dir: Path) -> dict[str, str]:
    """Read the pin file of a service directory.

    Returns:
        Mapping of version -> pinned SHA-256 hex string (empty if no file).
    """
    pin_path = service_dir / PINFILE_NAME
    if not pin_path.is_file():
        return {}
    pins: dict[str, str] = {}
    for line in pin_path.read_text().splitlines():
        line = line.strip()
        if not line or line.startswith("#"):
            continue
        version, _, fingerprint = line.partition(" ")
        pins[version.strip()] = fingerprint.strip()
    return pins


def verify_fingerprint_pin(
    service_key: str,
    version: str,
    checksum: str,
    service_dir: Path,
) -> None:
    """Verify that the computed checksum matches the pinned value.

    No-op if the version has no pin.

    Raises:
        WorkflowChecksumMismatchError: If a pin exists and does not match.
    """
    pinned = read_pinned_fingerprints(service_dir).get(version)
    if pinned is None:
        return

    if checksum != pinned:
        raise WorkflowChecksumMismatchError(
            service_key=service_key,
            version=version,
            expected=pinned,
            actual=checksum,
        )


def write_fingerprint_pin(service_dir: Path, version: str, checksum: str) -> Path:
    """Add or replace the pin for ``version``; returns the pin file path."""
    pins = read_pinned_fingerprints(service_dir)
    pins[version] = checksum
    pin_path = service_dir / PINFILE_NAME
    pin_path.write_text("".join(f"{v} {pins[v]}\n" for v in sorted(pins)))
    return pin_path
