"""
Deterministic hashing utilities.

All hashing in the engine is deterministic and reproducible.  The audit
chain, definition fingerprints and payload digests all go through
``canonicalize_json`` so the same logical value always hashes the same.
"""

import hashlib
import json
from datetime import UTC, date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import UUID

# prev_hash of the first event in the chain
GENESIS_HASH = "0" * 64


def _json_serializer(obj: Any) -> Any:
    """
    Serializer for types json does not handle natively.

    Raises:
        TypeError: If object type is not supported.
    """
    if isinstance(obj, Decimal):
        return str(obj.normalize())
    if isinstance(obj, datetime):
        return format_timestamp(obj)
    if isinstance(obj, date):
        return obj.isoformat()
    if isinstance(obj, UUID):
        return str(obj)
    if isinstance(obj, Enum):
        return obj.value
    if isinstance(obj, (set, frozenset)):
        return sorted(obj)
    if isinstance(obj, bytes):
        return obj.hex()

    raise TypeError(f"Object of type {type(obj).__name__} is not JSON serializable")


def canonicalize_json(data: Any) -> str:
    """
    Convert data to canonical JSON: sorted keys, no whitespace, stable
    rendering of Decimal, datetime, UUID and Enum values.
    """
    return json.dumps(
        data,
        sort_keys=True,
        separators=(",", ":"),
        default=_json_serializer,
        ensure_ascii=False,
    )


def to_json_document(data: Any) -> Any:
    """Round-trip through canonical JSON so stored and hashed values agree."""
    return json.loads(canonicalize_json(data))


def hash_payload(payload: Any) -> str:
    """SHA-256 hex digest of the canonical JSON form of ``payload``."""
    canonical = canonicalize_json(payload)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def format_timestamp(value: datetime) -> str:
    """Canonical UTC timestamp text (microsecond precision)."""
    if value.tzinfo is None:
        raise ValueError("Audit timestamps must be timezone-aware")
    return value.astimezone(UTC).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def hash_audit_event(
    prev_hash: str,
    event_id: str,
    arn: str,
    event_type: str,
    actor_id: str,
    payload: Any,
    occurred_at: datetime,
) -> str:
    """
    Compute the chained hash of one audit event.

    hash = SHA-256(prev_hash | event_id | arn | event_type | actor_id |
                   canonical(payload) | timestamp)
    """
    components = [
        prev_hash or GENESIS_HASH,
        str(event_id),
        arn,
        event_type,
        actor_id,
        canonicalize_json(payload if payload is not None else {}),
        format_timestamp(occurred_at),
    ]
    data = "|".join(components)
    return hashlib.sha256(data.encode("utf-8")).hexdigest()
