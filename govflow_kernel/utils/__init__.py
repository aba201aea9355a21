"""Utility functions for the workflow kernel."""

from govflow_kernel.utils.hashing import (
    GENESIS_HASH,
    canonicalize_json,
    hash_audit_event,
    hash_payload,
)
from govflow_kernel.utils.idempotency import generate_idempotency_key, parse_idempotency_key

__all__ = [
    "GENESIS_HASH",
    "canonicalize_json",
    "hash_audit_event",
    "hash_payload",
    "generate_idempotency_key",
    "parse_idempotency_key",
]
