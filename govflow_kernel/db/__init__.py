"""Database layer - engine, base classes, column types, immutability."""

from govflow_kernel.db.base import UUID, Base, TimestampedBase, UUIDString
from govflow_kernel.db.engine import (
    create_tables,
    drop_tables,
    get_engine,
    get_session,
    get_session_factory,
    init_engine_from_url,
    session_scope,
)
from govflow_kernel.db.types import UTCDateTime

__all__ = [
    "Base",
    "TimestampedBase",
    "UUID",
    "UUIDString",
    "UTCDateTime",
    "create_tables",
    "drop_tables",
    "get_engine",
    "get_session",
    "get_session_factory",
    "init_engine_from_url",
    "session_scope",
]
