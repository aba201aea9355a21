"""
Module: govflow_kernel.db.types
Responsibility: Column types shared by every model.  Centralizes timestamp
    handling so that hash-chain timestamps round-trip identically on every
    supported dialect.
Architecture position: Kernel > DB.  MUST NOT import from models/, services/,
    domain/, or outer layers.

Invariants enforced:
    - Timestamps are always timezone-aware UTC when read back, including on
      SQLite, which stores DateTime values without an offset.
"""

from datetime import UTC, datetime

from sqlalchemy import DateTime
from sqlalchemy import Enum as SAEnum
from sqlalchemy.types import TypeDecorator


class UTCDateTime(TypeDecorator):
    """
    Timezone-aware UTC timestamp.

    Contract:
        Accepts aware datetimes (naive values are rejected) and always
        returns aware UTC datetimes.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            raise ValueError(f"Naive datetime not allowed: {value!r}")
        value = value.astimezone(UTC)
        if dialect.name == "sqlite":
            return value.replace(tzinfo=None)
        return value

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value.astimezone(UTC)


def utcnow() -> datetime:
    return datetime.now(UTC)


def enum_column(enum_cls: type) -> SAEnum:
    """Store a str Enum by value and load it back as the Enum member."""
    return SAEnum(
        enum_cls,
        native_enum=False,
        length=40,
        values_callable=lambda members: [m.value for m in members],
        validate_strings=True,
    )
