"""
Module: govflow_kernel.models.query_cycle
Responsibility: ORM persistence for query/resubmission cycles.

Invariants enforced:
    - (application_id, query_number) is unique; query_number counts from 1.
    - origin_state is the state that raised the query; the response returns
      the application there by direct assignment.
    - At most one PENDING cycle per application (QueryService).
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING
from uuid import UUID

from sqlalchemy import JSON, ForeignKey, Index, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from govflow_kernel.db.base import TimestampedBase, UUIDString
from govflow_kernel.db.types import enum_column

if TYPE_CHECKING:
    from govflow_kernel.models.application import Application


class QueryStatus(str, Enum):
    PENDING = "PENDING"
    RESPONDED = "RESPONDED"
    EXPIRED = "EXPIRED"


class QueryCycle(TimestampedBase):
    """A pause-and-clarify loop raised by an officer."""

    __tablename__ = "query_cycles"

    __table_args__ = (
        UniqueConstraint("application_id", "query_number", name="uq_query_cycles_number"),
        Index("idx_query_cycles_due", "status", "response_due_at"),
    )

    application_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("applications.id"), nullable=False
    )
    arn: Mapped[str] = mapped_column(String(64), nullable=False)
    query_number: Mapped[int] = mapped_column(Integer, nullable=False)
    origin_state: Mapped[str] = mapped_column(String(100), nullable=False)
    task_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)

    raised_at: Mapped[datetime] = mapped_column(nullable=False)
    raised_by: Mapped[str] = mapped_column(String(100), nullable=False)
    raised_by_role: Mapped[str | None] = mapped_column(String(100), nullable=True)
    message: Mapped[str] = mapped_column(String(4000), nullable=False)

    unlocked_field_keys: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    unlocked_doc_types: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    mandatory_field_keys: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    mandatory_doc_types: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)

    response_due_at: Mapped[datetime] = mapped_column(nullable=False)
    responded_at: Mapped[datetime | None] = mapped_column(nullable=True)
    response_remarks: Mapped[str | None] = mapped_column(String(4000), nullable=True)
    status: Mapped[QueryStatus] = mapped_column(
        enum_column(QueryStatus), nullable=False, default=QueryStatus.PENDING
    )
    resubmission_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    application: Mapped[Application] = relationship(
        "Application", back_populates="query_cycles"
    )

    def __repr__(self) -> str:
        return f"<QueryCycle {self.arn}#{self.query_number} {self.status.value}>"
