"""
Module: govflow_kernel.models.application
Responsibility: ORM persistence for citizen applications moving through a
    workflow.
Architecture position: Kernel > Models.  May import from db/ and domain/
    enums only.

Invariants enforced:
    - row_version is the mapper's version_id_col (application-assigned):
      every UPDATE is issued as
      ``... WHERE id = :id AND row_version = :expected`` and a zero row count
      raises StaleDataError (compare-and-swap).
    - submission_snapshot is write-once; applications are never deleted
      (db/immutability.py).
    - state changes only through the transition executor.

Audit relevance:
    Every state change of an Application produces exactly one AuditEvent.
"""

from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING, Any

from sqlalchemy import JSON, Index, Integer, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from govflow_kernel.db.base import TimestampedBase
from govflow_kernel.db.types import enum_column
from govflow_kernel.domain.workflow import DisposalType

if TYPE_CHECKING:
    from govflow_kernel.models.query_cycle import QueryCycle
    from govflow_kernel.models.task import Task


class Application(TimestampedBase):
    """
    A submitted application and its workflow position.

    Contract:
        (service_key, service_version, workflow_checksum) pin the definition
        used for the whole life of the case.

    Guarantees:
        - arn is unique.
        - query_count never exceeds the pinned query policy's max_cycles
          (enforced by QueryService).
        - sla_remaining_days is set only while sla_paused_at is set.
    """

    __tablename__ = "applications"

    __table_args__ = (
        Index("idx_applications_state", "service_key", "state"),
        Index("idx_applications_authority", "authority_id"),
    )

    arn: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    service_key: Mapped[str] = mapped_column(String(100), nullable=False)
    service_version: Mapped[str] = mapped_column(String(50), nullable=False)
    workflow_checksum: Mapped[str] = mapped_column(String(64), nullable=False)
    authority_id: Mapped[str] = mapped_column(String(100), nullable=False)
    applicant_id: Mapped[str] = mapped_column(String(100), nullable=False)

    state: Mapped[str] = mapped_column(String(100), nullable=False)
    data: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    row_version: Mapped[int] = mapped_column(Integer, nullable=False)
    submission_snapshot: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)

    query_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    sla_due_at: Mapped[datetime | None] = mapped_column(nullable=True)
    sla_paused_at: Mapped[datetime | None] = mapped_column(nullable=True)
    sla_remaining_days: Mapped[int | None] = mapped_column(Integer, nullable=True)

    disposal_type: Mapped[DisposalType | None] = mapped_column(
        enum_column(DisposalType), nullable=True
    )
    submitted_at: Mapped[datetime | None] = mapped_column(nullable=True)
    disposed_at: Mapped[datetime | None] = mapped_column(nullable=True)

    tasks: Mapped[list[Task]] = relationship(
        "Task",
        back_populates="application",
        order_by="Task.created_at",
        lazy="select",
    )
    query_cycles: Mapped[list[QueryCycle]] = relationship(
        "QueryCycle",
        back_populates="application",
        order_by="QueryCycle.query_number",
        lazy="select",
    )

    # Bumped explicitly by every transition; see TransitionExecutor.
    __mapper_args__ = {"version_id_col": row_version, "version_id_generator": False}

    def __repr__(self) -> str:
        return f"<Application {self.arn} [{self.state}] v{self.row_version}>"

    @property
    def is_disposed(self) -> bool:
        return self.disposal_type is not None

    @property
    def sla_paused(self) -> bool:
        return self.sla_paused_at is not None
