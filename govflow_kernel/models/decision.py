"""
Module: govflow_kernel.models.decision
Responsibility: ORM persistence for officer decisions.

Invariants enforced:
    - Decisions are immutable once written (ORM listeners + triggers).
    - task_id references the task whose completion produced the decision.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any
from uuid import UUID

from sqlalchemy import JSON, ForeignKey, Index, String
from sqlalchemy.orm import Mapped, mapped_column

from govflow_kernel.db.base import Base, UUIDString
from govflow_kernel.db.types import enum_column
from govflow_kernel.domain.workflow import DecisionKind


class Decision(Base):
    """Terminal-adjacent APPROVE / REJECT / RETURN / PARTIAL_APPROVE record."""

    __tablename__ = "decisions"

    __table_args__ = (
        Index("idx_decisions_application", "application_id", "decided_at"),
    )

    application_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("applications.id"), nullable=False
    )
    arn: Mapped[str] = mapped_column(String(64), nullable=False)
    decision_type: Mapped[DecisionKind] = mapped_column(
        enum_column(DecisionKind), nullable=False
    )
    reason_codes: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    remarks: Mapped[str | None] = mapped_column(String(4000), nullable=True)
    conditions: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    decided_by: Mapped[str] = mapped_column(String(100), nullable=False)
    decided_at: Mapped[datetime] = mapped_column(nullable=False)
    transition_id: Mapped[str] = mapped_column(String(100), nullable=False)
    task_id: Mapped[UUID | None] = mapped_column(
        UUIDString(), ForeignKey("tasks.id"), nullable=True
    )
    context: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)

    def __repr__(self) -> str:
        return f"<Decision {self.arn} {self.decision_type.value}>"
