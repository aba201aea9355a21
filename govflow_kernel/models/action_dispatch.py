"""
Module: govflow_kernel.models.action_dispatch
Responsibility: Durable outbox for transition side effects and the
    dead-letter records of actions that exhausted their retries.

Invariants enforced:
    - idempotency_key is unique: one row per action per transition
      occurrence, so a retried delivery can never create a second row.
    - A SUCCEEDED row is never executed again.
    - Dead letters are never deleted; resolution is recorded on the row.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any
from uuid import UUID

from sqlalchemy import JSON, Index, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from govflow_kernel.db.base import Base, TimestampedBase, UUIDString
from govflow_kernel.db.types import enum_column


class DispatchStatus(str, Enum):
    PENDING = "PENDING"
    IN_FLIGHT = "IN_FLIGHT"
    SUCCEEDED = "SUCCEEDED"
    DEAD_LETTERED = "DEAD_LETTERED"


class ActionDispatch(TimestampedBase):
    """One requested side effect and its delivery state."""

    __tablename__ = "action_dispatches"

    __table_args__ = (
        Index("idx_action_dispatches_due", "status", "next_attempt_at"),
        Index("idx_action_dispatches_arn", "arn"),
    )

    idempotency_key: Mapped[str] = mapped_column(String(300), nullable=False, unique=True)
    arn: Mapped[str] = mapped_column(String(64), nullable=False)
    transition_id: Mapped[str] = mapped_column(String(100), nullable=False)
    action_id: Mapped[str] = mapped_column(String(100), nullable=False)
    kind: Mapped[str] = mapped_column(String(40), nullable=False)
    params: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    status: Mapped[DispatchStatus] = mapped_column(
        enum_column(DispatchStatus), nullable=False, default=DispatchStatus.PENDING
    )
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_attempts: Mapped[int] = mapped_column(Integer, nullable=False)
    next_attempt_at: Mapped[datetime] = mapped_column(nullable=False)
    last_error: Mapped[str | None] = mapped_column(String(4000), nullable=True)
    result_ref: Mapped[str | None] = mapped_column(String(500), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(nullable=True)

    def __repr__(self) -> str:
        return f"<ActionDispatch {self.idempotency_key} {self.status.value}>"


class ActionDeadLetter(Base):
    """An action that failed max_attempts times, awaiting manual follow-up."""

    __tablename__ = "action_dead_letters"

    __table_args__ = (
        Index("idx_action_dead_letters_open", "resolved_at"),
    )

    dispatch_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    idempotency_key: Mapped[str] = mapped_column(String(300), nullable=False)
    arn: Mapped[str] = mapped_column(String(64), nullable=False)
    kind: Mapped[str] = mapped_column(String(40), nullable=False)
    params: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False)
    last_error: Mapped[str | None] = mapped_column(String(4000), nullable=True)
    dead_lettered_at: Mapped[datetime] = mapped_column(nullable=False)
    resolved_at: Mapped[datetime | None] = mapped_column(nullable=True)
    resolved_by: Mapped[str | None] = mapped_column(String(100), nullable=True)
    resolution: Mapped[str | None] = mapped_column(String(40), nullable=True)

    def __repr__(self) -> str:
        return f"<ActionDeadLetter {self.idempotency_key}>"
