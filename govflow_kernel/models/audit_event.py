"""
Module: govflow_kernel.models.audit_event
Responsibility: ORM persistence for the tamper-evident audit hash chain.
Architecture position: Kernel > Models.  May import from db/ only.

Invariants enforced:
    - Audit records are append-only; no UPDATE or DELETE (ORM + DB trigger).
    - seq is unique and allocated by SequenceService from a locked counter.
    - hash = H(prev_hash | event_id | arn | event_type | actor_id |
      canonical(payload) | timestamp), validated by AuditorService.

Audit relevance:
    AuditEvent IS the audit trail.  Every successful transition appends
    exactly one STATE_CHANGED event; sweeps append SLA_BREACHED and
    QUERY_EXPIRED events.
"""

from datetime import datetime
from enum import Enum
from typing import Any
from uuid import UUID

from sqlalchemy import JSON, BigInteger, Index, String
from sqlalchemy.orm import Mapped, mapped_column

from govflow_kernel.db.base import Base


class AuditEventType(str, Enum):
    STATE_CHANGED = "STATE_CHANGED"
    SLA_BREACHED = "SLA_BREACHED"
    QUERY_EXPIRED = "QUERY_EXPIRED"


class AuditEvent(Base):
    """
    Audit event with hash chain for tamper evidence.

    Guarantees:
        - seq is globally unique and strictly increasing.
        - prev_hash equals the hash of the event with seq - 1, or the
          genesis hash for seq 1.

    Non-goals:
        - The model does not check hash correctness at INSERT time; that is
          AuditorService's job.
    """

    __tablename__ = "audit_events"
    __table_args__ = (
        Index("idx_audit_arn", "arn", "seq"),
        Index("idx_audit_type", "event_type"),
    )

    seq: Mapped[int] = mapped_column(BigInteger, nullable=False, unique=True)
    arn: Mapped[str] = mapped_column(String(64), nullable=False)
    event_type: Mapped[str] = mapped_column(String(50), nullable=False)
    actor_id: Mapped[str] = mapped_column(String(100), nullable=False)
    actor_type: Mapped[str] = mapped_column(String(20), nullable=False)
    occurred_at: Mapped[datetime] = mapped_column(nullable=False)
    payload: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)
    prev_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    hash: Mapped[str] = mapped_column(String(64), nullable=False)

    @property
    def event_id(self) -> UUID:
        return self.id

    def __repr__(self) -> str:
        return f"<AuditEvent #{self.seq} {self.event_type} {self.arn}>"
