"""
Module: govflow_kernel.models.document
Responsibility: Version metadata for application documents.

Storage of the document bytes is external; the engine only records which
version of each document type is current and which query produced it.
"""

from __future__ import annotations

from datetime import datetime
from uuid import UUID

from sqlalchemy import ForeignKey, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from govflow_kernel.db.base import Base, UUIDString


class ApplicationDocument(Base):
    __tablename__ = "application_documents"

    __table_args__ = (
        UniqueConstraint("application_id", "doc_type", "version", name="uq_application_documents_version"),
    )

    application_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("applications.id"), nullable=False
    )
    arn: Mapped[str] = mapped_column(String(64), nullable=False)
    doc_type: Mapped[str] = mapped_column(String(100), nullable=False)
    version: Mapped[int] = mapped_column(Integer, nullable=False)
    storage_ref: Mapped[str] = mapped_column(String(500), nullable=False)
    uploaded_by: Mapped[str] = mapped_column(String(100), nullable=False)
    uploaded_at: Mapped[datetime] = mapped_column(nullable=False)
    query_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
