"""
Module: govflow_kernel.models.authority
Responsibility: Per-authority working calendars and officer role postings.

An authority without a calendar row uses the default Saturday/Sunday
weekend.  Postings are the source of truth for which roles an officer
holds where; inbox filtering and task claiming both read them.
"""

from __future__ import annotations

from datetime import date

from sqlalchemy import JSON, Boolean, Date, Index, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from govflow_kernel.db.base import Base


class AuthorityCalendar(Base):
    __tablename__ = "authority_calendars"

    authority_id: Mapped[str] = mapped_column(String(100), nullable=False, unique=True)
    non_working_weekdays: Mapped[list[int]] = mapped_column(JSON, nullable=False, default=list)


class AuthorityHoliday(Base):
    __tablename__ = "authority_holidays"

    __table_args__ = (
        UniqueConstraint("authority_id", "holiday_date", name="uq_authority_holidays_day"),
    )

    authority_id: Mapped[str] = mapped_column(String(100), nullable=False)
    holiday_date: Mapped[date] = mapped_column(Date, nullable=False)
    description: Mapped[str | None] = mapped_column(String(200), nullable=True)


class OfficerPosting(Base):
    """An officer holding a system role at an authority."""

    __tablename__ = "officer_postings"

    __table_args__ = (
        UniqueConstraint("user_id", "authority_id", "role_id", name="uq_officer_postings"),
        Index("idx_officer_postings_user", "user_id", "active"),
    )

    user_id: Mapped[str] = mapped_column(String(100), nullable=False)
    authority_id: Mapped[str] = mapped_column(String(100), nullable=False)
    role_id: Mapped[str] = mapped_column(String(100), nullable=False)
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
