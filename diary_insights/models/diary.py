"""Read-only mappings of the diary application's tables.

These tables are owned and migrated by the diary application; the queue only
queries them for eligibility.  Each carries ``info={"external": True}`` so
Alembic autogenerate leaves them alone.
"""

from __future__ import annotations

import uuid
from datetime import date

from sqlalchemy import Date, ForeignKey, String, Text
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from diary_insights.models.base import EXTERNAL_TABLE_INFO, Base

INSIGHT_SUCCESS_STATUS = "success"


class DiaryUser(Base):
    __tablename__ = "users"
    __table_args__ = {"info": EXTERNAL_TABLE_INFO}

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True)
    timezone: Mapped[str | None] = mapped_column(String(64), nullable=True)


class Entry(Base):
    """One diary page; ``entry_date`` is the user's local calendar date."""

    __tablename__ = "entries"
    __table_args__ = {"info": EXTERNAL_TABLE_INFO}

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True)
    user_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
    )
    entry_date: Mapped[date] = mapped_column(Date, nullable=False)
    diary_text: Mapped[str | None] = mapped_column(Text, nullable=True)


class EntryInsight(Base):
    __tablename__ = "entry_insights"
    __table_args__ = {"info": EXTERNAL_TABLE_INFO}

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True)
    entry_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("entries.id", ondelete="CASCADE"),
        nullable=False,
    )
    status: Mapped[str] = mapped_column(String(16), nullable=False)


class WeeklyInsight(Base):
    __tablename__ = "weekly_insights"
    __table_args__ = {"info": EXTERNAL_TABLE_INFO}

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True)
    user_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    week_start: Mapped[date] = mapped_column(Date, nullable=False)


class MonthlyInsight(Base):
    __tablename__ = "monthly_insights"
    __table_args__ = {"info": EXTERNAL_TABLE_INFO}

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True)
    user_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    month_start: Mapped[date] = mapped_column(Date, nullable=False)
