"""Durable analysis queue model — one row per scheduled reflection."""

from __future__ import annotations

import uuid
from datetime import date, datetime
from typing import Any

from sqlalchemy import Boolean, Date, DateTime, Enum, Index, Integer, String, Text, func, text
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import Mapped, mapped_column

from diary_insights.models.base import Base, CreatedAtMixin, TimestampMixin, UUIDPrimaryKeyMixin
from diary_insights.models.enums import AnalysisTypeEnum, JobStatusEnum


class AnalysisJob(Base, UUIDPrimaryKeyMixin, TimestampMixin):
	"""Tracks one daily / weekly / monthly analysis from enqueue to terminal state.

	``target_date`` is the period key for every analysis type; weekly and
	monthly rows repeat it in ``week_start`` / ``month_start``.
	"""

	__tablename__ = "analysis_queue"
	__table_args__ = (
		Index("ix_analysis_queue_status_next_retry", "status", "next_retry_at"),
		Index(
			"uq_analysis_queue_active_period",
			"user_id",
			"analysis_type",
			"target_date",
			unique=True,
			postgresql_where=text("status IN ('pending', 'processing')"),
		),
	)

	user_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False, index=True)
	analysis_type: Mapped[AnalysisTypeEnum] = mapped_column(
		Enum(
			AnalysisTypeEnum,
			name="analysis_type",
			create_constraint=False,
			native_enum=True,
		),
		nullable=False,
	)
	target_date: Mapped[date] = mapped_column(Date, nullable=False)
	week_start: Mapped[date | None] = mapped_column(Date, nullable=True)
	month_start: Mapped[date | None] = mapped_column(Date, nullable=True)
	entry_id: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True), nullable=True)
	status: Mapped[JobStatusEnum] = mapped_column(
		Enum(
			JobStatusEnum,
			name="analysis_job_status",
			create_constraint=False,
			native_enum=True,
		),
		nullable=False,
		default=JobStatusEnum.pending,
		server_default=JobStatusEnum.pending.value,
	)
	attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
	max_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=3, server_default="3")
	next_retry_at: Mapped[datetime] = mapped_column(
		DateTime(timezone=True),
		nullable=False,
		server_default=func.now(),
	)
	error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
	skipped: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default="false")
	processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

	def __repr__(self) -> str:
		return (
			f"<AnalysisJob id={self.id} user={self.user_id} type={self.analysis_type} "
			f"target={self.target_date} status={self.status}>"
		)


class AIErrorLog(Base, UUIDPrimaryKeyMixin, CreatedAtMixin):
	"""Audit row for every failed analysis dispatch."""

	__tablename__ = "ai_errors_log"

	user_id: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True), nullable=True, index=True)
	entry_id: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True), nullable=True)
	job_id: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True), nullable=True)
	analysis_type: Mapped[str] = mapped_column(String(16), nullable=False)
	error_code: Mapped[str] = mapped_column(String(64), nullable=False)
	error_message: Mapped[str] = mapped_column(Text, nullable=False)
	error_type: Mapped[str] = mapped_column(String(32), nullable=False)
	error_severity: Mapped[str] = mapped_column(String(8), nullable=False)
	failed_at_step: Mapped[str] = mapped_column(String(32), nullable=False)
	retry_attempt: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
	handler_name: Mapped[str] = mapped_column(String(64), nullable=False)
	environment: Mapped[str] = mapped_column(String(32), nullable=False)
	error_details: Mapped[dict[str, Any]] = mapped_column(JSONB, nullable=False, default=dict)
