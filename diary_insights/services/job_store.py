"""Analysis queue persistence — the only shared mutable resource."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Protocol

from sqlalchemy import func, select, update
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from diary_insights.models.enums import AnalysisTypeEnum, JobStatusEnum
from diary_insights.models.jobs import AnalysisJob

ERROR_MESSAGE_LIMIT = 2048


@dataclass(slots=True)
class QueuedJob:
	"""Snapshot of one queue row as the consumer sees it."""

	id: uuid.UUID
	user_id: uuid.UUID
	analysis_type: AnalysisTypeEnum
	target_date: date
	status: JobStatusEnum
	attempts: int
	max_attempts: int
	next_retry_at: datetime
	entry_id: uuid.UUID | None = None
	week_start: date | None = None
	month_start: date | None = None
	error_message: str | None = None
	skipped: bool = False
	processed_at: datetime | None = None
	created_at: datetime | None = None
	updated_at: datetime | None = None

	@classmethod
	def from_row(cls, row: AnalysisJob) -> QueuedJob:
		return cls(
			id=row.id,
			user_id=row.user_id,
			analysis_type=row.analysis_type,
			target_date=row.target_date,
			status=row.status,
			attempts=row.attempts,
			max_attempts=row.max_attempts,
			next_retry_at=row.next_retry_at,
			entry_id=row.entry_id,
			week_start=row.week_start,
			month_start=row.month_start,
			error_message=row.error_message,
			skipped=row.skipped,
			processed_at=row.processed_at,
			created_at=row.created_at,
			updated_at=row.updated_at,
		)


@dataclass(slots=True)
class NewJob:
	user_id: uuid.UUID
	analysis_type: AnalysisTypeEnum
	target_date: date
	next_retry_at: datetime
	max_attempts: int
	entry_id: uuid.UUID | None = None
	week_start: date | None = None
	month_start: date | None = None


@dataclass(slots=True)
class JobUpdate:
	"""Fields the consumer may change; ``None`` means leave untouched unless listed in ``clear``."""

	status: JobStatusEnum | None = None
	attempts: int | None = None
	next_retry_at: datetime | None = None
	error_message: str | None = None
	skipped: bool | None = None
	processed_at: datetime | None = None
	clear: frozenset[str] = field(default_factory=frozenset)

	def values(self) -> dict[str, Any]:
		out: dict[str, Any] = {}
		for name in ("status", "attempts", "next_retry_at", "error_message", "skipped", "processed_at"):
			value = getattr(self, name)
			if value is not None:
				out[name] = value
			elif name in self.clear:
				out[name] = None
		if out.get("error_message"):
			out["error_message"] = out["error_message"][:ERROR_MESSAGE_LIMIT]
		return out


class JobStore(Protocol):
	async def has_job(self, user_id: uuid.UUID, analysis_type: AnalysisTypeEnum, period: date) -> bool: ...

	async def insert_job(self, job: NewJob) -> bool: ...

	async def list_due(self, now: datetime, limit: int) -> list[QueuedJob]: ...

	async def claim(self, job_id: uuid.UUID) -> bool: ...

	async def release(self, job_id: uuid.UUID) -> bool: ...

	async def update_job(self, job_id: uuid.UUID, changes: JobUpdate) -> None: ...


class SqlJobStore:
	"""SQLAlchemy-backed job store; every call runs in its own short transaction."""

	def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
		self.session_factory = session_factory

	async def has_job(self, user_id: uuid.UUID, analysis_type: AnalysisTypeEnum, period: date) -> bool:
		"""Any row for the period key, terminal ones included; a period is queued at most once."""
		stmt = (
			select(AnalysisJob.id)
			.where(
				AnalysisJob.user_id == user_id,
				AnalysisJob.analysis_type == analysis_type,
				AnalysisJob.target_date == period,
			)
			.limit(1)
		)
		async with self.session_factory() as session:
			row = await session.execute(stmt)
			return row.scalar_one_or_none() is not None

	async def insert_job(self, job: NewJob) -> bool:
		stmt = (
			insert(AnalysisJob)
			.values(
				id=uuid.uuid4(),
				user_id=job.user_id,
				analysis_type=job.analysis_type,
				target_date=job.target_date,
				week_start=job.week_start,
				month_start=job.month_start,
				entry_id=job.entry_id,
				status=JobStatusEnum.pending,
				attempts=0,
				max_attempts=job.max_attempts,
				next_retry_at=job.next_retry_at,
			)
			.on_conflict_do_nothing()
			.returning(AnalysisJob.id)
		)
		async with self.session_factory() as session:
			row = await session.execute(stmt)
			inserted = row.scalar_one_or_none() is not None
			await session.commit()
		return inserted

	async def list_due(self, now: datetime, limit: int) -> list[QueuedJob]:
		stmt = (
			select(AnalysisJob)
			.where(
				AnalysisJob.status == JobStatusEnum.pending,
				AnalysisJob.next_retry_at <= now,
			)
			.order_by(AnalysisJob.next_retry_at.asc(), AnalysisJob.created_at.asc())
			.limit(limit)
		)
		async with self.session_factory() as session:
			rows = await session.execute(stmt)
			return [QueuedJob.from_row(job) for job in rows.scalars().all()]

	async def claim(self, job_id: uuid.UUID) -> bool:
		stmt = (
			update(AnalysisJob)
			.where(AnalysisJob.id == job_id, AnalysisJob.status == JobStatusEnum.pending)
			.values(status=JobStatusEnum.processing)
		)
		async with self.session_factory() as session:
			result = await session.execute(stmt)
			await session.commit()
		return result.rowcount == 1

	async def release(self, job_id: uuid.UUID) -> bool:
		"""Undo a claim whose outcome was never written; only touches rows still ``processing``."""
		stmt = (
			update(AnalysisJob)
			.where(AnalysisJob.id == job_id, AnalysisJob.status == JobStatusEnum.processing)
			.values(status=JobStatusEnum.pending)
		)
		async with self.session_factory() as session:
			result = await session.execute(stmt)
			await session.commit()
		return result.rowcount == 1

	async def update_job(self, job_id: uuid.UUID, changes: JobUpdate) -> None:
		values = changes.values()
		if not values:
			return
		async with self.session_factory() as session:
			await session.execute(update(AnalysisJob).where(AnalysisJob.id == job_id).values(**values))
			await session.commit()

	async def get_job(self, job_id: uuid.UUID) -> QueuedJob:
		async with self.session_factory() as session:
			row = await session.execute(select(AnalysisJob).where(AnalysisJob.id == job_id))
			job = row.scalar_one_or_none()
		if job is None:
			raise LookupError(f"Job {job_id} not found")
		return QueuedJob.from_row(job)

	async def list_jobs(
		self,
		*,
		status: JobStatusEnum | None = None,
		user_id: uuid.UUID | None = None,
		analysis_type: AnalysisTypeEnum | None = None,
		limit: int = 100,
	) -> list[QueuedJob]:
		stmt = select(AnalysisJob).order_by(AnalysisJob.created_at.desc()).limit(limit)
		if status is not None:
			stmt = stmt.where(AnalysisJob.status == status)
		if user_id is not None:
			stmt = stmt.where(AnalysisJob.user_id == user_id)
		if analysis_type is not None:
			stmt = stmt.where(AnalysisJob.analysis_type == analysis_type)
		async with self.session_factory() as session:
			rows = await session.execute(stmt)
			return [QueuedJob.from_row(job) for job in rows.scalars().all()]

	async def count_by_status(self) -> dict[str, int]:
		counts = {status.value: 0 for status in JobStatusEnum}
		stmt = select(AnalysisJob.status, func.count(AnalysisJob.id)).group_by(AnalysisJob.status)
		async with self.session_factory() as session:
			rows = await session.execute(stmt)
			for status, count in rows.all():
				counts[JobStatusEnum(status).value] = int(count)
		return counts
