"""Pydantic schemas for queue invocations and job inspection endpoints."""

from __future__ import annotations

import uuid
from datetime import date, datetime
from enum import StrEnum

from pydantic import BaseModel, Field, computed_field


class JobResultStatus(StrEnum):
	completed = "completed"
	skipped = "skipped"
	retry = "retry"
	failed = "failed"
	deferred = "deferred"
	unclaimed = "unclaimed"


class JobResult(BaseModel):
	id: uuid.UUID
	type: str
	status: JobResultStatus
	attempts: int | None = None
	reason: str | None = None
	next_retry_at: datetime | None = None


class ProducerSummary(BaseModel):
	success: bool = True
	started_at: datetime
	users_processed: int = 0
	users_failed: int = 0
	daily_queued: int = 0
	catchup_queued: int = 0
	weekly_queued: int = 0
	monthly_queued: int = 0

	@computed_field  # type: ignore[prop-decorator]
	@property
	def total_queued(self) -> int:
		return self.daily_queued + self.weekly_queued + self.monthly_queued


class ConsumerSummary(BaseModel):
	success: bool = True
	started_at: datetime
	checked: int = 0
	eligible: int = 0
	processed: int = 0
	skipped: int = 0
	retried: int = 0
	failed: int = 0
	deferred: int = 0
	errors: int = 0
	results: list[JobResult] = Field(default_factory=list)

	def record(self, result: JobResult) -> None:
		if result.status == JobResultStatus.deferred:
			self.deferred += 1
			return
		self.eligible += 1
		if result.status == JobResultStatus.unclaimed:
			return
		if result.status == JobResultStatus.completed:
			self.processed += 1
		elif result.status == JobResultStatus.skipped:
			self.processed += 1
			self.skipped += 1
		elif result.status == JobResultStatus.retry:
			self.retried += 1
		elif result.status == JobResultStatus.failed:
			self.failed += 1
		self.results.append(result)


class InvocationError(BaseModel):
	success: bool = False
	error: str


class JobStatusResponse(BaseModel):
	job_id: uuid.UUID
	user_id: uuid.UUID
	analysis_type: str
	target_date: date
	week_start: date | None = None
	month_start: date | None = None
	entry_id: uuid.UUID | None = None
	status: str
	attempts: int
	max_attempts: int
	next_retry_at: datetime
	error_message: str | None = None
	skipped: bool = False
	processed_at: datetime | None = None
	created_at: datetime | None = None
	updated_at: datetime | None = None


class JobListResponse(BaseModel):
	items: list[JobStatusResponse]
	count: int


class QueueStatsResponse(BaseModel):
	counts: dict[str, int]
	last_populate: ProducerSummary | None = None
	last_process: ConsumerSummary | None = None
