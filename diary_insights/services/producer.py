"""Queue producer — discovers due daily / weekly / monthly analyses per user."""

from __future__ import annotations

import asyncio
import uuid
from collections.abc import AsyncIterator
from dataclasses import dataclass
from datetime import UTC, date, datetime, timedelta

import structlog

from diary_insights.config import Settings
from diary_insights.models.enums import AnalysisTypeEnum
from diary_insights.schemas.queue import ProducerSummary
from diary_insights.services.eligibility import EligibilitySource, EntryRecord, UserDirectory, UserRecord
from diary_insights.services.job_store import JobStore, NewJob
from diary_insights.services.timezone_service import DEFAULT_TIMEZONE, TimezoneResolver

logger = structlog.get_logger("diary_insights.producer")


def previous_week_bounds(today: date) -> tuple[date, date]:
	"""Monday–Sunday of the most recent week that ended at least a week before ``today``."""
	anchor = today - timedelta(days=7)
	week_start = anchor - timedelta(days=anchor.weekday())
	return week_start, week_start + timedelta(days=6)


def previous_month_bounds(today: date) -> tuple[date, date]:
	month_end = today.replace(day=1) - timedelta(days=1)
	return month_end.replace(day=1), month_end


def is_week_boundary(local_now: datetime) -> bool:
	return local_now.weekday() == 6 and local_now.hour == 0


def is_month_boundary(local_now: datetime) -> bool:
	return local_now.day == 1 and local_now.hour == 0


@dataclass(slots=True)
class _UserTally:
	daily: int = 0
	catchup: int = 0
	weekly: int = 0
	monthly: int = 0


class QueueProducer:
	"""Enqueues deduplicated analysis jobs; one ``run`` per scheduling tick."""

	def __init__(
		self,
		settings: Settings,
		users: UserDirectory,
		eligibility: EligibilitySource,
		jobs: JobStore,
		resolver: TimezoneResolver,
	):
		self.settings = settings
		self.users = users
		self.eligibility = eligibility
		self.jobs = jobs
		self.resolver = resolver

	async def run(self, now: datetime | None = None) -> ProducerSummary:
		now = now or datetime.now(UTC)
		summary = ProducerSummary(started_at=now)
		semaphore = asyncio.Semaphore(max(1, self.settings.producer_concurrency))

		async def _guarded(user: UserRecord) -> _UserTally | None:
			async with semaphore:
				return await self._evaluate_safely(user, now)

		logger.info("queue_population_started", at=now.isoformat())
		async for page in self._user_pages():
			tallies = await asyncio.gather(*(_guarded(user) for user in page))
			for tally in tallies:
				summary.users_processed += 1
				if tally is None:
					summary.users_failed += 1
					continue
				summary.daily_queued += tally.daily + tally.catchup
				summary.catchup_queued += tally.catchup
				summary.weekly_queued += tally.weekly
				summary.monthly_queued += tally.monthly

		logger.info(
			"queue_population_finished",
			users=summary.users_processed,
			users_failed=summary.users_failed,
			daily=summary.daily_queued,
			weekly=summary.weekly_queued,
			monthly=summary.monthly_queued,
			total=summary.total_queued,
		)
		return summary

	async def _user_pages(self) -> AsyncIterator[list[UserRecord]]:
		after: uuid.UUID | None = None
		page_size = max(1, self.settings.user_page_size)
		while True:
			page = await self.users.list_users(after, page_size)
			if not page:
				return
			yield page
			if len(page) < page_size:
				return
			after = page[-1].id

	async def _evaluate_safely(self, user: UserRecord, now: datetime) -> _UserTally | None:
		try:
			return await self.evaluate_user(user, now)
		except Exception as exc:
			logger.exception("user_evaluation_failed", user_id=str(user.id), error=str(exc))
			return None

	async def evaluate_user(self, user: UserRecord, now: datetime) -> _UserTally:
		tz = user.timezone or DEFAULT_TIMEZONE
		log = logger.bind(user_id=str(user.id), timezone=tz)
		tally = _UserTally()

		today = await self.resolver.local_date(tz, 0, at=now)
		local_now = self.resolver.local_now(tz, now)
		retry_floor = self.resolver.next_local_midnight(today, tz)

		window_start = today - timedelta(days=self.settings.catchup_window_days)
		for entry in await self.eligibility.list_entries(user.id, window_start, today):
			if entry.entry_date > today:
				continue
			if await self._enqueue_daily(user.id, entry, retry_floor, log):
				if entry.entry_date == today:
					tally.daily += 1
				else:
					tally.catchup += 1

		if is_week_boundary(local_now):
			week_start, week_end = previous_week_bounds(today)
			if await self._enqueue_period(
				user.id,
				AnalysisTypeEnum.weekly,
				week_start,
				week_end,
				self.settings.weekly_min_entries,
				retry_floor,
				log,
			):
				tally.weekly += 1

		if is_month_boundary(local_now):
			month_start, month_end = previous_month_bounds(today)
			if await self._enqueue_period(
				user.id,
				AnalysisTypeEnum.monthly,
				month_start,
				month_end,
				self.settings.monthly_min_entries,
				retry_floor,
				log,
			):
				tally.monthly += 1

		return tally

	async def _enqueue_daily(
		self,
		user_id: uuid.UUID,
		entry: EntryRecord,
		retry_floor: datetime,
		log: structlog.BoundLogger,
	) -> bool:
		if entry.text_length < self.settings.daily_min_text_length:
			log.debug("daily_skipped_text_too_short", entry_id=str(entry.id), length=entry.text_length)
			return False
		if not await self.eligibility.is_entry_complete(entry.id):
			log.debug("daily_skipped_incomplete", entry_id=str(entry.id))
			return False
		job = NewJob(
			user_id=user_id,
			analysis_type=AnalysisTypeEnum.daily,
			target_date=entry.entry_date,
			entry_id=entry.id,
			next_retry_at=retry_floor,
			max_attempts=self.settings.max_attempts,
		)
		return await self._enqueue(job, log)

	async def _enqueue_period(
		self,
		user_id: uuid.UUID,
		analysis_type: AnalysisTypeEnum,
		start: date,
		end: date,
		min_entries: int,
		retry_floor: datetime,
		log: structlog.BoundLogger,
	) -> bool:
		entries = await self.eligibility.list_entries(user_id, start, end)
		qualifying = sum(1 for entry in entries if entry.has_text)
		if qualifying < min_entries:
			log.info(
				f"{analysis_type.value}_skipped_insufficient_entries",
				period_start=start.isoformat(),
				entries=qualifying,
				required=min_entries,
			)
			return False
		job = NewJob(
			user_id=user_id,
			analysis_type=analysis_type,
			target_date=start,
			week_start=start if analysis_type == AnalysisTypeEnum.weekly else None,
			month_start=start if analysis_type == AnalysisTypeEnum.monthly else None,
			next_retry_at=retry_floor,
			max_attempts=self.settings.max_attempts,
		)
		return await self._enqueue(job, log)

	async def _enqueue(self, job: NewJob, log: structlog.BoundLogger) -> bool:
		period = job.target_date.isoformat()
		if await self.eligibility.has_successful_result(job.user_id, job.analysis_type, job.target_date, job.entry_id):
			log.info("job_skipped_result_exists", analysis_type=job.analysis_type.value, period=period)
			return False
		# Skipped and failed jobs count too: their period is never queued again.
		if await self.jobs.has_job(job.user_id, job.analysis_type, job.target_date):
			log.info("job_skipped_already_queued", analysis_type=job.analysis_type.value, period=period)
			return False
		inserted = await self.jobs.insert_job(job)
		if inserted:
			log.info(
				"job_queued",
				analysis_type=job.analysis_type.value,
				period=period,
				entry_id=str(job.entry_id) if job.entry_id else None,
				next_retry_at=job.next_retry_at.isoformat(),
			)
		else:
			log.info("job_skipped_conflict", analysis_type=job.analysis_type.value, period=period)
		return inserted
