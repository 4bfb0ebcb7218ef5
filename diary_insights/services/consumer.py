"""Queue consumer — claims due jobs, dispatches them and drives the retry state machine.

State machine for one job::

    pending --Success--------------------------------> completed
    pending --ValidationFailure----------------------> completed (skipped)
    pending --TransientFailure, attempts+1 <  max----> pending (backoff)
    pending --TransientFailure, attempts+1 >= max----> failed
    pending --missing identifiers--------------------> failed

``processing`` is only held between the claim and the outcome write of the
same invocation; an error in between puts the job back to ``pending``.
"""

from __future__ import annotations

import calendar
import time
from collections.abc import Callable, Mapping
from datetime import UTC, date, datetime, timedelta

import structlog

from diary_insights.config import Settings
from diary_insights.exceptions import ConfigurationError, JobContractError
from diary_insights.models.enums import AnalysisTypeEnum, JobStatusEnum
from diary_insights.schemas.queue import ConsumerSummary, JobResult, JobResultStatus
from diary_insights.services.eligibility import UserDirectory
from diary_insights.services.error_log_service import ErrorRecorder
from diary_insights.services.handlers import (
	AnalysisHandler,
	AnalysisRequest,
	HandlerOutcome,
	Success,
	TransientFailure,
	ValidationFailure,
)
from diary_insights.services.job_store import JobStore, JobUpdate, QueuedJob
from diary_insights.services.timezone_service import DEFAULT_TIMEZONE, TimezoneResolver

logger = structlog.get_logger("diary_insights.consumer")


def _utc_now() -> datetime:
	return datetime.now(UTC)


def period_end(job: QueuedJob) -> date:
	"""Last local calendar day covered by ``job``."""
	if job.analysis_type == AnalysisTypeEnum.weekly:
		return (job.week_start or job.target_date) + timedelta(days=6)
	if job.analysis_type == AnalysisTypeEnum.monthly:
		start = job.month_start or job.target_date
		return start.replace(day=calendar.monthrange(start.year, start.month)[1])
	return job.target_date


def backoff_delay(attempts: int, base: int = 2) -> timedelta:
	return timedelta(minutes=base**attempts)


class QueueConsumer:
	def __init__(
		self,
		settings: Settings,
		jobs: JobStore,
		users: UserDirectory,
		handlers: Mapping[AnalysisTypeEnum, AnalysisHandler],
		resolver: TimezoneResolver,
		error_log: ErrorRecorder | None = None,
		clock: Callable[[], datetime] = _utc_now,
	):
		missing = [analysis_type.value for analysis_type in AnalysisTypeEnum if analysis_type not in handlers]
		if missing:
			raise ConfigurationError(f"No analysis handler registered for: {', '.join(missing)}")
		self.settings = settings
		self.jobs = jobs
		self.users = users
		self.handlers = handlers
		self.resolver = resolver
		self.error_log = error_log
		self.clock = clock

	async def run(self, now: datetime | None = None) -> ConsumerSummary:
		now = now or self.clock()
		started = time.monotonic()
		summary = ConsumerSummary(started_at=now)

		due = await self.jobs.list_due(now, self.settings.consumer_batch_size)
		summary.checked = len(due)
		if not due:
			logger.info("queue_processing_idle", at=now.isoformat())
			return summary

		timezones = await self.users.get_timezones(job.user_id for job in due)
		for index, job in enumerate(due):
			if time.monotonic() - started >= self.settings.consumer_deadline_seconds:
				remaining = len(due) - index
				summary.deferred += remaining
				logger.warning("queue_processing_deadline_reached", remaining=remaining)
				break
			try:
				result = await self.process_job(job, timezones.get(job.user_id, DEFAULT_TIMEZONE), now)
			except Exception as exc:
				summary.errors += 1
				logger.exception("job_processing_error", job_id=str(job.id), error=str(exc))
				continue
			summary.record(result)

		logger.info(
			"queue_processing_finished",
			checked=summary.checked,
			eligible=summary.eligible,
			processed=summary.processed,
			skipped=summary.skipped,
			retried=summary.retried,
			failed=summary.failed,
			deferred=summary.deferred,
			errors=summary.errors,
		)
		return summary

	async def process_job(self, job: QueuedJob, timezone: str, now: datetime) -> JobResult:
		log = logger.bind(
			job_id=str(job.id),
			user_id=str(job.user_id),
			analysis_type=job.analysis_type.value,
			target_date=job.target_date.isoformat(),
		)

		yesterday = await self.resolver.local_date(timezone, -1, at=now)
		# Inclusive: a catch-up day that ended yesterday or earlier runs now.
		if period_end(job) > yesterday:
			log.info("job_deferred_period_open", user_yesterday=yesterday.isoformat(), timezone=timezone)
			return JobResult(id=job.id, type=job.analysis_type.value, status=JobResultStatus.deferred)

		if not await self.jobs.claim(job.id):
			log.info("job_claimed_elsewhere")
			return JobResult(id=job.id, type=job.analysis_type.value, status=JobResultStatus.unclaimed)

		try:
			return await self._dispatch(job, log)
		except Exception:
			await self._release(job, log)
			raise

	async def _dispatch(self, job: QueuedJob, log: structlog.BoundLogger) -> JobResult:
		handler = self.handlers[job.analysis_type]
		try:
			request = AnalysisRequest.for_job(job)
		except JobContractError as exc:
			return await self._fail_contract(job, exc, handler.name, log)

		log.info("job_dispatching", handler=handler.name, attempt=job.attempts + 1)
		try:
			outcome: HandlerOutcome = await handler.analyze(request)
		except Exception as exc:
			outcome = TransientFailure(f"Failed to invoke {handler.name}: {exc}")

		return await self._apply(job, outcome, handler.name, log)

	async def _release(self, job: QueuedJob, log: structlog.BoundLogger) -> None:
		"""Put a claimed job back to ``pending`` so the next run retries it; attempts are untouched."""
		try:
			released = await self.jobs.release(job.id)
		except Exception as exc:
			log.error("job_release_failed", error=str(exc))
			return
		if released:
			log.warning("job_released_after_error")

	async def _apply(
		self,
		job: QueuedJob,
		outcome: HandlerOutcome,
		handler_name: str,
		log: structlog.BoundLogger,
	) -> JobResult:
		now = self.clock()
		if isinstance(outcome, Success):
			await self.jobs.update_job(
				job.id,
				JobUpdate(status=JobStatusEnum.completed, processed_at=now, clear=frozenset({"error_message"})),
			)
			log.info("job_completed")
			return JobResult(
				id=job.id,
				type=job.analysis_type.value,
				status=JobResultStatus.completed,
				attempts=job.attempts,
			)

		if isinstance(outcome, ValidationFailure):
			await self.jobs.update_job(
				job.id,
				JobUpdate(
					status=JobStatusEnum.completed,
					processed_at=now,
					error_message=outcome.reason,
					skipped=True,
				),
			)
			log.info("job_skipped_validation", reason=outcome.reason)
			return JobResult(
				id=job.id,
				type=job.analysis_type.value,
				status=JobResultStatus.skipped,
				attempts=job.attempts,
				reason=outcome.reason,
			)

		return await self._fail_transient(job, outcome.reason, handler_name, now, log)

	async def _fail_transient(
		self,
		job: QueuedJob,
		reason: str,
		handler_name: str,
		now: datetime,
		log: structlog.BoundLogger,
	) -> JobResult:
		attempts = job.attempts + 1
		if attempts >= job.max_attempts:
			await self.jobs.update_job(
				job.id,
				JobUpdate(
					status=JobStatusEnum.failed,
					attempts=attempts,
					error_message=reason,
					processed_at=now,
				),
			)
			log.error("job_failed", attempts=attempts, max_attempts=job.max_attempts, error=reason)
			await self._record_error(job, reason, "max_attempts_exceeded", handler_name, attempts)
			return JobResult(
				id=job.id,
				type=job.analysis_type.value,
				status=JobResultStatus.failed,
				attempts=attempts,
				reason=reason,
			)

		next_retry_at = now + backoff_delay(attempts, self.settings.backoff_base)
		await self.jobs.update_job(
			job.id,
			JobUpdate(
				status=JobStatusEnum.pending,
				attempts=attempts,
				next_retry_at=next_retry_at,
				error_message=reason,
			),
		)
		log.warning("job_retry_scheduled", attempts=attempts, next_retry_at=next_retry_at.isoformat(), error=reason)
		await self._record_error(job, reason, "transient_failure", handler_name, attempts)
		return JobResult(
			id=job.id,
			type=job.analysis_type.value,
			status=JobResultStatus.retry,
			attempts=attempts,
			reason=reason,
			next_retry_at=next_retry_at,
		)

	async def _fail_contract(
		self,
		job: QueuedJob,
		exc: JobContractError,
		handler_name: str,
		log: structlog.BoundLogger,
	) -> JobResult:
		reason = str(exc)
		await self.jobs.update_job(
			job.id,
			JobUpdate(status=JobStatusEnum.failed, error_message=reason, processed_at=self.clock()),
		)
		log.error("job_contract_violation", missing=exc.missing)
		await self._record_error(job, reason, "contract_violation", handler_name, job.attempts)
		return JobResult(
			id=job.id,
			type=job.analysis_type.value,
			status=JobResultStatus.failed,
			attempts=job.attempts,
			reason=reason,
		)

	async def _record_error(
		self,
		job: QueuedJob,
		reason: str,
		error_code: str,
		handler_name: str,
		attempts: int,
	) -> None:
		if self.error_log is None:
			return
		# The outcome is already written; a failed audit write must not undo it.
		try:
			await self.error_log.record(
				message=reason,
				error_code=error_code,
				analysis_type=job.analysis_type,
				handler_name=handler_name,
				user_id=job.user_id,
				entry_id=job.entry_id,
				job_id=job.id,
				retry_attempt=attempts,
				details={"target_date": job.target_date.isoformat(), "max_attempts": job.max_attempts},
			)
		except Exception as exc:
			logger.error("error_record_failed", job_id=str(job.id), error=str(exc))
