"""Per-invocation wiring of producer / consumer plus run-history caching."""

from __future__ import annotations

import json
import uuid

import structlog
from redis.asyncio import Redis
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from diary_insights.config import Settings
from diary_insights.models.enums import AnalysisTypeEnum, JobStatusEnum
from diary_insights.schemas.queue import (
	ConsumerSummary,
	JobListResponse,
	JobStatusResponse,
	ProducerSummary,
	QueueStatsResponse,
)
from diary_insights.services.consumer import QueueConsumer
from diary_insights.services.eligibility import SqlEligibilitySource, SqlUserDirectory
from diary_insights.services.error_log_service import ErrorLogService
from diary_insights.services.handlers import build_http_handlers
from diary_insights.services.job_store import QueuedJob, SqlJobStore
from diary_insights.services.producer import QueueProducer
from diary_insights.services.timezone_service import SqlTimezoneSource, TimezoneResolver

logger = structlog.get_logger("diary_insights.queue")

LAST_RUN_TTL_SECONDS = 60 * 60 * 24 * 7
POPULATE_KIND = "populate"
PROCESS_KIND = "process"


class QueueService:
	def __init__(
		self,
		settings: Settings,
		session_factory: async_sessionmaker[AsyncSession],
		redis_client: Redis | None = None,
	):
		self.settings = settings
		self.session_factory = session_factory
		self.redis_client = redis_client
		self.jobs = SqlJobStore(session_factory)
		self.users = SqlUserDirectory(session_factory)
		self.resolver = TimezoneResolver(SqlTimezoneSource(session_factory))

	def build_producer(self) -> QueueProducer:
		self.settings.require_database()
		return QueueProducer(
			self.settings,
			self.users,
			SqlEligibilitySource(self.session_factory),
			self.jobs,
			self.resolver,
		)

	def build_consumer(self) -> QueueConsumer:
		self.settings.require_handlers()
		return QueueConsumer(
			self.settings,
			self.jobs,
			self.users,
			build_http_handlers(self.settings),
			self.resolver,
			error_log=ErrorLogService(self.session_factory, self.settings.environment),
		)

	async def populate(self) -> ProducerSummary:
		summary = await self.build_producer().run()
		await self._remember(POPULATE_KIND, summary.model_dump(mode="json"))
		return summary

	async def process(self) -> ConsumerSummary:
		summary = await self.build_consumer().run()
		await self._remember(PROCESS_KIND, summary.model_dump(mode="json"))
		return summary

	async def get_job(self, job_id: uuid.UUID) -> JobStatusResponse:
		return self._to_status_payload(await self.jobs.get_job(job_id))

	async def list_jobs(
		self,
		*,
		status: JobStatusEnum | None = None,
		user_id: uuid.UUID | None = None,
		analysis_type: AnalysisTypeEnum | None = None,
		limit: int = 100,
	) -> JobListResponse:
		if limit < 1 or limit > 500:
			raise ValueError("limit must be between 1 and 500")
		jobs = await self.jobs.list_jobs(status=status, user_id=user_id, analysis_type=analysis_type, limit=limit)
		items = [self._to_status_payload(job) for job in jobs]
		return JobListResponse(items=items, count=len(items))

	async def stats(self) -> QueueStatsResponse:
		counts = await self.jobs.count_by_status()
		populate = await self._recall(POPULATE_KIND)
		process = await self._recall(PROCESS_KIND)
		return QueueStatsResponse(
			counts=counts,
			last_populate=ProducerSummary(**populate) if populate else None,
			last_process=ConsumerSummary(**process) if process else None,
		)

	async def _remember(self, kind: str, payload: dict) -> None:
		if self.redis_client is None:
			return
		try:
			await self.redis_client.setex(f"queue:last_run:{kind}", LAST_RUN_TTL_SECONDS, json.dumps(payload))
		except Exception as exc:
			logger.warning("run_history_write_failed", kind=kind, error=str(exc))

	async def _recall(self, kind: str) -> dict | None:
		if self.redis_client is None:
			return None
		value = await self.redis_client.get(f"queue:last_run:{kind}")
		if value is None:
			return None
		return json.loads(value)

	@staticmethod
	def _to_status_payload(job: QueuedJob) -> JobStatusResponse:
		return JobStatusResponse(
			job_id=job.id,
			user_id=job.user_id,
			analysis_type=job.analysis_type.value,
			target_date=job.target_date,
			week_start=job.week_start,
			month_start=job.month_start,
			entry_id=job.entry_id,
			status=job.status.value,
			attempts=job.attempts,
			max_attempts=job.max_attempts,
			next_retry_at=job.next_retry_at,
			error_message=job.error_message,
			skipped=job.skipped,
			processed_at=job.processed_at,
			created_at=job.created_at,
			updated_at=job.updated_at,
		)
