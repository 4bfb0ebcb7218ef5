"""Persists classified analysis failures to ``ai_errors_log``."""

from __future__ import annotations

import uuid
from typing import Any, Protocol

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from diary_insights.models.enums import AnalysisTypeEnum, ErrorSeverityEnum, ErrorTypeEnum
from diary_insights.models.jobs import AIErrorLog

logger = structlog.get_logger("diary_insights.error_log")

_TYPE_RULES: tuple[tuple[ErrorTypeEnum, tuple[str, ...]], ...] = (
	(ErrorTypeEnum.openai_api_error, ("openai", "api key", "api error")),
	(ErrorTypeEnum.rate_limit_error, ("rate limit", "429", "too many requests")),
	(ErrorTypeEnum.database_error, ("supabase", "database", "sql", "postgres")),
	(ErrorTypeEnum.timeout_error, ("timeout", "timed out")),
	(ErrorTypeEnum.network_error, ("network", "fetch", "connection", "econnrefused")),
	(ErrorTypeEnum.validation_error, ("validation", "invalid", "required", "missing")),
	(ErrorTypeEnum.data_error, ("not found", "entry", "does not exist")),
)

_STEP_RULES: tuple[tuple[str, tuple[str, ...]], ...] = (
	("fetch_entry", ("entry not found", "fetch entry", "entry does not exist")),
	("call_openai", ("openai", "api", "chat/completions")),
	("save_insight", ("save", "insert", "upsert", "entry_insights", "weekly_insights", "monthly_insights")),
	("build_prompt", ("template", "prompt")),
	("build_context", ("context", "aggregate", "calculate")),
	("validate_input", ("validate", "required", "missing")),
	("parse_response", ("parse", "json", "response")),
)


def classify_error_type(message: str) -> ErrorTypeEnum:
	normalized = message.lower()
	for error_type, needles in _TYPE_RULES:
		if any(needle in normalized for needle in needles):
			return error_type
	return ErrorTypeEnum.unknown_error


def classify_severity(error_type: ErrorTypeEnum, analysis_type: AnalysisTypeEnum) -> ErrorSeverityEnum:
	if error_type == ErrorTypeEnum.database_error and analysis_type == AnalysisTypeEnum.daily:
		return ErrorSeverityEnum.HIGH
	if error_type in {ErrorTypeEnum.openai_api_error, ErrorTypeEnum.network_error, ErrorTypeEnum.timeout_error}:
		return ErrorSeverityEnum.HIGH
	if error_type in {ErrorTypeEnum.rate_limit_error, ErrorTypeEnum.validation_error}:
		return ErrorSeverityEnum.MEDIUM
	if error_type == ErrorTypeEnum.data_error and analysis_type == AnalysisTypeEnum.weekly:
		return ErrorSeverityEnum.MEDIUM
	return ErrorSeverityEnum.LOW


def infer_failed_step(message: str) -> str:
	normalized = message.lower()
	for step, needles in _STEP_RULES:
		if any(needle in normalized for needle in needles):
			return step
	return "unknown"


class ErrorRecorder(Protocol):
	async def record(
		self,
		*,
		message: str,
		error_code: str,
		analysis_type: AnalysisTypeEnum,
		handler_name: str,
		user_id: uuid.UUID | None = None,
		entry_id: uuid.UUID | None = None,
		job_id: uuid.UUID | None = None,
		retry_attempt: int = 0,
		details: dict[str, Any] | None = None,
	) -> None: ...


class ErrorLogService:
	"""Writes one ``AIErrorLog`` row per failure; never raises."""

	def __init__(self, session_factory: async_sessionmaker[AsyncSession], environment: str = "production"):
		self.session_factory = session_factory
		self.environment = environment

	async def record(
		self,
		*,
		message: str,
		error_code: str,
		analysis_type: AnalysisTypeEnum,
		handler_name: str,
		user_id: uuid.UUID | None = None,
		entry_id: uuid.UUID | None = None,
		job_id: uuid.UUID | None = None,
		retry_attempt: int = 0,
		details: dict[str, Any] | None = None,
	) -> None:
		error_type = classify_error_type(message)
		row = AIErrorLog(
			user_id=user_id,
			entry_id=entry_id,
			job_id=job_id,
			analysis_type=analysis_type.value,
			error_code=error_code,
			error_message=message,
			error_type=error_type.value,
			error_severity=classify_severity(error_type, analysis_type).value,
			failed_at_step=infer_failed_step(message),
			retry_attempt=retry_attempt,
			handler_name=handler_name,
			environment=self.environment,
			error_details=details or {},
		)
		try:
			async with self.session_factory() as session:
				session.add(row)
				await session.commit()
		except Exception as exc:
			logger.error(
				"error_log_write_failed",
				error=str(exc),
				original_error=message,
				job_id=str(job_id) if job_id else None,
				error_code=error_code,
			)
