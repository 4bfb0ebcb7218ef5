"""Queue trigger and inspection routes.

``POST /populate`` and ``POST /process`` are hit by external fixed-interval
schedulers; each call runs one producer tick or one consumer batch to
completion and returns its summary.
"""

from __future__ import annotations

import hmac
import uuid

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse

from diary_insights.config import get_settings
from diary_insights.database import async_session_factory
from diary_insights.exceptions import ConfigurationError
from diary_insights.models.enums import AnalysisTypeEnum, JobStatusEnum
from diary_insights.schemas.queue import (
	ConsumerSummary,
	InvocationError,
	JobListResponse,
	JobStatusResponse,
	ProducerSummary,
	QueueStatsResponse,
)
from diary_insights.services.queue_service import QueueService

router = APIRouter(prefix="/queue", tags=["queue"])
logger = structlog.get_logger("diary_insights.routes.queue")


def _map_error(exc: Exception) -> HTTPException:
	if isinstance(exc, LookupError):
		return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))
	if isinstance(exc, ValueError):
		return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
	return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="queue failure")


def _invocation_failure(exc: Exception) -> JSONResponse:
	message = str(exc) if isinstance(exc, ConfigurationError) else "Unknown error"
	return JSONResponse(
		status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
		content=InvocationError(error=message).model_dump(),
	)


def get_queue_service(request: Request) -> QueueService:
	return QueueService(get_settings(), async_session_factory, getattr(request.app.state, "redis", None))


async def require_trigger_key(request: Request) -> None:
	settings = get_settings()
	if not settings.trigger_secret:
		return
	supplied = request.headers.get(settings.trigger_header_name, "")
	if not hmac.compare_digest(supplied.encode("utf-8"), settings.trigger_secret.encode("utf-8")):
		raise HTTPException(
			status_code=status.HTTP_401_UNAUTHORIZED,
			detail={"error": "invalid_trigger_key", "message": "Missing or invalid trigger key"},
		)


@router.post(
	"/populate",
	response_model=ProducerSummary,
	responses={500: {"model": InvocationError}},
	dependencies=[Depends(require_trigger_key)],
)
async def populate_queue(service: QueueService = Depends(get_queue_service)) -> ProducerSummary | JSONResponse:
	try:
		return await service.populate()
	except Exception as exc:
		logger.exception("queue_population_failed", error=str(exc))
		return _invocation_failure(exc)


@router.post(
	"/process",
	response_model=ConsumerSummary,
	responses={500: {"model": InvocationError}},
	dependencies=[Depends(require_trigger_key)],
)
async def process_queue(service: QueueService = Depends(get_queue_service)) -> ConsumerSummary | JSONResponse:
	try:
		return await service.process()
	except Exception as exc:
		logger.exception("queue_processing_failed", error=str(exc))
		return _invocation_failure(exc)


@router.get("/jobs", response_model=JobListResponse)
async def list_jobs(
	job_status: JobStatusEnum | None = Query(default=None, alias="status"),
	user_id: uuid.UUID | None = None,
	analysis_type: AnalysisTypeEnum | None = None,
	limit: int = 100,
	service: QueueService = Depends(get_queue_service),
) -> JobListResponse:
	try:
		return await service.list_jobs(status=job_status, user_id=user_id, analysis_type=analysis_type, limit=limit)
	except Exception as exc:
		raise _map_error(exc) from exc


@router.get("/jobs/{job_id}", response_model=JobStatusResponse)
async def get_job(job_id: uuid.UUID, service: QueueService = Depends(get_queue_service)) -> JobStatusResponse:
	try:
		return await service.get_job(job_id)
	except Exception as exc:
		raise _map_error(exc) from exc


@router.get("/stats", response_model=QueueStatsResponse)
async def queue_stats(service: QueueService = Depends(get_queue_service)) -> QueueStatsResponse:
	try:
		return await service.stats()
	except Exception as exc:
		raise _map_error(exc) from exc
