"""Analysis handler contract and the HTTP adapter for the analysis functions."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Protocol

import httpx

from diary_insights.config import Settings
from diary_insights.exceptions import JobContractError
from diary_insights.models.enums import AnalysisTypeEnum
from diary_insights.services.job_store import QueuedJob

# Older handler deployments report precondition failures only through their
# error text; these fragments mark failures that a retry can never fix.
NON_RETRYABLE_PATTERNS: tuple[str, ...] = (
	"incomplete",
	"already exists",
	"too short",
)

HANDLER_NAMES: dict[AnalysisTypeEnum, str] = {
	AnalysisTypeEnum.daily: "ai-analyze-daily",
	AnalysisTypeEnum.weekly: "ai-analyze-weekly",
	AnalysisTypeEnum.monthly: "ai-analyze-monthly",
}


# ── Outcomes ────────────────────────────────────────────────────────────────


@dataclass(slots=True, frozen=True)
class Success:
	payload: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True, frozen=True)
class ValidationFailure:
	"""Precondition that will never resolve itself; the job is done."""

	reason: str


@dataclass(slots=True, frozen=True)
class TransientFailure:
	"""Failure that may succeed on a later attempt."""

	reason: str


HandlerOutcome = Success | ValidationFailure | TransientFailure


# ── Requests ────────────────────────────────────────────────────────────────


@dataclass(slots=True, frozen=True)
class AnalysisRequest:
	analysis_type: AnalysisTypeEnum
	user_id: uuid.UUID
	entry_id: uuid.UUID | None = None
	week_start: date | None = None
	month_start: date | None = None

	@classmethod
	def for_job(cls, job: QueuedJob) -> AnalysisRequest:
		"""Build the minimal request for ``job``; raises JobContractError when identifiers are missing."""
		missing: list[str] = []
		if job.user_id is None:
			missing.append("user_id")
		if job.analysis_type == AnalysisTypeEnum.daily:
			if job.entry_id is None:
				missing.insert(0, "entry_id")
			if missing:
				raise JobContractError(job.id, missing)
			return cls(job.analysis_type, job.user_id, entry_id=job.entry_id)
		if job.analysis_type == AnalysisTypeEnum.weekly:
			if job.week_start is None:
				missing.insert(0, "week_start")
			if missing:
				raise JobContractError(job.id, missing)
			return cls(job.analysis_type, job.user_id, week_start=job.week_start)
		if job.month_start is None:
			missing.insert(0, "month_start")
		if missing:
			raise JobContractError(job.id, missing)
		return cls(job.analysis_type, job.user_id, month_start=job.month_start)

	def body(self) -> dict[str, str]:
		body = {"user_id": str(self.user_id)}
		if self.analysis_type == AnalysisTypeEnum.daily:
			body["entry_id"] = str(self.entry_id)
		elif self.analysis_type == AnalysisTypeEnum.weekly:
			body["week_start"] = self.week_start.isoformat()  # type: ignore[union-attr]
		else:
			body["month_start"] = self.month_start.isoformat()  # type: ignore[union-attr]
		return body


class AnalysisHandler(Protocol):
	"""Performs one analysis; must tolerate being called twice for the same period."""

	name: str

	async def analyze(self, request: AnalysisRequest) -> HandlerOutcome: ...


# ── Response classification ─────────────────────────────────────────────────


def is_non_retryable_message(message: str) -> bool:
	normalized = message.lower()
	return any(pattern in normalized for pattern in NON_RETRYABLE_PATTERNS)


def classify_payload(payload: Any) -> HandlerOutcome:
	"""Map a handler's JSON body onto an outcome variant."""
	if not isinstance(payload, dict):
		return TransientFailure("Handler returned empty response")

	explicit = str(payload.get("outcome") or "").lower()
	message = str(payload.get("error") or payload.get("message") or "Handler returned unsuccessful result")
	if explicit == "validation":
		return ValidationFailure(message)
	if explicit == "transient":
		return TransientFailure(message)

	if payload.get("success", True) is False:
		if is_non_retryable_message(message):
			return ValidationFailure(message)
		return TransientFailure(message)
	return Success(payload)


class HttpAnalysisHandler:
	"""Invokes a deployed analysis function over HTTP."""

	def __init__(
		self,
		analysis_type: AnalysisTypeEnum,
		settings: Settings,
		client: httpx.AsyncClient | None = None,
	):
		self.analysis_type = analysis_type
		self.name = HANDLER_NAMES[analysis_type]
		self.settings = settings
		self.client = client

	@property
	def url(self) -> str:
		return f"{self.settings.handler_base_url.rstrip('/')}/{self.name}"

	async def analyze(self, request: AnalysisRequest) -> HandlerOutcome:
		headers = {
			"authorization": f"Bearer {self.settings.handler_service_key}",
			"content-type": "application/json",
		}
		if self.client is not None:
			response = await self.client.post(self.url, headers=headers, json=request.body())
		else:
			async with httpx.AsyncClient(timeout=self.settings.handler_timeout_seconds) as client:
				response = await client.post(self.url, headers=headers, json=request.body())
		return self.classify_response(response)

	def classify_response(self, response: httpx.Response) -> HandlerOutcome:
		if response.status_code == 429 or response.status_code >= 500:
			return TransientFailure(f"{self.name} returned HTTP {response.status_code}")
		try:
			payload = response.json()
		except ValueError:
			return TransientFailure(f"{self.name} returned a non-JSON body (HTTP {response.status_code})")
		if response.is_error and not (
			isinstance(payload, dict) and (payload.get("success") is False or payload.get("outcome"))
		):
			detail = payload.get("error") if isinstance(payload, dict) else None
			return TransientFailure(f"{self.name} returned HTTP {response.status_code}: {detail or 'no detail'}")
		return classify_payload(payload)


def build_http_handlers(
	settings: Settings,
	client: httpx.AsyncClient | None = None,
) -> dict[AnalysisTypeEnum, AnalysisHandler]:
	return {analysis_type: HttpAnalysisHandler(analysis_type, settings, client) for analysis_type in AnalysisTypeEnum}
