"""structlog setup and per-invocation request logging.

Each scheduler trigger is one HTTP request, so the request ID bound here is
also the invocation ID carried by every producer / consumer log line.
"""

from __future__ import annotations

import logging
import time
import uuid
from typing import Any

import structlog
from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware

from diary_insights import __version__
from diary_insights.config import LogFormat, Settings, get_settings

_configured = False

# Paths polled by load balancers; logged at debug to keep invocation logs readable.
QUIET_PATHS = frozenset({"/health"})

# Route suffix -> invocation kind bound into the log context.
INVOCATION_KINDS = {
	"/queue/populate": "populate",
	"/queue/process": "process",
}


def _service_context(environment: str) -> structlog.types.Processor:
	def add_service(_logger: Any, _method: str, event_dict: dict[str, Any]) -> dict[str, Any]:
		event_dict.setdefault("service", "diary-insights")
		event_dict.setdefault("version", __version__)
		event_dict.setdefault("environment", environment)
		return event_dict

	return add_service


def configure_structured_logging(settings: Settings | None = None) -> None:
	"""Configure stdlib + structlog once per process."""
	global _configured
	if _configured:
		return

	settings = settings or get_settings()
	log_level = logging.getLevelNamesMapping().get(settings.log_level.upper(), logging.INFO)

	processors: list[Any] = [
		structlog.contextvars.merge_contextvars,
		structlog.processors.add_log_level,
		structlog.processors.TimeStamper(fmt="iso", utc=True),
		_service_context(settings.environment),
	]
	if settings.log_format == LogFormat.json:
		logging.basicConfig(level=log_level, format="%(message)s")
		processors += [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
	else:
		logging.basicConfig(level=log_level)
		processors.append(structlog.dev.ConsoleRenderer())

	structlog.configure(
		processors=processors,
		wrapper_class=structlog.make_filtering_bound_logger(log_level),
		logger_factory=structlog.PrintLoggerFactory(),
		cache_logger_on_first_use=True,
	)
	_configured = True


def invocation_kind(path: str) -> str | None:
	for suffix, kind in INVOCATION_KINDS.items():
		if path.endswith(suffix):
			return kind
	return None


class RequestLoggingMiddleware(BaseHTTPMiddleware):
	"""Bind request / invocation IDs and log one timing line per request."""

	async def dispatch(self, request: Request, call_next):  # type: ignore[override]
		request_id = request.headers.get("x-request-id") or str(uuid.uuid4())
		request.state.request_id = request_id
		path = request.url.path

		structlog.contextvars.clear_contextvars()
		context: dict[str, Any] = {"request_id": request_id}
		kind = invocation_kind(path)
		if kind is not None:
			context["invocation"] = kind
		structlog.contextvars.bind_contextvars(**context)

		log = structlog.get_logger("diary_insights.request").bind(method=request.method, path=path)
		started = time.perf_counter()
		try:
			response = await call_next(request)
		except Exception as exc:
			log.exception(
				"http_request_failed",
				duration_ms=round((time.perf_counter() - started) * 1000.0, 2),
				error=str(exc),
			)
			raise

		response.headers["x-request-id"] = request_id
		emit = log.debug if path in QUIET_PATHS else log.info
		emit(
			"http_request",
			status_code=response.status_code,
			duration_ms=round((time.perf_counter() - started) * 1000.0, 2),
		)
		return response
