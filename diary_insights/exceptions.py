"""Errors raised across the scheduling services."""

from __future__ import annotations


class ConfigurationError(RuntimeError):
	"""Required settings are missing; the whole invocation is aborted before any write."""


class JobContractError(ValueError):
	"""A queued job lacks the identifiers its analysis type needs."""

	def __init__(self, job_id: object, missing: list[str]) -> None:
		self.job_id = job_id
		self.missing = missing
		super().__init__(f"Missing {' or '.join(missing)} for job {job_id}")
