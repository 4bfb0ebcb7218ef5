"""PostgreSQL-backed enum types for the queue models.

Each StrEnum maps 1:1 to a PostgreSQL CREATE TYPE ... AS ENUM, except the
error classification enums which are stored as plain strings in the log table.
"""

from enum import StrEnum

# ── Queue enums ─────────────────────────────────────────────────────────────


class AnalysisTypeEnum(StrEnum):
    """Reflection granularity; also selects the analysis handler."""

    daily = "daily"
    weekly = "weekly"
    monthly = "monthly"


class JobStatusEnum(StrEnum):
    """Lifecycle of a queued analysis job."""

    pending = "pending"
    processing = "processing"
    completed = "completed"
    failed = "failed"


ACTIVE_JOB_STATUSES: tuple[JobStatusEnum, ...] = (
    JobStatusEnum.pending,
    JobStatusEnum.processing,
)


# ── Error log enums ─────────────────────────────────────────────────────────


class ErrorTypeEnum(StrEnum):
    """Coarse cause of a failed dispatch, inferred from the error text."""

    openai_api_error = "openai_api_error"
    rate_limit_error = "rate_limit_error"
    database_error = "database_error"
    timeout_error = "timeout_error"
    network_error = "network_error"
    validation_error = "validation_error"
    data_error = "data_error"
    unknown_error = "unknown_error"


class ErrorSeverityEnum(StrEnum):
    HIGH = "HIGH"
    MEDIUM = "MEDIUM"
    LOW = "LOW"
