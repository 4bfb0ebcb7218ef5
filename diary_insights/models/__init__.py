"""ORM model registry — importing this module registers every table on Base.metadata.

Alembic ``env.py`` imports ``Base`` from here (not from ``base.py``) so that
autogenerate sees all tables.  Application code can also do::

    from diary_insights.models import AnalysisJob, Entry, ...
"""

# ── Base & Mixins ───────────────────────────────────────────────────────────
from diary_insights.models.base import (
    EXTERNAL_TABLE_INFO,
    Base,
    CreatedAtMixin,
    TimestampMixin,
    UUIDPrimaryKeyMixin,
)

# ── Diary application tables (read-only) ───────────────────────────────────
from diary_insights.models.diary import (
    DiaryUser,
    Entry,
    EntryInsight,
    MonthlyInsight,
    WeeklyInsight,
)

# ── Enums ───────────────────────────────────────────────────────────────────
from diary_insights.models.enums import (
    ACTIVE_JOB_STATUSES,
    AnalysisTypeEnum,
    ErrorSeverityEnum,
    ErrorTypeEnum,
    JobStatusEnum,
)

# ── Queue models ────────────────────────────────────────────────────────────
from diary_insights.models.jobs import AIErrorLog, AnalysisJob

__all__ = [
    "ACTIVE_JOB_STATUSES",
    "AIErrorLog",
    "AnalysisJob",
    "AnalysisTypeEnum",
    # Base & mixins
    "Base",
    "CreatedAtMixin",
    "DiaryUser",
    "EXTERNAL_TABLE_INFO",
    "Entry",
    "EntryInsight",
    "ErrorSeverityEnum",
    "ErrorTypeEnum",
    "JobStatusEnum",
    "MonthlyInsight",
    "TimestampMixin",
    "UUIDPrimaryKeyMixin",
    "WeeklyInsight",
]
