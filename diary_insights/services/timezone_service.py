"""Timezone-correct calendar boundaries for per-user scheduling."""

from __future__ import annotations

from datetime import UTC, date, datetime, time, timedelta
from typing import Protocol
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import structlog
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

logger = structlog.get_logger("diary_insights.timezone")

DEFAULT_TIMEZONE = "UTC"

_LOCAL_DATE_SQL = text(
	"SELECT (timezone(CAST(:tz AS text), CAST(:at AS timestamptz)))::date + CAST(:offset AS integer) AS local_date"
)


class TimezoneSource(Protocol):
	"""Authoritative date-in-timezone lookup; may be unavailable."""

	async def date_in_timezone(self, timezone: str, offset_days: int, at: datetime) -> date | None: ...


class SqlTimezoneSource:
	"""Asks PostgreSQL for the local date, using its own tz database."""

	def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
		self.session_factory = session_factory

	async def date_in_timezone(self, timezone: str, offset_days: int, at: datetime) -> date | None:
		async with self.session_factory() as session:
			row = await session.execute(
				_LOCAL_DATE_SQL,
				{"tz": timezone, "at": at, "offset": offset_days},
			)
			value = row.scalar_one_or_none()
		if isinstance(value, datetime):
			return value.date()
		if isinstance(value, date):
			return value
		if isinstance(value, str):
			return date.fromisoformat(value[:10])
		return None


def resolve_zone(timezone: str | None) -> ZoneInfo:
	"""Return the zone for an IANA identifier; empty or unknown identifiers map to UTC."""
	if not timezone:
		return ZoneInfo(DEFAULT_TIMEZONE)
	try:
		return ZoneInfo(timezone)
	except (ZoneInfoNotFoundError, ValueError):
		logger.warning("invalid_timezone", timezone=timezone, fallback=DEFAULT_TIMEZONE)
		return ZoneInfo(DEFAULT_TIMEZONE)


def _utc_now() -> datetime:
	return datetime.now(UTC)


class TimezoneResolver:
	"""Converts a user's timezone into local dates and absolute instants.

	Every public method is best-effort and never raises: the authoritative
	source is consulted first, then a ``zoneinfo`` calculation with the same
	identifier, then UTC.
	"""

	def __init__(self, source: TimezoneSource | None = None):
		self.source = source

	async def local_date(self, timezone: str | None, offset_days: int = 0, at: datetime | None = None) -> date:
		instant = at or _utc_now()
		if self.source is not None and timezone:
			try:
				resolved = await self.source.date_in_timezone(timezone, offset_days, instant)
			except Exception as exc:
				logger.warning(
					"timezone_source_unavailable",
					timezone=timezone,
					offset_days=offset_days,
					error=str(exc),
				)
				resolved = None
			if resolved is not None:
				return resolved
		return self.local_date_fallback(timezone, offset_days, instant)

	@staticmethod
	def local_date_fallback(timezone: str | None, offset_days: int, at: datetime) -> date:
		local = at.astimezone(resolve_zone(timezone))
		return local.date() + timedelta(days=offset_days)

	@staticmethod
	def local_now(timezone: str | None, at: datetime | None = None) -> datetime:
		return (at or _utc_now()).astimezone(resolve_zone(timezone))

	@staticmethod
	def next_local_midnight(target_date: date, timezone: str | None) -> datetime:
		"""UTC instant of local midnight starting the day after ``target_date``.

		The offset is the one in force at midnight itself, not at noon, so on
		a DST switch day the result is still the first instant of that local
		day. Where midnight does not exist (a gap at 00:00) the day starts at
		the transition instant.
		"""
		zone = resolve_zone(timezone)
		following = target_date + timedelta(days=1)
		midnight = datetime.combine(following, time(0, 0), tzinfo=zone)
		return midnight.astimezone(UTC)
