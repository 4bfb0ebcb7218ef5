"""Read-side queries the producer uses to decide whether work is due."""

from __future__ import annotations

import uuid
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import date
from typing import Protocol

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from diary_insights.models.diary import (
	INSIGHT_SUCCESS_STATUS,
	DiaryUser,
	Entry,
	EntryInsight,
	MonthlyInsight,
	WeeklyInsight,
)
from diary_insights.models.enums import AnalysisTypeEnum


@dataclass(slots=True)
class UserRecord:
	id: uuid.UUID
	timezone: str


@dataclass(slots=True)
class EntryRecord:
	id: uuid.UUID
	entry_date: date
	diary_text: str | None = None

	@property
	def text_length(self) -> int:
		return len(self.diary_text or "")

	@property
	def has_text(self) -> bool:
		return bool((self.diary_text or "").strip())


class UserDirectory(Protocol):
	async def list_users(self, after: uuid.UUID | None, limit: int) -> list[UserRecord]: ...

	async def get_timezones(self, user_ids: Iterable[uuid.UUID]) -> dict[uuid.UUID, str]: ...


class EligibilitySource(Protocol):
	async def has_successful_result(
		self,
		user_id: uuid.UUID,
		analysis_type: AnalysisTypeEnum,
		period: date,
		entry_id: uuid.UUID | None = None,
	) -> bool: ...

	async def is_entry_complete(self, entry_id: uuid.UUID) -> bool: ...

	async def list_entries(self, user_id: uuid.UUID, start: date, end: date) -> list[EntryRecord]: ...


class SqlUserDirectory:
	def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
		self.session_factory = session_factory

	async def list_users(self, after: uuid.UUID | None, limit: int) -> list[UserRecord]:
		"""Keyset page of users that have a timezone configured, ordered by id."""
		stmt = select(DiaryUser.id, DiaryUser.timezone).where(DiaryUser.timezone.is_not(None))
		if after is not None:
			stmt = stmt.where(DiaryUser.id > after)
		stmt = stmt.order_by(DiaryUser.id.asc()).limit(limit)
		async with self.session_factory() as session:
			rows = await session.execute(stmt)
			return [UserRecord(id=user_id, timezone=tz) for user_id, tz in rows.all()]

	async def get_timezones(self, user_ids: Iterable[uuid.UUID]) -> dict[uuid.UUID, str]:
		ids = list(set(user_ids))
		if not ids:
			return {}
		async with self.session_factory() as session:
			rows = await session.execute(select(DiaryUser.id, DiaryUser.timezone).where(DiaryUser.id.in_(ids)))
			return {user_id: tz for user_id, tz in rows.all() if tz}


class SqlEligibilitySource:
	"""Looks at entries and insight tables owned by the diary application."""

	def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
		self.session_factory = session_factory

	async def has_successful_result(
		self,
		user_id: uuid.UUID,
		analysis_type: AnalysisTypeEnum,
		period: date,
		entry_id: uuid.UUID | None = None,
	) -> bool:
		if analysis_type == AnalysisTypeEnum.daily:
			stmt = (
				select(EntryInsight.id)
				.join(Entry, Entry.id == EntryInsight.entry_id)
				.where(
					Entry.user_id == user_id,
					EntryInsight.status == INSIGHT_SUCCESS_STATUS,
				)
			)
			if entry_id is not None:
				stmt = stmt.where(EntryInsight.entry_id == entry_id)
			else:
				stmt = stmt.where(Entry.entry_date == period)
		elif analysis_type == AnalysisTypeEnum.weekly:
			stmt = select(WeeklyInsight.id).where(
				WeeklyInsight.user_id == user_id,
				WeeklyInsight.week_start == period,
			)
		else:
			stmt = select(MonthlyInsight.id).where(
				MonthlyInsight.user_id == user_id,
				MonthlyInsight.month_start == period,
			)

		async with self.session_factory() as session:
			row = await session.execute(stmt.limit(1))
			return row.scalar_one_or_none() is not None

	async def is_entry_complete(self, entry_id: uuid.UUID) -> bool:
		async with self.session_factory() as session:
			row = await session.execute(select(func.check_entry_completion(entry_id)))
			return bool(row.scalar_one_or_none())

	async def list_entries(self, user_id: uuid.UUID, start: date, end: date) -> list[EntryRecord]:
		"""Entries dated within ``[start, end]``, oldest first."""
		stmt = (
			select(Entry.id, Entry.entry_date, Entry.diary_text)
			.where(
				Entry.user_id == user_id,
				Entry.entry_date >= start,
				Entry.entry_date <= end,
			)
			.order_by(Entry.entry_date.asc())
		)
		async with self.session_factory() as session:
			rows = await session.execute(stmt)
			return [
				EntryRecord(id=entry_id, entry_date=entry_date, diary_text=diary_text)
				for entry_id, entry_date, diary_text in rows.all()
			]
