from __future__ import annotations

import uuid
from datetime import UTC, date, datetime, timedelta

import httpx
import pytest

from diary_insights.config import Settings
from diary_insights.exceptions import ConfigurationError
from diary_insights.models.enums import AnalysisTypeEnum, JobStatusEnum
from diary_insights.schemas.queue import JobResultStatus
from diary_insights.services.consumer import QueueConsumer, backoff_delay, period_end
from diary_insights.services.eligibility import UserRecord
from diary_insights.services.handlers import HandlerOutcome, Success, TransientFailure, ValidationFailure
from diary_insights.services.job_store import JobUpdate
from diary_insights.services.timezone_service import TimezoneResolver
from tests.fakes import FakeErrorLog, FakeJobStore, FakeUserDirectory, FrozenClock, ScriptedHandler, make_job

NOW = datetime(2026, 3, 10, 12, 0, tzinfo=UTC)


def _consumer(
	settings: Settings,
	job_store: FakeJobStore,
	resolver: TimezoneResolver,
	users: list[UserRecord],
	clock: FrozenClock,
	error_log: FakeErrorLog | None = None,
	**scripts: list[HandlerOutcome | Exception],
) -> tuple[QueueConsumer, dict[AnalysisTypeEnum, ScriptedHandler]]:
	handlers = {
		analysis_type: ScriptedHandler(analysis_type, scripts.get(analysis_type.value, ()))
		for analysis_type in AnalysisTypeEnum
	}
	consumer = QueueConsumer(
		settings,
		job_store,
		FakeUserDirectory(users),
		handlers,
		resolver,
		error_log=error_log,
		clock=clock,
	)
	return consumer, handlers


# ── Pure helpers ────────────────────────────────────────────────────────────


def test_backoff_grows_with_attempts() -> None:
	delays = [backoff_delay(attempts) for attempts in (1, 2, 3, 4)]
	assert delays == [timedelta(minutes=2), timedelta(minutes=4), timedelta(minutes=8), timedelta(minutes=16)]
	assert backoff_delay(2, base=3) == timedelta(minutes=9)


def test_period_end_per_analysis_type() -> None:
	assert period_end(make_job(target_date=date(2026, 3, 9))) == date(2026, 3, 9)
	weekly = make_job(analysis_type=AnalysisTypeEnum.weekly, target_date=date(2026, 3, 2))
	assert period_end(weekly) == date(2026, 3, 8)
	monthly = make_job(analysis_type=AnalysisTypeEnum.monthly, target_date=date(2028, 2, 1))
	assert period_end(monthly) == date(2028, 2, 29)


def test_missing_handler_is_a_configuration_error(
	settings: Settings, job_store: FakeJobStore, resolver: TimezoneResolver
) -> None:
	handlers = {AnalysisTypeEnum.daily: ScriptedHandler(AnalysisTypeEnum.daily)}
	with pytest.raises(ConfigurationError, match="weekly, monthly"):
		QueueConsumer(settings, job_store, FakeUserDirectory(), handlers, resolver)


# ── Outcomes ────────────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_success_completes_job(settings: Settings, job_store: FakeJobStore, resolver: TimezoneResolver) -> None:
	user = UserRecord(id=uuid.uuid4(), timezone="UTC")
	job = job_store.add(make_job(target_date=date(2026, 3, 9), user_id=user.id))
	clock = FrozenClock(NOW)
	consumer, handlers = _consumer(settings, job_store, resolver, [user], clock)

	summary = await consumer.run()

	stored = job_store.jobs[job.id]
	assert stored.status == JobStatusEnum.completed
	assert stored.processed_at == NOW
	assert stored.attempts == 0
	assert stored.error_message is None
	assert job_store.claims == [job.id]
	(request,) = handlers[AnalysisTypeEnum.daily].calls
	assert request.body() == {"user_id": str(user.id), "entry_id": str(job.entry_id)}
	assert (summary.checked, summary.eligible, summary.processed) == (1, 1, 1)
	assert summary.results[0].status == JobResultStatus.completed


@pytest.mark.asyncio
async def test_validation_failure_completes_as_skipped(
	settings: Settings, job_store: FakeJobStore, resolver: TimezoneResolver, error_log: FakeErrorLog
) -> None:
	user = UserRecord(id=uuid.uuid4(), timezone="UTC")
	job = job_store.add(make_job(target_date=date(2026, 3, 9), user_id=user.id))
	consumer, _ = _consumer(
		settings,
		job_store,
		resolver,
		[user],
		FrozenClock(NOW),
		error_log,
		daily=[ValidationFailure("Entry text too short for analysis")],
	)

	summary = await consumer.run()

	stored = job_store.jobs[job.id]
	assert stored.status == JobStatusEnum.completed
	assert stored.skipped is True
	assert stored.attempts == 0
	assert stored.error_message == "Entry text too short for analysis"
	assert stored.processed_at == NOW
	assert (summary.processed, summary.skipped, summary.retried, summary.failed) == (1, 1, 0, 0)
	assert error_log.records == []


@pytest.mark.asyncio
async def test_transient_failures_back_off_then_fail(
	settings: Settings, job_store: FakeJobStore, resolver: TimezoneResolver, error_log: FakeErrorLog
) -> None:
	user = UserRecord(id=uuid.uuid4(), timezone="UTC")
	job = job_store.add(
		make_job(analysis_type=AnalysisTypeEnum.monthly, target_date=date(2026, 2, 1), user_id=user.id)
	)
	clock = FrozenClock(NOW)
	consumer, handlers = _consumer(
		settings,
		job_store,
		resolver,
		[user],
		clock,
		error_log,
		monthly=[
			httpx.ConnectError("connection reset"),
			TransientFailure("ai-analyze-monthly returned HTTP 503"),
			httpx.ReadTimeout("timed out"),
		],
	)

	first = await consumer.run()
	stored = job_store.jobs[job.id]
	assert stored.status == JobStatusEnum.pending
	assert stored.attempts == 1
	assert stored.next_retry_at == NOW + timedelta(minutes=2)
	assert "Failed to invoke ai-analyze-monthly" in (stored.error_message or "")
	assert first.retried == 1

	# Not due yet: nothing is polled before the backoff elapses.
	early = await consumer.run(NOW + timedelta(minutes=1))
	assert early.checked == 0

	clock.now = NOW + timedelta(minutes=2)
	second = await consumer.run()
	assert second.retried == 1
	assert stored.attempts == 2
	assert stored.next_retry_at == clock.now + timedelta(minutes=4)
	assert stored.error_message == "ai-analyze-monthly returned HTTP 503"

	clock.now = stored.next_retry_at
	third = await consumer.run()
	assert third.failed == 1
	assert stored.status == JobStatusEnum.failed
	assert stored.attempts == 3
	assert stored.processed_at == clock.now

	clock.now += timedelta(days=1)
	after = await consumer.run()
	assert after.checked == 0
	assert len(handlers[AnalysisTypeEnum.monthly].calls) == 3
	assert [record["error_code"] for record in error_log.records] == [
		"transient_failure",
		"transient_failure",
		"max_attempts_exceeded",
	]
	assert [record["retry_attempt"] for record in error_log.records] == [1, 2, 3]
	assert error_log.records[0]["job_id"] == job.id


@pytest.mark.asyncio
async def test_missing_identifiers_fail_immediately(
	settings: Settings, job_store: FakeJobStore, resolver: TimezoneResolver, error_log: FakeErrorLog
) -> None:
	user = UserRecord(id=uuid.uuid4(), timezone="UTC")
	job = job_store.add(make_job(target_date=date(2026, 3, 9), user_id=user.id, with_identifiers=False))
	consumer, handlers = _consumer(settings, job_store, resolver, [user], FrozenClock(NOW), error_log)

	summary = await consumer.run()

	stored = job_store.jobs[job.id]
	assert stored.status == JobStatusEnum.failed
	assert stored.attempts == 0
	assert stored.error_message == f"Missing entry_id for job {job.id}"
	assert handlers[AnalysisTypeEnum.daily].calls == []
	assert summary.failed == 1
	assert error_log.records[0]["error_code"] == "contract_violation"


# ── Local-day windowing ─────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_open_period_is_deferred_without_claim(
	settings: Settings, job_store: FakeJobStore, resolver: TimezoneResolver
) -> None:
	user = UserRecord(id=uuid.uuid4(), timezone="Pacific/Kiritimati")
	now = datetime(2026, 3, 10, 11, 0, tzinfo=UTC)  # 01:00 on 11 March in Kiritimati
	job = job_store.add(make_job(target_date=date(2026, 3, 11), user_id=user.id))
	consumer, handlers = _consumer(settings, job_store, resolver, [user], FrozenClock(now))

	summary = await consumer.run()

	assert job_store.jobs[job.id].status == JobStatusEnum.pending
	assert job_store.claims == []
	assert handlers[AnalysisTypeEnum.daily].calls == []
	assert (summary.checked, summary.eligible, summary.deferred) == (1, 0, 1)
	assert summary.results == []


@pytest.mark.asyncio
async def test_local_yesterday_dispatches_ahead_of_utc(
	settings: Settings, job_store: FakeJobStore, resolver: TimezoneResolver
) -> None:
	# UTC is still on 10 March, but Kiritimati has already finished it.
	user = UserRecord(id=uuid.uuid4(), timezone="Pacific/Kiritimati")
	now = datetime(2026, 3, 10, 11, 0, tzinfo=UTC)
	job = job_store.add(make_job(target_date=date(2026, 3, 10), user_id=user.id))
	consumer, _ = _consumer(settings, job_store, resolver, [user], FrozenClock(now))

	summary = await consumer.run()

	assert job_store.jobs[job.id].status == JobStatusEnum.completed
	assert summary.processed == 1


@pytest.mark.asyncio
async def test_local_day_still_open_behind_utc(
	settings: Settings, job_store: FakeJobStore, resolver: TimezoneResolver
) -> None:
	user = UserRecord(id=uuid.uuid4(), timezone="Pacific/Honolulu")
	now = datetime(2026, 3, 11, 2, 0, tzinfo=UTC)  # 16:00 on 10 March in Honolulu
	job = job_store.add(make_job(target_date=date(2026, 3, 10), user_id=user.id))
	consumer, _ = _consumer(settings, job_store, resolver, [user], FrozenClock(now))

	summary = await consumer.run()

	assert job_store.jobs[job.id].status == JobStatusEnum.pending
	assert summary.deferred == 1


@pytest.mark.asyncio
async def test_catchup_days_up_to_yesterday_dispatch_together(
	settings: Settings, job_store: FakeJobStore, resolver: TimezoneResolver
) -> None:
	user = UserRecord(id=uuid.uuid4(), timezone="UTC")
	old = job_store.add(make_job(target_date=date(2026, 2, 10), user_id=user.id))
	yesterday = job_store.add(make_job(target_date=date(2026, 3, 9), user_id=user.id))
	today = job_store.add(make_job(target_date=date(2026, 3, 10), user_id=user.id))
	consumer, _ = _consumer(settings, job_store, resolver, [user], FrozenClock(NOW))

	summary = await consumer.run()

	assert job_store.jobs[old.id].status == JobStatusEnum.completed
	assert job_store.jobs[yesterday.id].status == JobStatusEnum.completed
	assert job_store.jobs[today.id].status == JobStatusEnum.pending
	assert (summary.processed, summary.deferred) == (2, 1)


@pytest.mark.asyncio
async def test_weekly_job_waits_until_week_has_ended(
	settings: Settings, job_store: FakeJobStore, resolver: TimezoneResolver
) -> None:
	user = UserRecord(id=uuid.uuid4(), timezone="UTC")
	job = job_store.add(
		make_job(analysis_type=AnalysisTypeEnum.weekly, target_date=date(2026, 3, 9), user_id=user.id)
	)
	clock = FrozenClock(datetime(2026, 3, 15, 10, 0, tzinfo=UTC))
	consumer, handlers = _consumer(settings, job_store, resolver, [user], clock)

	sunday = await consumer.run()
	assert sunday.deferred == 1

	clock.now = datetime(2026, 3, 16, 0, 5, tzinfo=UTC)
	monday = await consumer.run()
	assert monday.processed == 1
	assert job_store.jobs[job.id].status == JobStatusEnum.completed
	assert handlers[AnalysisTypeEnum.weekly].calls[0].body()["week_start"] == "2026-03-09"


# ── Run-level behaviour ─────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_job_claimed_elsewhere_is_not_dispatched(
	settings: Settings, job_store: FakeJobStore, resolver: TimezoneResolver
) -> None:
	user = UserRecord(id=uuid.uuid4(), timezone="UTC")
	job = job_store.add(make_job(target_date=date(2026, 3, 9), user_id=user.id))
	(snapshot,) = await job_store.list_due(NOW, 10)
	job.status = JobStatusEnum.processing
	consumer, handlers = _consumer(settings, job_store, resolver, [user], FrozenClock(NOW))

	result = await consumer.process_job(snapshot, "UTC", NOW)

	assert result.status == JobResultStatus.unclaimed
	assert handlers[AnalysisTypeEnum.daily].calls == []
	assert job_store.updates == []


@pytest.mark.asyncio
async def test_deadline_defers_remaining_jobs(
	settings: Settings, job_store: FakeJobStore, resolver: TimezoneResolver
) -> None:
	user = UserRecord(id=uuid.uuid4(), timezone="UTC")
	for day in (7, 8, 9):
		job_store.add(make_job(target_date=date(2026, 3, day), user_id=user.id))
	hurried = settings.model_copy(update={"consumer_deadline_seconds": 0})
	consumer, handlers = _consumer(hurried, job_store, resolver, [user], FrozenClock(NOW))

	summary = await consumer.run()

	assert summary.checked == 3
	assert summary.deferred == 3
	assert summary.processed == 0
	assert job_store.claims == []
	assert all(job.status == JobStatusEnum.pending for job in job_store.jobs.values())


@pytest.mark.asyncio
async def test_batch_is_bounded_and_oldest_first(
	settings: Settings, job_store: FakeJobStore, resolver: TimezoneResolver
) -> None:
	user = UserRecord(id=uuid.uuid4(), timezone="UTC")
	jobs = [
		job_store.add(
			make_job(target_date=date(2026, 3, day), user_id=user.id, next_retry_at=NOW - timedelta(hours=day))
		)
		for day in (5, 6, 7, 8, 9)
	]
	small = settings.model_copy(update={"consumer_batch_size": 2})
	consumer, _ = _consumer(small, job_store, resolver, [user], FrozenClock(NOW))

	summary = await consumer.run()

	assert summary.checked == 2
	assert job_store.claims == [jobs[-1].id, jobs[-2].id]


@pytest.mark.asyncio
async def test_unexpected_error_is_counted_and_run_continues(
	settings: Settings, job_store: FakeJobStore, resolver: TimezoneResolver, monkeypatch: pytest.MonkeyPatch
) -> None:
	user = UserRecord(id=uuid.uuid4(), timezone="UTC")
	broken = job_store.add(
		make_job(target_date=date(2026, 3, 8), user_id=user.id, next_retry_at=NOW - timedelta(hours=2))
	)
	healthy = job_store.add(
		make_job(target_date=date(2026, 3, 9), user_id=user.id, next_retry_at=NOW - timedelta(hours=1))
	)
	consumer, _ = _consumer(settings, job_store, resolver, [user], FrozenClock(NOW))
	original_claim = job_store.claim

	async def flaky_claim(job_id: uuid.UUID) -> bool:
		if job_id == broken.id:
			raise RuntimeError("connection lost")
		return await original_claim(job_id)

	monkeypatch.setattr(job_store, "claim", flaky_claim)

	summary = await consumer.run()

	assert summary.errors == 1
	assert summary.processed == 1
	assert job_store.jobs[healthy.id].status == JobStatusEnum.completed
	assert job_store.jobs[broken.id].status == JobStatusEnum.pending


@pytest.mark.asyncio
async def test_failed_outcome_write_returns_job_to_pending(
	settings: Settings, job_store: FakeJobStore, resolver: TimezoneResolver, monkeypatch: pytest.MonkeyPatch
) -> None:
	user = UserRecord(id=uuid.uuid4(), timezone="UTC")
	job = job_store.add(make_job(target_date=date(2026, 3, 9), user_id=user.id))
	consumer, handlers = _consumer(settings, job_store, resolver, [user], FrozenClock(NOW))
	original_update = job_store.update_job
	failures = [RuntimeError("connection reset during commit")]

	async def flaky_update(job_id: uuid.UUID, changes: JobUpdate) -> None:
		if failures:
			raise failures.pop()
		await original_update(job_id, changes)

	monkeypatch.setattr(job_store, "update_job", flaky_update)

	first = await consumer.run()

	assert first.errors == 1
	assert first.processed == 0
	assert job_store.releases == [job.id]
	stored = job_store.jobs[job.id]
	assert stored.status == JobStatusEnum.pending
	assert stored.attempts == 0

	second = await consumer.run()

	assert second.errors == 0
	assert second.processed == 1
	assert job_store.jobs[job.id].status == JobStatusEnum.completed
	assert len(handlers[AnalysisTypeEnum.daily].calls) == 2


@pytest.mark.asyncio
async def test_error_log_failure_keeps_recorded_outcome(
	settings: Settings, job_store: FakeJobStore, resolver: TimezoneResolver, error_log: FakeErrorLog
) -> None:
	user = UserRecord(id=uuid.uuid4(), timezone="UTC")
	job = job_store.add(make_job(target_date=date(2026, 3, 9), user_id=user.id, attempts=2, max_attempts=3))
	consumer, _ = _consumer(
		settings,
		job_store,
		resolver,
		[user],
		FrozenClock(NOW),
		error_log,
		daily=[TransientFailure("ai-analyze-daily returned HTTP 503")],
	)

	async def broken_record(**kwargs: object) -> None:
		raise RuntimeError("error log table missing")

	error_log.record = broken_record  # type: ignore[method-assign]

	summary = await consumer.run()

	assert summary.errors == 0
	assert summary.failed == 1
	assert job_store.jobs[job.id].status == JobStatusEnum.failed
	assert job_store.releases == []


@pytest.mark.asyncio
async def test_unknown_user_timezone_defaults_to_utc(
	settings: Settings, job_store: FakeJobStore, resolver: TimezoneResolver
) -> None:
	job = job_store.add(make_job(target_date=date(2026, 3, 9)))
	consumer, _ = _consumer(settings, job_store, resolver, [], FrozenClock(NOW), daily=[Success({"success": True})])

	summary = await consumer.run()

	assert summary.processed == 1
	assert job_store.jobs[job.id].status == JobStatusEnum.completed
