import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from cadence.config import ScheduleConfig
from cadence.constants import ARM_NEXT_OCCURRENCE_HANDLER, EXECUTE_JOB_HANDLER
from cadence.contracts import JobStatus, Subject
from cadence.errors import NotFoundError
from cadence.orchestrator import ScheduleOrchestrator
from cadence.utils.clock import utcnow


def _utc(*args):
    return datetime(*args, tzinfo=timezone.utc)


@pytest.fixture
def orchestrator(repository, executor, subjects, clock):
    return ScheduleOrchestrator(repository, executor, subjects, clock=clock)


@pytest.mark.asyncio
async def test_establish_schedule_creates_two_anchors(orchestrator, repository, executor):
    result = await orchestrator.establish_schedule("client-1")

    assert result.scheduled_count == 2
    jobs = await repository.query_by_subject("client-1", JobStatus.SCHEDULED)
    first, second = jobs
    assert first.scheduled_time == _utc(2024, 1, 26, 9)
    assert first.day_of_month == 26
    assert not first.is_repeating
    assert second.scheduled_time == _utc(2024, 2, 25, 9)
    assert second.day_of_month == 25
    assert second.is_repeating
    assert first.schedule_id == second.schedule_id == result.schedule_id
    assert result.job_ids == [first.external_job_id, second.external_job_id]
    assert first.owner_email == "owner@example.com"

    pending = await executor.pending()
    assert [(t.handler, t.due_at) for t in pending] == [
        (EXECUTE_JOB_HANDLER, _utc(2024, 1, 26, 9)),
        (EXECUTE_JOB_HANDLER, _utc(2024, 2, 25, 9)),
        (ARM_NEXT_OCCURRENCE_HANDLER, _utc(2024, 3, 25)),
    ]
    assert pending[0].payload["job_id"] == first.external_job_id
    assert pending[2].payload == {
        "job_id": second.external_job_id,
        "subject_id": "client-1",
        "schedule_id": result.schedule_id,
        "day_of_month": 25,
        "due_at": _utc(2024, 3, 25).isoformat(),
    }


@pytest.mark.asyncio
async def test_establish_schedule_with_explicit_base_time(orchestrator, repository):
    await orchestrator.establish_schedule("client-1", _utc(2023, 12, 7, 15, 30))

    first, second = await repository.query_by_subject("client-1")
    assert first.scheduled_time == _utc(2024, 1, 1, 15, 30)
    assert second.scheduled_time == _utc(2024, 1, 31, 15, 30)
    assert second.day_of_month == 31


@pytest.mark.asyncio
async def test_reestablishing_cancels_previous_jobs(orchestrator, repository):
    first_result = await orchestrator.establish_schedule("client-1")
    second_result = await orchestrator.establish_schedule("client-1")

    jobs = await repository.query_by_subject("client-1")
    assert len(jobs) == 4
    scheduled = [j for j in jobs if j.status == JobStatus.SCHEDULED]
    cancelled = [j for j in jobs if j.status == JobStatus.CANCELLED]
    assert len(scheduled) == 2
    assert {j.schedule_id for j in scheduled} == {second_result.schedule_id}
    assert {j.schedule_id for j in cancelled} == {first_result.schedule_id}


@pytest.mark.asyncio
async def test_establish_schedule_for_missing_subject(orchestrator):
    with pytest.raises(NotFoundError):
        await orchestrator.establish_schedule("nobody")


@pytest.mark.asyncio
async def test_establish_schedule_when_disabled(orchestrator, subjects, repository, executor):
    subjects.set_scheduling_enabled("client-1", False)

    result = await orchestrator.establish_schedule("client-1")

    assert result.scheduled_count == 0
    assert await repository.query_by_subject("client-1") == []
    assert await executor.pending() == []


@pytest.mark.asyncio
async def test_backstop_can_be_disabled(repository, executor, subjects, clock):
    orchestrator = ScheduleOrchestrator(
        repository,
        executor,
        subjects,
        config=ScheduleConfig(eager_backstop=False),
        clock=clock,
    )
    await orchestrator.establish_schedule("client-1")

    handlers = [t.handler for t in await executor.pending()]
    assert handlers == [EXECUTE_JOB_HANDLER, EXECUTE_JOB_HANDLER]


@pytest.mark.asyncio
async def test_arm_next_occurrence_is_idempotent(orchestrator, repository):
    await orchestrator.establish_schedule("client-1")
    repeating = (await repository.query_by_subject("client-1"))[1]

    successor = await orchestrator.arm_next_occurrence(repeating)
    assert successor is not None
    assert successor.scheduled_time == _utc(2024, 3, 25)
    assert successor.day_of_month == 25
    assert successor.is_repeating
    assert successor.schedule_id == repeating.schedule_id

    assert await orchestrator.arm_next_occurrence(repeating) is None
    assert len(await repository.query_by_subject("client-1")) == 3


@pytest.mark.asyncio
async def test_arm_next_occurrence_skips_superseded_chain(orchestrator, repository):
    await orchestrator.establish_schedule("client-1")
    old_repeating = (await repository.query_by_subject("client-1"))[1]
    await orchestrator.establish_schedule("client-1")

    assert await orchestrator.arm_next_occurrence(old_repeating) is None
    assert len(await repository.query_by_subject("client-1", JobStatus.SCHEDULED)) == 2


@pytest.mark.asyncio
async def test_arm_next_occurrence_skips_disabled_subject(orchestrator, repository, subjects):
    await orchestrator.establish_schedule("client-1")
    repeating = (await repository.query_by_subject("client-1"))[1]
    subjects.set_scheduling_enabled("client-1", False)

    assert await orchestrator.arm_next_occurrence(repeating) is None


@pytest.mark.asyncio
async def test_backstop_creates_month_after_next(orchestrator, repository, executor, clock):
    await orchestrator.establish_schedule("client-1")
    backstop = [
        t for t in await executor.pending() if t.handler == ARM_NEXT_OCCURRENCE_HANDLER
    ][0]

    created = await orchestrator.handle_backstop(backstop.payload)

    assert created.scheduled_time == _utc(2024, 4, 25)
    # A duplicate fire of the same backstop is absorbed by the idempotency key
    assert await orchestrator.handle_backstop(backstop.payload) is None


@pytest.mark.asyncio
async def test_backstop_ignores_cancelled_or_missing_origin(orchestrator, repository, executor):
    await orchestrator.establish_schedule("client-1")
    backstop = [
        t for t in await executor.pending() if t.handler == ARM_NEXT_OCCURRENCE_HANDLER
    ][0]
    await repository.cancel_scheduled_for_subject("client-1")

    assert await orchestrator.handle_backstop(backstop.payload) is None
    missing = dict(backstop.payload, job_id="cron_missing")
    assert await orchestrator.handle_backstop(missing) is None


@pytest.mark.asyncio
async def test_reconcile_rearms_overdue_jobs(orchestrator, repository, executor, clock):
    await orchestrator.establish_schedule("client-1")
    original_payload = (await executor.pending())[0].payload
    # Simulate a restart that lost the in-memory triggers
    executor._heap.clear()
    clock.set(_utc(2024, 2, 1))

    assert await orchestrator.reconcile() == 1

    pending = await executor.pending()
    assert len(pending) == 1
    assert pending[0].handler == EXECUTE_JOB_HANDLER
    assert pending[0].due_at == clock.now
    first = (await repository.query_by_subject("client-1"))[0]
    assert pending[0].payload["job_id"] == first.external_job_id
    # Re-armed triggers carry the same payload as the original arm
    assert pending[0].payload == original_payload


@pytest.mark.asyncio
async def test_upcoming_and_list_jobs(orchestrator, subjects):
    subjects.upsert(Subject(id="client-2", owner_email="other@example.com"))
    await orchestrator.establish_schedule("client-1")
    await orchestrator.establish_schedule("client-2")

    assert len(await orchestrator.list_jobs("client-1")) == 2
    upcoming = await orchestrator.upcoming()
    assert len(upcoming) == 4
    assert upcoming == sorted(upcoming, key=lambda j: j.scheduled_time)
    mine = await orchestrator.upcoming(owner_email="owner@example.com", limit=1)
    assert [j.subject_id for j in mine] == ["client-1"]


@pytest.mark.asyncio
async def test_schedule_uses_configured_timezone(repository, executor, subjects, clock):
    orchestrator = ScheduleOrchestrator(
        repository,
        executor,
        subjects,
        config=ScheduleConfig(timezone="America/New_York"),
        clock=clock,
    )
    # 2024-01-01 03:00 UTC is still Dec 31 in New York
    await orchestrator.establish_schedule("client-1", _utc(2024, 1, 1, 3))

    first, second = await repository.query_by_subject("client-1")
    assert first.day_of_month == 25
    assert second.day_of_month == 24
    successor = await orchestrator.arm_next_occurrence(second)
    assert successor.scheduled_time.utcoffset() == timedelta(hours=-4)
    assert successor.scheduled_time.day == 24


@pytest.mark.asyncio
async def test_reconcile_releases_expired_claims(repository, executor, subjects, clock):
    orchestrator = ScheduleOrchestrator(
        repository, executor, subjects, clock=clock, claim_timeout=60
    )
    await orchestrator.establish_schedule("client-1")
    first, second = await repository.query_by_subject("client-1")
    # A worker claimed the first job and then died before recording an outcome
    assert await repository.patch_status(
        first.id, JobStatus.EXECUTING, expected=[JobStatus.SCHEDULED]
    )
    executor._heap.clear()

    # The claim is stamped with wall-clock time; a fresh claim is left alone
    clock.set(utcnow())
    assert await orchestrator.reconcile() == 1
    assert (await repository.get_job(first.id)).status == JobStatus.EXECUTING

    executor._heap.clear()
    clock.advance(timedelta(minutes=5))
    assert await orchestrator.reconcile() == 2

    assert (await repository.get_job(first.id)).status == JobStatus.SCHEDULED
    armed = {t.payload["job_id"] for t in await executor.pending()}
    assert armed == {first.external_job_id, second.external_job_id}


@pytest.mark.asyncio
async def test_subject_locks_are_dropped_when_idle(orchestrator, repository):
    await asyncio.gather(
        orchestrator.establish_schedule("client-1"),
        orchestrator.establish_schedule("client-1"),
    )

    assert len(await repository.query_by_subject("client-1", JobStatus.SCHEDULED)) == 2
    assert "client-1" not in orchestrator._locks


@pytest.mark.asyncio
async def test_chain_check_does_not_load_job_history(orchestrator, repository, monkeypatch):
    await orchestrator.establish_schedule("client-1")
    repeating = (await repository.query_by_subject("client-1"))[1]

    async def full_history(*args, **kwargs):
        raise AssertionError("job history should not be loaded")

    monkeypatch.setattr(repository, "query_by_subject", full_history)

    successor = await orchestrator.arm_next_occurrence(repeating)
    assert successor is not None
    assert successor.schedule_id == repeating.schedule_id
