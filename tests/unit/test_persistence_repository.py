from datetime import datetime, timedelta, timezone

import pytest

from cadence.contracts import (
    CronJobRecord,
    JobStatus,
    RunStatus,
    StepStatus,
    WorkflowRun,
    WorkflowStep,
)
from cadence.errors import DuplicateJobError, DuplicateRunError
from cadence.persistence import InMemoryRepository, SQLiteRepository

BASE = datetime(2024, 1, 1, tzinfo=timezone.utc)


@pytest.fixture(params=["inmemory", "sqlite"])
def repo(request, tmp_path):
    if request.param == "inmemory":
        return InMemoryRepository()
    return SQLiteRepository(tmp_path / "cadence.db")


def _job(subject_id="client-1", days=0, key=None, owner="owner@example.com", **kwargs):
    scheduled = BASE + timedelta(days=days)
    return CronJobRecord(
        external_job_id=f"cron_{subject_id}_{days}",
        subject_id=subject_id,
        owner_email=owner,
        schedule_id="sched-1",
        scheduled_time=scheduled,
        day_of_month=scheduled.day,
        idempotency_key=key or f"sched-1:{subject_id}:{days}",
        **kwargs,
    )


@pytest.mark.asyncio
async def test_job_insert_and_lookup(repo):
    job = _job(is_repeating=True)
    await repo.insert_job(job)

    by_id = await repo.get_job(job.id)
    by_external = await repo.query_by_external_job_id(job.external_job_id)
    assert by_id == by_external
    assert by_id.scheduled_time == job.scheduled_time
    assert by_id.is_repeating is True
    assert by_id.status == JobStatus.SCHEDULED
    assert await repo.query_by_external_job_id("missing") is None


@pytest.mark.asyncio
async def test_duplicate_idempotency_key_rejected(repo):
    await repo.insert_job(_job(days=1, key="same"))
    with pytest.raises(DuplicateJobError):
        await repo.insert_job(_job(days=2, key="same"))
    assert len(await repo.query_by_subject("client-1")) == 1


@pytest.mark.asyncio
async def test_patch_status_compare_and_swap(repo):
    job = _job()
    await repo.insert_job(job)

    assert await repo.patch_status(
        job.id, JobStatus.EXECUTING, expected=[JobStatus.SCHEDULED]
    )
    # Second claim loses
    assert not await repo.patch_status(
        job.id, JobStatus.EXECUTING, expected=[JobStatus.SCHEDULED]
    )
    assert await repo.patch_status(
        job.id, JobStatus.FAILED, expected=[JobStatus.EXECUTING], error="boom"
    )

    stored = await repo.get_job(job.id)
    assert stored.status == JobStatus.FAILED
    assert stored.error == "boom"
    assert not await repo.patch_status("missing", JobStatus.CANCELLED)


@pytest.mark.asyncio
async def test_query_by_subject_and_status(repo):
    first = _job(days=1)
    second = _job(days=2)
    other = _job(subject_id="client-2", days=3)
    for job in (first, second, other):
        await repo.insert_job(job)
    await repo.patch_status(first.id, JobStatus.COMPLETED)

    jobs = await repo.query_by_subject("client-1")
    assert [j.id for j in jobs] == [first.id, second.id]
    scheduled = await repo.query_by_subject("client-1", JobStatus.SCHEDULED)
    assert [j.id for j in scheduled] == [second.id]


@pytest.mark.asyncio
async def test_query_scheduled_before(repo):
    past = _job(days=1)
    future = _job(days=10)
    done = _job(days=2)
    for job in (past, future, done):
        await repo.insert_job(job)
    await repo.patch_status(done.id, JobStatus.COMPLETED)

    overdue = await repo.query_scheduled_before(BASE + timedelta(days=5))
    assert [j.id for j in overdue] == [past.id]


@pytest.mark.asyncio
async def test_query_upcoming_filters_and_limits(repo):
    for days in (3, 1, 2):
        await repo.insert_job(_job(days=days))
    await repo.insert_job(_job(subject_id="client-2", days=4, owner="other@example.com"))
    await repo.insert_job(_job(subject_id="client-3", days=-1))

    upcoming = await repo.query_upcoming(BASE)
    assert [j.scheduled_time for j in upcoming] == [
        BASE + timedelta(days=d) for d in (1, 2, 3, 4)
    ]

    mine = await repo.query_upcoming(BASE, owner_email="owner@example.com", limit=2)
    assert [j.scheduled_time.day for j in mine] == [2, 3]

    capped = await repo.query_upcoming(BASE, limit=0)
    assert len(capped) == 1


@pytest.mark.asyncio
async def test_cancel_scheduled_for_subject(repo):
    scheduled = [_job(days=d) for d in (1, 2)]
    done = _job(days=3)
    for job in (*scheduled, done):
        await repo.insert_job(job)
    await repo.patch_status(done.id, JobStatus.COMPLETED)

    assert await repo.cancel_scheduled_for_subject("client-1") == 2
    statuses = {j.id: j.status for j in await repo.query_by_subject("client-1")}
    assert statuses[done.id] == JobStatus.COMPLETED
    assert all(statuses[j.id] == JobStatus.CANCELLED for j in scheduled)
    assert await repo.cancel_scheduled_for_subject("client-1") == 0


@pytest.mark.asyncio
async def test_run_step_log_is_append_only(repo):
    run = WorkflowRun(
        subject_id="client-1",
        correlation_id="resp-1",
        steps=[WorkflowStep(name="start", status=StepStatus.SUCCESS)],
    )
    await repo.insert_run(run)

    await repo.append_step(
        run.id,
        WorkflowStep(name="trigger", status=StepStatus.RUNNING),
        status=RunStatus.GENERATING,
    )
    await repo.append_step(
        run.id,
        WorkflowStep(name="error", status=StepStatus.ERROR, detail="boom"),
        status=RunStatus.FAILED,
        error="boom",
    )

    stored = await repo.get_run(run.id)
    assert [s.name for s in stored.steps] == ["start", "trigger", "error"]
    assert stored.steps[2].detail == "boom"
    assert stored.status == RunStatus.FAILED
    assert stored.error == "boom"


@pytest.mark.asyncio
async def test_set_status_keeps_steps(repo):
    run = WorkflowRun(
        subject_id="client-1",
        steps=[WorkflowStep(name="start", status=StepStatus.SUCCESS)],
    )
    await repo.insert_run(run)
    await repo.set_status(run.id, RunStatus.COMPLETED)

    stored = await repo.get_run(run.id)
    assert stored.status == RunStatus.COMPLETED
    assert len(stored.steps) == 1


@pytest.mark.asyncio
async def test_active_run_is_unique_per_correlation(repo):
    first = WorkflowRun(subject_id="client-1", correlation_id="resp-1")
    await repo.insert_run(first)

    with pytest.raises(DuplicateRunError):
        await repo.insert_run(WorkflowRun(subject_id="client-1", correlation_id="resp-1"))

    active = await repo.find_active_run("client-1", "resp-1")
    assert active.id == first.id

    # Once terminal, a new run for the same correlation is allowed
    await repo.set_status(first.id, RunStatus.FAILED, error="boom")
    assert await repo.find_active_run("client-1", "resp-1") is None
    await repo.insert_run(WorkflowRun(subject_id="client-1", correlation_id="resp-1"))


@pytest.mark.asyncio
async def test_list_runs(repo):
    runs = [
        WorkflowRun(
            subject_id="client-1" if i < 3 else "client-2",
            owner_email="owner@example.com" if i % 2 == 0 else "other@example.com",
            created_at=BASE + timedelta(minutes=i),
        )
        for i in range(5)
    ]
    for run in runs:
        await repo.insert_run(run)

    for_subject = await repo.list_runs_for_subject("client-1")
    assert [r.id for r in for_subject] == [runs[2].id, runs[1].id, runs[0].id]

    recent = await repo.list_recent_runs(limit=2)
    assert [r.id for r in recent] == [runs[4].id, runs[3].id]

    owned = await repo.list_recent_runs(owner_email="owner@example.com")
    assert [r.id for r in owned] == [runs[4].id, runs[2].id, runs[0].id]


@pytest.mark.asyncio
async def test_query_executing_before(repo):
    stale = _job(days=1, status=JobStatus.EXECUTING, updated_at=BASE)
    fresh = _job(days=2, status=JobStatus.EXECUTING, updated_at=BASE + timedelta(hours=2))
    idle = _job(days=3, updated_at=BASE)
    for job in (stale, fresh, idle):
        await repo.insert_job(job)

    stuck = await repo.query_executing_before(BASE + timedelta(hours=1))
    assert [j.id for j in stuck] == [stale.id]


@pytest.mark.asyncio
async def test_latest_schedule_id(repo):
    assert await repo.latest_schedule_id("client-1") is None

    await repo.insert_job(_job(days=9, created_at=BASE))
    assert await repo.latest_schedule_id("client-1") == "sched-1"

    # Ordered by creation, not by when the job is due
    newer = _job(days=1).model_copy(
        update={
            "schedule_id": "sched-2",
            "idempotency_key": "sched-2:client-1:1",
            "created_at": BASE + timedelta(hours=1),
        }
    )
    await repo.insert_job(newer)
    await repo.insert_job(_job(subject_id="client-2", days=2, created_at=BASE + timedelta(hours=2)))

    assert await repo.latest_schedule_id("client-1") == "sched-2"
