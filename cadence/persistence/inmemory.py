"""In-memory implementation of the cadence repository."""

from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Dict, Iterable, Optional

from ..constants import MAX_RECENT_RUNS_LIMIT, MAX_UPCOMING_LIMIT
from ..contracts import CronJobRecord, JobStatus, RunStatus, WorkflowRun, WorkflowStep
from ..errors import DuplicateJobError, DuplicateRunError
from ..utils.clock import utcnow
from .repository import Repository


class InMemoryRepository(Repository):
    """Store jobs and runs in local memory.

    Useful for tests or when no database is configured. Data is not
    persisted across process restarts.
    """

    def __init__(self) -> None:
        self._jobs: Dict[str, CronJobRecord] = {}
        self._runs: Dict[str, WorkflowRun] = {}
        self._lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # Jobs
    async def insert_job(self, record: CronJobRecord) -> CronJobRecord:
        async with self._lock:
            for existing in self._jobs.values():
                if (
                    existing.idempotency_key == record.idempotency_key
                    or existing.external_job_id == record.external_job_id
                ):
                    raise DuplicateJobError(record.idempotency_key)
            self._jobs[record.id] = record.model_copy()
        return record

    async def get_job(self, job_id: str) -> CronJobRecord | None:
        job = self._jobs.get(job_id)
        return job.model_copy() if job else None

    async def query_by_external_job_id(
        self, external_job_id: str
    ) -> CronJobRecord | None:
        for job in self._jobs.values():
            if job.external_job_id == external_job_id:
                return job.model_copy()
        return None

    async def patch_status(
        self,
        job_id: str,
        status: JobStatus,
        *,
        expected: Optional[Iterable[JobStatus]] = None,
        error: Optional[str] = None,
    ) -> bool:
        async with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                return False
            if expected is not None and job.status not in set(expected):
                return False
            job.status = status
            job.error = error
            job.updated_at = utcnow()
            return True

    async def query_by_subject(
        self, subject_id: str, status: Optional[JobStatus] = None
    ) -> list[CronJobRecord]:
        jobs = [
            j.model_copy()
            for j in self._jobs.values()
            if j.subject_id == subject_id and (status is None or j.status == status)
        ]
        return sorted(jobs, key=lambda j: j.created_at)

    async def query_scheduled_before(self, time: datetime) -> list[CronJobRecord]:
        jobs = [
            j.model_copy()
            for j in self._jobs.values()
            if j.status == JobStatus.SCHEDULED and j.scheduled_time <= time
        ]
        return sorted(jobs, key=lambda j: j.scheduled_time)

    async def query_executing_before(self, time: datetime) -> list[CronJobRecord]:
        jobs = [
            j.model_copy()
            for j in self._jobs.values()
            if j.status == JobStatus.EXECUTING and j.updated_at <= time
        ]
        return sorted(jobs, key=lambda j: j.updated_at)

    async def latest_schedule_id(self, subject_id: str) -> str | None:
        latest: CronJobRecord | None = None
        for job in self._jobs.values():
            if job.subject_id == subject_id and (
                latest is None or job.created_at >= latest.created_at
            ):
                latest = job
        return latest.schedule_id if latest else None

    async def query_upcoming(
        self, now: datetime, *, owner_email: Optional[str] = None, limit: int = 50
    ) -> list[CronJobRecord]:
        limit = min(max(limit, 1), MAX_UPCOMING_LIMIT)
        jobs = [
            j.model_copy()
            for j in self._jobs.values()
            if j.status == JobStatus.SCHEDULED
            and j.scheduled_time >= now
            and (owner_email is None or j.owner_email == owner_email)
        ]
        return sorted(jobs, key=lambda j: j.scheduled_time)[:limit]

    async def cancel_scheduled_for_subject(self, subject_id: str) -> int:
        cancelled = 0
        for job in await self.query_by_subject(subject_id, JobStatus.SCHEDULED):
            if await self.patch_status(
                job.id, JobStatus.CANCELLED, expected=[JobStatus.SCHEDULED]
            ):
                cancelled += 1
        return cancelled

    # ------------------------------------------------------------------
    # Runs
    async def insert_run(self, run: WorkflowRun) -> WorkflowRun:
        async with self._lock:
            if run.correlation_id is not None:
                for existing in self._runs.values():
                    if (
                        existing.subject_id == run.subject_id
                        and existing.correlation_id == run.correlation_id
                        and not existing.is_terminal
                    ):
                        raise DuplicateRunError(
                            run.subject_id, run.correlation_id, existing.id
                        )
            self._runs[run.id] = run.model_copy(deep=True)
        return run

    async def get_run(self, run_id: str) -> WorkflowRun | None:
        run = self._runs.get(run_id)
        return run.model_copy(deep=True) if run else None

    async def append_step(
        self,
        run_id: str,
        step: WorkflowStep,
        status: Optional[RunStatus] = None,
        error: Optional[str] = None,
    ) -> None:
        async with self._lock:
            run = self._runs.get(run_id)
            if run is None:
                return
            run.steps.append(step)
            if status is not None:
                run.status = status
            if error is not None:
                run.error = error
            run.updated_at = utcnow()

    async def set_status(
        self, run_id: str, status: RunStatus, error: Optional[str] = None
    ) -> None:
        async with self._lock:
            run = self._runs.get(run_id)
            if run is None:
                return
            run.status = status
            if error is not None:
                run.error = error
            run.updated_at = utcnow()

    async def list_runs_for_subject(
        self, subject_id: str, limit: int = 25
    ) -> list[WorkflowRun]:
        runs = [r for r in self._runs.values() if r.subject_id == subject_id]
        runs.sort(key=lambda r: r.created_at, reverse=True)
        return [r.model_copy(deep=True) for r in runs[: max(limit, 1)]]

    async def list_recent_runs(
        self, owner_email: Optional[str] = None, limit: int = 25
    ) -> list[WorkflowRun]:
        limit = min(max(limit, 1), MAX_RECENT_RUNS_LIMIT)
        runs = [
            r
            for r in self._runs.values()
            if owner_email is None or r.owner_email == owner_email
        ]
        runs.sort(key=lambda r: r.created_at, reverse=True)
        return [r.model_copy(deep=True) for r in runs[:limit]]

    async def find_active_run(
        self, subject_id: str, correlation_id: str
    ) -> WorkflowRun | None:
        for run in self._runs.values():
            if (
                run.subject_id == subject_id
                and run.correlation_id == correlation_id
                and not run.is_terminal
            ):
                return run.model_copy(deep=True)
        return None
