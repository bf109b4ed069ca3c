"""Repository abstractions for job and run persistence."""

from __future__ import annotations

from datetime import datetime
from typing import Iterable, Optional, Protocol

from ..contracts import CronJobRecord, JobStatus, RunStatus, WorkflowRun, WorkflowStep


class JobStore(Protocol):
    """Protocol for cron job persistence backends.

    Every mutation is a single-row patch; there are no multi-row
    transactions.
    """

    async def insert_job(self, record: CronJobRecord) -> CronJobRecord:
        """Persist a new job. Raises ``DuplicateJobError`` on key collision."""

    async def get_job(self, job_id: str) -> CronJobRecord | None:
        """Retrieve a job by primary key."""

    async def query_by_external_job_id(
        self, external_job_id: str
    ) -> CronJobRecord | None:
        """Retrieve a job by the identity carried in timer payloads."""

    async def patch_status(
        self,
        job_id: str,
        status: JobStatus,
        *,
        expected: Optional[Iterable[JobStatus]] = None,
        error: Optional[str] = None,
    ) -> bool:
        """Set ``status``; with ``expected`` only if the current status matches."""

    async def query_by_subject(
        self, subject_id: str, status: Optional[JobStatus] = None
    ) -> list[CronJobRecord]:
        """Return a subject's jobs ordered by creation time."""

    async def query_scheduled_before(self, time: datetime) -> list[CronJobRecord]:
        """Return ``scheduled`` jobs whose time is at or before ``time``."""

    async def query_executing_before(self, time: datetime) -> list[CronJobRecord]:
        """Return ``executing`` jobs last updated at or before ``time``."""

    async def latest_schedule_id(self, subject_id: str) -> str | None:
        """Return the ``schedule_id`` of the subject's most recently created job."""

    async def query_upcoming(
        self, now: datetime, *, owner_email: Optional[str] = None, limit: int = 50
    ) -> list[CronJobRecord]:
        """Return ``scheduled`` jobs due at or after ``now``, soonest first."""

    async def cancel_scheduled_for_subject(self, subject_id: str) -> int:
        """Cancel every ``scheduled`` job of a subject; return the count."""


class RunStore(Protocol):
    """Protocol for workflow run persistence backends."""

    async def insert_run(self, run: WorkflowRun) -> WorkflowRun:
        """Persist a run. Raises ``DuplicateRunError`` for an active duplicate."""

    async def get_run(self, run_id: str) -> WorkflowRun | None:
        """Retrieve a run with its full step log."""

    async def append_step(
        self,
        run_id: str,
        step: WorkflowStep,
        status: Optional[RunStatus] = None,
        error: Optional[str] = None,
    ) -> None:
        """Append ``step`` to the log and optionally move the status."""

    async def set_status(
        self, run_id: str, status: RunStatus, error: Optional[str] = None
    ) -> None:
        """Update the status without touching the step log."""

    async def list_runs_for_subject(
        self, subject_id: str, limit: int = 25
    ) -> list[WorkflowRun]:
        """Return a subject's runs, newest first."""

    async def list_recent_runs(
        self, owner_email: Optional[str] = None, limit: int = 25
    ) -> list[WorkflowRun]:
        """Return recent runs, optionally filtered by owner, newest first."""

    async def find_active_run(
        self, subject_id: str, correlation_id: str
    ) -> WorkflowRun | None:
        """Return the non-terminal run for a correlation id, if any."""


class Repository(JobStore, RunStore, Protocol):
    """A backend providing both job and run persistence."""
