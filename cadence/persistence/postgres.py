"""PostgreSQL implementation of the cadence repository."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Iterable, Optional

import asyncpg

from ..constants import MAX_RECENT_RUNS_LIMIT, MAX_UPCOMING_LIMIT
from ..contracts import (
    CronJobRecord,
    JobStatus,
    RunStatus,
    StepStatus,
    WorkflowRun,
    WorkflowStep,
)
from ..errors import DuplicateJobError, DuplicateRunError
from ..utils.clock import ensure_aware, utcnow
from .repository import Repository

_JOB_COLUMNS = (
    "id, external_job_id, subject_id, owner_email, schedule_id, scheduled_time, "
    "day_of_month, is_repeating, status, idempotency_key, error, created_at, updated_at"
)
_RUN_COLUMNS = (
    "id, subject_id, correlation_id, owner_email, status, error, created_at, updated_at"
)


def _rowcount(result: str) -> int:
    # asyncpg returns command tags such as "UPDATE 1"
    try:
        return int(result.rsplit(" ", 1)[-1])
    except (ValueError, AttributeError):
        return 0


class PostgresRepository(Repository):
    """Persist jobs and runs using PostgreSQL."""

    def __init__(self, dsn: str):
        self._dsn = dsn
        self._initialized = False

    async def _connect(self) -> asyncpg.Connection:
        conn = await asyncpg.connect(self._dsn)
        if not self._initialized:
            await self._ensure_schema(conn)
            self._initialized = True
        return conn

    async def _ensure_schema(self, conn: asyncpg.Connection) -> None:
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS cron_jobs (
                id TEXT PRIMARY KEY,
                external_job_id TEXT NOT NULL UNIQUE,
                subject_id TEXT NOT NULL,
                owner_email TEXT,
                schedule_id TEXT NOT NULL,
                scheduled_time TIMESTAMPTZ NOT NULL,
                day_of_month INTEGER NOT NULL CHECK (day_of_month BETWEEN 1 AND 31),
                is_repeating BOOLEAN NOT NULL,
                status TEXT NOT NULL,
                idempotency_key TEXT NOT NULL UNIQUE,
                error TEXT,
                created_at TIMESTAMPTZ NOT NULL,
                updated_at TIMESTAMPTZ NOT NULL
            )
            """
        )
        await conn.execute(
            "CREATE INDEX IF NOT EXISTS ix_cron_jobs_subject ON cron_jobs (subject_id)"
        )
        await conn.execute(
            "CREATE INDEX IF NOT EXISTS ix_cron_jobs_status ON cron_jobs (status)"
        )
        await conn.execute(
            "CREATE INDEX IF NOT EXISTS ix_cron_jobs_scheduled_time ON cron_jobs (scheduled_time)"
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS workflow_runs (
                id TEXT PRIMARY KEY,
                subject_id TEXT NOT NULL,
                correlation_id TEXT,
                owner_email TEXT,
                status TEXT NOT NULL,
                error TEXT,
                created_at TIMESTAMPTZ NOT NULL,
                updated_at TIMESTAMPTZ NOT NULL
            )
            """
        )
        await conn.execute(
            "CREATE INDEX IF NOT EXISTS ix_workflow_runs_subject ON workflow_runs (subject_id)"
        )
        await conn.execute(
            "CREATE INDEX IF NOT EXISTS ix_workflow_runs_correlation ON workflow_runs (correlation_id)"
        )
        await conn.execute(
            """
            CREATE UNIQUE INDEX IF NOT EXISTS ux_workflow_runs_active
            ON workflow_runs (subject_id, correlation_id)
            WHERE correlation_id IS NOT NULL
              AND status NOT IN ('completed', 'failed')
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS workflow_steps (
                id SERIAL PRIMARY KEY,
                run_id TEXT NOT NULL REFERENCES workflow_runs (id),
                name TEXT NOT NULL,
                status TEXT NOT NULL,
                timestamp TIMESTAMPTZ NOT NULL,
                detail TEXT
            )
            """
        )

    @staticmethod
    def _job_from_row(row: Any) -> CronJobRecord:
        return CronJobRecord(
            id=row["id"],
            external_job_id=row["external_job_id"],
            subject_id=row["subject_id"],
            owner_email=row["owner_email"],
            schedule_id=row["schedule_id"],
            scheduled_time=row["scheduled_time"],
            day_of_month=row["day_of_month"],
            is_repeating=row["is_repeating"],
            status=JobStatus(row["status"]),
            idempotency_key=row["idempotency_key"],
            error=row["error"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    @staticmethod
    async def _run_from_row(conn: asyncpg.Connection, row: Any) -> WorkflowRun:
        step_rows = await conn.fetch(
            "SELECT name, status, timestamp, detail FROM workflow_steps WHERE run_id = $1 ORDER BY id",
            row["id"],
        )
        return WorkflowRun(
            id=row["id"],
            subject_id=row["subject_id"],
            correlation_id=row["correlation_id"],
            owner_email=row["owner_email"],
            status=RunStatus(row["status"]),
            error=row["error"],
            steps=[
                WorkflowStep(
                    name=s["name"],
                    status=StepStatus(s["status"]),
                    timestamp=s["timestamp"],
                    detail=s["detail"],
                )
                for s in step_rows
            ],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    # ------------------------------------------------------------------
    # JobStore API
    async def insert_job(self, record: CronJobRecord) -> CronJobRecord:
        conn = await self._connect()
        try:
            await conn.execute(
                f"INSERT INTO cron_jobs ({_JOB_COLUMNS}) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13)",
                record.id,
                record.external_job_id,
                record.subject_id,
                record.owner_email,
                record.schedule_id,
                ensure_aware(record.scheduled_time),
                record.day_of_month,
                record.is_repeating,
                record.status.value,
                record.idempotency_key,
                record.error,
                ensure_aware(record.created_at),
                ensure_aware(record.updated_at),
            )
        except asyncpg.UniqueViolationError as exc:
            raise DuplicateJobError(record.idempotency_key) from exc
        finally:
            await conn.close()
        return record

    async def get_job(self, job_id: str) -> CronJobRecord | None:
        conn = await self._connect()
        try:
            row = await conn.fetchrow(
                f"SELECT {_JOB_COLUMNS} FROM cron_jobs WHERE id = $1", job_id
            )
        finally:
            await conn.close()
        return self._job_from_row(row) if row else None

    async def query_by_external_job_id(
        self, external_job_id: str
    ) -> CronJobRecord | None:
        conn = await self._connect()
        try:
            row = await conn.fetchrow(
                f"SELECT {_JOB_COLUMNS} FROM cron_jobs WHERE external_job_id = $1",
                external_job_id,
            )
        finally:
            await conn.close()
        return self._job_from_row(row) if row else None

    async def patch_status(
        self,
        job_id: str,
        status: JobStatus,
        *,
        expected: Optional[Iterable[JobStatus]] = None,
        error: Optional[str] = None,
    ) -> bool:
        conn = await self._connect()
        try:
            if expected is None:
                result = await conn.execute(
                    "UPDATE cron_jobs SET status = $1, error = $2, updated_at = $3 WHERE id = $4",
                    status.value,
                    error,
                    utcnow(),
                    job_id,
                )
            else:
                result = await conn.execute(
                    "UPDATE cron_jobs SET status = $1, error = $2, updated_at = $3 WHERE id = $4 AND status = ANY($5::text[])",
                    status.value,
                    error,
                    utcnow(),
                    job_id,
                    [JobStatus(s).value for s in expected],
                )
        finally:
            await conn.close()
        return _rowcount(result) > 0

    async def query_by_subject(
        self, subject_id: str, status: Optional[JobStatus] = None
    ) -> list[CronJobRecord]:
        conn = await self._connect()
        try:
            if status is None:
                rows = await conn.fetch(
                    f"SELECT {_JOB_COLUMNS} FROM cron_jobs WHERE subject_id = $1 ORDER BY created_at",
                    subject_id,
                )
            else:
                rows = await conn.fetch(
                    f"SELECT {_JOB_COLUMNS} FROM cron_jobs WHERE subject_id = $1 AND status = $2 ORDER BY created_at",
                    subject_id,
                    status.value,
                )
        finally:
            await conn.close()
        return [self._job_from_row(r) for r in rows]

    async def query_scheduled_before(self, time: datetime) -> list[CronJobRecord]:
        conn = await self._connect()
        try:
            rows = await conn.fetch(
                f"SELECT {_JOB_COLUMNS} FROM cron_jobs WHERE status = $1 AND scheduled_time <= $2 ORDER BY scheduled_time",
                JobStatus.SCHEDULED.value,
                ensure_aware(time),
            )
        finally:
            await conn.close()
        return [self._job_from_row(r) for r in rows]

    async def query_executing_before(self, time: datetime) -> list[CronJobRecord]:
        conn = await self._connect()
        try:
            rows = await conn.fetch(
                f"SELECT {_JOB_COLUMNS} FROM cron_jobs WHERE status = $1 AND updated_at <= $2 ORDER BY updated_at",
                JobStatus.EXECUTING.value,
                ensure_aware(time),
            )
        finally:
            await conn.close()
        return [self._job_from_row(r) for r in rows]

    async def latest_schedule_id(self, subject_id: str) -> str | None:
        conn = await self._connect()
        try:
            return await conn.fetchval(
                "SELECT schedule_id FROM cron_jobs WHERE subject_id = $1 ORDER BY created_at DESC LIMIT 1",
                subject_id,
            )
        finally:
            await conn.close()

    async def query_upcoming(
        self, now: datetime, *, owner_email: Optional[str] = None, limit: int = 50
    ) -> list[CronJobRecord]:
        limit = min(max(limit, 1), MAX_UPCOMING_LIMIT)
        conn = await self._connect()
        try:
            rows = await conn.fetch(
                f"""
                SELECT {_JOB_COLUMNS} FROM cron_jobs
                WHERE status = $1 AND scheduled_time >= $2
                  AND ($3::text IS NULL OR owner_email = $3)
                ORDER BY scheduled_time
                LIMIT $4
                """,
                JobStatus.SCHEDULED.value,
                ensure_aware(now),
                owner_email,
                limit,
            )
        finally:
            await conn.close()
        return [self._job_from_row(r) for r in rows]

    async def cancel_scheduled_for_subject(self, subject_id: str) -> int:
        cancelled = 0
        for job in await self.query_by_subject(subject_id, JobStatus.SCHEDULED):
            if await self.patch_status(
                job.id, JobStatus.CANCELLED, expected=[JobStatus.SCHEDULED]
            ):
                cancelled += 1
        return cancelled

    # ------------------------------------------------------------------
    # RunStore API
    async def insert_run(self, run: WorkflowRun) -> WorkflowRun:
        conn = await self._connect()
        try:
            async with conn.transaction():
                await conn.execute(
                    f"INSERT INTO workflow_runs ({_RUN_COLUMNS}) VALUES ($1, $2, $3, $4, $5, $6, $7, $8)",
                    run.id,
                    run.subject_id,
                    run.correlation_id,
                    run.owner_email,
                    run.status.value,
                    run.error,
                    ensure_aware(run.created_at),
                    ensure_aware(run.updated_at),
                )
                for step in run.steps:
                    await self._insert_step(conn, run.id, step)
        except asyncpg.UniqueViolationError as exc:
            raise DuplicateRunError(run.subject_id, run.correlation_id or "") from exc
        finally:
            await conn.close()
        return run

    @staticmethod
    async def _insert_step(
        conn: asyncpg.Connection, run_id: str, step: WorkflowStep
    ) -> None:
        await conn.execute(
            "INSERT INTO workflow_steps (run_id, name, status, timestamp, detail) VALUES ($1, $2, $3, $4, $5)",
            run_id,
            step.name,
            step.status.value,
            ensure_aware(step.timestamp),
            step.detail,
        )

    async def get_run(self, run_id: str) -> WorkflowRun | None:
        conn = await self._connect()
        try:
            row = await conn.fetchrow(
                f"SELECT {_RUN_COLUMNS} FROM workflow_runs WHERE id = $1", run_id
            )
            if not row:
                return None
            return await self._run_from_row(conn, row)
        finally:
            await conn.close()

    async def append_step(
        self,
        run_id: str,
        step: WorkflowStep,
        status: Optional[RunStatus] = None,
        error: Optional[str] = None,
    ) -> None:
        conn = await self._connect()
        try:
            async with conn.transaction():
                await self._insert_step(conn, run_id, step)
                await conn.execute(
                    "UPDATE workflow_runs SET status = COALESCE($1, status), error = COALESCE($2, error), updated_at = $3 WHERE id = $4",
                    status.value if status else None,
                    error,
                    utcnow(),
                    run_id,
                )
        finally:
            await conn.close()

    async def set_status(
        self, run_id: str, status: RunStatus, error: Optional[str] = None
    ) -> None:
        conn = await self._connect()
        try:
            await conn.execute(
                "UPDATE workflow_runs SET status = $1, error = COALESCE($2, error), updated_at = $3 WHERE id = $4",
                status.value,
                error,
                utcnow(),
                run_id,
            )
        finally:
            await conn.close()

    async def list_runs_for_subject(
        self, subject_id: str, limit: int = 25
    ) -> list[WorkflowRun]:
        conn = await self._connect()
        try:
            rows = await conn.fetch(
                f"SELECT {_RUN_COLUMNS} FROM workflow_runs WHERE subject_id = $1 ORDER BY created_at DESC LIMIT $2",
                subject_id,
                max(limit, 1),
            )
            return [await self._run_from_row(conn, r) for r in rows]
        finally:
            await conn.close()

    async def list_recent_runs(
        self, owner_email: Optional[str] = None, limit: int = 25
    ) -> list[WorkflowRun]:
        limit = min(max(limit, 1), MAX_RECENT_RUNS_LIMIT)
        conn = await self._connect()
        try:
            rows = await conn.fetch(
                f"""
                SELECT {_RUN_COLUMNS} FROM workflow_runs
                WHERE ($1::text IS NULL OR owner_email = $1)
                ORDER BY created_at DESC
                LIMIT $2
                """,
                owner_email,
                limit,
            )
            return [await self._run_from_row(conn, r) for r in rows]
        finally:
            await conn.close()

    async def find_active_run(
        self, subject_id: str, correlation_id: str
    ) -> WorkflowRun | None:
        conn = await self._connect()
        try:
            row = await conn.fetchrow(
                f"""
                SELECT {_RUN_COLUMNS} FROM workflow_runs
                WHERE subject_id = $1 AND correlation_id = $2
                  AND status NOT IN ('completed', 'failed')
                """,
                subject_id,
                correlation_id,
            )
            if not row:
                return None
            return await self._run_from_row(conn, row)
        finally:
            await conn.close()
