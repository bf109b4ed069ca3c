"""SQLite implementation of the cadence repository."""

from __future__ import annotations

import asyncio
import sqlite3
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable, Optional

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
from ..utils.clock import utcnow
from .repository import Repository

_JOB_COLUMNS = (
    "id, external_job_id, subject_id, owner_email, schedule_id, scheduled_time, "
    "day_of_month, is_repeating, status, idempotency_key, error, created_at, updated_at"
)
_RUN_COLUMNS = (
    "id, subject_id, correlation_id, owner_email, status, error, created_at, updated_at"
)
_TERMINAL_RUN_STATUSES = (RunStatus.COMPLETED.value, RunStatus.FAILED.value)


def _ts(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _dt(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


class SQLiteRepository(Repository):
    """Persist jobs and runs using SQLite."""

    def __init__(self, db_path: str | Path):
        self.db_path = str(db_path)
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._ensure_schema()

    # ------------------------------------------------------------------
    # Schema management
    def _ensure_schema(self) -> None:
        cur = self._conn.cursor()
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS cron_jobs (
                id TEXT PRIMARY KEY,
                external_job_id TEXT NOT NULL UNIQUE,
                subject_id TEXT NOT NULL,
                owner_email TEXT,
                schedule_id TEXT NOT NULL,
                scheduled_time TEXT NOT NULL,
                day_of_month INTEGER NOT NULL,
                is_repeating INTEGER NOT NULL,
                status TEXT NOT NULL,
                idempotency_key TEXT NOT NULL UNIQUE,
                error TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
            """
        )
        cur.execute("CREATE INDEX IF NOT EXISTS ix_cron_jobs_subject ON cron_jobs (subject_id)")
        cur.execute("CREATE INDEX IF NOT EXISTS ix_cron_jobs_status ON cron_jobs (status)")
        cur.execute(
            "CREATE INDEX IF NOT EXISTS ix_cron_jobs_scheduled_time ON cron_jobs (scheduled_time)"
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS workflow_runs (
                id TEXT PRIMARY KEY,
                subject_id TEXT NOT NULL,
                correlation_id TEXT,
                owner_email TEXT,
                status TEXT NOT NULL,
                error TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
            """
        )
        cur.execute(
            "CREATE INDEX IF NOT EXISTS ix_workflow_runs_subject ON workflow_runs (subject_id)"
        )
        cur.execute(
            "CREATE INDEX IF NOT EXISTS ix_workflow_runs_correlation ON workflow_runs (correlation_id)"
        )
        cur.execute(
            """
            CREATE UNIQUE INDEX IF NOT EXISTS ux_workflow_runs_active
            ON workflow_runs (subject_id, correlation_id)
            WHERE correlation_id IS NOT NULL
              AND status NOT IN ('completed', 'failed')
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS workflow_steps (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                run_id TEXT NOT NULL,
                name TEXT NOT NULL,
                status TEXT NOT NULL,
                timestamp TEXT NOT NULL,
                detail TEXT
            )
            """
        )
        self._conn.commit()

    # ------------------------------------------------------------------
    # Helper methods
    def _execute(self, query: str, *params: Any) -> int:
        cur = self._conn.cursor()
        cur.execute(query, params)
        self._conn.commit()
        return cur.rowcount

    def _execute_all(self, statements: list[tuple[str, tuple]]) -> None:
        cur = self._conn.cursor()
        try:
            for query, params in statements:
                cur.execute(query, params)
        except Exception:
            self._conn.rollback()
            raise
        self._conn.commit()

    def _fetchone(self, query: str, *params: Any) -> sqlite3.Row | None:
        cur = self._conn.cursor()
        cur.execute(query, params)
        return cur.fetchone()

    def _fetchall(self, query: str, *params: Any) -> list[sqlite3.Row]:
        cur = self._conn.cursor()
        cur.execute(query, params)
        return cur.fetchall()

    @staticmethod
    def _job_from_row(row: sqlite3.Row) -> CronJobRecord:
        return CronJobRecord(
            id=row["id"],
            external_job_id=row["external_job_id"],
            subject_id=row["subject_id"],
            owner_email=row["owner_email"],
            schedule_id=row["schedule_id"],
            scheduled_time=_dt(row["scheduled_time"]),
            day_of_month=row["day_of_month"],
            is_repeating=bool(row["is_repeating"]),
            status=JobStatus(row["status"]),
            idempotency_key=row["idempotency_key"],
            error=row["error"],
            created_at=_dt(row["created_at"]),
            updated_at=_dt(row["updated_at"]),
        )

    def _run_from_row(self, row: sqlite3.Row, with_steps: bool = True) -> WorkflowRun:
        steps: list[WorkflowStep] = []
        if with_steps:
            steps = [
                WorkflowStep(
                    name=s["name"],
                    status=StepStatus(s["status"]),
                    timestamp=_dt(s["timestamp"]),
                    detail=s["detail"],
                )
                for s in self._fetchall(
                    "SELECT name, status, timestamp, detail FROM workflow_steps WHERE run_id = ? ORDER BY id",
                    row["id"],
                )
            ]
        return WorkflowRun(
            id=row["id"],
            subject_id=row["subject_id"],
            correlation_id=row["correlation_id"],
            owner_email=row["owner_email"],
            status=RunStatus(row["status"]),
            error=row["error"],
            steps=steps,
            created_at=_dt(row["created_at"]),
            updated_at=_dt(row["updated_at"]),
        )

    # ------------------------------------------------------------------
    # JobStore API
    async def insert_job(self, record: CronJobRecord) -> CronJobRecord:
        try:
            await asyncio.to_thread(
                self._execute,
                f"INSERT INTO cron_jobs ({_JOB_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                record.id,
                record.external_job_id,
                record.subject_id,
                record.owner_email,
                record.schedule_id,
                _ts(record.scheduled_time),
                record.day_of_month,
                int(record.is_repeating),
                record.status.value,
                record.idempotency_key,
                record.error,
                _ts(record.created_at),
                _ts(record.updated_at),
            )
        except sqlite3.IntegrityError as exc:
            raise DuplicateJobError(record.idempotency_key) from exc
        return record

    async def get_job(self, job_id: str) -> CronJobRecord | None:
        row = await asyncio.to_thread(
            self._fetchone, f"SELECT {_JOB_COLUMNS} FROM cron_jobs WHERE id = ?", job_id
        )
        return self._job_from_row(row) if row else None

    async def query_by_external_job_id(
        self, external_job_id: str
    ) -> CronJobRecord | None:
        row = await asyncio.to_thread(
            self._fetchone,
            f"SELECT {_JOB_COLUMNS} FROM cron_jobs WHERE external_job_id = ?",
            external_job_id,
        )
        return self._job_from_row(row) if row else None

    async def patch_status(
        self,
        job_id: str,
        status: JobStatus,
        *,
        expected: Optional[Iterable[JobStatus]] = None,
        error: Optional[str] = None,
    ) -> bool:
        query = "UPDATE cron_jobs SET status = ?, error = ?, updated_at = ? WHERE id = ?"
        params: list[Any] = [status.value, error, _ts(utcnow()), job_id]
        if expected is not None:
            values = [JobStatus(s).value for s in expected]
            if not values:
                return False
            query += f" AND status IN ({', '.join('?' for _ in values)})"
            params.extend(values)
        updated = await asyncio.to_thread(self._execute, query, *params)
        return updated > 0

    async def query_by_subject(
        self, subject_id: str, status: Optional[JobStatus] = None
    ) -> list[CronJobRecord]:
        if status is None:
            rows = await asyncio.to_thread(
                self._fetchall,
                f"SELECT {_JOB_COLUMNS} FROM cron_jobs WHERE subject_id = ? ORDER BY created_at, rowid",
                subject_id,
            )
        else:
            rows = await asyncio.to_thread(
                self._fetchall,
                f"SELECT {_JOB_COLUMNS} FROM cron_jobs WHERE subject_id = ? AND status = ? ORDER BY created_at, rowid",
                subject_id,
                status.value,
            )
        return [self._job_from_row(r) for r in rows]

    async def query_scheduled_before(self, time: datetime) -> list[CronJobRecord]:
        rows = await asyncio.to_thread(
            self._fetchall,
            f"SELECT {_JOB_COLUMNS} FROM cron_jobs WHERE status = ? AND scheduled_time <= ? ORDER BY scheduled_time",
            JobStatus.SCHEDULED.value,
            _ts(time),
        )
        return [self._job_from_row(r) for r in rows]

    async def query_executing_before(self, time: datetime) -> list[CronJobRecord]:
        rows = await asyncio.to_thread(
            self._fetchall,
            f"SELECT {_JOB_COLUMNS} FROM cron_jobs WHERE status = ? AND updated_at <= ? ORDER BY updated_at",
            JobStatus.EXECUTING.value,
            _ts(time),
        )
        return [self._job_from_row(r) for r in rows]

    async def latest_schedule_id(self, subject_id: str) -> str | None:
        row = await asyncio.to_thread(
            self._fetchone,
            "SELECT schedule_id FROM cron_jobs WHERE subject_id = ? ORDER BY created_at DESC, rowid DESC LIMIT 1",
            subject_id,
        )
        return row["schedule_id"] if row else None

    async def query_upcoming(
        self, now: datetime, *, owner_email: Optional[str] = None, limit: int = 50
    ) -> list[CronJobRecord]:
        limit = min(max(limit, 1), MAX_UPCOMING_LIMIT)
        query = f"SELECT {_JOB_COLUMNS} FROM cron_jobs WHERE status = ? AND scheduled_time >= ?"
        params: list[Any] = [JobStatus.SCHEDULED.value, _ts(now)]
        if owner_email is not None:
            query += " AND owner_email = ?"
            params.append(owner_email)
        query += " ORDER BY scheduled_time LIMIT ?"
        params.append(limit)
        rows = await asyncio.to_thread(self._fetchall, query, *params)
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
        statements = [
            (
                f"INSERT INTO workflow_runs ({_RUN_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    run.id,
                    run.subject_id,
                    run.correlation_id,
                    run.owner_email,
                    run.status.value,
                    run.error,
                    _ts(run.created_at),
                    _ts(run.updated_at),
                ),
            )
        ]
        statements.extend(self._step_insert(run.id, step) for step in run.steps)
        try:
            await asyncio.to_thread(self._execute_all, statements)
        except sqlite3.IntegrityError as exc:
            existing = await self.find_active_run(run.subject_id, run.correlation_id or "")
            raise DuplicateRunError(
                run.subject_id, run.correlation_id or "", existing.id if existing else None
            ) from exc
        return run

    @staticmethod
    def _step_insert(run_id: str, step: WorkflowStep) -> tuple[str, tuple]:
        return (
            "INSERT INTO workflow_steps (run_id, name, status, timestamp, detail) VALUES (?, ?, ?, ?, ?)",
            (run_id, step.name, step.status.value, _ts(step.timestamp), step.detail),
        )

    async def get_run(self, run_id: str) -> WorkflowRun | None:
        row = await asyncio.to_thread(
            self._fetchone, f"SELECT {_RUN_COLUMNS} FROM workflow_runs WHERE id = ?", run_id
        )
        if not row:
            return None
        return await asyncio.to_thread(self._run_from_row, row)

    async def append_step(
        self,
        run_id: str,
        step: WorkflowStep,
        status: Optional[RunStatus] = None,
        error: Optional[str] = None,
    ) -> None:
        await asyncio.to_thread(
            self._execute_all,
            [
                self._step_insert(run_id, step),
                (
                    "UPDATE workflow_runs SET status = COALESCE(?, status), error = COALESCE(?, error), updated_at = ? WHERE id = ?",
                    (status.value if status else None, error, _ts(utcnow()), run_id),
                ),
            ],
        )

    async def set_status(
        self, run_id: str, status: RunStatus, error: Optional[str] = None
    ) -> None:
        await asyncio.to_thread(
            self._execute,
            "UPDATE workflow_runs SET status = ?, error = COALESCE(?, error), updated_at = ? WHERE id = ?",
            status.value,
            error,
            _ts(utcnow()),
            run_id,
        )

    async def list_runs_for_subject(
        self, subject_id: str, limit: int = 25
    ) -> list[WorkflowRun]:
        rows = await asyncio.to_thread(
            self._fetchall,
            f"SELECT {_RUN_COLUMNS} FROM workflow_runs WHERE subject_id = ? ORDER BY created_at DESC LIMIT ?",
            subject_id,
            max(limit, 1),
        )
        return [await asyncio.to_thread(self._run_from_row, r) for r in rows]

    async def list_recent_runs(
        self, owner_email: Optional[str] = None, limit: int = 25
    ) -> list[WorkflowRun]:
        limit = min(max(limit, 1), MAX_RECENT_RUNS_LIMIT)
        if owner_email is None:
            rows = await asyncio.to_thread(
                self._fetchall,
                f"SELECT {_RUN_COLUMNS} FROM workflow_runs ORDER BY created_at DESC LIMIT ?",
                limit,
            )
        else:
            rows = await asyncio.to_thread(
                self._fetchall,
                f"SELECT {_RUN_COLUMNS} FROM workflow_runs WHERE owner_email = ? ORDER BY created_at DESC LIMIT ?",
                owner_email,
                limit,
            )
        return [await asyncio.to_thread(self._run_from_row, r) for r in rows]

    async def find_active_run(
        self, subject_id: str, correlation_id: str
    ) -> WorkflowRun | None:
        row = await asyncio.to_thread(
            self._fetchone,
            f"SELECT {_RUN_COLUMNS} FROM workflow_runs WHERE subject_id = ? AND correlation_id = ? AND status NOT IN (?, ?)",
            subject_id,
            correlation_id,
            *_TERMINAL_RUN_STATUSES,
        )
        if not row:
            return None
        return await asyncio.to_thread(self._run_from_row, row)
