"""Establishes and extends the per-subject job chain."""

from __future__ import annotations

import asyncio
import logging
import uuid
import weakref
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Optional
from zoneinfo import ZoneInfo

from .config import ScheduleConfig
from .constants import (
    ARM_NEXT_OCCURRENCE_HANDLER,
    DEFAULT_CLAIM_TIMEOUT,
    DEFAULT_UPCOMING_LIMIT,
    EXECUTE_JOB_HANDLER,
)
from .contracts import (
    CronJobRecord,
    JobStatus,
    ScheduleResult,
    Subject,
    new_external_job_id,
)
from .errors import DuplicateJobError, NotFoundError
from .executors import BaseDelayedExecutor
from .persistence import JobStore
from .recurrence import idempotency_key, next_occurrence
from .subjects import SubjectDirectory
from .utils.clock import ensure_aware, utcnow

logger = logging.getLogger(__name__)


class ScheduleOrchestrator:
    """Builds a subject's schedule and arms the timers that drive it.

    A schedule is two anchor jobs (a one-time job ``first_offset_days`` after
    the base time, then a repeating job ``second_offset_days`` after that)
    followed by one repeating job per month on the second anchor's day.
    Every job carries the ``schedule_id`` of the call that established the
    chain and an idempotency key unique per chain and month, so the reactive
    re-arm and the eager backstop can never both create the same successor.
    """

    def __init__(
        self,
        store: JobStore,
        executor: BaseDelayedExecutor,
        subjects: SubjectDirectory,
        config: Optional[ScheduleConfig] = None,
        clock: Callable[[], datetime] = utcnow,
        claim_timeout: float = DEFAULT_CLAIM_TIMEOUT,
    ) -> None:
        self._store = store
        self._executor = executor
        self._subjects = subjects
        self.config = config or ScheduleConfig()
        self._tz = (
            timezone.utc
            if self.config.timezone.upper() == "UTC"
            else ZoneInfo(self.config.timezone)
        )
        self._clock = clock
        self._claim_timeout = timedelta(seconds=claim_timeout)
        # Entries vanish once no establish_schedule call holds or awaits the lock
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = (
            weakref.WeakValueDictionary()
        )
        executor.register(ARM_NEXT_OCCURRENCE_HANDLER, self.handle_backstop)

    def _local(self, value: datetime) -> datetime:
        return ensure_aware(value).astimezone(self._tz)

    def _lock_for(self, subject_id: str) -> asyncio.Lock:
        lock = self._locks.get(subject_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[subject_id] = lock
        return lock

    @staticmethod
    def _execute_payload(job: CronJobRecord) -> Dict[str, Any]:
        return {
            "job_id": job.external_job_id,
            "subject_id": job.subject_id,
            "scheduled_time": job.scheduled_time.isoformat(),
            "day_of_month": job.day_of_month,
            "is_repeating": job.is_repeating,
        }

    # ------------------------------------------------------------------
    async def establish_schedule(
        self, subject_id: str, base_time: Optional[datetime] = None
    ) -> ScheduleResult:
        """Cancel the subject's pending jobs and create a fresh schedule.

        Raises:
            NotFoundError: If the subject does not exist.
        """
        subject = await self._subjects.get_subject(subject_id)
        if subject is None:
            raise NotFoundError("Subject", subject_id)
        if not await self._subjects.is_scheduling_enabled(subject_id):
            logger.info(f"Scheduling disabled for subject_id={subject_id}; nothing armed")
            return ScheduleResult()

        async with self._lock_for(subject_id):
            base = ensure_aware(base_time or self._clock())
            cancelled = await self._store.cancel_scheduled_for_subject(subject_id)
            if cancelled:
                logger.info(
                    f"Cancelled {cancelled} scheduled job(s) for subject_id={subject_id}"
                )

            schedule_id = str(uuid.uuid4())
            first_time = self._local(base + timedelta(days=self.config.first_offset_days))
            first = await self._create_job(
                subject, schedule_id, first_time, first_time.day, is_repeating=False
            )
            second_time = self._local(
                first_time + timedelta(days=self.config.second_offset_days)
            )
            second = await self._create_job(
                subject, schedule_id, second_time, second_time.day, is_repeating=True
            )

            for job in (first, second):
                await self.arm_job(job)

        logger.info(
            f"Scheduled 2 jobs for subject_id={subject_id}: first on day {first.day_of_month}, "
            f"recurring on day {second.day_of_month} (schedule_id={schedule_id})"
        )
        return ScheduleResult(
            scheduled_count=2,
            schedule_id=schedule_id,
            job_ids=[first.external_job_id, second.external_job_id],
        )

    async def _create_job(
        self,
        subject: Subject,
        schedule_id: str,
        scheduled_time: datetime,
        day_of_month: int,
        is_repeating: bool,
    ) -> CronJobRecord:
        record = CronJobRecord(
            external_job_id=new_external_job_id(subject.id, scheduled_time),
            subject_id=subject.id,
            owner_email=subject.owner_email,
            schedule_id=schedule_id,
            scheduled_time=scheduled_time,
            day_of_month=day_of_month,
            is_repeating=is_repeating,
            idempotency_key=idempotency_key(schedule_id, day_of_month, scheduled_time),
        )
        return await self._store.insert_job(record)

    async def arm_job(self, job: CronJobRecord) -> None:
        """Arm the execution timer and, for repeating jobs, the eager backstop."""
        now = self._clock()
        await self._executor.arm_after(
            job.scheduled_time - now, EXECUTE_JOB_HANDLER, self._execute_payload(job)
        )

        if not (job.is_repeating and self.config.eager_backstop):
            return
        backstop_at = next_occurrence(self._local(job.scheduled_time), job.day_of_month)
        if backstop_at <= now:
            return
        await self._executor.arm_after(
            backstop_at - now,
            ARM_NEXT_OCCURRENCE_HANDLER,
            {
                "job_id": job.external_job_id,
                "subject_id": job.subject_id,
                "schedule_id": job.schedule_id,
                "day_of_month": job.day_of_month,
                "due_at": backstop_at.isoformat(),
            },
        )

    # ------------------------------------------------------------------
    async def arm_next_occurrence(self, job: CronJobRecord) -> CronJobRecord | None:
        """Create and arm the successor of a repeating job (reactive re-arm).

        Returns None when the chain was superseded, scheduling is disabled, or
        the successor already exists.
        """
        if not await self._chain_is_live(job):
            return None
        target = next_occurrence(self._local(job.scheduled_time), job.day_of_month)
        return await self._create_successor(job, target)

    async def handle_backstop(self, payload: Dict[str, Any]) -> CronJobRecord | None:
        """Executor handler for the eager backstop armed alongside repeating jobs.

        Creates the job for the month after ``due_at`` unless the originating
        job was cancelled or its chain replaced.
        """
        origin = await self._store.query_by_external_job_id(payload["job_id"])
        if origin is None or not origin.is_repeating:
            logger.info(
                f"Backstop origin {payload['job_id']} not found or not repeating; skipping"
            )
            return None
        if origin.status == JobStatus.CANCELLED:
            logger.info(f"Backstop origin {origin.external_job_id} was cancelled; skipping")
            return None
        if not await self._chain_is_live(origin):
            return None

        due_at = self._local(datetime.fromisoformat(payload["due_at"]))
        target = next_occurrence(due_at, origin.day_of_month)
        return await self._create_successor(origin, target)

    async def _chain_is_live(self, job: CronJobRecord) -> bool:
        if not await self._subjects.is_scheduling_enabled(job.subject_id):
            logger.info(
                f"Scheduling disabled for subject_id={job.subject_id}; not extending chain"
            )
            return False
        latest = await self._store.latest_schedule_id(job.subject_id)
        if latest is not None and latest != job.schedule_id:
            logger.info(
                f"Schedule {job.schedule_id} superseded by {latest} "
                f"for subject_id={job.subject_id}; not extending chain"
            )
            return False
        return True

    async def _create_successor(
        self, origin: CronJobRecord, target: datetime
    ) -> CronJobRecord | None:
        record = CronJobRecord(
            external_job_id=new_external_job_id(origin.subject_id, target),
            subject_id=origin.subject_id,
            owner_email=origin.owner_email,
            schedule_id=origin.schedule_id,
            scheduled_time=target,
            day_of_month=origin.day_of_month,
            is_repeating=True,
            idempotency_key=idempotency_key(origin.schedule_id, origin.day_of_month, target),
        )
        try:
            await self._store.insert_job(record)
        except DuplicateJobError:
            logger.debug(
                f"Successor {record.idempotency_key} already exists for subject_id={origin.subject_id}"
            )
            return None

        await self.arm_job(record)
        logger.info(
            f"Scheduled next repeating job {record.external_job_id} for "
            f"subject_id={origin.subject_id} on day {origin.day_of_month}"
        )
        return record

    # ------------------------------------------------------------------
    async def reconcile(self, now: Optional[datetime] = None) -> int:
        """Re-arm ``scheduled`` jobs whose time has passed.

        Covers triggers lost with a non-durable executor. Firing a job twice
        is harmless because execution claims the job before running it.

        Jobs left ``executing`` for longer than the claim timeout belong to a
        worker that died mid-run; they are released back to ``scheduled``
        first so they are re-armed with the rest.
        """
        now = now or self._clock()
        released = await self._release_expired_claims(now)
        overdue = await self._store.query_scheduled_before(now)
        for job in overdue:
            await self._executor.arm_after(
                timedelta(0), EXECUTE_JOB_HANDLER, self._execute_payload(job)
            )
        if overdue:
            logger.warning(
                f"Re-armed {len(overdue)} overdue scheduled job(s), "
                f"{released} released from an expired claim"
            )
        return len(overdue)

    async def _release_expired_claims(self, now: datetime) -> int:
        released = 0
        for job in await self._store.query_executing_before(now - self._claim_timeout):
            if await self._store.patch_status(
                job.id, JobStatus.SCHEDULED, expected=[JobStatus.EXECUTING]
            ):
                logger.warning(
                    f"Claim on job {job.external_job_id} expired "
                    f"(executing since {job.updated_at.isoformat()}); releasing it"
                )
                released += 1
        return released

    async def list_jobs(self, subject_id: str) -> list[CronJobRecord]:
        return await self._store.query_by_subject(subject_id)

    async def upcoming(
        self, owner_email: Optional[str] = None, limit: int = DEFAULT_UPCOMING_LIMIT
    ) -> list[CronJobRecord]:
        return await self._store.query_upcoming(
            self._clock(), owner_email=owner_email, limit=limit
        )
