"""Runs a due cron job and re-arms its successor."""

from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable, Dict, Optional

from .config import RetryConfig
from .contracts import CronJobRecord, JobStatus
from .errors import ConfigurationError, ExternalCallError, NotFoundError, ValidationError
from .orchestrator import ScheduleOrchestrator
from .persistence import JobStore
from .subjects import SubjectDirectory
from .trigger import ExternalTriggerClient
from .utils.retry import retry_async

logger = logging.getLogger(__name__)


class JobExecutionHandler:
    """Handler for ``execute_job`` triggers.

    The job is claimed by moving it from ``scheduled`` to ``executing`` before
    the external call, so a trigger that fires twice runs the job once.
    """

    def __init__(
        self,
        store: JobStore,
        subjects: SubjectDirectory,
        client: ExternalTriggerClient,
        orchestrator: ScheduleOrchestrator,
        retry: Optional[RetryConfig] = None,
        sleep: Optional[Callable[[int], Awaitable[None]]] = None,
    ) -> None:
        self._store = store
        self._subjects = subjects
        self._client = client
        self._orchestrator = orchestrator
        self._retry = retry or RetryConfig()
        self._sleep = sleep

    async def __call__(self, payload: Dict[str, Any]) -> None:
        await self.handle(payload)

    async def handle(self, payload: Dict[str, Any]) -> None:
        job_id = payload["job_id"]
        job = await self._store.query_by_external_job_id(job_id)
        if job is None:
            logger.warning(str(NotFoundError("Cron job", job_id)))
            return

        if job.status != JobStatus.SCHEDULED:
            logger.info(f"Job {job_id} is {job.status.value}; skipping execution")
            return

        subject = await self._subjects.get_subject(job.subject_id)
        if subject is None:
            await self._finish(job, JobStatus.FAILED, "Client not found", JobStatus.SCHEDULED)
            return

        if not await self._subjects.is_scheduling_enabled(job.subject_id):
            logger.info(
                f"Scheduling disabled for subject_id={job.subject_id}; cancelling job {job_id}"
            )
            await self._finish(job, JobStatus.CANCELLED, None, JobStatus.SCHEDULED)
            return

        if not subject.source_reference:
            reason = str(ValidationError("No response ID found for client"))
            await self._finish(job, JobStatus.FAILED, reason, JobStatus.SCHEDULED)
            return

        claimed = await self._store.patch_status(
            job.id, JobStatus.EXECUTING, expected=[JobStatus.SCHEDULED]
        )
        if not claimed:
            logger.info(f"Job {job_id} was claimed elsewhere; skipping execution")
            return

        logger.info(f"Executing job {job_id} for subject_id={job.subject_id}")
        try:
            await retry_async(
                lambda: self._trigger_once(
                    subject.source_reference,
                    subject.owner_email,
                    subject.id,
                    subject.app_url,
                ),
                max_attempts=self._retry.max_attempts,
                retry_on=(ExternalCallError,),
                base=self._retry.base,
                jitter=self._retry.jitter,
                sleep=self._sleep,
            )
        except (ExternalCallError, ConfigurationError) as e:
            await self._finish(job, JobStatus.FAILED, str(e), JobStatus.EXECUTING)
            raise
        except Exception as e:
            logger.exception(f"Unexpected error executing job {job_id}")
            await self._finish(
                job, JobStatus.FAILED, str(e) or type(e).__name__, JobStatus.EXECUTING
            )
            raise

        await self._finish(job, JobStatus.COMPLETED, None, JobStatus.EXECUTING)

        if job.is_repeating:
            try:
                await self._orchestrator.arm_next_occurrence(job)
            except Exception:
                # The job itself succeeded; the backstop may still extend the chain.
                logger.exception(f"Failed to schedule the successor of job {job_id}")

    async def _trigger_once(
        self,
        correlation_id: str,
        subject_email: Optional[str],
        subject_id: str,
        base_url: Optional[str],
    ) -> None:
        result = await self._client.trigger(
            correlation_id, subject_email, subject_id, base_url=base_url
        )
        if not result.success:
            raise ExternalCallError(result.error or "Generation failed")

    async def _finish(
        self,
        job: CronJobRecord,
        status: JobStatus,
        error: Optional[str],
        expected: JobStatus,
    ) -> None:
        updated = await self._store.patch_status(
            job.id, status, expected=[expected], error=error
        )
        if not updated:
            logger.warning(
                f"Job {job.external_job_id} left {expected.value} before it could be marked {status.value}"
            )
        elif status == JobStatus.FAILED:
            logger.error(f"Job {job.external_job_id} failed: {error}")
        else:
            logger.info(f"Job {job.external_job_id} marked {status.value}")
