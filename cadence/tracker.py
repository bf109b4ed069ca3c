"""Append-only tracking of generation runs."""

from __future__ import annotations

import logging
from typing import Optional

from .constants import DEFAULT_RECENT_RUNS_LIMIT
from .contracts import RunStatus, StepStatus, WorkflowRun, WorkflowStep
from .errors import InvalidTransitionError, NotFoundError
from .persistence import RunStore

logger = logging.getLogger(__name__)


class WorkflowRunTracker:
    """Record the lifecycle of a run as a growing step log.

    Steps are never replaced once appended. Status only moves forward
    (``queued`` to ``completed``) or to ``failed``, and terminal runs are
    read-only.
    """

    def __init__(self, store: RunStore) -> None:
        self._store = store

    async def start(
        self,
        subject_id: str,
        correlation_id: Optional[str] = None,
        owner_email: Optional[str] = None,
    ) -> str:
        """Create a ``started`` run with a single successful ``start`` step.

        Raises:
            DuplicateRunError: If a non-terminal run exists for the same
                subject and correlation id.
        """
        run = WorkflowRun(
            subject_id=subject_id,
            correlation_id=correlation_id,
            owner_email=owner_email,
            status=RunStatus.STARTED,
            steps=[WorkflowStep(name="start", status=StepStatus.SUCCESS)],
        )
        await self._store.insert_run(run)
        logger.info(
            f"Started run {run.id} for subject_id={subject_id} correlation_id={correlation_id}"
        )
        return run.id

    async def _require(self, run_id: str) -> WorkflowRun:
        run = await self._store.get_run(run_id)
        if run is None:
            raise NotFoundError("Workflow run", run_id)
        return run

    async def append_step(
        self,
        run_id: str,
        name: str,
        status: StepStatus,
        detail: Optional[str] = None,
        new_status: Optional[RunStatus] = None,
    ) -> WorkflowStep:
        run = await self._require(run_id)
        if run.is_terminal:
            raise InvalidTransitionError(run.status.value, (new_status or run.status).value)
        if new_status is not None and not run.status.can_advance_to(new_status):
            raise InvalidTransitionError(run.status.value, new_status.value)

        step = WorkflowStep(name=name, status=status, detail=detail)
        await self._store.append_step(run_id, step, status=new_status)
        logger.debug(f"Run {run_id}: step {name} {status.value}")
        return step

    async def complete(self, run_id: str) -> None:
        run = await self._require(run_id)
        if run.status == RunStatus.COMPLETED:
            return
        if not run.status.can_advance_to(RunStatus.COMPLETED):
            raise InvalidTransitionError(run.status.value, RunStatus.COMPLETED.value)
        await self._store.set_status(run_id, RunStatus.COMPLETED)
        logger.info(f"Run {run_id} completed")

    async def fail(self, run_id: str, error: str) -> None:
        run = await self._require(run_id)
        if run.is_terminal:
            raise InvalidTransitionError(run.status.value, RunStatus.FAILED.value)
        step = WorkflowStep(name="error", status=StepStatus.ERROR, detail=error)
        await self._store.append_step(run_id, step, status=RunStatus.FAILED, error=error)
        logger.error(f"Run {run_id} failed: {error}")

    async def get_run(self, run_id: str) -> WorkflowRun | None:
        return await self._store.get_run(run_id)

    async def list_runs(
        self, subject_id: str, limit: int = DEFAULT_RECENT_RUNS_LIMIT
    ) -> list[WorkflowRun]:
        return await self._store.list_runs_for_subject(subject_id, limit=limit)

    async def list_recent_runs(
        self, owner_email: Optional[str] = None, limit: int = DEFAULT_RECENT_RUNS_LIMIT
    ) -> list[WorkflowRun]:
        return await self._store.list_recent_runs(owner_email=owner_email, limit=limit)

    async def find_active_run(
        self, subject_id: str, correlation_id: str
    ) -> WorkflowRun | None:
        return await self._store.find_active_run(subject_id, correlation_id)
