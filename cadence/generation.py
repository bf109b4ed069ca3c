"""Manually triggered, tracked generation for a single subject."""

from __future__ import annotations

import logging

from .contracts import RunStatus, StepStatus, Subject, WorkflowRun
from .errors import ConfigurationError, DuplicateRunError, NotFoundError, ValidationError
from .tracker import WorkflowRunTracker
from .trigger import ExternalTriggerClient

logger = logging.getLogger(__name__)


async def trigger_generation(
    subject: Subject,
    client: ExternalTriggerClient,
    tracker: WorkflowRunTracker,
) -> WorkflowRun:
    """Start a run for ``subject`` and fire the external trigger.

    A non-terminal run for the same correlation id is returned as is instead
    of starting a second one. Failures are recorded on the run rather than
    raised; inspect ``run.status``.
    """
    correlation_id = subject.source_reference

    if correlation_id:
        active = await tracker.find_active_run(subject.id, correlation_id)
        if active is not None:
            logger.info(
                f"Run {active.id} already active for subject_id={subject.id}; not starting another"
            )
            return active

    try:
        run_id = await tracker.start(
            subject.id, correlation_id=correlation_id, owner_email=subject.owner_email
        )
    except DuplicateRunError as e:
        logger.info(f"Lost race starting run for subject_id={subject.id}: {e}")
        active = await tracker.find_active_run(subject.id, e.correlation_id)
        if active is None:
            raise
        return active

    if not correlation_id:
        await tracker.fail(run_id, str(ValidationError("No response ID found for client")))
        return await _load(tracker, run_id)

    await tracker.append_step(
        run_id, "trigger", StepStatus.RUNNING, new_status=RunStatus.GENERATING
    )
    try:
        result = await client.trigger(
            correlation_id, subject.owner_email, subject.id, base_url=subject.app_url
        )
    except ConfigurationError as e:
        await tracker.fail(run_id, str(e))
        return await _load(tracker, run_id)
    except Exception as e:
        logger.exception(f"Unexpected error triggering generation for run {run_id}")
        await tracker.fail(run_id, str(e) or type(e).__name__)
        return await _load(tracker, run_id)

    if result.success:
        await tracker.append_step(
            run_id, "trigger", StepStatus.SUCCESS, detail=result.endpoint
        )
        await tracker.complete(run_id)
    else:
        await tracker.fail(run_id, result.error or "Generation failed")
    return await _load(tracker, run_id)


async def _load(tracker: WorkflowRunTracker, run_id: str) -> WorkflowRun:
    run = await tracker.get_run(run_id)
    if run is None:
        raise NotFoundError("Workflow run", run_id)
    return run
