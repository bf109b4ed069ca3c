from datetime import datetime, timezone

import pytest
from pydantic import ValidationError

from cadence.contracts import (
    ArmedTrigger,
    CronJobRecord,
    JobStatus,
    RunStatus,
    StepStatus,
    WorkflowStep,
    new_external_job_id,
)


def test_run_status_moves_forward_or_fails():
    assert RunStatus.STARTED.can_advance_to(RunStatus.GENERATING)
    assert RunStatus.STARTED.can_advance_to(RunStatus.COMPLETED)
    assert RunStatus.GENERATING.can_advance_to(RunStatus.FAILED)
    assert RunStatus.STORING.can_advance_to(RunStatus.STORING)
    assert not RunStatus.STORING.can_advance_to(RunStatus.GENERATING)
    assert not RunStatus.COMPLETED.can_advance_to(RunStatus.FAILED)
    assert not RunStatus.FAILED.can_advance_to(RunStatus.STARTED)


def test_job_status_terminal_states():
    assert {s for s in JobStatus if s.is_terminal} == {
        JobStatus.COMPLETED,
        JobStatus.FAILED,
        JobStatus.CANCELLED,
    }


def test_external_job_id_format():
    when = datetime(2024, 1, 26, 9, tzinfo=timezone.utc)
    job_id = new_external_job_id("client-1", when)
    prefix, subject, millis, suffix = job_id.rsplit("_", 3)
    assert prefix == "cron"
    assert subject == "client-1"
    assert int(millis) == int(when.timestamp() * 1000)
    assert len(suffix) == 6
    assert job_id != new_external_job_id("client-1", when)


def test_day_of_month_is_validated():
    with pytest.raises(ValidationError):
        CronJobRecord(
            external_job_id="cron_x",
            subject_id="client-1",
            schedule_id="s",
            scheduled_time=datetime(2024, 1, 1, tzinfo=timezone.utc),
            day_of_month=32,
            idempotency_key="k",
        )


def test_steps_are_immutable():
    step = WorkflowStep(name="start", status=StepStatus.SUCCESS)
    with pytest.raises(ValidationError):
        step.status = StepStatus.ERROR


def test_armed_trigger_json_preserves_payload():
    trigger = ArmedTrigger(
        handler="execute_job",
        payload={"job_id": "cron_x", "is_repeating": True},
        due_at=datetime(2024, 3, 25, tzinfo=timezone.utc),
    )
    restored = ArmedTrigger.from_json(trigger.to_json())
    assert restored == trigger
