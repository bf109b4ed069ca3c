"""Core data contracts for cadence jobs and workflow runs."""

from __future__ import annotations

import secrets
import uuid
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from .utils.clock import utcnow


class JobStatus(str, Enum):
    SCHEDULED = "scheduled"
    EXECUTING = "executing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED)


class RunStatus(str, Enum):
    QUEUED = "queued"
    STARTED = "started"
    GENERATING = "generating"
    STORING = "storing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (RunStatus.COMPLETED, RunStatus.FAILED)

    def can_advance_to(self, new: "RunStatus") -> bool:
        """Return ``True`` if ``new`` is reachable from this status.

        Staying put is allowed for non-terminal runs; ``failed`` is reachable
        from any non-terminal state; otherwise the move must go forward.
        """
        if self.is_terminal:
            return new == self
        if new == RunStatus.FAILED or new == self:
            return True
        return _RUN_ORDER.index(new) > _RUN_ORDER.index(self)


_RUN_ORDER = [
    RunStatus.QUEUED,
    RunStatus.STARTED,
    RunStatus.GENERATING,
    RunStatus.STORING,
    RunStatus.COMPLETED,
]


class StepStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCESS = "success"
    ERROR = "error"


def new_external_job_id(subject_id: str, scheduled_time: datetime) -> str:
    """Opaque identity carried in timer payloads."""
    millis = int(scheduled_time.timestamp() * 1000)
    return f"cron_{subject_id}_{millis}_{secrets.token_hex(3)}"


class Subject(BaseModel):
    """The client a schedule or run is about."""

    id: str
    owner_email: Optional[str] = None
    scheduling_enabled: bool = True
    source_reference: Optional[str] = None
    app_url: Optional[str] = None


class CronJobRecord(BaseModel):
    """One scheduled or historical trigger for a subject."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    external_job_id: str
    subject_id: str
    owner_email: Optional[str] = None
    schedule_id: str
    scheduled_time: datetime
    day_of_month: int = Field(ge=1, le=31)
    is_repeating: bool = False
    status: JobStatus = JobStatus.SCHEDULED
    idempotency_key: str
    error: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class WorkflowStep(BaseModel):
    """Immutable entry in a run's step log."""

    model_config = ConfigDict(frozen=True)

    name: str
    status: StepStatus
    timestamp: datetime = Field(default_factory=utcnow)
    detail: Optional[str] = None


class WorkflowRun(BaseModel):
    """One attempt to produce a generated artifact for a subject."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    subject_id: str
    correlation_id: Optional[str] = None
    owner_email: Optional[str] = None
    status: RunStatus = RunStatus.STARTED
    steps: List[WorkflowStep] = Field(default_factory=list)
    error: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal


class ArmedTrigger(BaseModel):
    """Envelope held by a delayed executor until it is due."""

    trigger_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    handler: str
    payload: Dict[str, Any] = Field(default_factory=dict)
    due_at: datetime
    armed_at: datetime = Field(default_factory=utcnow)

    def to_json(self) -> str:
        return self.model_dump_json()

    @classmethod
    def from_json(cls, data: str) -> "ArmedTrigger":
        return cls.model_validate_json(data)


class TriggerResult(BaseModel):
    """Outcome of an external generation trigger."""

    success: bool
    error: Optional[str] = None
    endpoint: Optional[str] = None


class ScheduleResult(BaseModel):
    """Outcome of establishing a subject's schedule."""

    scheduled_count: int = 0
    schedule_id: Optional[str] = None
    job_ids: List[str] = Field(default_factory=list)
