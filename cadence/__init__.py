"""Cadence: recurring monthly jobs and tracked generation runs."""

from .contracts import CronJobRecord, JobStatus, RunStatus, StepStatus, Subject, WorkflowRun
from .executors import get_executor
from .orchestrator import ScheduleOrchestrator
from .persistence import get_repository
from .recurrence import next_occurrence
from .runtime import Cadence, build_cadence
from .tracker import WorkflowRunTracker

__version__ = "0.1.0"
__all__ = [
    "Cadence",
    "CronJobRecord",
    "JobStatus",
    "RunStatus",
    "ScheduleOrchestrator",
    "StepStatus",
    "Subject",
    "WorkflowRun",
    "WorkflowRunTracker",
    "build_cadence",
    "get_executor",
    "get_repository",
    "next_occurrence",
]
