"""Shared constants for cadence scheduling."""

FIRST_ANCHOR_OFFSET_DAYS = 25
SECOND_ANCHOR_OFFSET_DAYS = 30

EXECUTE_JOB_HANDLER = "execute_job"
ARM_NEXT_OCCURRENCE_HANDLER = "arm_next_occurrence"

DEFAULT_UPCOMING_LIMIT = 50
MAX_UPCOMING_LIMIT = 100
DEFAULT_RECENT_RUNS_LIMIT = 25
MAX_RECENT_RUNS_LIMIT = 100

ERROR_DETAIL_MAX_CHARS = 500

# Seconds a job may stay ``executing`` before reconcile assumes its worker died
DEFAULT_CLAIM_TIMEOUT = 900.0
