"""
Application constants.
Centralized location for all constant values used across the application.
"""

from enum import StrEnum


class JobState(StrEnum):
    """
    Job lifecycle states, derived from the locked/complete flags.

    State transitions:
    - PENDING -> LEASED (version-checked lock)
    - LEASED -> PENDING (retry, or lease reclaimed after timeout)
    - LEASED -> COMPLETE_SUCCESS (handler returned)
    - LEASED -> COMPLETE_FAILURE (permanent failure, unknown queue, attempts exhausted)
    """

    PENDING = "pending"
    LEASED = "leased"
    COMPLETE_SUCCESS = "complete_success"
    COMPLETE_FAILURE = "complete_failure"


class JobOutcome(StrEnum):
    """Outcome of a single dispatch attempt."""

    SUCCEEDED = "succeeded"
    RETRY = "retry"
    FAILED = "failed"
    LEASE_LOST = "lease_lost"


TABLE_NAME = "delayed_jobs"

# Default values
DEFAULT_PRIORITY = 5
QUEUE_NAME_MAX_LENGTH = 100
ACTOR_ID_MAX_LENGTH = 36
LAST_ERROR_TRACEBACK_LIMIT = 20

# Failure reasons recorded by the dispatcher
UNKNOWN_QUEUE_REASON = "unknown queue: {queue_name}"
MAX_ATTEMPTS_REASON = "max attempts exceeded"

# Metrics names
METRIC_QUEUE_DEPTH = "delayed_job_queue_depth"
METRIC_JOBS_ENQUEUED = "delayed_jobs_enqueued_total"
METRIC_JOBS_FINISHED = "delayed_jobs_finished_total"
METRIC_JOB_DURATION = "delayed_job_duration_seconds"
METRIC_LEASE_ACQUIRED = "delayed_job_lease_acquired_total"
METRIC_LEASE_CONFLICT = "delayed_job_lease_conflict_total"
METRIC_LEASE_RECLAIMED = "delayed_job_lease_reclaimed_total"

# Trace span names
SPAN_ENQUEUE_JOB = "enqueue_job"
SPAN_EXECUTE_JOB = "execute_job"
