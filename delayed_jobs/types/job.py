"""
Job-related type definitions for internal use.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING
from uuid import UUID

from pydantic import BaseModel

from delayed_jobs.constants import DEFAULT_PRIORITY

if TYPE_CHECKING:
    from delayed_jobs.db.models import DelayedJob


@dataclass(frozen=True)
class HandlerConfig:
    """
    Registration metadata for a handler.

    queue_name is mandatory and binds jobs to exactly one handler.
    priority is the default used when jobs are enqueued without one.
    """

    queue_name: str
    priority: int = DEFAULT_PRIORITY
    description: str = ""


@dataclass(frozen=True)
class LeasedJob:
    """
    A job this worker holds a lease on.

    `version` is the row version after the lease was taken; every outcome
    write must present it.
    """

    job_id: UUID
    queue_name: str
    actor_id: str
    attempts: int
    version: int
    priority: int
    run_at: datetime

    @classmethod
    def from_job(cls, job: "DelayedJob") -> "LeasedJob":
        """Build the lease view of a job that was just locked at its read version."""
        return cls(
            job_id=job.id,
            queue_name=job.queue_name,
            actor_id=job.actor_id,
            attempts=job.attempts,
            version=job.version + 1,
            priority=job.priority,
            run_at=job.run_at,
        )

    @property
    def attempt_number(self) -> int:
        """1-based number of the attempt being executed."""
        return self.attempts + 1


class JobStats(BaseModel):
    """
    Job counts per lifecycle state.
    Used by operational tooling and the queue depth gauge.
    """

    pending: int = 0
    leased: int = 0
    succeeded: int = 0
    failed: int = 0

    @property
    def incomplete(self) -> int:
        """Jobs not yet in a terminal state."""
        return self.pending + self.leased

    @property
    def total(self) -> int:
        return self.pending + self.leased + self.succeeded + self.failed
