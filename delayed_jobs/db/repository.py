"""
Job repository for database operations.
Implements the core data access patterns for the delayed job queue.
"""

import logging
from datetime import datetime, timedelta
from typing import Sequence
from uuid import UUID

from sqlalchemy import and_, case, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from delayed_jobs.constants import (
    ACTOR_ID_MAX_LENGTH,
    DEFAULT_PRIORITY,
    QUEUE_NAME_MAX_LENGTH,
    JobState,
)
from delayed_jobs.db.models import DelayedJob, utcnow
from delayed_jobs.types.job import JobStats

logger = logging.getLogger(__name__)


class DelayedJobRepository:
    """
    Repository for delayed job database operations.

    Every write is a single UPDATE guarded by the row's `version`:
    - try_lock leases a job only if nobody touched it since it was read
    - outcome writes succeed only while the caller's lease is still current
    - reap_expired_locks returns abandoned leases to the pending pool

    Writes return False (and change nothing) when the version is stale.
    The caller owns the transaction and must commit.
    """

    def __init__(self, session: AsyncSession):
        """
        Initialize the repository with a database session.

        Args:
            session: The async database session.
        """
        self._session = session

    async def enqueue(
        self,
        queue_name: str,
        actor_id: str,
        priority: int = DEFAULT_PRIORITY,
        run_at: datetime | None = None,
    ) -> DelayedJob:
        """
        Create a new pending job.

        No deduplication is performed: identical calls create independent jobs.

        Args:
            queue_name: Name of the handler that must process the job.
            actor_id: Opaque reference to the domain entity.
            priority: Higher values are selected first.
            run_at: Earliest execution time. Defaults to now.

        Returns:
            The created job.

        Raises:
            ValueError: If queue_name or actor_id is empty or too long.
        """
        if not queue_name or len(queue_name) > QUEUE_NAME_MAX_LENGTH:
            raise ValueError(
                f"queue_name must be 1-{QUEUE_NAME_MAX_LENGTH} characters: {queue_name!r}"
            )
        if not actor_id or len(actor_id) > ACTOR_ID_MAX_LENGTH:
            raise ValueError(
                f"actor_id must be 1-{ACTOR_ID_MAX_LENGTH} characters: {actor_id!r}"
            )

        now = utcnow()
        job = DelayedJob(
            queue_name=queue_name,
            actor_id=actor_id,
            priority=priority,
            run_at=run_at or now,
            attempts=0,
            locked=False,
            complete=False,
            completed_with_failure=False,
            created=now,
            updated=now,
            version=0,
        )
        self._session.add(job)
        await self._session.flush()

        logger.info(
            "Enqueued job",
            extra={
                "job_id": str(job.id),
                "queue_name": queue_name,
                "actor_id": actor_id,
                "priority": priority,
                "run_at": job.run_at.isoformat(),
            },
        )
        return job

    async def get_job(self, job_id: UUID) -> DelayedJob | None:
        """
        Get a job by ID.

        Args:
            job_id: The job UUID.

        Returns:
            The job or None if not found.
        """
        stmt = (
            select(DelayedJob)
            .where(DelayedJob.id == job_id)
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def find_ready_to_run(self, limit: int) -> Sequence[DelayedJob]:
        """
        Find eligible jobs in dispatch order.

        Order is priority DESC, run_at ASC, created ASC.

        Args:
            limit: Maximum number of jobs to return.

        Returns:
            Jobs that are not complete, not locked and due.
        """
        if limit <= 0:
            return []

        stmt = (
            select(DelayedJob)
            .where(
                and_(
                    DelayedJob.complete.is_(False),
                    DelayedJob.locked.is_(False),
                    DelayedJob.run_at <= utcnow(),
                )
            )
            .order_by(
                DelayedJob.priority.desc(),
                DelayedJob.run_at.asc(),
                DelayedJob.created.asc(),
            )
            .limit(limit)
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        return result.scalars().all()

    async def try_lock(self, job_id: UUID, expected_version: int) -> bool:
        """
        Lease a job if its version still matches.

        This is the only concurrency-control primitive: of any number of
        concurrent callers presenting the same version, exactly one wins.

        Args:
            job_id: The job UUID.
            expected_version: Version observed when the job was read.

        Returns:
            True if the lease was acquired, False on a lost race.
        """
        now = utcnow()
        stmt = (
            update(DelayedJob)
            .where(
                and_(
                    DelayedJob.id == job_id,
                    DelayedJob.version == expected_version,
                    DelayedJob.locked.is_(False),
                    DelayedJob.complete.is_(False),
                )
            )
            .values(
                locked=True,
                locked_at=now,
                updated=now,
                version=DelayedJob.version + 1,
            )
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        return result.rowcount == 1

    async def record_success(self, job_id: UUID, expected_version: int) -> bool:
        """
        Complete a leased job successfully.

        Args:
            job_id: The job UUID.
            expected_version: Version held by the lease.

        Returns:
            True if written, False if the lease is no longer current.
        """
        now = utcnow()
        return await self._write_outcome(
            job_id,
            expected_version,
            locked=False,
            locked_at=None,
            complete=True,
            completed_at=now,
            completed_with_failure=False,
            attempts=DelayedJob.attempts + 1,
            updated=now,
        )

    async def record_permanent_failure(
        self,
        job_id: UUID,
        expected_version: int,
        reason: str,
        error: str | None = None,
    ) -> bool:
        """
        Complete a leased job with a terminal failure.

        Args:
            job_id: The job UUID.
            expected_version: Version held by the lease.
            reason: Failure reason for operator inspection.
            error: Optional detail stored in last_error.

        Returns:
            True if written, False if the lease is no longer current.
        """
        now = utcnow()
        values = {
            "locked": False,
            "locked_at": None,
            "complete": True,
            "completed_at": now,
            "completed_with_failure": True,
            "failure_reason": reason,
            "failed_at": now,
            "attempts": DelayedJob.attempts + 1,
            "updated": now,
        }
        if error is not None:
            values["last_error"] = error
        return await self._write_outcome(job_id, expected_version, **values)

    async def record_retry(
        self,
        job_id: UUID,
        expected_version: int,
        error: str,
        next_run_at: datetime,
    ) -> bool:
        """
        Release a leased job for another attempt after a transient failure.

        failed_at is left untouched; it is only set on permanent failure.

        Args:
            job_id: The job UUID.
            expected_version: Version held by the lease.
            error: Error detail stored in last_error.
            next_run_at: Earliest time of the next attempt.

        Returns:
            True if written, False if the lease is no longer current.
        """
        return await self._write_outcome(
            job_id,
            expected_version,
            locked=False,
            locked_at=None,
            attempts=DelayedJob.attempts + 1,
            last_error=error,
            run_at=next_run_at,
            updated=utcnow(),
        )

    async def _write_outcome(self, job_id: UUID, expected_version: int, **values) -> bool:
        stmt = (
            update(DelayedJob)
            .where(
                and_(
                    DelayedJob.id == job_id,
                    DelayedJob.version == expected_version,
                )
            )
            .values(version=DelayedJob.version + 1, **values)
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        written = result.rowcount == 1

        if not written:
            logger.warning(
                "Outcome not recorded, version is stale",
                extra={"job_id": str(job_id), "expected_version": expected_version},
            )

        return written

    async def reap_expired_locks(self, lease_timeout: timedelta) -> int:
        """
        Unlock jobs whose lease is older than the timeout.

        The abandoned execution counts as a failed attempt. Running this
        twice with nothing newly expired changes nothing the second time.

        Args:
            lease_timeout: How long a lease stays valid.

        Returns:
            Number of reclaimed jobs.
        """
        now = utcnow()
        stmt = (
            update(DelayedJob)
            .where(
                and_(
                    DelayedJob.locked.is_(True),
                    DelayedJob.complete.is_(False),
                    DelayedJob.locked_at < now - lease_timeout,
                )
            )
            .values(
                locked=False,
                locked_at=None,
                attempts=DelayedJob.attempts + 1,
                updated=now,
                version=DelayedJob.version + 1,
            )
            .execution_options(synchronize_session=False)
        )

        result = await self._session.execute(stmt)
        count = result.rowcount

        if count > 0:
            logger.info(
                f"Reclaimed {count} jobs with expired leases",
                extra={"lease_timeout_seconds": lease_timeout.total_seconds()},
            )

        return count

    async def find_by_actor_id(self, actor_id: str) -> Sequence[DelayedJob]:
        """Find all jobs for an actor, newest first."""
        stmt = (
            select(DelayedJob)
            .where(DelayedJob.actor_id == actor_id)
            .order_by(DelayedJob.created.desc())
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        return result.scalars().all()

    async def find_by_queue_name(self, queue_name: str) -> Sequence[DelayedJob]:
        """Find all jobs bound to a queue, in dispatch order."""
        stmt = (
            select(DelayedJob)
            .where(DelayedJob.queue_name == queue_name)
            .order_by(DelayedJob.priority.desc(), DelayedJob.run_at.asc())
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        return result.scalars().all()

    async def find_incomplete(self, limit: int = 100) -> Sequence[DelayedJob]:
        """
        Find jobs that have not reached a terminal state.

        Args:
            limit: Maximum number of jobs to return.

        Returns:
            Pending and leased jobs in dispatch order.
        """
        stmt = (
            select(DelayedJob)
            .where(DelayedJob.complete.is_(False))
            .order_by(DelayedJob.priority.desc(), DelayedJob.run_at.asc())
            .limit(limit)
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        return result.scalars().all()

    async def find_failed(self, limit: int = 100) -> Sequence[DelayedJob]:
        """
        Find permanently failed jobs, most recent failure first.

        Args:
            limit: Maximum number of jobs to return.

        Returns:
            Jobs completed with failure.
        """
        stmt = (
            select(DelayedJob)
            .where(DelayedJob.completed_with_failure.is_(True))
            .order_by(DelayedJob.failed_at.desc())
            .limit(limit)
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        return result.scalars().all()

    async def get_stats(self) -> JobStats:
        """
        Count jobs per lifecycle state.

        Returns:
            JobStats with pending, leased, succeeded and failed counts.
        """
        state = case(
            (
                and_(
                    DelayedJob.complete.is_(True),
                    DelayedJob.completed_with_failure.is_(True),
                ),
                JobState.COMPLETE_FAILURE.value,
            ),
            (DelayedJob.complete.is_(True), JobState.COMPLETE_SUCCESS.value),
            (DelayedJob.locked.is_(True), JobState.LEASED.value),
            else_=JobState.PENDING.value,
        ).label("state")

        stmt = select(state, func.count()).group_by(state)
        result = await self._session.execute(stmt)
        counts = {row[0]: row[1] for row in result.all()}

        return JobStats(
            pending=counts.get(JobState.PENDING.value, 0),
            leased=counts.get(JobState.LEASED.value, 0),
            succeeded=counts.get(JobState.COMPLETE_SUCCESS.value, 0),
            failed=counts.get(JobState.COMPLETE_FAILURE.value, 0),
        )
