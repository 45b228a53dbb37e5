"""
Dispatcher process for executing delayed jobs.

The dispatcher polls the job table, leases eligible jobs with a
version-checked compare-and-set, runs the matching handler, and writes the
outcome back. Any number of dispatchers may poll the same table; the lease
CAS is the only coordination between them.
"""

import asyncio
import logging
import os
import signal
import time
import traceback
from collections.abc import Sequence
from datetime import datetime, timedelta

from delayed_jobs.config import get_settings
from delayed_jobs.constants import (
    LAST_ERROR_TRACEBACK_LIMIT,
    MAX_ATTEMPTS_REASON,
    SPAN_EXECUTE_JOB,
    UNKNOWN_QUEUE_REASON,
    JobOutcome,
)
from delayed_jobs.db import DelayedJob, close_db, get_session_context, init_db
from delayed_jobs.db.repository import DelayedJobRepository
from delayed_jobs.exceptions import JobFailure
from delayed_jobs.observability.logging import bind_context, setup_logging
from delayed_jobs.observability.metrics import get_metrics, setup_metrics
from delayed_jobs.observability.tracing import get_tracer
from delayed_jobs.types.job import LeasedJob
from delayed_jobs.worker.handlers import HandlerRegistry
from delayed_jobs.worker.retry import RetryPolicy

logger = logging.getLogger(__name__)


def format_error(exc: BaseException) -> str:
    """Render an exception with a truncated traceback for last_error."""
    return "".join(
        traceback.format_exception(exc, limit=LAST_ERROR_TRACEBACK_LIMIT)
    ).strip()


class Dispatcher:
    """
    Job dispatcher that polls for and executes delayed jobs.

    Each poll cycle:
    1. Reclaims leases older than the lease timeout
    2. Reads up to batch_size eligible jobs
    3. Waits for a free worker slot, then tries to lease the next candidate;
       a lost race releases the slot and is skipped silently
    4. Runs each leased job in its slot and records the outcome

    Handler errors never escape the dispatcher; they become store writes.
    A handler that hangs keeps its slot until the process restarts: there is
    no per-execution timeout, only the lease timeout seen by other workers.
    The attempt budget is only checked when a handler fails. A job that
    kills its worker every time is reclaimed by the reaper after each lease
    timeout, gaining one attempt per reclaim, and is never failed
    permanently on that account.

    Idle dispatchers sleep poll_interval between polls; notify() cuts the
    sleep short.
    """

    def __init__(
        self,
        registry: HandlerRegistry,
        worker_id: str | None = None,
        batch_size: int | None = None,
        concurrency: int | None = None,
        poll_interval: float | None = None,
        lease_timeout: timedelta | None = None,
        retry_policy: RetryPolicy | None = None,
    ):
        """
        Initialize the dispatcher.

        Args:
            registry: Handlers by queue name.
            worker_id: Unique worker identifier. Defaults to hostname + PID.
            batch_size: Number of candidates read per poll.
            concurrency: Number of handlers allowed to run at once.
            poll_interval: Seconds between polls when the queue is empty.
            lease_timeout: Age after which a lease is considered abandoned.
            retry_policy: Backoff and attempt budget for failed jobs.
        """
        settings = get_settings()

        self.registry = registry
        self.worker_id = worker_id or settings.worker_id or f"{os.uname().nodename}-{os.getpid()}"
        self.batch_size = batch_size or settings.worker_batch_size
        self.concurrency = concurrency or settings.worker_concurrency
        self.poll_interval = poll_interval or settings.worker_poll_interval_seconds
        self.lease_timeout = lease_timeout or timedelta(seconds=settings.lease_timeout_seconds)
        self.retry_policy = retry_policy or RetryPolicy.from_settings(settings)

        self._running = False
        self._slots = asyncio.Semaphore(self.concurrency)
        self._wakeup = asyncio.Event()
        self._metrics = get_metrics()

    async def start(self) -> None:
        """Poll until stopped."""
        logger.info(
            "Dispatcher starting",
            extra={
                "worker_id": self.worker_id,
                "batch_size": self.batch_size,
                "concurrency": self.concurrency,
                "queues": sorted(self.registry.queue_names),
            },
        )

        self._running = True

        while self._running:
            self._wakeup.clear()
            try:
                leased = await self.run_once()

                if leased == 0:
                    await self._wait_for_work()

            except Exception as e:
                logger.exception(
                    f"Error in dispatcher loop: {e}",
                    extra={"worker_id": self.worker_id},
                )
                await self._wait_for_work()

        logger.info("Dispatcher stopped", extra={"worker_id": self.worker_id})

    async def stop(self) -> None:
        """Stop after the current poll cycle."""
        logger.info("Dispatcher stopping", extra={"worker_id": self.worker_id})
        self._running = False
        self._wakeup.set()

    def notify(self) -> None:
        """Wake an idle dispatcher, e.g. right after a job was enqueued."""
        self._wakeup.set()

    async def _wait_for_work(self) -> None:
        try:
            await asyncio.wait_for(self._wakeup.wait(), timeout=self.poll_interval)
        except TimeoutError:
            # Nothing woke us; poll again
            return

    async def run_once(self) -> int:
        """
        Run a single poll cycle and wait for its executions.

        Returns:
            Number of jobs leased by this cycle.
        """
        await self.reap_expired_locks()
        candidates = await self.fetch_candidates()
        return await self.dispatch(candidates)

    async def reap_expired_locks(self) -> int:
        """Reclaim leases abandoned by crashed or stalled workers."""
        async with get_session_context() as session:
            repo = DelayedJobRepository(session)
            count = await repo.reap_expired_locks(self.lease_timeout)

        self._metrics.record_leases_reclaimed(count)
        return count

    async def fetch_candidates(self) -> Sequence[DelayedJob]:
        """Read up to batch_size eligible jobs in dispatch order."""
        async with get_session_context() as session:
            return await DelayedJobRepository(session).find_ready_to_run(self.batch_size)

    async def dispatch(self, candidates: Sequence[DelayedJob]) -> int:
        """
        Lease and run candidates, one worker slot per lease.

        A slot is taken before the lock, so a job is never leased while it
        waits for a slot and its lease only ages while the handler runs.

        Args:
            candidates: Jobs read by fetch_candidates.

        Returns:
            Number of jobs leased.
        """
        tasks: list[asyncio.Task] = []

        for job in candidates:
            await self._slots.acquire()
            try:
                leased = await self._try_lease(job)
            except Exception:
                self._slots.release()
                raise

            if leased is None:
                self._slots.release()
                continue

            tasks.append(asyncio.create_task(self._run_in_slot(leased)))

        if tasks:
            self._metrics.record_lease_acquired(self.worker_id, len(tasks))
            logger.info(
                f"Acquired {len(tasks)} jobs",
                extra={"worker_id": self.worker_id},
            )
            await asyncio.gather(*tasks, return_exceptions=True)

        return len(tasks)

    async def _try_lease(self, job: DelayedJob) -> LeasedJob | None:
        # One transaction per lock: a lease is committed before its handler runs
        async with get_session_context() as session:
            acquired = await DelayedJobRepository(session).try_lock(job.id, job.version)

        if not acquired:
            self._metrics.record_lease_conflict(self.worker_id)
            logger.debug(
                "Lease lost to another worker",
                extra={"job_id": str(job.id), "worker_id": self.worker_id},
            )
            return None

        return LeasedJob.from_job(job)

    async def _run_in_slot(self, job: LeasedJob) -> JobOutcome:
        try:
            return await self._execute_job(job)
        finally:
            self._slots.release()

    async def _execute_job(self, job: LeasedJob) -> JobOutcome:
        """
        Execute a leased job and persist the outcome.

        Args:
            job: The leased job.

        Returns:
            The recorded outcome, or LEASE_LOST if the write was rejected.
        """
        start_time = time.monotonic()
        log_extra = {
            "job_id": str(job.job_id),
            "queue_name": job.queue_name,
            "actor_id": job.actor_id,
            "attempt": job.attempt_number,
            "worker_id": self.worker_id,
        }

        handler = self.registry.lookup(job.queue_name)

        if handler is None:
            logger.error("No handler registered for queue", extra=log_extra)
            outcome = await self._record(
                job,
                JobOutcome.FAILED,
                reason=UNKNOWN_QUEUE_REASON.format(queue_name=job.queue_name),
            )
            self._finish(job, outcome, start_time)
            return outcome

        logger.info("Executing job", extra=log_extra)

        try:
            with get_tracer().start_as_current_span(SPAN_EXECUTE_JOB) as span:
                span.set_attribute("job_id", str(job.job_id))
                span.set_attribute("queue_name", job.queue_name)
                span.set_attribute("actor_id", job.actor_id)
                span.set_attribute("attempt", job.attempt_number)

                await handler.run(job.actor_id)

        except JobFailure as e:
            if e.permanent:
                logger.warning(
                    f"Job failed permanently: {e.message}",
                    extra=log_extra,
                )
                outcome = await self._record(
                    job, JobOutcome.FAILED, reason=e.message, error=format_error(e)
                )
            else:
                outcome = await self._retry_or_give_up(job, e, log_extra)

        except Exception as e:
            logger.exception("Handler raised unclassified exception", extra=log_extra)
            outcome = await self._retry_or_give_up(job, e, log_extra)

        else:
            logger.info(
                "Job completed successfully",
                extra={**log_extra, "duration": f"{time.monotonic() - start_time:.2f}s"},
            )
            outcome = await self._record(job, JobOutcome.SUCCEEDED)

        self._finish(job, outcome, start_time)
        return outcome

    async def _retry_or_give_up(
        self,
        job: LeasedJob,
        error: Exception,
        log_extra: dict,
    ) -> JobOutcome:
        if self.retry_policy.exhausted(job.attempt_number):
            logger.warning(
                f"Job failed after {job.attempt_number} attempts",
                extra={**log_extra, "error": str(error)},
            )
            return await self._record(
                job,
                JobOutcome.FAILED,
                reason=MAX_ATTEMPTS_REASON,
                error=format_error(error),
            )

        next_run_at = self.retry_policy.next_run_at(job.attempt_number)
        logger.info(
            "Job scheduled for retry",
            extra={
                **log_extra,
                "error": str(error),
                "next_run_at": next_run_at.isoformat(),
            },
        )
        return await self._record(
            job,
            JobOutcome.RETRY,
            error=format_error(error),
            next_run_at=next_run_at,
        )

    async def _record(
        self,
        job: LeasedJob,
        outcome: JobOutcome,
        reason: str | None = None,
        error: str | None = None,
        next_run_at: datetime | None = None,
    ) -> JobOutcome:
        """Write the outcome under the lease version; never raises."""
        try:
            async with get_session_context() as session:
                repo = DelayedJobRepository(session)

                if outcome is JobOutcome.SUCCEEDED:
                    written = await repo.record_success(job.job_id, job.version)
                elif outcome is JobOutcome.RETRY:
                    written = await repo.record_retry(
                        job.job_id, job.version, error or "", next_run_at
                    )
                else:
                    written = await repo.record_permanent_failure(
                        job.job_id, job.version, reason or "", error=error
                    )

        except Exception:
            # The lease will expire and the job will be reclaimed
            logger.exception(
                "Failed to record job outcome",
                extra={"job_id": str(job.job_id), "outcome": outcome.value},
            )
            return JobOutcome.LEASE_LOST

        if not written:
            logger.warning(
                "Lease lost before outcome was recorded",
                extra={"job_id": str(job.job_id), "outcome": outcome.value},
            )
            return JobOutcome.LEASE_LOST

        return outcome

    def _finish(self, job: LeasedJob, outcome: JobOutcome, start_time: float) -> None:
        self._metrics.record_job_finished(
            queue_name=job.queue_name,
            outcome=outcome.value,
            duration_seconds=time.monotonic() - start_time,
        )


async def run_async(registry: HandlerRegistry) -> None:
    """
    Run a dispatcher until SIGTERM/SIGINT.

    Args:
        registry: Handlers assembled by the hosting application.
    """
    settings = get_settings()
    setup_logging(settings)
    setup_metrics(settings.prometheus_port)
    await init_db()

    registry.freeze()
    dispatcher = Dispatcher(registry)
    bind_context(worker_id=dispatcher.worker_id)

    # Handle shutdown signals
    loop = asyncio.get_running_loop()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(
            sig,
            lambda: asyncio.create_task(dispatcher.stop())
        )

    try:
        await dispatcher.start()
    finally:
        await close_db()


def run(registry: HandlerRegistry) -> None:
    """Run the dispatcher."""
    asyncio.run(run_async(registry))
