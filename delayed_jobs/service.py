"""
Enqueue API and operational queries.

Collaborators (order, shipment services) create jobs through this service;
operational tooling inspects the queue through the same object. Callers that
must enqueue inside their own transaction can use
DelayedJobRepository.enqueue with their session instead.
"""

import logging
from datetime import datetime
from typing import Sequence
from uuid import UUID

from delayed_jobs.constants import DEFAULT_PRIORITY, SPAN_ENQUEUE_JOB
from delayed_jobs.db import DelayedJob, get_session_context
from delayed_jobs.db.repository import DelayedJobRepository
from delayed_jobs.observability.metrics import get_metrics
from delayed_jobs.observability.tracing import get_tracer
from delayed_jobs.types.job import JobStats
from delayed_jobs.worker.handlers import HandlerRegistry
from delayed_jobs.worker.main import Dispatcher

logger = logging.getLogger(__name__)


class DelayedJobService:
    """Creates delayed jobs and answers queries about them."""

    def __init__(
        self,
        registry: HandlerRegistry | None = None,
        dispatcher: Dispatcher | None = None,
    ):
        """
        Args:
            registry: Optional registry used for default priorities and to
                warn about queue names no handler serves.
            dispatcher: Optional in-process dispatcher woken after each
                enqueue, so due jobs run without waiting for the next poll.
        """
        self._registry = registry
        self._dispatcher = dispatcher
        self._metrics = get_metrics()

    async def enqueue(
        self,
        queue_name: str,
        actor_id: str,
        priority: int | None = None,
        run_at: datetime | None = None,
    ) -> UUID:
        """
        Create a job and commit it.

        Args:
            queue_name: Name of the handler that must process the job.
            actor_id: Opaque reference to the domain entity.
            priority: Defaults to the registered handler's priority, else 5.
            run_at: Earliest execution time. Defaults to now.

        Returns:
            The new job's ID.
        """
        if priority is None:
            priority = self._default_priority(queue_name)

        if self._registry is not None and queue_name not in self._registry:
            logger.warning(
                "Enqueueing job for a queue with no registered handler",
                extra={"queue_name": queue_name, "actor_id": actor_id},
            )

        with get_tracer().start_as_current_span(SPAN_ENQUEUE_JOB) as span:
            span.set_attribute("queue_name", queue_name)
            span.set_attribute("actor_id", actor_id)

            async with get_session_context() as session:
                job = await DelayedJobRepository(session).enqueue(
                    queue_name=queue_name,
                    actor_id=actor_id,
                    priority=priority,
                    run_at=run_at,
                )
                job_id = job.id

            span.set_attribute("job_id", str(job_id))

        self._metrics.record_job_enqueued(queue_name)

        if self._dispatcher is not None:
            self._dispatcher.notify()

        return job_id

    def _default_priority(self, queue_name: str) -> int:
        if self._registry is not None:
            config = self._registry.get_config(queue_name)
            if config is not None:
                return config.priority
        return DEFAULT_PRIORITY

    async def get_job(self, job_id: UUID) -> DelayedJob | None:
        async with get_session_context() as session:
            return await DelayedJobRepository(session).get_job(job_id)

    async def list_incomplete(self, limit: int = 100) -> Sequence[DelayedJob]:
        """Jobs still pending or leased."""
        async with get_session_context() as session:
            return await DelayedJobRepository(session).find_incomplete(limit)

    async def list_failed(self, limit: int = 100) -> Sequence[DelayedJob]:
        """Permanently failed jobs, most recent first."""
        async with get_session_context() as session:
            return await DelayedJobRepository(session).find_failed(limit)

    async def list_for_actor(self, actor_id: str) -> Sequence[DelayedJob]:
        async with get_session_context() as session:
            return await DelayedJobRepository(session).find_by_actor_id(actor_id)

    async def get_stats(self) -> JobStats:
        """Counts per lifecycle state; also refreshes the queue depth gauge."""
        async with get_session_context() as session:
            stats = await DelayedJobRepository(session).get_stats()

        self._metrics.update_queue_depth(stats)
        return stats
