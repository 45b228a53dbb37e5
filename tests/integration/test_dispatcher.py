"""
Integration tests for the dispatcher.
"""

import asyncio
from datetime import timedelta
from uuid import UUID

import pytest
from sqlalchemy import update

from delayed_jobs.constants import JobOutcome, JobState
from delayed_jobs.db import DelayedJob, get_session_context, utcnow
from delayed_jobs.db.repository import DelayedJobRepository
from delayed_jobs.exceptions import PermanentFailure, TransientFailure
from delayed_jobs.service import DelayedJobService
from delayed_jobs.types.job import HandlerConfig, LeasedJob
from delayed_jobs.worker.handlers import HandlerRegistry


async def fetch(job_id: UUID) -> DelayedJob:
    async with get_session_context() as session:
        return await DelayedJobRepository(session).get_job(job_id)


async def make_due(job_id: UUID) -> None:
    """Pull a retried job's run_at back to now."""
    async with get_session_context() as session:
        await session.execute(
            update(DelayedJob)
            .where(DelayedJob.id == job_id)
            .values(run_at=utcnow() - timedelta(seconds=1))
            .execution_options(synchronize_session=False)
        )


class LeaseObservingHandler:
    """Records how many jobs are leased while each execution runs."""

    config = HandlerConfig(queue_name="TestJobHandler")

    def __init__(self):
        self.calls: list[str] = []
        self.leased_seen: list[int] = []

    async def run(self, actor_id: str) -> None:
        self.calls.append(actor_id)
        async with get_session_context() as session:
            stats = await DelayedJobRepository(session).get_stats()
        self.leased_seen.append(stats.leased)
        await asyncio.sleep(0.01)


@pytest.mark.usefixtures("database")
class TestDispatcher:
    """Integration tests for dispatch cycles."""

    async def test_successful_job_completes(self, make_handler, make_dispatcher):
        """A handler that returns normally completes the job."""
        handler = make_handler("OrderEmailJobHandler")
        registry = HandlerRegistry([(handler, None)])
        service = DelayedJobService(registry)
        job_id = await service.enqueue("OrderEmailJobHandler", "order-123", priority=5)

        leased = await make_dispatcher(registry).run_once()

        assert leased == 1
        assert handler.calls == ["order-123"]
        job = await fetch(job_id)
        assert job.complete is True
        assert job.completed_with_failure is False
        assert job.locked is False
        assert job.attempts == 1
        assert job.state == JobState.COMPLETE_SUCCESS

    async def test_unknown_queue_fails_permanently(self, registry, make_dispatcher):
        job_id = await DelayedJobService().enqueue("GhostHandler", "x")

        await make_dispatcher(registry).run_once()

        job = await fetch(job_id)
        assert job.complete is True
        assert job.completed_with_failure is True
        assert "unknown queue" in job.failure_reason
        assert job.failed_at is not None

    async def test_permanent_failure_is_terminal(self, make_handler, make_dispatcher):
        handler = make_handler(error=PermanentFailure("Order not found: order-123"))
        registry = HandlerRegistry([(handler, None)])
        job_id = await DelayedJobService(registry).enqueue("TestJobHandler", "order-123")
        dispatcher = make_dispatcher(registry)

        await dispatcher.run_once()

        job = await fetch(job_id)
        assert job.complete is True
        assert job.completed_with_failure is True
        assert job.failure_reason == "Order not found: order-123"
        assert "PermanentFailure" in job.last_error
        assert job.failed_at is not None

        assert await dispatcher.run_once() == 0
        assert handler.calls == ["order-123"]

    async def test_transient_failure_is_retried(self, make_handler, make_dispatcher):
        handler = make_handler(error=TransientFailure("Failed to send order confirmation email"))
        registry = HandlerRegistry([(handler, None)])
        job_id = await DelayedJobService(registry).enqueue("TestJobHandler", "order-123")
        failed_at = utcnow()

        await make_dispatcher(registry).run_once()

        job = await fetch(job_id)
        assert job.complete is False
        assert job.locked is False
        assert job.attempts == 1
        assert job.run_at > failed_at
        assert job.failed_at is None
        assert "Failed to send order confirmation email" in job.last_error

    async def test_unclassified_exception_is_retried(self, make_handler, make_dispatcher):
        handler = make_handler(error=RuntimeError("connection reset"))
        registry = HandlerRegistry([(handler, None)])
        job_id = await DelayedJobService(registry).enqueue("TestJobHandler", "order-123")

        await make_dispatcher(registry).run_once()

        job = await fetch(job_id)
        assert job.complete is False
        assert job.attempts == 1
        assert "RuntimeError: connection reset" in job.last_error

    async def test_retries_exhausted_fail_permanently(self, make_handler, make_dispatcher):
        """The attempt budget (3 in tests) turns repeated failures terminal."""
        handler = make_handler(error=TransientFailure("mail server down"))
        registry = HandlerRegistry([(handler, None)])
        job_id = await DelayedJobService(registry).enqueue("TestJobHandler", "order-123")
        dispatcher = make_dispatcher(registry)

        for _ in range(2):
            await dispatcher.run_once()
            job = await fetch(job_id)
            assert job.complete is False
            await make_due(job_id)

        await dispatcher.run_once()

        job = await fetch(job_id)
        assert len(handler.calls) == 3
        assert job.attempts == 3
        assert job.complete is True
        assert job.completed_with_failure is True
        assert job.failure_reason == "max attempts exceeded"

    async def test_priority_order_within_batch(self, make_handler, make_dispatcher):
        handler = make_handler()
        registry = HandlerRegistry([(handler, None)])
        service = DelayedJobService(registry)
        await service.enqueue("TestJobHandler", "low", priority=1)
        await service.enqueue("TestJobHandler", "high", priority=10)

        await make_dispatcher(registry, batch_size=1, concurrency=1).run_once()

        assert handler.calls == ["high"]

    async def test_future_job_not_dispatched(self, handler, registry, make_dispatcher):
        job_id = await DelayedJobService(registry).enqueue(
            "TestJobHandler",
            "order-123",
            run_at=utcnow() + timedelta(hours=1),
        )

        assert await make_dispatcher(registry).run_once() == 0

        assert handler.calls == []
        assert (await fetch(job_id)).state == JobState.PENDING

    async def test_concurrent_dispatchers_run_job_once(self, handler, registry, make_dispatcher):
        """Two dispatchers that read the same version execute the job exactly once."""
        job_id = await DelayedJobService(registry).enqueue("TestJobHandler", "order-123")
        first = make_dispatcher(registry, worker_id="worker-1")
        second = make_dispatcher(registry, worker_id="worker-2")

        first_candidates = await first.fetch_candidates()
        second_candidates = await second.fetch_candidates()
        assert [job.version for job in first_candidates] == [0]
        assert [job.version for job in second_candidates] == [0]

        leased = await asyncio.gather(
            first.dispatch(first_candidates),
            second.dispatch(second_candidates),
        )

        assert sorted(leased) == [0, 1]
        assert handler.calls == ["order-123"]
        job = await fetch(job_id)
        assert job.complete is True
        assert job.attempts == 1
        assert job.version == 2

    async def test_jobs_are_not_leased_while_waiting_for_a_slot(self, make_dispatcher):
        """With more candidates than slots, only running jobs hold a lease."""
        handler = LeaseObservingHandler()
        registry = HandlerRegistry([(handler, None)])
        service = DelayedJobService(registry)
        for actor_id in ("a", "b", "c"):
            await service.enqueue("TestJobHandler", actor_id)

        leased = await make_dispatcher(registry, batch_size=3, concurrency=1).run_once()

        assert leased == 3
        assert sorted(handler.calls) == ["a", "b", "c"]
        assert handler.leased_seen == [1, 1, 1]

    async def test_slots_bound_parallel_leases(self, make_dispatcher):
        handler = LeaseObservingHandler()
        registry = HandlerRegistry([(handler, None)])
        service = DelayedJobService(registry)
        for i in range(5):
            await service.enqueue("TestJobHandler", f"actor-{i}")

        await make_dispatcher(registry, batch_size=5, concurrency=2).run_once()

        assert len(handler.calls) == 5
        assert max(handler.leased_seen) <= 2

    async def test_notify_wakes_idle_dispatcher(self, handler, registry, make_dispatcher):
        """An enqueue through a service bound to the dispatcher skips the poll wait."""
        dispatcher = make_dispatcher(registry, poll_interval=60)
        service = DelayedJobService(registry, dispatcher=dispatcher)

        task = asyncio.create_task(dispatcher.start())
        await asyncio.sleep(0.1)
        await service.enqueue("TestJobHandler", "order-123")

        for _ in range(100):
            if handler.calls:
                break
            await asyncio.sleep(0.05)

        await dispatcher.stop()
        await asyncio.wait_for(task, timeout=5)

        assert handler.calls == ["order-123"]

    async def test_lost_lease_discards_outcome(self, registry, make_dispatcher):
        """A worker whose lease was reclaimed cannot overwrite the job."""
        job_id = await DelayedJobService(registry).enqueue("TestJobHandler", "order-123")
        async with get_session_context() as session:
            repo = DelayedJobRepository(session)
            job = await repo.get_job(job_id)
            assert await repo.try_lock(job_id, job.version)
        leased = LeasedJob.from_job(job)

        # Another process reclaims the lease while the handler is running
        async with get_session_context() as session:
            await session.execute(
                update(DelayedJob)
                .where(DelayedJob.id == job_id)
                .values(locked=False, locked_at=None, version=DelayedJob.version + 1)
                .execution_options(synchronize_session=False)
            )

        outcome = await make_dispatcher(registry)._execute_job(leased)

        assert outcome == JobOutcome.LEASE_LOST
        stored = await fetch(job_id)
        assert stored.complete is False
        assert stored.version == 2

    async def test_stop_ends_loop(self, registry, make_dispatcher):
        dispatcher = make_dispatcher(registry)

        task = asyncio.create_task(dispatcher.start())
        await asyncio.sleep(0.05)
        await dispatcher.stop()
        await asyncio.wait_for(task, timeout=5)

        assert task.done()
