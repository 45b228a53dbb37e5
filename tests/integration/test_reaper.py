"""
Integration tests for lease reclamation.
"""

from datetime import timedelta
from uuid import UUID

import pytest
from sqlalchemy import update

from delayed_jobs.db import DelayedJob, get_session_context, utcnow
from delayed_jobs.db.repository import DelayedJobRepository
from delayed_jobs.reaper import Reaper
from delayed_jobs.service import DelayedJobService


async def lease_and_abandon(job_id: UUID, age: timedelta) -> None:
    """Lease a job and backdate the lease, as if its worker died."""
    async with get_session_context() as session:
        repo = DelayedJobRepository(session)
        job = await repo.get_job(job_id)
        assert await repo.try_lock(job_id, job.version)

    async with get_session_context() as session:
        await session.execute(
            update(DelayedJob)
            .where(DelayedJob.id == job_id)
            .values(locked_at=utcnow() - age)
            .execution_options(synchronize_session=False)
        )


@pytest.mark.usefixtures("database")
class TestReaper:
    """Integration tests for abandoned lease recovery."""

    async def test_abandoned_lease_is_recovered(self, handler, registry, make_dispatcher):
        """An expired lease is released, counted once, and the job runs again."""
        service = DelayedJobService(registry)
        job_id = await service.enqueue("TestJobHandler", "order-123")
        await lease_and_abandon(job_id, timedelta(minutes=10))

        reaper = Reaper(interval_seconds=1, lease_timeout=timedelta(minutes=5))
        assert await reaper.run_once() == 1
        assert await reaper.run_once() == 0

        job = await service.get_job(job_id)
        assert job.locked is False
        assert job.attempts == 1
        async with get_session_context() as session:
            ready = await DelayedJobRepository(session).find_ready_to_run(10)
        assert [j.id for j in ready] == [job_id]

        await make_dispatcher(registry).run_once()

        job = await service.get_job(job_id)
        assert handler.calls == ["order-123"]
        assert job.complete is True
        assert job.attempts == 2

    async def test_live_lease_is_kept(self, registry):
        service = DelayedJobService(registry)
        job_id = await service.enqueue("TestJobHandler", "order-123")
        await lease_and_abandon(job_id, timedelta(seconds=30))

        reaper = Reaper(interval_seconds=1, lease_timeout=timedelta(minutes=5))

        assert await reaper.run_once() == 0
        assert (await service.get_job(job_id)).locked is True

    async def test_dispatcher_reaps_before_polling(self, handler, registry, make_dispatcher):
        job_id = await DelayedJobService(registry).enqueue("TestJobHandler", "order-123")
        await lease_and_abandon(job_id, timedelta(minutes=10))

        dispatcher = make_dispatcher(registry, lease_timeout=timedelta(minutes=5))

        assert await dispatcher.run_once() == 1
        assert handler.calls == ["order-123"]

    async def test_repeatedly_abandoned_job_stays_pending(self, registry):
        """Reclaims add attempts but never spend the budget on their own."""
        service = DelayedJobService(registry)
        job_id = await service.enqueue("TestJobHandler", "order-123")
        reaper = Reaper(interval_seconds=1, lease_timeout=timedelta(minutes=5))

        for _ in range(4):
            await lease_and_abandon(job_id, timedelta(minutes=10))
            assert await reaper.run_once() == 1

        job = await service.get_job(job_id)
        assert job.attempts == 4
        assert job.complete is False
        assert job.failed_at is None
