"""
Lease reaper for recovering abandoned jobs.

Every dispatcher already reclaims expired leases at the start of each poll
cycle. The reaper does the same sweep on its own schedule, for deployments
where dispatchers may all be down or scaled to zero while leases expire.
"""

import asyncio
import logging
import signal
from datetime import timedelta

from delayed_jobs.config import get_settings
from delayed_jobs.db import close_db, get_session_context, init_db
from delayed_jobs.db.repository import DelayedJobRepository
from delayed_jobs.observability.logging import setup_logging
from delayed_jobs.observability.metrics import get_metrics, setup_metrics

logger = logging.getLogger(__name__)


class Reaper:
    """
    Lease reaper that reclaims expired job leases.

    Runs periodically to:
    1. Find locked, incomplete jobs whose locked_at is older than the lease timeout
    2. Unlock them and count the abandoned run as an attempt
    3. Record metrics for monitoring
    """

    def __init__(
        self,
        interval_seconds: int | None = None,
        lease_timeout: timedelta | None = None,
    ):
        """
        Initialize the reaper.

        Args:
            interval_seconds: Seconds between reaper runs.
            lease_timeout: Age after which a lease is considered abandoned.
        """
        settings = get_settings()
        self.interval = interval_seconds or settings.reaper_interval_seconds
        self.lease_timeout = lease_timeout or timedelta(seconds=settings.lease_timeout_seconds)
        self._running = False
        self._metrics = get_metrics()

    async def start(self) -> None:
        """Start the reaper loop."""
        logger.info(
            f"Reaper starting with interval {self.interval}s",
            extra={"lease_timeout_seconds": self.lease_timeout.total_seconds()},
        )
        self._running = True

        while self._running:
            try:
                await self.run_once()
            except Exception as e:
                logger.exception(f"Error in reaper loop: {e}")

            await asyncio.sleep(self.interval)

        logger.info("Reaper stopped")

    async def stop(self) -> None:
        """Stop the reaper."""
        logger.info("Reaper stopping")
        self._running = False

    async def run_once(self) -> int:
        """
        Run a single sweep (also usable cron-style).

        Returns:
            Number of jobs reclaimed.
        """
        async with get_session_context() as session:
            repo = DelayedJobRepository(session)
            count = await repo.reap_expired_locks(self.lease_timeout)
            stats = await repo.get_stats()

        self._metrics.record_leases_reclaimed(count)
        self._metrics.update_queue_depth(stats)

        return count


async def run_async() -> None:
    """Run the reaper asynchronously."""
    settings = get_settings()
    setup_logging(settings)
    setup_metrics(settings.prometheus_port)
    await init_db()

    reaper = Reaper()

    # Handle shutdown signals
    loop = asyncio.get_running_loop()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(
            sig,
            lambda: asyncio.create_task(reaper.stop())
        )

    try:
        await reaper.start()
    finally:
        await close_db()


def run() -> None:
    """Run the reaper."""
    asyncio.run(run_async())


if __name__ == "__main__":
    run()
