"""
Retry backoff for transient job failures.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta

from delayed_jobs.config import Settings, get_settings
from delayed_jobs.db.models import utcnow

# 2**62 seconds is far past any sensible cap; larger exponents only risk overflow
_MAX_EXPONENT = 62


@dataclass(frozen=True)
class RetryPolicy:
    """
    Exponential backoff with a ceiling and an attempt budget.

    The n-th failed attempt (n >= 1) waits base_delay * 2**(n-1), capped at
    max_delay. Once n reaches max_attempts the job fails permanently.
    """

    base_delay: timedelta = timedelta(seconds=5)
    max_delay: timedelta = timedelta(days=7)
    max_attempts: int = 10

    def __post_init__(self) -> None:
        if self.base_delay <= timedelta(0):
            raise ValueError("base_delay must be positive")
        if self.max_delay < self.base_delay:
            raise ValueError("max_delay must be at least base_delay")
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> "RetryPolicy":
        """Build the policy from application settings."""
        settings = settings or get_settings()
        return cls(
            base_delay=timedelta(seconds=settings.retry_base_delay_seconds),
            max_delay=timedelta(seconds=settings.retry_max_delay_seconds),
            max_attempts=settings.max_attempts,
        )

    def delay(self, attempt_number: int) -> timedelta:
        """
        Backoff before the attempt following `attempt_number`.

        Args:
            attempt_number: 1-based number of the attempt that just failed.

        Returns:
            Delay, never more than max_delay.
        """
        exponent = min(max(attempt_number - 1, 0), _MAX_EXPONENT)
        seconds = self.base_delay.total_seconds() * (2**exponent)
        return timedelta(seconds=min(seconds, self.max_delay.total_seconds()))

    def next_run_at(self, attempt_number: int, now: datetime | None = None) -> datetime:
        """When the next attempt may run."""
        return (now or utcnow()) + self.delay(attempt_number)

    def exhausted(self, attempt_number: int) -> bool:
        """Check whether the failed attempt used up the budget."""
        return attempt_number >= self.max_attempts
