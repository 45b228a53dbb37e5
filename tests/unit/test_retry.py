"""
Unit tests for the retry policy.
"""

from datetime import UTC, datetime, timedelta

import pytest

from delayed_jobs.config import Settings
from delayed_jobs.worker.retry import RetryPolicy


class TestRetryPolicy:
    """Tests for RetryPolicy."""

    def test_exponential_delay(self):
        policy = RetryPolicy(base_delay=timedelta(seconds=5), max_delay=timedelta(hours=1))

        assert policy.delay(1) == timedelta(seconds=5)
        assert policy.delay(2) == timedelta(seconds=10)
        assert policy.delay(3) == timedelta(seconds=20)
        assert policy.delay(4) == timedelta(seconds=40)

    def test_delay_capped(self):
        policy = RetryPolicy(base_delay=timedelta(seconds=5), max_delay=timedelta(minutes=1))

        assert policy.delay(5) == timedelta(minutes=1)
        assert policy.delay(50) == timedelta(minutes=1)

    def test_huge_attempt_number_does_not_overflow(self):
        policy = RetryPolicy()

        assert policy.delay(10_000) == timedelta(days=7)

    def test_next_run_at_is_strictly_later(self):
        policy = RetryPolicy(base_delay=timedelta(seconds=5))
        now = datetime(2024, 1, 1, tzinfo=UTC)

        assert policy.next_run_at(1, now=now) == now + timedelta(seconds=5)
        assert policy.next_run_at(1) > datetime.now(UTC)

    def test_exhausted(self):
        policy = RetryPolicy(max_attempts=3)

        assert not policy.exhausted(1)
        assert not policy.exhausted(2)
        assert policy.exhausted(3)
        assert policy.exhausted(4)

    def test_from_settings(self):
        settings = Settings(
            max_attempts=4,
            retry_base_delay_seconds=2,
            retry_max_delay_seconds=30,
        )

        policy = RetryPolicy.from_settings(settings)

        assert policy.max_attempts == 4
        assert policy.base_delay == timedelta(seconds=2)
        assert policy.max_delay == timedelta(seconds=30)

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"base_delay": timedelta(0)},
            {"base_delay": timedelta(minutes=5), "max_delay": timedelta(minutes=1)},
            {"max_attempts": 0},
        ],
    )
    def test_invalid_policy_rejected(self, kwargs):
        with pytest.raises(ValueError):
            RetryPolicy(**kwargs)
