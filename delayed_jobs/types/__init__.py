"""
Type definitions for the delayed job queue.
Contains value types passed between the store, the dispatcher and handlers.
"""

from delayed_jobs.types.job import (
    HandlerConfig,
    JobStats,
    LeasedJob,
)

__all__ = [
    "HandlerConfig",
    "JobStats",
    "LeasedJob",
]
