"""
Worker module.
Contains the dispatcher, the handler contract and registry, and retry policy.
"""

from delayed_jobs.worker.handlers import HandlerRegistry, JobHandler
from delayed_jobs.worker.main import Dispatcher, run
from delayed_jobs.worker.retry import RetryPolicy

__all__ = ["Dispatcher", "HandlerRegistry", "JobHandler", "RetryPolicy", "run"]
