"""
Database module.
Contains database connection, models, and the job repository.
"""

from delayed_jobs.db.connection import (
    AsyncSessionLocal,
    close_db,
    get_engine,
    get_session_context,
    init_db,
)
from delayed_jobs.db.models import Base, DelayedJob, utcnow

__all__ = [
    "get_session_context",
    "get_engine",
    "init_db",
    "close_db",
    "AsyncSessionLocal",
    "DelayedJob",
    "Base",
    "utcnow",
]
