"""
SQLAlchemy database models.
Defines the delayed_jobs table, the single source of truth for job state.
"""

from datetime import UTC, datetime
from uuid import UUID, uuid4

from sqlalchemy import (
    BigInteger,
    Boolean,
    DateTime,
    Index,
    Integer,
    String,
    Text,
    TypeDecorator,
    Uuid,
    text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from delayed_jobs.constants import (
    ACTOR_ID_MAX_LENGTH,
    DEFAULT_PRIORITY,
    QUEUE_NAME_MAX_LENGTH,
    TABLE_NAME,
    JobState,
)


def utcnow() -> datetime:
    """Current time as a timezone-aware UTC datetime."""
    return datetime.now(UTC)


class UTCDateTime(TypeDecorator):
    """
    Timestamp column that always round-trips as aware UTC.

    PostgreSQL keeps the offset in TIMESTAMPTZ; SQLite drops it, so naive
    values coming back are tagged as UTC.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value.astimezone(UTC)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value.astimezone(UTC)


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    pass


class DelayedJob(Base):
    """
    A unit of deferred work tied to a domain actor.

    Rows are mutated only through version-guarded UPDATE statements in
    DelayedJobRepository; `version` is the sole concurrency control between
    workers.

    Invariants:
    - locked implies locked_at is set and complete is false
    - completed_with_failure implies failure_reason and failed_at are set
    - a job is eligible iff not complete, not locked and run_at <= now
    """

    __tablename__ = TABLE_NAME

    id: Mapped[UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid4,
        nullable=False,
    )

    priority: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=DEFAULT_PRIORITY,
    )
    attempts: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=0,
    )

    # Handler binding and the entity the handler operates on
    queue_name: Mapped[str] = mapped_column(
        String(QUEUE_NAME_MAX_LENGTH),
        nullable=False,
    )
    actor_id: Mapped[str] = mapped_column(
        String(ACTOR_ID_MAX_LENGTH),
        nullable=False,
    )

    last_error: Mapped[str | None] = mapped_column(
        Text,
        nullable=True,
    )

    # Scheduling
    run_at: Mapped[datetime] = mapped_column(
        UTCDateTime,
        nullable=False,
        default=utcnow,
    )

    # Lease
    locked: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=False,
    )
    locked_at: Mapped[datetime | None] = mapped_column(
        UTCDateTime,
        nullable=True,
    )

    # Terminal state
    failed_at: Mapped[datetime | None] = mapped_column(
        UTCDateTime,
        nullable=True,
    )
    complete: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=False,
    )
    completed_at: Mapped[datetime | None] = mapped_column(
        UTCDateTime,
        nullable=True,
    )
    completed_with_failure: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=False,
    )
    failure_reason: Mapped[str | None] = mapped_column(
        Text,
        nullable=True,
    )

    # Audit timestamps
    created: Mapped[datetime] = mapped_column(
        UTCDateTime,
        nullable=False,
        default=utcnow,
    )
    updated: Mapped[datetime] = mapped_column(
        UTCDateTime,
        nullable=False,
        default=utcnow,
    )

    # Optimistic concurrency token
    version: Mapped[int] = mapped_column(
        BigInteger,
        nullable=False,
        default=0,
    )

    __table_args__ = (
        # Eligible-job scans
        Index(
            "idx_delayed_jobs_queue_name_run_at",
            "queue_name",
            "run_at",
            "complete",
            "locked",
        ),
        # Lease reclamation sweep
        Index(
            "idx_delayed_jobs_locked",
            "locked",
            "locked_at",
            postgresql_where=text("locked = true"),
            sqlite_where=text("locked = 1"),
        ),
        # Failure monitoring
        Index(
            "idx_delayed_jobs_failed",
            "failed_at",
            postgresql_where=text("failed_at IS NOT NULL"),
            sqlite_where=text("failed_at IS NOT NULL"),
        ),
    )

    @property
    def state(self) -> JobState:
        """Lifecycle state derived from the lock and completion flags."""
        if self.complete:
            if self.completed_with_failure:
                return JobState.COMPLETE_FAILURE
            return JobState.COMPLETE_SUCCESS
        if self.locked:
            return JobState.LEASED
        return JobState.PENDING

    def is_ready(self, now: datetime | None = None) -> bool:
        """Check whether the job is eligible for selection."""
        now = now or utcnow()
        return not self.complete and not self.locked and self.run_at <= now

    def __repr__(self) -> str:
        return (
            f"DelayedJob(id={self.id}, queue={self.queue_name}, actor={self.actor_id}, "
            f"state={self.state}, attempts={self.attempts}, version={self.version})"
        )
