"""
SQLAlchemy database models.
Defines the jobs table.
"""

from datetime import datetime

from sqlalchemy import (
    BigInteger,
    DateTime,
    Enum,
    Index,
    Integer,
    LargeBinary,
    String,
    Text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from leasequeue.constants import DEFAULT_MAX_ATTEMPTS, JobStatus, TERMINAL_STATUSES


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    pass


class Job(Base):
    """
    Job model representing a unit of work in the queue.

    This is the authoritative source of truth for job state.
    Every lifecycle transition is a conditional UPDATE against this table.

    Key constraints:
    - lease_expires_at is set iff status is PROCESSING
    - attempts never exceeds max_attempts
    - queue_name and max_attempts never change after insert
    """

    __tablename__ = "jobs"

    # SQLite only autoincrements INTEGER PRIMARY KEY
    id: Mapped[int] = mapped_column(
        BigInteger().with_variant(Integer, "sqlite"),
        primary_key=True,
        autoincrement=True,
    )

    queue_name: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
    )

    payload: Mapped[bytes] = mapped_column(
        LargeBinary,
        nullable=False,
    )

    status: Mapped[JobStatus] = mapped_column(
        Enum(
            JobStatus,
            name="job_status",
            native_enum=False,
            create_constraint=True,
            length=16,
            values_callable=lambda x: [e.value for e in x],
        ),
        nullable=False,
        default=JobStatus.PENDING,
    )

    # Retry tracking
    attempts: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=0,
    )
    max_attempts: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=DEFAULT_MAX_ATTEMPTS,
    )

    # Timestamps (naive UTC)
    created_at: Mapped[datetime] = mapped_column(
        DateTime,
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime,
        nullable=False,
    )

    # Lease management
    lease_expires_at: Mapped[datetime | None] = mapped_column(
        DateTime,
        nullable=True,
    )

    # Backoff: a pending job is not claimable before this instant
    not_before: Mapped[datetime | None] = mapped_column(
        DateTime,
        nullable=True,
    )

    completed_at: Mapped[datetime | None] = mapped_column(
        DateTime,
        nullable=True,
    )

    # Error tracking
    last_error: Mapped[str | None] = mapped_column(
        Text,
        nullable=True,
    )

    __table_args__ = (
        # Claim lookup: oldest eligible row per queue
        Index("ix_jobs_claim", "queue_name", "status", "created_at", "id"),
        # Reaper sweep over expired leases
        Index("ix_jobs_lease_expiry", "status", "lease_expires_at"),
    )

    @property
    def is_terminal(self) -> bool:
        """Check if the job reached a terminal status."""
        return self.status in TERMINAL_STATUSES

    @property
    def is_retryable(self) -> bool:
        """Check if the job can be attempted again."""
        return self.attempts < self.max_attempts

    def is_lease_expired(self, now: datetime) -> bool:
        """Check if a PROCESSING job's lease has passed."""
        if self.lease_expires_at is None:
            return False
        return self.lease_expires_at < now

    def __repr__(self) -> str:
        return (
            f"Job(id={self.id}, queue={self.queue_name}, "
            f"status={self.status}, attempts={self.attempts}/{self.max_attempts})"
        )
