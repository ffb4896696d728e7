"""
Job model for durable background processing.

The jobs table is the single source of truth for job state. Workers poll it
and claim rows with a conditional update guarded by ``version``.
"""
import enum
from datetime import datetime
from sqlalchemy import String, Text, Integer, DateTime, Index
from sqlalchemy.orm import Mapped, mapped_column

from jobqueue.models.base import Base, TimestampMixin, JSONType, enum_column
from jobqueue.utils import generate_id, utcnow


class JobStatus(str, enum.Enum):
    """Job status enum."""
    QUEUED = "queued"
    LEASED = "leased"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"
    DLQ = "dlq"


TERMINAL_STATUSES = frozenset({JobStatus.SUCCEEDED, JobStatus.CANCELLED, JobStatus.DLQ})
LEASED_STATUSES = (JobStatus.LEASED, JobStatus.RUNNING)


class Job(Base, TimestampMixin):
    """
    A unit of deferred work.

    ``attempt`` counts executions started and never decreases. ``started_at``
    marks that the current attempt has begun running, so a reclaimed job that
    already started is not counted twice.
    """
    __tablename__ = "jobs"
    __table_args__ = (
        Index("ix_jobs_eligibility", "status", "next_run_at", "priority"),
    )

    id: Mapped[str] = mapped_column(
        String(40),
        primary_key=True,
        default=lambda: generate_id("job")
    )
    type: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    priority: Mapped[int] = mapped_column(Integer, nullable=False, default=50)
    status: Mapped[JobStatus] = mapped_column(
        enum_column(JobStatus),
        nullable=False,
        default=JobStatus.QUEUED
    )
    next_run_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)

    # Lease
    worker_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    lease_expires_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # Retry
    attempt: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_attempts: Mapped[int] = mapped_column(Integer, nullable=False)
    last_error_code: Mapped[str | None] = mapped_column(String(64), nullable=True)
    last_error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    payload: Mapped[dict] = mapped_column(JSONType, nullable=False, default=dict)
    result: Mapped[dict | None] = mapped_column(JSONType, nullable=True)

    created_by: Mapped[str | None] = mapped_column(String(64), nullable=True)
    requeued_from: Mapped[str | None] = mapped_column(String(40), nullable=True)
    started_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def last_error(self) -> dict | None:
        if self.last_error_code is None:
            return None
        return {"code": self.last_error_code, "message": self.last_error_message}

    def __repr__(self):
        return f"<Job(id={self.id}, type={self.type}, status={self.status}, attempt={self.attempt})>"
