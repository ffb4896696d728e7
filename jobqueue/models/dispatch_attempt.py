"""
Dispatch attempt ledger.

One row per (notification, recipient, channel, attempt number). Rows are
written ahead of the provider call as ``pending`` and then settled.
"""
import enum
from datetime import datetime
from sqlalchemy import String, Text, Integer, DateTime, ForeignKey, Index, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from jobqueue.models.base import Base, TimestampMixin, enum_column
from jobqueue.models.notification import Channel
from jobqueue.utils import generate_id


class AttemptStatus(str, enum.Enum):
    """Dispatch attempt status."""
    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"
    PERMANENT_FAILED = "permanent_failed"


FINAL_ATTEMPT_STATUSES = frozenset({AttemptStatus.SUCCESS, AttemptStatus.PERMANENT_FAILED})


class DispatchAttempt(Base, TimestampMixin):
    """A single delivery try on one channel to one recipient."""
    __tablename__ = "dispatch_attempts"
    __table_args__ = (
        Index("ix_dispatch_attempts_ledger", "notification_id", "channel", "status"),
        UniqueConstraint(
            "notification_id", "recipient_key", "channel", "attempt_number",
            name="uq_dispatch_attempt_number"
        ),
    )

    id: Mapped[str] = mapped_column(
        String(40),
        primary_key=True,
        default=lambda: generate_id("att")
    )
    notification_id: Mapped[str] = mapped_column(
        String(40),
        ForeignKey("notifications.id", ondelete="CASCADE"),
        nullable=False
    )
    recipient_key: Mapped[str] = mapped_column(String(64), nullable=False)
    channel: Mapped[Channel] = mapped_column(enum_column(Channel), nullable=False)
    provider: Mapped[str | None] = mapped_column(String(32), nullable=True)
    destination: Mapped[str | None] = mapped_column(Text, nullable=True)
    provider_reference_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    status: Mapped[AttemptStatus] = mapped_column(
        enum_column(AttemptStatus),
        nullable=False,
        default=AttemptStatus.PENDING
    )
    error_code: Mapped[str | None] = mapped_column(String(64), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    attempt_number: Mapped[int] = mapped_column(Integer, nullable=False)
    next_retry_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    @property
    def is_final(self) -> bool:
        return self.status in FINAL_ATTEMPT_STATUSES

    def __repr__(self):
        return (
            f"<DispatchAttempt(notification={self.notification_id}, recipient={self.recipient_key}, "
            f"channel={self.channel}, n={self.attempt_number}, status={self.status})>"
        )
