"""
Notification and in-app inbox models.

A notification captures its rendered content per channel at creation time so
later template edits never change what an in-flight dispatch sends.
"""
import enum
from datetime import datetime
from sqlalchemy import Boolean, Integer, String, Text, DateTime, ForeignKey, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from jobqueue.models.base import Base, TimestampMixin, JSONType, enum_column
from jobqueue.utils import generate_id


class Channel(str, enum.Enum):
    """Delivery channel."""
    IN_APP = "in_app"
    EMAIL = "email"
    PUSH = "push"
    WEBHOOK = "webhook"


class NotificationStatus(str, enum.Enum):
    """Aggregate notification status."""
    QUEUED = "queued"
    SENT = "sent"
    PARTIAL = "partial"
    FAILED = "failed"


class Notification(Base, TimestampMixin):
    """
    The logical unit of communication.

    recipients: list of ``{"user_id": ..., "email": ...}`` dicts
    content: ``{channel: {"title": ..., "body": ..., ...}}`` snapshot
    channels: list of channel values to deliver on
    """
    __tablename__ = "notifications"

    id: Mapped[str] = mapped_column(
        String(40),
        primary_key=True,
        default=lambda: generate_id("notif")
    )
    type: Mapped[str] = mapped_column(String(64), nullable=False)
    template_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    recipients: Mapped[list] = mapped_column(JSONType, nullable=False, default=list)
    content: Mapped[dict] = mapped_column(JSONType, nullable=False, default=dict)
    channels: Mapped[list] = mapped_column(JSONType, nullable=False, default=list)
    status: Mapped[NotificationStatus] = mapped_column(
        enum_column(NotificationStatus),
        nullable=False,
        default=NotificationStatus.QUEUED,
        index=True
    )
    scheduled_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    dispatched_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    created_by: Mapped[str | None] = mapped_column(String(64), nullable=True)

    def __repr__(self):
        return f"<Notification(id={self.id}, type={self.type}, status={self.status})>"


class NotificationTemplate(Base, TimestampMixin):
    """
    Reusable per-channel content with ``{{ variable }}`` placeholders.

    content_template: ``{channel: {"title": ..., "body": ..., ...}}``
    Every edit bumps ``version``; deleting only deactivates.
    """
    __tablename__ = "notification_templates"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    channels: Mapped[list] = mapped_column(JSONType, nullable=False, default=list)
    content_template: Mapped[dict] = mapped_column(JSONType, nullable=False, default=dict)
    required_variables: Mapped[list] = mapped_column(JSONType, nullable=False, default=list)
    default_locale: Mapped[str] = mapped_column(String(16), nullable=False, default="en")
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, index=True)
    created_by: Mapped[str | None] = mapped_column(String(64), nullable=True)

    def __repr__(self):
        return f"<NotificationTemplate(id={self.id}, version={self.version}, active={self.active})>"


class NotificationInbox(Base, TimestampMixin):
    """In-app inbox entry, created together with the notification."""
    __tablename__ = "notification_inbox"
    __table_args__ = (
        UniqueConstraint("notification_id", "user_id", name="uq_inbox_notification_user"),
    )

    id: Mapped[str] = mapped_column(
        String(40),
        primary_key=True,
        default=lambda: generate_id("inbox")
    )
    notification_id: Mapped[str] = mapped_column(
        String(40),
        ForeignKey("notifications.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    title: Mapped[str | None] = mapped_column(String(255), nullable=True)
    body: Mapped[str | None] = mapped_column(Text, nullable=True)
    data: Mapped[dict | None] = mapped_column(JSONType, nullable=True)
    read_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
