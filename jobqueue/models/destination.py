"""
Delivery destination models owned by user settings.

Push tokens and webhook subscriptions are looked up at dispatch time; invalid
ones are cleaned up when a provider reports them dead.
"""
from datetime import datetime
from sqlalchemy import String, Text, Boolean, DateTime, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from jobqueue.models.base import Base, TimestampMixin
from jobqueue.utils import generate_id


class PushToken(Base, TimestampMixin):
    """Registered device push token."""
    __tablename__ = "push_tokens"
    __table_args__ = (
        UniqueConstraint("user_id", "token", name="uq_push_token_user"),
    )

    id: Mapped[str] = mapped_column(String(40), primary_key=True, default=lambda: generate_id("ptk"))
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    token: Mapped[str] = mapped_column(String(512), nullable=False)
    platform: Mapped[str | None] = mapped_column(String(16), nullable=True)


class WebhookSubscription(Base, TimestampMixin):
    """Outbound webhook endpoint a user registered for notifications."""
    __tablename__ = "webhook_subscriptions"

    id: Mapped[str] = mapped_column(String(40), primary_key=True, default=lambda: generate_id("whs"))
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    url: Mapped[str] = mapped_column(Text, nullable=False)
    secret: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    deactivated_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    deactivation_reason: Mapped[str | None] = mapped_column(Text, nullable=True)


class EmailSuppression(Base, TimestampMixin):
    """E-mail address that bounced permanently."""
    __tablename__ = "email_suppressions"

    email: Mapped[str] = mapped_column(String(320), primary_key=True)
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
