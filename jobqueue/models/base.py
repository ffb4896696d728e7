"""
Base model classes for the job engine.

Provides SQLAlchemy declarative base and shared column helpers.
"""
import enum
from datetime import datetime
from typing import Type

from sqlalchemy import JSON, DateTime, Enum as SQLEnum
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from jobqueue.utils import utcnow


# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests)
JSONType = JSON().with_variant(JSONB(), "postgresql")


def enum_column(enum_cls: Type[enum.Enum]) -> SQLEnum:
    """Store an enum as VARCHAR holding its lowercase value."""
    return SQLEnum(
        enum_cls,
        native_enum=False,
        create_constraint=False,
        length=32,
        values_callable=lambda members: [m.value for m in members],
    )


class Base(DeclarativeBase):
    """Base class for all database models."""
    pass


class TimestampMixin:
    """
    Mixin that adds created_at and updated_at timestamps to models.

    Timestamps are naive UTC, set by the application so that scheduling
    comparisons never depend on the database server's clock or timezone.
    """
    created_at: Mapped[datetime] = mapped_column(
        DateTime,
        default=utcnow,
        nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime,
        default=utcnow,
        onupdate=utcnow,
        nullable=False
    )
