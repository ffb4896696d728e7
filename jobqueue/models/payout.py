"""
Payout batch models executed by the ``payout.execute`` job.

SECURITY: an item must be moved to PROCESSING before it is submitted to the
payment provider. A retried job skips anything already in flight.
"""
import enum
from sqlalchemy import String, Text, Integer, ForeignKey
from sqlalchemy.orm import Mapped, mapped_column

from jobqueue.models.base import Base, TimestampMixin, enum_column
from jobqueue.utils import generate_id


class PayoutBatchStatus(str, enum.Enum):
    SCHEDULED = "scheduled"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    PARTIAL = "partial"


class PayoutItemStatus(str, enum.Enum):
    SCHEDULED = "scheduled"
    PROCESSING = "processing"
    PAID = "paid"
    FAILED = "failed"
    CANCELLED = "cancelled"
    PENDING_KYC = "pending_kyc"


# Statuses an item may be submitted from
SUBMITTABLE_ITEM_STATUSES = (
    PayoutItemStatus.SCHEDULED,
    PayoutItemStatus.FAILED,
    PayoutItemStatus.PENDING_KYC,
)


class PayoutBatch(Base, TimestampMixin):
    __tablename__ = "payout_batches"

    id: Mapped[str] = mapped_column(String(40), primary_key=True, default=lambda: generate_id("pob"))
    escrow_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    status: Mapped[PayoutBatchStatus] = mapped_column(
        enum_column(PayoutBatchStatus),
        nullable=False,
        default=PayoutBatchStatus.SCHEDULED
    )
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="usd")


class PayoutItem(Base, TimestampMixin):
    __tablename__ = "payout_items"

    id: Mapped[str] = mapped_column(String(40), primary_key=True, default=lambda: generate_id("poi"))
    batch_id: Mapped[str] = mapped_column(
        String(40),
        ForeignKey("payout_batches.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    recipient_user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    # Connected payment account; missing until the recipient passes KYC
    recipient_account_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[PayoutItemStatus] = mapped_column(
        enum_column(PayoutItemStatus),
        nullable=False,
        default=PayoutItemStatus.SCHEDULED
    )
    provider_reference_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    failure_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    submission_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    @property
    def idempotency_key(self) -> str:
        return f"payout-item-{self.id}"
