"""
Payload schemas, one per job type.

Payloads are validated when a job is enqueued; handlers re-parse the stored
dict into the same model.
"""
from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator


class JobPayload(BaseModel):
    model_config = ConfigDict(extra="forbid")


class NotificationDispatchPayload(JobPayload):
    notification_id: str = Field(min_length=1)


class NotificationRedeliverPayload(JobPayload):
    notification_id: str = Field(min_length=1)


class PayoutExecutePayload(JobPayload):
    batch_id: str = Field(min_length=1)
    escrow_id: str | None = None
    is_retry: bool = False


class BlockchainAnchorPayload(JobPayload):
    agreement_id: str = Field(min_length=1)
    immutable_hash: str = Field(min_length=1)
    chain: str = "polygon"


class PdfGeneratePayload(JobPayload):
    agreement_id: str = Field(min_length=1)
    payload_json: dict = Field(default_factory=dict)


class ThumbnailCreatePayload(JobPayload):
    asset_id: str = Field(min_length=1)
    version_number: int = Field(ge=1)
    sizes: list[int] = Field(default_factory=lambda: [128, 512])


class AuditExportPayload(JobPayload):
    export_filters: dict = Field(default_factory=dict)
    format: Literal["csv", "ndjson"] = "csv"
    requester_id: str = Field(min_length=1)
    requester_email: str | None = None


class ReindexBatchPayload(JobPayload):
    doc_type: Literal["creator", "project"]
    doc_ids: list[str] = Field(min_length=1)


class AuditSnapshotPayload(JobPayload):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    period_from: datetime = Field(alias="from")
    period_to: datetime = Field(alias="to")

    @model_validator(mode="after")
    def check_period(self):
        if self.period_to < self.period_from:
            raise ValueError("'to' must not be before 'from'")
        return self
