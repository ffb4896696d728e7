"""
The platform's job types and their policies.
"""
from jobqueue.config import settings
from jobqueue.jobs.handlers.anchor import handle_blockchain_anchor
from jobqueue.jobs.handlers.audit_export import handle_audit_export
from jobqueue.jobs.handlers.audit_snapshot import handle_audit_snapshot
from jobqueue.jobs.handlers.documents import handle_pdf_generate, handle_thumbnail_create
from jobqueue.jobs.handlers.notification import handle_notification_dispatch, handle_notification_redeliver
from jobqueue.jobs.handlers.payout import handle_payout_execute
from jobqueue.jobs.handlers.reindex import handle_reindex_batch
from jobqueue.jobs.payloads import (
    AuditExportPayload,
    AuditSnapshotPayload,
    BlockchainAnchorPayload,
    NotificationDispatchPayload,
    NotificationRedeliverPayload,
    PayoutExecutePayload,
    PdfGeneratePayload,
    ReindexBatchPayload,
    ThumbnailCreatePayload,
)
from jobqueue.jobs.registry import JobTypeRegistry
from jobqueue.jobs.retry_policy import JobPolicy, RetryPolicy


def build_registry() -> JobTypeRegistry:
    """Create the registry with every job type the workers run."""
    default_priority = settings.DEFAULT_JOB_PRIORITY
    registry = JobTypeRegistry()

    registry.register(
        "notification.dispatch",
        NotificationDispatchPayload,
        JobPolicy(max_attempts=5, timeout_seconds=120, default_priority=70,
                  retry=RetryPolicy(base_delay_seconds=30, max_delay_seconds=900)),
        handle_notification_dispatch,
    )
    registry.register(
        "notification.redeliver",
        NotificationRedeliverPayload,
        JobPolicy(max_attempts=3, timeout_seconds=120, default_priority=default_priority,
                  retry=RetryPolicy(base_delay_seconds=60, max_delay_seconds=900)),
        handle_notification_redeliver,
    )
    registry.register(
        "payout.execute",
        PayoutExecutePayload,
        JobPolicy(max_attempts=10, timeout_seconds=60, default_priority=80, concurrency_limit=5,
                  retry=RetryPolicy(base_delay_seconds=60, max_delay_seconds=3600)),
        handle_payout_execute,
    )
    registry.register(
        "blockchain.anchor",
        BlockchainAnchorPayload,
        JobPolicy(max_attempts=10, timeout_seconds=1800, default_priority=default_priority,
                  retry=RetryPolicy(base_delay_seconds=120, max_delay_seconds=7200)),
        handle_blockchain_anchor,
    )
    registry.register(
        "pdf.generate",
        PdfGeneratePayload,
        JobPolicy(max_attempts=5, timeout_seconds=600, default_priority=default_priority),
        handle_pdf_generate,
    )
    registry.register(
        "thumbnail.create",
        ThumbnailCreatePayload,
        JobPolicy(max_attempts=3, timeout_seconds=300, default_priority=30),
        handle_thumbnail_create,
    )
    registry.register(
        "export.audit",
        AuditExportPayload,
        JobPolicy(max_attempts=3, timeout_seconds=3600, default_priority=20),
        handle_audit_export,
    )
    registry.register(
        "reindex.batch",
        ReindexBatchPayload,
        JobPolicy(max_attempts=3, timeout_seconds=3600, default_priority=10),
        handle_reindex_batch,
    )
    registry.register(
        "audit.snapshot",
        AuditSnapshotPayload,
        JobPolicy(max_attempts=3, timeout_seconds=3600, default_priority=default_priority),
        handle_audit_snapshot,
    )
    return registry
