"""
Audit-log export (``export.audit``).

Writes the matching audit records as CSV or NDJSON, stores the file as an
asset and leaves an in-app ``export.ready`` notification for the requester.
"""
import csv
import io
import json

from sqlalchemy.exc import SQLAlchemyError

from jobqueue.errors import JobEngineError, NoRecordsFound
from jobqueue.jobs.handlers.common import require_collaborator, require_payload
from jobqueue.jobs.payloads import AuditExportPayload
from jobqueue.logging_config import get_logger
from jobqueue.services.job_service import JobService
from jobqueue.services.notification_service import NotificationService

logger = get_logger(component="handlers.audit_export")

CONTENT_TYPES = {"csv": "text/csv", "ndjson": "application/x-ndjson"}
EXPORT_READY_PRIORITY = 20


def render_csv(records: list[dict]) -> bytes:
    fieldnames = sorted({key for record in records for key in record})
    buffer = io.StringIO()
    writer = csv.DictWriter(buffer, fieldnames=fieldnames, extrasaction="ignore")
    writer.writeheader()
    for record in records:
        writer.writerow({
            k: json.dumps(v, default=str) if isinstance(v, (dict, list)) else v
            for k, v in record.items()
        })
    return buffer.getvalue().encode("utf-8")


def render_ndjson(records: list[dict]) -> bytes:
    return "".join(json.dumps(r, default=str, sort_keys=True) + "\n" for r in records).encode("utf-8")


async def handle_audit_export(ctx: dict, job) -> dict:
    payload = require_payload(job, AuditExportPayload)
    audit_logs = require_collaborator(ctx, "audit_logs")
    assets = require_collaborator(ctx, "assets")

    records = await audit_logs.fetch(payload.export_filters)
    if not records:
        raise NoRecordsFound("No audit records match the export filters")

    data = render_csv(records) if payload.format == "csv" else render_ndjson(records)
    asset_id = await assets.register_asset(
        owner_id=payload.requester_id,
        filename=f"audit-export-{job.id}.{payload.format}",
        content_type=CONTENT_TYPES[payload.format],
        data=data,
        metadata={"job_id": job.id, "filters": payload.export_filters, "records": len(records)},
    )

    notification_id = await _notify_requester(ctx, job, payload, asset_id, len(records))

    logger.info("audit_export_ready", job_id=job.id, asset_id=asset_id, records=len(records))
    return {
        "asset_id": asset_id,
        "format": payload.format,
        "records": len(records),
        "notification_id": notification_id,
    }


async def _notify_requester(ctx: dict, job, payload: AuditExportPayload, asset_id: str, count: int) -> str | None:
    """The export is done either way; a failed notification is logged, not retried."""
    recipient = {"user_id": payload.requester_id}
    if payload.requester_email:
        recipient["email"] = payload.requester_email

    try:
        async with ctx["session_factory"]() as db:
            service = NotificationService(db, JobService(db, ctx["registry"], clock=ctx["clock"]), clock=ctx["clock"])
            notification, _ = await service.create_notification(
                type="export.ready",
                recipients=[recipient],
                content={
                    "in_app": {
                        "title": "Your audit export is ready",
                        "body": f"{count} records exported as {payload.format.upper()}.",
                        "data": {"asset_id": asset_id, "job_id": job.id},
                    }
                },
                channels=["in_app"],
                created_by=job.id,
                priority=EXPORT_READY_PRIORITY,
            )
    except (SQLAlchemyError, JobEngineError) as exc:
        logger.warning("export_ready_notification_failed", job_id=job.id, error=str(exc))
        return None
    return notification.id
