"""
Audit snapshots (``audit.snapshot``).

Collects the audit records of a period that are not sealed yet, hashes them
into a signed manifest, stores manifest and records as one NDJSON asset and
finally seals the records against that asset. Sealing is the last step, so a
run that dies before it simply snapshots the same records again.
"""
import hashlib
import json

from jobqueue.config import settings
from jobqueue.jobs.handlers.audit_export import render_ndjson
from jobqueue.jobs.handlers.common import require_collaborator, require_payload
from jobqueue.jobs.payloads import AuditSnapshotPayload
from jobqueue.logging_config import get_logger

logger = get_logger(component="handlers.audit_snapshot")


def record_hash(record: dict) -> str:
    """The record's own hash, or a hash of its canonical JSON form."""
    if record.get("hash"):
        return str(record["hash"])
    canonical = json.dumps(record, default=str, sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def manifest_digest(records: list[dict]) -> str:
    combined = "".join(record_hash(r) for r in records)
    return hashlib.sha256(combined.encode("utf-8")).hexdigest()


async def handle_audit_snapshot(ctx: dict, job) -> dict:
    payload = require_payload(job, AuditSnapshotPayload)
    audit_logs = require_collaborator(ctx, "audit_logs")
    assets = require_collaborator(ctx, "assets")
    signer = require_collaborator(ctx, "manifest_signer")

    period = {"from": payload.period_from.isoformat(), "to": payload.period_to.isoformat()}
    records = await audit_logs.fetch({**period, "immutable": False})
    if not records:
        logger.info("audit_snapshot_empty", job_id=job.id, **period)
        return {"snapshot_asset_id": None, "record_count": 0}

    records = sorted(records, key=lambda r: (str(r.get("timestamp", "")), str(r["id"])))
    log_ids = [str(r["id"]) for r in records]
    digest = manifest_digest(records)
    signed_manifest = signer.sign(digest)

    manifest = {
        **period,
        "record_count": len(records),
        "manifest_hash": digest,
        "signed_manifest": signed_manifest,
        "log_ids": log_ids,
    }
    snapshot_asset_id = await assets.register_asset(
        owner_id=settings.AUDIT_SNAPSHOT_OWNER_ID,
        filename=f"audit-snapshot-{digest[:16]}.ndjson",
        content_type="application/x-ndjson",
        data=render_ndjson([{"manifest": manifest}, *records]),
        metadata={"job_id": job.id, "manifest_hash": digest, "record_count": len(records)},
    )

    await audit_logs.seal(log_ids, snapshot_asset_id, signed_manifest)

    logger.info("audit_snapshot_sealed", job_id=job.id, asset_id=snapshot_asset_id, records=len(records))
    return {
        "snapshot_asset_id": snapshot_asset_id,
        "record_count": len(records),
        "manifest_hash": digest,
    }
