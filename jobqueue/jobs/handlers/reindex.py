"""
Search reindexing (``reindex.batch``).

Builds the search-ready view of each source document and pushes it to the
index. A document that fails to index is logged and skipped; the job only
fails when nothing in the batch could be indexed.
"""
from datetime import datetime

import httpx

from jobqueue.errors import JobEngineError, TransientError
from jobqueue.jobs.handlers.common import renew_lease, require_collaborator, require_payload
from jobqueue.jobs.payloads import ReindexBatchPayload
from jobqueue.logging_config import get_logger

logger = get_logger(component="handlers.reindex")

RENEW_LEASE_EVERY = 50


def creator_fields(source: dict) -> dict:
    owner = source.get("user") or {}
    return {
        "title": owner.get("preferred_name") or owner.get("full_name") or "Untitled",
        "skills": source.get("skills") or [],
        "verified": bool(source.get("verified")),
        "status": source.get("availability") or "open",
    }


def project_fields(source: dict) -> dict:
    return {
        "title": source.get("title") or "Untitled",
        "category": source.get("category") or "",
        "status": source.get("status") or "draft",
        "visibility": source.get("visibility") or "public",
        "collaboration_type": source.get("collaboration_type") or "open",
    }


FIELD_BUILDERS = {"creator": creator_fields, "project": project_fields}


def build_index_document(doc_type: str, source: dict, now: datetime) -> dict:
    """Denormalised document as the search index stores it."""
    return {
        "doc_type": doc_type,
        "doc_id": str(source["id"]),
        "payload": FIELD_BUILDERS[doc_type](source),
        "updated_at": source.get("updated_at") or now.isoformat(),
    }


async def handle_reindex_batch(ctx: dict, job) -> dict:
    payload = require_payload(job, ReindexBatchPayload)
    search = require_collaborator(ctx, "search")
    doc_ids = list(dict.fromkeys(payload.doc_ids))

    sources = await search.fetch_sources(payload.doc_type, doc_ids)
    now = ctx["clock"]()

    indexed = 0
    failed: list[str] = []
    for source in sources:
        document = build_index_document(payload.doc_type, source, now)
        try:
            await search.index_document(document)
        except (JobEngineError, httpx.HTTPError) as exc:
            logger.warning(
                "reindex_document_failed",
                job_id=job.id,
                doc_type=payload.doc_type,
                doc_id=document["doc_id"],
                error=str(exc),
            )
            failed.append(document["doc_id"])
            continue
        indexed += 1
        if indexed % RENEW_LEASE_EVERY == 0:
            await renew_lease(ctx)

    if failed and not indexed:
        raise TransientError(
            f"None of {len(failed)} {payload.doc_type} documents could be indexed",
            code="reindex_failed",
        )

    found = {str(source["id"]) for source in sources}
    missing = [doc_id for doc_id in doc_ids if doc_id not in found]

    logger.info(
        "reindex_batch_done",
        job_id=job.id,
        doc_type=payload.doc_type,
        indexed=indexed,
        failed=len(failed),
        missing=len(missing),
    )
    return {
        "doc_type": payload.doc_type,
        "requested": len(doc_ids),
        "total_indexed": indexed,
        "failed": failed,
        "missing": missing,
    }
