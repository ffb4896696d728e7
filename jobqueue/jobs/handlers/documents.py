"""
Rendering handlers: agreement PDFs (``pdf.generate``) and asset thumbnails
(``thumbnail.create``).

Both render fresh on every execution; the asset store hands out a new id per
upload and the owning record is pointed at the latest one.
"""
from jobqueue.errors import CollaboratorRejected, JobDataMissing
from jobqueue.jobs.handlers.common import renew_lease, require_collaborator, require_payload
from jobqueue.jobs.payloads import PdfGeneratePayload, ThumbnailCreatePayload
from jobqueue.logging_config import get_logger

logger = get_logger(component="handlers.documents")


async def handle_pdf_generate(ctx: dict, job) -> dict:
    payload = require_payload(job, PdfGeneratePayload)
    if not job.created_by:
        raise JobDataMissing("created_by")

    agreements = require_collaborator(ctx, "agreements")
    assets = require_collaborator(ctx, "assets")
    renderer = require_collaborator(ctx, "renderer")

    agreement = await agreements.get_agreement(payload.agreement_id)
    if agreement is None:
        raise CollaboratorRejected(f"Agreement not found: {payload.agreement_id}", code="agreement_not_found")

    pdf = await renderer.render_agreement_pdf(agreement, payload.payload_json)
    asset_id = await assets.register_asset(
        owner_id=job.created_by,
        filename=f"agreement-{payload.agreement_id}.pdf",
        content_type="application/pdf",
        data=pdf,
        metadata={"agreement_id": payload.agreement_id, "job_id": job.id},
    )
    await agreements.set_pdf_asset(payload.agreement_id, asset_id)

    logger.info("agreement_pdf_generated", job_id=job.id, agreement_id=payload.agreement_id, asset_id=asset_id)
    return {"agreement_id": payload.agreement_id, "asset_id": asset_id, "bytes": len(pdf)}


async def handle_thumbnail_create(ctx: dict, job) -> dict:
    payload = require_payload(job, ThumbnailCreatePayload)
    assets = require_collaborator(ctx, "assets")
    renderer = require_collaborator(ctx, "renderer")

    asset = await assets.get_asset(payload.asset_id)
    if asset is None:
        raise CollaboratorRejected(f"Asset not found: {payload.asset_id}", code="asset_not_found")

    owner_id = asset.get("owner_id") or job.created_by or "system"
    thumbnails: dict[str, str] = {}
    for size in payload.sizes:
        image = await renderer.render_thumbnail(asset, payload.version_number, size)
        thumbnails[str(size)] = await assets.register_asset(
            owner_id=owner_id,
            filename=f"{payload.asset_id}-v{payload.version_number}-{size}.webp",
            content_type="image/webp",
            data=image,
            metadata={"source_asset_id": payload.asset_id, "size": size},
        )
        await renew_lease(ctx)

    await assets.mark_processed(payload.asset_id, payload.version_number, thumbnails)

    logger.info("thumbnails_created", job_id=job.id, asset_id=payload.asset_id, sizes=list(thumbnails))
    return {"asset_id": payload.asset_id, "version_number": payload.version_number, "thumbnails": thumbnails}
