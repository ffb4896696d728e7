"""
Payout batch execution (``payout.execute``).

SECURITY: an item is moved to PROCESSING with a conditional update before the
payment provider is called, and every transfer carries the item's idempotency
key. Items already PROCESSING, PAID or CANCELLED are never submitted again.
"""
import httpx
from sqlalchemy import select, update

from jobqueue.errors import BatchNotFound, CollaboratorRejected, PartialSubmissionFailure, TransientError
from jobqueue.jobs.handlers.common import require_collaborator, require_payload
from jobqueue.jobs.payloads import PayoutExecutePayload
from jobqueue.logging_config import get_logger
from jobqueue.models.payout import (
    SUBMITTABLE_ITEM_STATUSES,
    PayoutBatch,
    PayoutBatchStatus,
    PayoutItem,
    PayoutItemStatus,
)

logger = get_logger(component="handlers.payout")

IN_FLIGHT_OR_DONE = (PayoutItemStatus.PROCESSING, PayoutItemStatus.PAID, PayoutItemStatus.CANCELLED)


def batch_status_for(items: list[PayoutItem]) -> PayoutBatchStatus:
    statuses = [i.status for i in items]
    if statuses and all(s in (PayoutItemStatus.PAID, PayoutItemStatus.CANCELLED) for s in statuses):
        return PayoutBatchStatus.COMPLETED
    if any(s == PayoutItemStatus.PROCESSING for s in statuses):
        return PayoutBatchStatus.PROCESSING
    if all(s in (PayoutItemStatus.FAILED, PayoutItemStatus.PENDING_KYC) for s in statuses):
        return PayoutBatchStatus.FAILED
    return PayoutBatchStatus.PARTIAL


async def handle_payout_execute(ctx: dict, job) -> dict:
    payload = require_payload(job, PayoutExecutePayload)
    payments = require_collaborator(ctx, "payments")
    log = logger.bind(job_id=job.id, batch_id=payload.batch_id)

    async with ctx["session_factory"]() as db:
        batch = await db.get(PayoutBatch, payload.batch_id)
        if batch is None:
            raise BatchNotFound(payload.batch_id)

        items = list((await db.execute(
            select(PayoutItem).where(PayoutItem.batch_id == batch.id).order_by(PayoutItem.id)
        )).scalars().all())

        eligible = submitted = skipped = pending_kyc = failed = 0

        for item in items:
            if item.status in IN_FLIGHT_OR_DONE:
                skipped += 1
                continue
            eligible += 1

            if not item.recipient_account_id:
                await db.execute(
                    update(PayoutItem)
                    .where(PayoutItem.id == item.id, PayoutItem.status.in_(SUBMITTABLE_ITEM_STATUSES))
                    .values(status=PayoutItemStatus.PENDING_KYC, failure_reason="Recipient has no payout account")
                    .execution_options(synchronize_session=False)
                )
                await db.commit()
                pending_kyc += 1
                continue

            # Take the item before touching the provider
            claim = await db.execute(
                update(PayoutItem)
                .where(PayoutItem.id == item.id, PayoutItem.status.in_(SUBMITTABLE_ITEM_STATUSES))
                .values(
                    status=PayoutItemStatus.PROCESSING,
                    submission_count=PayoutItem.submission_count + 1,
                    failure_reason=None,
                )
                .execution_options(synchronize_session=False)
            )
            await db.commit()
            if claim.rowcount != 1:
                skipped += 1
                continue

            try:
                reference = await payments.create_transfer(
                    amount_cents=item.amount_cents,
                    currency=batch.currency,
                    destination_account=item.recipient_account_id,
                    idempotency_key=item.idempotency_key,
                    metadata={"batch_id": batch.id, "item_id": item.id, "job_id": job.id},
                )
            except (TransientError, CollaboratorRejected, httpx.TransportError) as exc:
                await db.execute(
                    update(PayoutItem)
                    .where(PayoutItem.id == item.id, PayoutItem.status == PayoutItemStatus.PROCESSING)
                    .values(status=PayoutItemStatus.FAILED, failure_reason=str(exc)[:1000])
                    .execution_options(synchronize_session=False)
                )
                await db.commit()
                failed += 1
                log.warning("payout_item_failed", item_id=item.id, error=str(exc))
                continue

            await db.execute(
                update(PayoutItem)
                .where(PayoutItem.id == item.id)
                .values(provider_reference_id=reference)
                .execution_options(synchronize_session=False)
            )
            await db.commit()
            submitted += 1
            log.info("payout_item_submitted", item_id=item.id, provider=payments.name, reference=reference)

        refreshed = list((await db.execute(
            select(PayoutItem)
            .where(PayoutItem.batch_id == batch.id)
            .execution_options(populate_existing=True)
        )).scalars().all())
        batch.status = batch_status_for(refreshed)
        await db.commit()

    summary = {
        "batch_id": payload.batch_id,
        "total_items": len(items),
        "eligible": eligible,
        "total_submitted": submitted,
        "skipped": skipped,
        "pending_kyc": pending_kyc,
        "failed": failed,
        "batch_status": batch.status.value,
    }
    log.info("payout_batch_executed", **{k: v for k, v in summary.items() if k != "batch_id"})

    if eligible > 0 and submitted == 0:
        raise PartialSubmissionFailure(
            f"No payout items submitted for batch {payload.batch_id} "
            f"({pending_kyc} pending KYC, {failed} failed)"
        )
    return summary
