"""
Notification job handlers.

``notification.dispatch`` runs the dispatch engine once per notification.
``notification.redeliver`` retries channel attempts that failed transiently
once their ``next_retry_at`` is due.
"""
from jobqueue.jobs.handlers.common import require_payload
from jobqueue.jobs.payloads import NotificationDispatchPayload, NotificationRedeliverPayload
from jobqueue.logging_config import get_logger
from jobqueue.services.dispatch_service import DispatchOutcome, DispatchService
from jobqueue.services.job_service import JobService

REDELIVER_JOB_TYPE = "notification.redeliver"

logger = get_logger(component="handlers.notification")


async def handle_notification_dispatch(ctx: dict, job) -> dict:
    payload = require_payload(job, NotificationDispatchPayload)

    async with ctx["session_factory"]() as db:
        service = DispatchService(db, ctx["collaborators"].adapters, clock=ctx["clock"])
        outcome = await service.dispatch(payload.notification_id)
        await _schedule_redelivery(ctx, db, job, outcome)

    return outcome.as_result()


async def handle_notification_redeliver(ctx: dict, job) -> dict:
    payload = require_payload(job, NotificationRedeliverPayload)

    async with ctx["session_factory"]() as db:
        service = DispatchService(db, ctx["collaborators"].adapters, clock=ctx["clock"])
        outcome = await service.redeliver_due(payload.notification_id)
        await _schedule_redelivery(ctx, db, job, outcome)

    return outcome.as_result()


async def _schedule_redelivery(ctx: dict, db, job, outcome: DispatchOutcome):
    if outcome.next_retry_at is None:
        return
    follow_up = await JobService(db, ctx["registry"], clock=ctx["clock"]).enqueue(
        REDELIVER_JOB_TYPE,
        {"notification_id": outcome.notification_id},
        not_before=outcome.next_retry_at,
        created_by=job.id,
    )
    logger.info(
        "redelivery_scheduled",
        notification_id=outcome.notification_id,
        job_id=follow_up.id,
        next_run_at=outcome.next_retry_at.isoformat(),
    )
