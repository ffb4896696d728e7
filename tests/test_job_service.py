"""Job record store and leasing scheduler."""
import asyncio
from datetime import timedelta

import pytest

from jobqueue.errors import (
    JobFailure,
    JobNotCancellable,
    JobNotDeadLettered,
    JobNotFound,
    JobNotLeased,
    JobTypeNotFound,
)
from jobqueue.models.job import JobStatus
from jobqueue.services.job_service import JobService

THUMBNAIL = {"asset_id": "ast_1", "version_number": 1}


@pytest.fixture
def service(db, registry, clock):
    return JobService(db, registry, clock=clock)


async def test_enqueue_applies_policy_defaults(service, clock):
    job = await service.enqueue("thumbnail.create", THUMBNAIL)

    assert job.id.startswith("job_")
    assert job.status == JobStatus.QUEUED
    assert job.priority == 30
    assert job.max_attempts == 3
    assert job.attempt == 0
    assert job.next_run_at == clock()
    assert job.payload["sizes"] == [128, 512]


async def test_enqueue_not_before(service, clock):
    later = clock() + timedelta(minutes=5)
    assert (await service.enqueue("thumbnail.create", THUMBNAIL, not_before=later)).next_run_at == later

    # A time in the past means "now"
    earlier = clock() - timedelta(minutes=5)
    assert (await service.enqueue("thumbnail.create", THUMBNAIL, not_before=earlier)).next_run_at == clock()


async def test_enqueue_validation(service):
    with pytest.raises(JobTypeNotFound):
        await service.enqueue("missing.type", {})
    with pytest.raises(ValueError):
        await service.enqueue("thumbnail.create", THUMBNAIL, priority=101)
    with pytest.raises(ValueError):
        await service.enqueue("thumbnail.create", THUMBNAIL, max_attempts=0)
    assert await service.list_jobs() == []


async def test_claim_orders_by_priority_then_due_time(service, clock):
    high_early = await service.enqueue("thumbnail.create", THUMBNAIL, priority=90)
    clock.advance(1)
    low = await service.enqueue("thumbnail.create", THUMBNAIL, priority=10)
    high_late = await service.enqueue("thumbnail.create", THUMBNAIL, priority=90)

    claimed = [await service.claim_next("w1") for _ in range(3)]
    assert [j.id for j in claimed] == [high_early.id, high_late.id, low.id]
    assert await service.claim_next("w1") is None


async def test_claim_sets_lease(service, clock):
    job = await service.enqueue("thumbnail.create", THUMBNAIL)

    claimed = await service.claim_next("w1")

    assert claimed.id == job.id
    assert claimed.status == JobStatus.LEASED
    assert claimed.worker_id == "w1"
    assert claimed.lease_expires_at == clock() + timedelta(seconds=300)
    assert claimed.version == 1
    # Claiming does not count as an attempt
    assert claimed.attempt == 0


async def test_future_jobs_are_not_claimable(service, clock):
    await service.enqueue("thumbnail.create", THUMBNAIL, not_before=clock() + timedelta(seconds=60))
    assert await service.claim_next("w1") is None

    clock.advance(60)
    assert await service.claim_next("w1") is not None


async def test_claim_filters_by_job_type(service):
    await service.enqueue("thumbnail.create", THUMBNAIL)
    assert await service.claim_next("w1", job_types=["pdf.generate"]) is None
    assert await service.claim_next("w1", job_types=["thumbnail.create"]) is not None


async def test_concurrent_claims_are_exclusive(session_factory, registry, clock):
    async with session_factory() as db:
        service = JobService(db, registry, clock=clock)
        ids = {(await service.enqueue("thumbnail.create", THUMBNAIL)).id for _ in range(3)}

    async def claimer(n: int):
        async with session_factory() as db:
            return await JobService(db, registry, clock=clock).claim_next(f"w{n}")

    results = await asyncio.gather(*(claimer(n) for n in range(6)))
    claimed = [job for job in results if job is not None]

    assert len(claimed) == 3
    assert {job.id for job in claimed} == ids
    assert len({job.worker_id for job in claimed}) == 3


async def test_concurrency_limit_caps_live_leases(service, clock):
    payouts = [await service.enqueue("payout.execute", {"batch_id": f"pob_{n}"}) for n in range(6)]
    thumbnail = await service.enqueue("thumbnail.create", THUMBNAIL)

    claimed = [await service.claim_next("w1") for _ in range(6)]
    assert [j.type for j in claimed] == ["payout.execute"] * 5 + ["thumbnail.create"]
    assert claimed[-1].id == thumbnail.id
    assert await service.claim_next("w1") is None

    # A finished payout frees a slot
    await service.mark_running(claimed[0].id, "w1")
    await service.complete_job(claimed[0].id, "w1", {})
    waiting = {p.id for p in payouts} - {j.id for j in claimed[:5]}
    sixth = await service.claim_next("w1")
    assert {sixth.id} == waiting

    # Lapsed leases do not hold a slot
    clock.advance(61)
    reclaimed = await service.claim_next("w2")
    assert reclaimed.type == "payout.execute"
    assert reclaimed.worker_id == "w2"


async def test_concurrency_limit_holds_under_concurrent_claims(session_factory, registry, clock):
    async with session_factory() as db:
        service = JobService(db, registry, clock=clock)
        for n in range(8):
            await service.enqueue("payout.execute", {"batch_id": f"pob_{n}"})

    async def claimer(n: int):
        async with session_factory() as db:
            return await JobService(db, registry, clock=clock).claim_next(f"w{n}")

    results = await asyncio.gather(*(claimer(n) for n in range(8)))
    assert len([job for job in results if job is not None]) == 5


async def test_expired_lease_is_reclaimed(service, clock):
    job = await service.enqueue("thumbnail.create", THUMBNAIL)
    await service.claim_next("w1")
    await service.mark_running(job.id, "w1")

    # Lease still valid
    clock.advance(299)
    assert await service.claim_next("w2") is None

    clock.advance(2)
    reclaimed = await service.claim_next("w2")
    assert reclaimed.id == job.id
    assert reclaimed.worker_id == "w2"

    # The first attempt had already started; it is not counted again
    running = await service.mark_running(job.id, "w2")
    assert running.attempt == 1

    # The old holder can no longer write back
    with pytest.raises(JobNotLeased):
        await service.complete_job(job.id, "w1", {"ok": True})

    done = await service.complete_job(job.id, "w2", {"ok": True})
    assert done.status == JobStatus.SUCCEEDED
    assert done.worker_id is None
    assert done.lease_expires_at is None
    assert done.completed_at == clock()


async def test_renew_lease(service, clock):
    job = await service.enqueue("thumbnail.create", THUMBNAIL)
    await service.claim_next("w1")

    clock.advance(100)
    assert await service.renew_lease(job.id, "w1") is True
    assert (await service.get_job(job.id)).lease_expires_at == clock() + timedelta(seconds=300)

    assert await service.renew_lease(job.id, "w2") is False

    clock.advance(301)
    assert await service.renew_lease(job.id, "w1") is False
    assert await service.renew_lease("job_missing", "w1") is False


async def test_fail_job_retries_with_backoff(service, registry, clock):
    job = await service.enqueue("pdf.generate", {"agreement_id": "agr_1"}, max_attempts=2)
    await service.claim_next("w1")
    await service.mark_running(job.id, "w1")

    failed = await service.fail_job(job.id, "w1", JobFailure("network_error", "timeout", True))

    assert failed.status == JobStatus.QUEUED
    assert failed.attempt == 1
    assert failed.worker_id is None
    assert failed.started_at is None
    assert failed.last_error == {"code": "network_error", "message": "timeout"}
    # 60s base with up to 10% jitter
    assert clock() + timedelta(seconds=60) <= failed.next_run_at <= clock() + timedelta(seconds=66)

    clock.advance(66)
    await service.claim_next("w1")
    await service.mark_running(job.id, "w1")
    dead = await service.fail_job(job.id, "w1", JobFailure("network_error", "timeout again", True))

    assert dead.status == JobStatus.DLQ
    assert dead.attempt == 2
    assert dead.completed_at == clock()


async def test_fail_job_non_retryable_goes_to_dlq(service):
    job = await service.enqueue("pdf.generate", {"agreement_id": "agr_1"})
    await service.claim_next("w1")
    await service.mark_running(job.id, "w1")

    dead = await service.fail_job(job.id, "w1", JobFailure("job_data_missing", "created_by", False))

    assert dead.status == JobStatus.DLQ
    assert dead.attempt == 1
    assert dead.max_attempts == 5


async def test_write_backs_require_the_lease(service):
    job = await service.enqueue("pdf.generate", {"agreement_id": "agr_1"})
    with pytest.raises(JobNotLeased):
        await service.mark_running(job.id, "w1")
    with pytest.raises(JobNotLeased):
        await service.fail_job(job.id, "w1", JobFailure("x", "y", True))


async def test_cancel(service):
    queued = await service.enqueue("thumbnail.create", THUMBNAIL)
    cancelled = await service.cancel(queued.id)
    assert cancelled.status == JobStatus.CANCELLED
    assert cancelled.is_terminal

    leased = await service.enqueue("thumbnail.create", THUMBNAIL)
    await service.claim_next("w1")
    with pytest.raises(JobNotCancellable):
        await service.cancel(leased.id)

    with pytest.raises(JobNotFound):
        await service.cancel("job_missing")


async def test_requeue_dead_letter(service):
    job = await service.enqueue("pdf.generate", {"agreement_id": "agr_1"}, priority=65)
    with pytest.raises(JobNotDeadLettered):
        await service.requeue_dead_letter(job.id)

    await service.claim_next("w1")
    await service.mark_running(job.id, "w1")
    await service.fail_job(job.id, "w1", JobFailure("job_data_missing", "created_by", False))

    fresh = await service.requeue_dead_letter(job.id, requested_by="ops_1")

    assert fresh.id != job.id
    assert fresh.status == JobStatus.QUEUED
    assert fresh.attempt == 0
    assert fresh.priority == 65
    assert fresh.requeued_from == job.id
    assert fresh.created_by == "ops_1"
    assert (await service.get_job(job.id)).status == JobStatus.DLQ
    assert [j.id for j in await service.list_dead_letters()] == [job.id]

    with pytest.raises(JobNotFound):
        await service.requeue_dead_letter("job_missing")


async def test_stats_and_listing(service):
    a = await service.enqueue("thumbnail.create", THUMBNAIL)
    await service.enqueue("pdf.generate", {"agreement_id": "agr_1"})
    await service.cancel(a.id)

    stats = await service.get_stats()
    assert stats["queued"] == 1
    assert stats["cancelled"] == 1
    assert stats["dlq"] == 0
    assert set(stats) == {s.value for s in JobStatus}

    assert [j.type for j in await service.list_jobs(job_type="pdf.generate")] == ["pdf.generate"]
    assert [j.id for j in await service.list_jobs(status=JobStatus.CANCELLED)] == [a.id]
