"""
Job service: persistence, leasing and retry transitions.

Every state change is a single conditional UPDATE that re-checks the state
the caller expects. Claiming additionally compares ``version`` so two workers
racing for the same row can never both win.
"""
from datetime import datetime, timedelta
from sqlalchemy import and_, case, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import aliased

from jobqueue.config import settings
from jobqueue.errors import (
    JobFailure,
    JobNotCancellable,
    JobNotDeadLettered,
    JobNotFound,
    JobNotLeased,
    JobTypeNotFound,
)
from jobqueue.jobs.registry import JobTypeRegistry
from jobqueue.jobs.retry_policy import RetryPolicy
from jobqueue.logging_config import get_logger
from jobqueue.models.job import Job, JobStatus, LEASED_STATUSES
from jobqueue.routes.metrics import (
    track_job_claimed,
    track_job_dead_lettered,
    track_job_enqueued,
    track_job_retried,
)
from jobqueue.utils import Clock, to_naive_utc, utcnow

logger = get_logger(component="job_service")


def eligible_for_claim(now: datetime):
    """Queued and due, or leased/running with a lapsed lease."""
    return or_(
        and_(Job.status == JobStatus.QUEUED, Job.next_run_at <= now),
        and_(Job.status.in_(LEASED_STATUSES), Job.lease_expires_at < now),
    )


def active_jobs_of_type(job_type: str, now: datetime):
    """Scalar subquery counting live leases of one type."""
    active = aliased(Job)
    return (
        select(func.count())
        .select_from(active)
        .where(
            active.type == job_type,
            active.status.in_(LEASED_STATUSES),
            active.lease_expires_at >= now,
        )
        .scalar_subquery()
    )


class JobService:
    """Service for enqueuing, leasing and settling jobs."""

    def __init__(self, db: AsyncSession, registry: JobTypeRegistry, clock: Clock = utcnow):
        self.db = db
        self.registry = registry
        self.clock = clock

    # ------------------------------------------------------------------
    # Producers
    # ------------------------------------------------------------------

    async def enqueue(
        self,
        job_type: str,
        payload: dict | None = None,
        priority: int | None = None,
        max_attempts: int | None = None,
        not_before: datetime | None = None,
        created_by: str | None = None,
        requeued_from: str | None = None,
        commit: bool = True,
    ) -> Job:
        """
        Persist a new queued job.

        Args:
            job_type: Registered job type
            payload: Type-specific payload, validated against the type's schema
            priority: 0-100, higher is claimed sooner (defaults from policy)
            max_attempts: Override for the policy's attempt ceiling
            not_before: Earliest time the job may run
            created_by: Reference to the creator
            commit: Commit immediately; pass False to join the caller's transaction

        Returns:
            Newly created Job

        Raises:
            JobTypeNotFound: unknown job type
            PayloadValidationFailed: payload does not match the schema
        """
        policy = self.registry.get_policy(job_type)
        normalized = self.registry.validate_payload(job_type, payload)

        if priority is None:
            priority = policy.default_priority
        if not 0 <= priority <= 100:
            raise ValueError("priority must be between 0 and 100")
        if max_attempts is None:
            max_attempts = policy.max_attempts
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")

        now = self.clock()
        next_run_at = now
        if not_before is not None:
            next_run_at = max(now, to_naive_utc(not_before))

        job = Job(
            type=job_type,
            payload=normalized,
            priority=priority,
            max_attempts=max_attempts,
            status=JobStatus.QUEUED,
            next_run_at=next_run_at,
            attempt=0,
            version=0,
            created_by=created_by,
            requeued_from=requeued_from,
            created_at=now,
            updated_at=now,
        )
        self.db.add(job)
        if commit:
            await self.db.commit()
        else:
            await self.db.flush()

        track_job_enqueued(job_type)
        logger.info(
            "job_enqueued",
            job_id=job.id,
            job_type=job_type,
            priority=priority,
            next_run_at=next_run_at.isoformat(),
        )
        return job

    async def cancel(self, job_id: str) -> Job:
        """Cancel a job. Only honoured while the job is still queued."""
        stmt = (
            update(Job)
            .where(Job.id == job_id, Job.status == JobStatus.QUEUED)
            .values(
                status=JobStatus.CANCELLED,
                completed_at=self.clock(),
                version=Job.version + 1,
            )
            .execution_options(synchronize_session=False)
        )
        result = await self.db.execute(stmt)
        await self.db.commit()

        job = await self._reload(job_id)
        if job is None:
            raise JobNotFound(job_id)
        if result.rowcount != 1:
            raise JobNotCancellable(job_id, job.status.value)

        logger.info("job_cancelled", job_id=job_id, job_type=job.type)
        return job

    async def requeue_dead_letter(self, job_id: str, requested_by: str | None = None) -> Job:
        """
        Re-enqueue a dead-lettered job as a fresh job.

        The dead-lettered record is left untouched; the new job points back
        to it through ``requeued_from``.
        """
        dead = await self.get_job(job_id)
        if dead is None:
            raise JobNotFound(job_id)
        if dead.status != JobStatus.DLQ:
            raise JobNotDeadLettered(job_id, dead.status.value)

        job = await self.enqueue(
            dead.type,
            dead.payload,
            priority=dead.priority,
            created_by=requested_by or dead.created_by,
            requeued_from=dead.id,
        )
        logger.info("job_requeued_from_dlq", job_id=job.id, requeued_from=dead.id, job_type=dead.type)
        return job

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_job(self, job_id: str) -> Job | None:
        """Get job by ID."""
        return await self._reload(job_id)

    async def list_jobs(
        self,
        status: JobStatus | None = None,
        job_type: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[Job]:
        stmt = select(Job)
        if status is not None:
            stmt = stmt.where(Job.status == status)
        if job_type is not None:
            stmt = stmt.where(Job.type == job_type)
        stmt = stmt.order_by(Job.created_at.desc(), Job.id).limit(limit).offset(offset)
        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    async def list_dead_letters(self, limit: int = 50, offset: int = 0) -> list[Job]:
        return await self.list_jobs(status=JobStatus.DLQ, limit=limit, offset=offset)

    async def get_stats(self) -> dict[str, int]:
        """Count jobs per status."""
        stmt = select(Job.status, func.count()).group_by(Job.status)
        result = await self.db.execute(stmt)
        counts = {s.value: 0 for s in JobStatus}
        for status, count in result.all():
            counts[JobStatus(status).value] = count
        return counts

    # ------------------------------------------------------------------
    # Leasing
    # ------------------------------------------------------------------

    async def claim_next(
        self,
        worker_id: str,
        job_types: list[str] | None = None,
        scan_limit: int | None = None,
    ) -> Job | None:
        """
        Atomically lease the next eligible job.

        Candidates are ordered by priority (desc) then next_run_at (asc).
        Each candidate is taken with an UPDATE guarded by its version and the
        eligibility predicate; if another worker won, the next candidate is
        tried. Types with a concurrency limit are skipped while they are at
        the limit, and the claim UPDATE re-counts live leases of the type.

        Returns:
            The leased Job, or None if nothing is claimable
        """
        now = self.clock()
        eligible = eligible_for_claim(now)
        saturated = await self._saturated_types(now)

        stmt = (
            select(Job.id, Job.version, Job.type)
            .where(eligible)
            .order_by(Job.priority.desc(), Job.next_run_at.asc())
            .limit(scan_limit or settings.CLAIM_SCAN_LIMIT)
        )
        if job_types:
            stmt = stmt.where(Job.type.in_(job_types))
        candidates = (await self.db.execute(stmt)).all()

        for job_id, version, job_type in candidates:
            if job_type in saturated:
                continue
            conditions = [Job.id == job_id, Job.version == version, eligible]
            limit = self._concurrency_limit(job_type)
            if limit is not None:
                conditions.append(active_jobs_of_type(job_type, now) < limit)

            lease_expires_at = now + timedelta(seconds=self._lease_seconds(job_type))
            claim = (
                update(Job)
                .where(*conditions)
                .values(
                    status=JobStatus.LEASED,
                    worker_id=worker_id,
                    lease_expires_at=lease_expires_at,
                    version=Job.version + 1,
                )
                .execution_options(synchronize_session=False)
            )
            result = await self.db.execute(claim)
            await self.db.commit()

            if result.rowcount == 1:
                job = await self._reload(job_id)
                track_job_claimed(job_type)
                logger.info(
                    "job_claimed",
                    job_id=job_id,
                    job_type=job_type,
                    worker_id=worker_id,
                    attempt=job.attempt,
                    lease_expires_at=lease_expires_at.isoformat(),
                )
                return job

            logger.debug("job_claim_lost", job_id=job_id, worker_id=worker_id)

        return None

    async def renew_lease(self, job_id: str, worker_id: str, extend_seconds: int | None = None) -> bool:
        """
        Extend the caller's lease.

        Only succeeds while the caller still holds a lease that has not lapsed.
        """
        now = self.clock()
        job = await self._reload(job_id)
        if job is None:
            return False

        seconds = extend_seconds or self._lease_seconds(job.type)
        stmt = (
            update(Job)
            .where(
                Job.id == job_id,
                Job.worker_id == worker_id,
                Job.status.in_(LEASED_STATUSES),
                Job.lease_expires_at >= now,
            )
            .values(lease_expires_at=now + timedelta(seconds=seconds))
            .execution_options(synchronize_session=False)
        )
        result = await self.db.execute(stmt)
        await self.db.commit()

        renewed = result.rowcount == 1
        if not renewed:
            logger.warning("lease_renewal_rejected", job_id=job_id, worker_id=worker_id)
        return renewed

    # ------------------------------------------------------------------
    # Lease holder write-backs
    # ------------------------------------------------------------------

    async def mark_running(self, job_id: str, worker_id: str) -> Job:
        """
        Start executing a leased job.

        Increments ``attempt`` unless the current attempt already started
        (a job reclaimed after its previous holder crashed mid-run).
        """
        now = self.clock()
        stmt = (
            update(Job)
            .where(
                Job.id == job_id,
                Job.worker_id == worker_id,
                Job.status.in_(LEASED_STATUSES),
            )
            .values(
                status=JobStatus.RUNNING,
                attempt=case((Job.started_at.is_(None), Job.attempt + 1), else_=Job.attempt),
                started_at=func.coalesce(Job.started_at, now),
                version=Job.version + 1,
            )
            .execution_options(synchronize_session=False)
        )
        result = await self.db.execute(stmt)
        await self.db.commit()

        if result.rowcount != 1:
            raise JobNotLeased(job_id, worker_id)
        return await self._reload(job_id)

    async def complete_job(self, job_id: str, worker_id: str, result: dict | None) -> Job:
        """Mark a job SUCCEEDED with its result and release the lease."""
        now = self.clock()
        stmt = (
            update(Job)
            .where(
                Job.id == job_id,
                Job.worker_id == worker_id,
                Job.status.in_(LEASED_STATUSES),
            )
            .values(
                status=JobStatus.SUCCEEDED,
                result=result or {},
                worker_id=None,
                lease_expires_at=None,
                completed_at=now,
                version=Job.version + 1,
            )
            .execution_options(synchronize_session=False)
        )
        outcome = await self.db.execute(stmt)
        await self.db.commit()

        if outcome.rowcount != 1:
            raise JobNotLeased(job_id, worker_id)
        return await self._reload(job_id)

    async def fail_job(self, job_id: str, worker_id: str, failure: JobFailure) -> Job:
        """
        Record a failed execution.

        Non-retryable failures and exhausted budgets go to DLQ; anything else
        is re-queued after the type's backoff.
        """
        job = await self._reload(job_id)
        if job is None or job.worker_id != worker_id or job.status not in LEASED_STATUSES:
            raise JobNotLeased(job_id, worker_id)

        now = self.clock()
        values = {
            "last_error_code": failure.code,
            "last_error_message": failure.message,
            "worker_id": None,
            "lease_expires_at": None,
            "version": Job.version + 1,
        }

        retry = failure.retryable and job.attempt < job.max_attempts
        if retry:
            delay = self._retry_policy(job.type).backoff_seconds(job.attempt)
            values.update(
                status=JobStatus.QUEUED,
                next_run_at=now + timedelta(seconds=delay),
                started_at=None,
            )
        else:
            values.update(status=JobStatus.DLQ, completed_at=now)

        stmt = (
            update(Job)
            .where(
                Job.id == job_id,
                Job.worker_id == worker_id,
                Job.version == job.version,
                Job.status.in_(LEASED_STATUSES),
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        outcome = await self.db.execute(stmt)
        await self.db.commit()

        if outcome.rowcount != 1:
            raise JobNotLeased(job_id, worker_id)

        job = await self._reload(job_id)
        log = logger.bind(job_id=job_id, job_type=job.type, worker_id=worker_id, attempt=job.attempt)
        if retry:
            track_job_retried(job.type, failure.code)
            log.warning(
                "job_rescheduled",
                error_code=failure.code,
                error=failure.message,
                next_run_at=job.next_run_at.isoformat(),
            )
        else:
            track_job_dead_lettered(job.type, failure.code)
            log.error(
                "job_dead_lettered",
                error_code=failure.code,
                error=failure.message,
                retryable=failure.retryable,
                max_attempts=job.max_attempts,
            )
        return job

    # ------------------------------------------------------------------

    async def _reload(self, job_id: str) -> Job | None:
        return await self.db.get(Job, job_id, populate_existing=True)

    def _lease_seconds(self, job_type: str) -> int:
        try:
            return self.registry.get_policy(job_type).timeout_seconds
        except JobTypeNotFound:
            return settings.DEFAULT_LEASE_SECONDS

    def _retry_policy(self, job_type: str) -> RetryPolicy:
        try:
            return self.registry.get_policy(job_type).retry
        except JobTypeNotFound:
            return RetryPolicy()

    def _concurrency_limit(self, job_type: str) -> int | None:
        try:
            return self.registry.get_policy(job_type).concurrency_limit
        except JobTypeNotFound:
            return None

    async def _saturated_types(self, now: datetime) -> set[str]:
        """Types whose live leases already reach their concurrency limit."""
        limits = {}
        for job_type in self.registry.types():
            limit = self._concurrency_limit(job_type)
            if limit is not None:
                limits[job_type] = limit
        if not limits:
            return set()

        stmt = (
            select(Job.type, func.count())
            .where(
                Job.type.in_(list(limits)),
                Job.status.in_(LEASED_STATUSES),
                Job.lease_expires_at >= now,
            )
            .group_by(Job.type)
        )
        counts = dict((await self.db.execute(stmt)).all())
        return {job_type for job_type, limit in limits.items() if counts.get(job_type, 0) >= limit}
