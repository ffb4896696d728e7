"""
Polling worker.

Each worker loop claims one job at a time from the shared jobs table, runs
the registered handler and writes the outcome back. Several loops can run in
one process (``WORKER_CONCURRENCY``) and any number of processes can poll the
same database.

Run with: jobqueue-worker
"""
import asyncio
import os
import signal
import socket
import time

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from jobqueue.collaborators import Collaborators, build_collaborators
from jobqueue.config import settings
from jobqueue.database import AsyncSessionLocal, engine
from jobqueue.errors import JobFailure, JobNotLeased, JobTypeNotFound, classify_error
from jobqueue.jobs.catalog import build_registry
from jobqueue.jobs.registry import JobTypeRegistry
from jobqueue.logging_config import configure_logging, get_logger
from jobqueue.models.job import Job, JobStatus
from jobqueue.routes.metrics import track_job_succeeded
from jobqueue.sentry_config import capture_exception, configure_sentry
from jobqueue.services.job_service import JobService
from jobqueue.utils import Clock, utcnow


def default_worker_id(index: int = 0) -> str:
    return f"{socket.gethostname()}-{os.getpid()}-{index}"


class Worker:
    """A single claim/execute/write-back loop."""

    def __init__(
        self,
        worker_id: str,
        session_factory: async_sessionmaker[AsyncSession],
        registry: JobTypeRegistry,
        collaborators: Collaborators,
        clock: Clock = utcnow,
        job_types: list[str] | None = None,
        poll_interval: float | None = None,
        auto_renew_lease: bool | None = None,
    ):
        self.worker_id = worker_id
        self.session_factory = session_factory
        self.registry = registry
        self.collaborators = collaborators
        self.clock = clock
        self.job_types = job_types
        self.poll_interval = settings.WORKER_POLL_INTERVAL_SECONDS if poll_interval is None else poll_interval
        self.auto_renew_lease = settings.WORKER_AUTO_RENEW_LEASE if auto_renew_lease is None else auto_renew_lease
        self.log = get_logger(worker_id=worker_id)

    def _job_service(self, db: AsyncSession) -> JobService:
        return JobService(db, self.registry, clock=self.clock)

    async def claim(self) -> Job | None:
        async with self.session_factory() as db:
            return await self._job_service(db).claim_next(self.worker_id, job_types=self.job_types)

    async def run_once(self) -> Job | None:
        """
        Claim and process at most one job.

        Returns:
            The job in its settled state, or None if nothing was claimable
        """
        job = await self.claim()
        if job is None:
            return None
        return await self.process(job)

    async def process(self, job: Job) -> Job | None:
        """Run the handler for a leased job and record the outcome."""
        log = self.log.bind(job_id=job.id, job_type=job.type)

        try:
            handler = self.registry.get_handler(job.type)
        except JobTypeNotFound as exc:
            log.error("job_type_not_registered")
            return await self._settle_failure(job, classify_error(exc), exc)

        try:
            async with self.session_factory() as db:
                job = await self._job_service(db).mark_running(job.id, self.worker_id)
        except JobNotLeased:
            log.warning("lease_lost_before_start")
            return None

        log = log.bind(attempt=job.attempt, max_attempts=job.max_attempts)
        log.info("job_started")

        heartbeat = asyncio.create_task(self._heartbeat(job)) if self.auto_renew_lease else None
        started = time.monotonic()
        try:
            try:
                result = await handler(self._context(job), job)
            finally:
                if heartbeat is not None:
                    await self._stop_heartbeat(heartbeat, log)
        except Exception as exc:
            failure = classify_error(exc)
            log.warning(
                "job_handler_failed",
                error_code=failure.code,
                error=failure.message,
                retryable=failure.retryable,
            )
            return await self._settle_failure(job, failure, exc)

        duration = time.monotonic() - started
        try:
            async with self.session_factory() as db:
                settled = await self._job_service(db).complete_job(job.id, self.worker_id, result or {})
        except JobNotLeased:
            log.warning("lease_lost_before_completion", duration_seconds=round(duration, 3))
            return None

        track_job_succeeded(job.type, duration)
        log.info("job_succeeded", duration_seconds=round(duration, 3))
        return settled

    async def _settle_failure(self, job: Job, failure: JobFailure, exc: BaseException) -> Job | None:
        try:
            async with self.session_factory() as db:
                settled = await self._job_service(db).fail_job(job.id, self.worker_id, failure)
        except JobNotLeased:
            self.log.warning("lease_lost_before_failure", job_id=job.id, error_code=failure.code)
            return None

        if settled.status == JobStatus.DLQ:
            capture_exception(exc)
        return settled

    def _context(self, job: Job) -> dict:
        async def renew_lease() -> bool:
            async with self.session_factory() as db:
                return await self._job_service(db).renew_lease(job.id, self.worker_id)

        return {
            "job_id": job.id,
            "worker_id": self.worker_id,
            "session_factory": self.session_factory,
            "registry": self.registry,
            "collaborators": self.collaborators,
            "clock": self.clock,
            "renew_lease": renew_lease,
        }

    @staticmethod
    async def _stop_heartbeat(heartbeat: asyncio.Task, log):
        """Cancel the heartbeat and wait until it has stopped."""
        heartbeat.cancel()
        try:
            await heartbeat
        except asyncio.CancelledError:
            pass
        except Exception:
            log.exception("heartbeat_failed")

    async def _heartbeat(self, job: Job):
        """Renew the lease at a third of its duration until cancelled."""
        interval = max(self.registry.get_policy(job.type).timeout_seconds / 3, 1)
        while True:
            await asyncio.sleep(interval)
            async with self.session_factory() as db:
                renewed = await self._job_service(db).renew_lease(job.id, self.worker_id)
            if not renewed:
                self.log.warning("heartbeat_stopped", job_id=job.id)
                return

    async def run(self, stop_event: asyncio.Event):
        """Poll until ``stop_event`` is set. The current job always finishes."""
        self.log.info("worker_started", job_types=self.job_types)
        while not stop_event.is_set():
            try:
                processed = await self.run_once()
            except Exception:
                self.log.exception("worker_loop_error")
                capture_exception()
                await self._wait(stop_event, settings.WORKER_ERROR_BACKOFF_SECONDS)
                continue

            if processed is None:
                await self._wait(stop_event, self.poll_interval)
        self.log.info("worker_stopped")

    @staticmethod
    async def _wait(stop_event: asyncio.Event, seconds: float):
        try:
            await asyncio.wait_for(stop_event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass


async def run_workers(
    session_factory: async_sessionmaker[AsyncSession],
    registry: JobTypeRegistry,
    collaborators: Collaborators,
    concurrency: int,
    stop_event: asyncio.Event,
):
    workers = [
        Worker(default_worker_id(i), session_factory, registry, collaborators)
        for i in range(concurrency)
    ]
    await asyncio.gather(*(w.run(stop_event) for w in workers))


async def main():
    """Start WORKER_CONCURRENCY worker loops and stop them on SIGINT/SIGTERM."""
    configure_logging()
    configure_sentry()

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop_event.set)

    registry = build_registry()
    collaborators = build_collaborators()
    log = get_logger(component="worker")
    log.info("workers_starting", concurrency=settings.WORKER_CONCURRENCY, job_types=registry.types())

    try:
        await run_workers(AsyncSessionLocal, registry, collaborators, settings.WORKER_CONCURRENCY, stop_event)
    finally:
        await collaborators.aclose()
        await engine.dispose()
        log.info("workers_shut_down")


def run():
    asyncio.run(main())


if __name__ == "__main__":
    run()
