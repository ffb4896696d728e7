"""
Notification dispatch engine.

Fans a queued notification out to every (recipient, channel) pair, records
one ledger row per delivery try and writes the aggregate status exactly once.

A pass is safe to re-run after a crash: pairs whose latest attempt is
``success`` or ``permanent_failed`` are left alone, an attempt still
``pending`` from the dead pass is settled as an ``interrupted`` failure, and
anything under the channel attempt cap gets a new attempt with the next
attempt number.
"""
import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from jobqueue.adapters.base import ChannelAdapter, DeliveryReceipt, Destination
from jobqueue.config import settings
from jobqueue.errors import (
    DeliveryError,
    NotificationNotFound,
    NotificationNotQueued,
    PermanentDeliveryError,
)
from jobqueue.jobs.retry_policy import RetryPolicy
from jobqueue.logging_config import get_logger
from jobqueue.models.dispatch_attempt import AttemptStatus, DispatchAttempt
from jobqueue.models.notification import Channel, Notification, NotificationStatus
from jobqueue.routes.metrics import track_dispatch_attempt, track_notification_dispatched
from jobqueue.services.destination_directory import DestinationDirectory
from jobqueue.utils import Clock, utcnow

logger = get_logger(component="dispatch")

Pair = tuple[str, Channel]


@dataclass
class DeliveryResult:
    """Outcome of delivering one pair across all of its destinations."""
    status: AttemptStatus
    provider_reference_id: str | None = None
    error_code: str | None = None
    error_message: str | None = None
    invalid: list[tuple[Destination, str]] = field(default_factory=list)


@dataclass
class DispatchOutcome:
    notification_id: str
    status: NotificationStatus
    attempts: list[DispatchAttempt]
    next_retry_at: datetime | None = None

    def as_result(self) -> dict:
        return {
            "notification_id": self.notification_id,
            "status": self.status.value,
            "attempts": len(self.attempts),
            "next_retry_at": self.next_retry_at.isoformat() if self.next_retry_at else None,
        }


def aggregate_status(statuses: list[AttemptStatus]) -> NotificationStatus:
    """sent if every pair succeeded, failed if none did, partial otherwise."""
    if statuses and all(s == AttemptStatus.SUCCESS for s in statuses):
        return NotificationStatus.SENT
    if all(s in (AttemptStatus.FAILED, AttemptStatus.PERMANENT_FAILED) for s in statuses):
        return NotificationStatus.FAILED
    return NotificationStatus.PARTIAL


class DispatchService:
    """Delivers notifications and maintains the dispatch attempt ledger."""

    def __init__(
        self,
        db: AsyncSession,
        adapters: dict[Channel, ChannelAdapter],
        directory: DestinationDirectory | None = None,
        clock: Clock = utcnow,
        max_channel_attempts: int | None = None,
        channel_retry: RetryPolicy | None = None,
    ):
        self.db = db
        self.adapters = adapters
        self.directory = directory or DestinationDirectory(db, clock=clock)
        self.clock = clock
        self.max_channel_attempts = max_channel_attempts or settings.CHANNEL_MAX_ATTEMPTS
        self.channel_retry = channel_retry or RetryPolicy(
            base_delay_seconds=settings.CHANNEL_RETRY_BASE_SECONDS,
            max_delay_seconds=settings.CHANNEL_RETRY_MAX_SECONDS,
            jitter_ratio=0,
        )

    async def dispatch(self, notification_id: str) -> DispatchOutcome:
        """
        Deliver a queued notification on every requested channel.

        Raises:
            NotificationNotFound: id does not resolve
            NotificationNotQueued: notification already has an aggregate status
        """
        notification = await self.db.get(Notification, notification_id, populate_existing=True)
        if notification is None:
            raise NotificationNotFound(notification_id)
        if notification.status != NotificationStatus.QUEUED:
            raise NotificationNotQueued(notification_id, notification.status.value)

        log = logger.bind(notification_id=notification_id)
        latest = await self._latest_attempts(notification_id)
        await self._settle_interrupted(latest)
        recipients = {r["user_id"]: r for r in notification.recipients}
        pairs = [
            (user_id, Channel(channel))
            for user_id in recipients
            for channel in notification.channels
        ]

        todo = []
        for pair in pairs:
            previous = latest.get(pair)
            if previous is not None and previous.is_final:
                continue
            if previous is not None and previous.attempt_number >= self.max_channel_attempts:
                continue
            todo.append(pair)

        written = await self._deliver(notification, recipients, todo, latest)
        for attempt in written:
            latest[(attempt.recipient_key, attempt.channel)] = attempt

        status = aggregate_status([latest[pair].status for pair in pairs if pair in latest])

        now = self.clock()
        result = await self.db.execute(
            update(Notification)
            .where(Notification.id == notification_id, Notification.status == NotificationStatus.QUEUED)
            .values(status=status, dispatched_at=now)
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()

        if result.rowcount != 1:
            current = await self.db.get(Notification, notification_id, populate_existing=True)
            log.warning("aggregate_already_written", status=current.status.value, computed=status.value)
            status = current.status
        else:
            track_notification_dispatched(status.value)
            log.info("notification_dispatched", status=status.value, pairs=len(pairs), attempts=len(written))

        return DispatchOutcome(
            notification_id=notification_id,
            status=status,
            attempts=written,
            next_retry_at=self._earliest_retry(latest.values()),
        )

    async def redeliver_due(self, notification_id: str) -> DispatchOutcome:
        """
        Retry pairs whose latest attempt failed transiently and is due.

        Only the ledger changes; the aggregate status was fixed when the
        notification was dispatched.
        """
        notification = await self.db.get(Notification, notification_id, populate_existing=True)
        if notification is None:
            raise NotificationNotFound(notification_id)

        latest = await self._latest_attempts(notification_id)
        await self._settle_interrupted(latest)
        now = self.clock()
        recipients = {r["user_id"]: r for r in notification.recipients}
        due = [
            pair for pair, attempt in latest.items()
            if attempt.status == AttemptStatus.FAILED
            and attempt.next_retry_at is not None
            and attempt.next_retry_at <= now
            and pair[0] in recipients
        ]

        written = await self._deliver(notification, recipients, due, latest)
        for attempt in written:
            latest[(attempt.recipient_key, attempt.channel)] = attempt

        logger.info("notification_redelivered", notification_id=notification_id, attempts=len(written))
        return DispatchOutcome(
            notification_id=notification_id,
            status=notification.status,
            attempts=written,
            next_retry_at=self._earliest_retry(latest.values()),
        )

    async def list_attempts(self, notification_id: str) -> list[DispatchAttempt]:
        stmt = (
            select(DispatchAttempt)
            .where(DispatchAttempt.notification_id == notification_id)
            .order_by(DispatchAttempt.recipient_key, DispatchAttempt.channel, DispatchAttempt.attempt_number)
        )
        return list((await self.db.execute(stmt)).scalars().all())

    # ------------------------------------------------------------------

    async def _latest_attempts(self, notification_id: str) -> dict[Pair, DispatchAttempt]:
        latest: dict[Pair, DispatchAttempt] = {}
        for attempt in await self.list_attempts(notification_id):
            latest[(attempt.recipient_key, attempt.channel)] = attempt
        return latest

    async def _settle_interrupted(self, latest: dict[Pair, DispatchAttempt]) -> None:
        """
        Close out attempts left ``pending`` by a pass that died mid-send.

        The provider outcome is unknown, so they count as transient failures
        and stay within the channel attempt cap like any other failure.
        """
        interrupted = [a for a in latest.values() if a.status == AttemptStatus.PENDING]
        if not interrupted:
            return
        now = self.clock()
        for attempt in interrupted:
            self._settle(attempt, DeliveryResult(
                AttemptStatus.FAILED,
                error_code="interrupted",
                error_message="Delivery pass ended before the provider answered",
            ), now)
        await self.db.commit()
        logger.warning(
            "interrupted_attempts_settled",
            notification_id=interrupted[0].notification_id,
            attempts=len(interrupted),
        )

    async def _deliver(
        self,
        notification: Notification,
        recipients: dict[str, dict],
        pairs: list[Pair],
        latest: dict[Pair, DispatchAttempt],
    ) -> list[DispatchAttempt]:
        if not pairs:
            return []

        now = self.clock()
        attempts: list[DispatchAttempt] = []
        sends = []

        # Resolve destinations and write attempts ahead of any provider call
        for user_id, channel in pairs:
            previous = latest.get((user_id, channel))
            attempt = DispatchAttempt(
                notification_id=notification.id,
                recipient_key=user_id,
                channel=channel,
                attempt_number=(previous.attempt_number + 1) if previous else 1,
                status=AttemptStatus.PENDING,
                created_at=now,
                updated_at=now,
            )
            attempts.append(attempt)
            self.db.add(attempt)

            destinations = await self.directory.resolve(notification.id, recipients[user_id], channel)
            content = notification.content.get(channel.value) or {}

            if not destinations:
                self._settle(attempt, DeliveryResult(
                    AttemptStatus.PERMANENT_FAILED,
                    error_code="no_destination",
                    error_message=f"No {channel.value} destination for recipient",
                ), now)
                continue

            attempt.destination = ", ".join(d.address for d in destinations)[:1000]

            if channel == Channel.IN_APP:
                attempt.provider = "inbox"
                self._settle(attempt, DeliveryResult(
                    AttemptStatus.SUCCESS,
                    provider_reference_id=destinations[0].source_id,
                ), now)
                continue

            adapter = self.adapters.get(channel)
            if adapter is None:
                self._settle(attempt, DeliveryResult(
                    AttemptStatus.PERMANENT_FAILED,
                    error_code="channel_not_configured",
                    error_message=f"No adapter for channel {channel.value}",
                ), now)
                continue
            if not content:
                self._settle(attempt, DeliveryResult(
                    AttemptStatus.PERMANENT_FAILED,
                    error_code="content_missing",
                    error_message=f"No {channel.value} content snapshot",
                ), now)
                continue

            attempt.provider = adapter.provider
            reference = f"{notification.id}:{user_id}:{channel.value}"
            sends.append((attempt, self._send_all(adapter, destinations, content, reference)))

        await self.db.commit()

        # Provider calls run concurrently; no database work while they are in flight
        results = await asyncio.gather(*(coro for _, coro in sends))

        settled_at = self.clock()
        invalid: list[tuple[Channel, str, Destination, str]] = []
        for (attempt, _), result in zip(sends, results):
            self._settle(attempt, result, settled_at)
            invalid.extend((attempt.channel, attempt.recipient_key, d, code) for d, code in result.invalid)
        await self.db.commit()

        for channel, user_id, destination, reason in invalid:
            await self.directory.report_invalid_destination(channel, user_id, destination, reason)

        return attempts

    async def _send_all(
        self,
        adapter: ChannelAdapter,
        destinations: list[Destination],
        content: dict,
        reference: str,
    ) -> DeliveryResult:
        """
        Send to every destination of one pair.

        Success if any destination accepted; permanent failure if every
        destination was rejected permanently; transient failure otherwise.
        """
        outcomes = await asyncio.gather(
            *(adapter.send(d, content, reference=reference) for d in destinations),
            return_exceptions=True,
        )

        receipts: list[DeliveryReceipt] = []
        transient: list[DeliveryError] = []
        permanent: list[DeliveryError] = []
        invalid: list[tuple[Destination, str]] = []

        for destination, outcome in zip(destinations, outcomes):
            if isinstance(outcome, DeliveryReceipt):
                receipts.append(outcome)
            elif isinstance(outcome, PermanentDeliveryError):
                permanent.append(outcome)
                if outcome.invalid_destination:
                    invalid.append((destination, outcome.code))
            elif isinstance(outcome, DeliveryError):
                transient.append(outcome)
            elif isinstance(outcome, Exception):
                # Unknown adapter failures count as transient
                logger.warning("adapter_error", provider=adapter.provider, error=str(outcome))
                transient.append(DeliveryError(str(outcome), code="adapter_error"))
            else:
                raise outcome

        if receipts:
            return DeliveryResult(
                AttemptStatus.SUCCESS,
                provider_reference_id=receipts[0].provider_reference_id,
                invalid=invalid,
            )
        if transient:
            first = transient[0]
            return DeliveryResult(
                AttemptStatus.FAILED,
                error_code=first.code,
                error_message=first.message,
                invalid=invalid,
            )
        first = permanent[0]
        return DeliveryResult(
            AttemptStatus.PERMANENT_FAILED,
            error_code=first.code,
            error_message=first.message,
            invalid=invalid,
        )

    def _settle(self, attempt: DispatchAttempt, result: DeliveryResult, now: datetime) -> None:
        attempt.status = result.status
        attempt.provider_reference_id = result.provider_reference_id
        attempt.error_code = result.error_code
        attempt.error_message = result.error_message
        attempt.updated_at = now
        if result.status == AttemptStatus.FAILED and attempt.attempt_number < self.max_channel_attempts:
            delay = self.channel_retry.backoff_seconds(attempt.attempt_number)
            attempt.next_retry_at = now + timedelta(seconds=delay)
        else:
            attempt.next_retry_at = None
        track_dispatch_attempt(attempt.channel.value, result.status.value)

    @staticmethod
    def _earliest_retry(attempts) -> datetime | None:
        due = [
            a.next_retry_at for a in attempts
            if a.status == AttemptStatus.FAILED and a.next_retry_at is not None
        ]
        return min(due) if due else None
