"""
Notification creation.

Stores the notification with its per-channel content snapshot, creates the
in-app inbox entries and enqueues the dispatch job. Template-based
notifications are rendered here, once, at creation time.
"""
from datetime import datetime
from sqlalchemy.ext.asyncio import AsyncSession

from jobqueue.errors import InvalidNotification
from jobqueue.logging_config import get_logger
from jobqueue.models.notification import Channel, Notification, NotificationInbox, NotificationStatus
from jobqueue.services.job_service import JobService
from jobqueue.services.template_service import TemplateService, render_content
from jobqueue.utils import Clock, generate_id, to_naive_utc, utcnow

logger = get_logger(component="notification_service")

DISPATCH_JOB_TYPE = "notification.dispatch"


class NotificationService:
    """Service for creating notifications."""

    def __init__(self, db: AsyncSession, job_service: JobService, clock: Clock = utcnow):
        self.db = db
        self.job_service = job_service
        self.clock = clock

    async def create_notification(
        self,
        type: str,
        recipients: list[dict],
        content: dict[str, dict],
        channels: list[str],
        template_id: str | None = None,
        scheduled_at: datetime | None = None,
        created_by: str | None = None,
        priority: int | None = None,
    ) -> tuple[Notification, str]:
        """
        Create a queued notification and its dispatch job.

        Args:
            type: Notification type, e.g. ``export.ready``
            recipients: ``[{"user_id": ..., "email": ...}]``
            content: Rendered content per channel value
            channels: Channels to deliver on
            scheduled_at: Deliver no earlier than this time

        Returns:
            (notification, dispatch job id)

        Raises:
            InvalidNotification: bad channels, recipients or missing content
        """
        parsed_channels = self._parse_channels(channels)
        self._validate_recipients(recipients)
        for channel in parsed_channels:
            if channel != Channel.IN_APP and not content.get(channel.value):
                raise InvalidNotification(f"Missing {channel.value} content")

        now = self.clock()
        notification = Notification(
            id=generate_id("notif"),
            type=type,
            template_id=template_id,
            recipients=recipients,
            content=content,
            channels=[c.value for c in parsed_channels],
            status=NotificationStatus.QUEUED,
            scheduled_at=to_naive_utc(scheduled_at) if scheduled_at else None,
            created_by=created_by,
            created_at=now,
            updated_at=now,
        )
        self.db.add(notification)

        if Channel.IN_APP in parsed_channels:
            in_app = content.get(Channel.IN_APP.value) or {}
            for recipient in recipients:
                self.db.add(NotificationInbox(
                    notification_id=notification.id,
                    user_id=recipient["user_id"],
                    title=in_app.get("title"),
                    body=in_app.get("body"),
                    data=in_app.get("data"),
                    created_at=now,
                    updated_at=now,
                ))

        job = await self.job_service.enqueue(
            DISPATCH_JOB_TYPE,
            {"notification_id": notification.id},
            priority=priority,
            not_before=notification.scheduled_at,
            created_by=created_by,
            commit=False,
        )
        await self.db.commit()

        logger.info(
            "notification_created",
            notification_id=notification.id,
            notification_type=type,
            recipients=len(recipients),
            channels=notification.channels,
            job_id=job.id,
        )
        return notification, job.id

    async def create_from_template(
        self,
        template_id: str,
        recipients: list[dict],
        variables: dict,
        channels: list[str] | None = None,
        scheduled_at: datetime | None = None,
        created_by: str | None = None,
        priority: int | None = None,
    ) -> tuple[Notification, str]:
        """
        Render an active template and create the notification from it.

        The rendered content is stored as the notification's snapshot, typed
        after the template. ``channels`` defaults to the template's channels.

        Raises:
            TemplateNotFound: unknown or inactive template
            VariableMissing: variables lack a value the template needs
            InvalidNotification: as for :meth:`create_notification`
        """
        template = await TemplateService(self.db, self.clock).get_active_template(template_id)
        content = render_content(template, variables)
        return await self.create_notification(
            type=template.id,
            recipients=recipients,
            content=content,
            channels=channels or list(template.channels),
            template_id=template.id,
            scheduled_at=scheduled_at,
            created_by=created_by,
            priority=priority,
        )

    async def get_notification(self, notification_id: str) -> Notification | None:
        return await self.db.get(Notification, notification_id, populate_existing=True)

    @staticmethod
    def _parse_channels(channels: list[str]) -> list[Channel]:
        if not channels:
            raise InvalidNotification("At least one channel is required")
        parsed = []
        for value in channels:
            try:
                channel = Channel(value)
            except ValueError:
                raise InvalidNotification(f"Unknown channel: {value}") from None
            if channel not in parsed:
                parsed.append(channel)
        return parsed

    @staticmethod
    def _validate_recipients(recipients: list[dict]):
        if not recipients:
            raise InvalidNotification("At least one recipient is required")
        seen = set()
        for recipient in recipients:
            user_id = recipient.get("user_id")
            if not user_id:
                raise InvalidNotification("Every recipient needs a user_id")
            if user_id in seen:
                raise InvalidNotification(f"Duplicate recipient: {user_id}")
            seen.add(user_id)
