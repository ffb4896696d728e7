"""
Destination directory backed by the user-settings tables.

Resolves where a recipient can be reached on a channel and applies cleanup
when a provider reports a destination as permanently invalid.
"""
from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from jobqueue.adapters.base import Destination
from jobqueue.config import settings
from jobqueue.logging_config import get_logger
from jobqueue.models.destination import EmailSuppression, PushToken, WebhookSubscription
from jobqueue.models.notification import Channel, NotificationInbox
from jobqueue.utils import Clock, utcnow

logger = get_logger(component="destination_directory")


class DestinationDirectory:
    """Looks up and retires delivery destinations."""

    def __init__(self, db: AsyncSession, bounce_suppression: bool | None = None, clock: Clock = utcnow):
        self.db = db
        self.bounce_suppression = (
            settings.EMAIL_BOUNCE_SUPPRESSION if bounce_suppression is None else bounce_suppression
        )
        self.clock = clock

    async def resolve(self, notification_id: str, recipient: dict, channel: Channel) -> list[Destination]:
        """
        Return every destination for a recipient on a channel.

        An empty list means the recipient cannot be reached on that channel.
        """
        user_id = recipient["user_id"]

        if channel == Channel.IN_APP:
            stmt = select(NotificationInbox.id).where(
                NotificationInbox.notification_id == notification_id,
                NotificationInbox.user_id == user_id,
            )
            inbox_id = (await self.db.execute(stmt)).scalar_one_or_none()
            return [Destination(address=inbox_id, source_id=inbox_id)] if inbox_id else []

        if channel == Channel.EMAIL:
            email = recipient.get("email")
            if not email:
                return []
            if self.bounce_suppression and await self.db.get(EmailSuppression, email.lower()):
                logger.info("email_suppressed", user_id=user_id)
                return []
            return [Destination(address=email)]

        if channel == Channel.PUSH:
            stmt = select(PushToken).where(PushToken.user_id == user_id).order_by(PushToken.created_at)
            tokens = (await self.db.execute(stmt)).scalars().all()
            return [Destination(address=t.token, source_id=t.id) for t in tokens]

        if channel == Channel.WEBHOOK:
            stmt = (
                select(WebhookSubscription)
                .where(WebhookSubscription.user_id == user_id, WebhookSubscription.is_active.is_(True))
                .order_by(WebhookSubscription.created_at)
            )
            subscriptions = (await self.db.execute(stmt)).scalars().all()
            return [Destination(address=s.url, source_id=s.id, secret=s.secret) for s in subscriptions]

        return []

    async def report_invalid_destination(
        self,
        channel: Channel,
        user_id: str,
        destination: Destination,
        reason: str,
    ) -> None:
        """
        Retire a destination a provider rejected permanently.

        Push tokens are deleted, webhook subscriptions deactivated and
        bounced addresses suppressed when bounce suppression is enabled.
        """
        log = logger.bind(channel=channel.value, user_id=user_id, reason=reason)

        if channel == Channel.PUSH:
            await self.db.execute(
                delete(PushToken).where(PushToken.user_id == user_id, PushToken.token == destination.address)
            )
            log.info("push_token_removed", token_id=destination.source_id)
        elif channel == Channel.WEBHOOK and destination.source_id:
            await self.db.execute(
                update(WebhookSubscription)
                .where(WebhookSubscription.id == destination.source_id)
                .values(is_active=False, deactivated_at=self.clock(), deactivation_reason=reason)
            )
            log.info("webhook_subscription_deactivated", subscription_id=destination.source_id)
        elif channel == Channel.EMAIL and self.bounce_suppression:
            address = destination.address.lower()
            if await self.db.get(EmailSuppression, address) is None:
                self.db.add(EmailSuppression(email=address, reason=reason))
            log.info("email_suppression_recorded")
        else:
            log.info("invalid_destination_ignored")

        await self.db.commit()
