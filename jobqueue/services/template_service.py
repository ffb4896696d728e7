"""
Notification templates.

Templates hold per-channel content with ``{{ variable }}`` placeholders.
Rendering produces a fresh content dict, which the notification stores as its
snapshot; editing the template afterwards never reaches notifications that
already exist.
"""
import re
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from jobqueue.errors import InvalidNotification, TemplateConflict, TemplateNotFound, VariableMissing
from jobqueue.logging_config import get_logger
from jobqueue.models.notification import Channel, NotificationTemplate
from jobqueue.utils import Clock, utcnow

logger = get_logger(component="template_service")

PLACEHOLDER = re.compile(r"\{\{\s*([A-Za-z_][A-Za-z0-9_]*)\s*\}\}")

EDITABLE_FIELDS = ("name", "description", "channels", "content_template", "required_variables", "default_locale")


def find_placeholders(value: Any) -> set[str]:
    """Names of every placeholder in a string or nested dict/list."""
    if isinstance(value, str):
        return set(PLACEHOLDER.findall(value))
    if isinstance(value, dict):
        return set().union(*(find_placeholders(v) for v in value.values()))
    if isinstance(value, list):
        return set().union(*(find_placeholders(v) for v in value))
    return set()


def fill_placeholders(value: Any, variables: dict) -> Any:
    if isinstance(value, str):
        return PLACEHOLDER.sub(lambda m: "" if variables[m.group(1)] is None else str(variables[m.group(1)]), value)
    if isinstance(value, dict):
        return {k: fill_placeholders(v, variables) for k, v in value.items()}
    if isinstance(value, list):
        return [fill_placeholders(v, variables) for v in value]
    return value


def render_content(template: NotificationTemplate, variables: dict) -> dict[str, dict]:
    """
    Render the template's content for each of its channels.

    Raises:
        VariableMissing: a required variable or a used placeholder has no value
    """
    content = {
        channel: template.content_template[channel]
        for channel in template.channels
        if template.content_template.get(channel)
    }
    needed = set(template.required_variables or []) | find_placeholders(content)
    missing = sorted(name for name in needed if name not in variables)
    if missing:
        raise VariableMissing(missing)
    return fill_placeholders(content, variables)


class TemplateService:
    """Service for managing and rendering notification templates."""

    def __init__(self, db: AsyncSession, clock: Clock = utcnow):
        self.db = db
        self.clock = clock

    async def create_template(
        self,
        template_id: str,
        name: str,
        channels: list[str],
        content_template: dict[str, dict],
        required_variables: list[str] | None = None,
        description: str | None = None,
        default_locale: str = "en",
        created_by: str | None = None,
    ) -> NotificationTemplate:
        """
        Create a template at version 1.

        Raises:
            TemplateConflict: a template with this id already exists
            InvalidNotification: unknown channels or content for a channel not listed
        """
        if await self.db.get(NotificationTemplate, template_id) is not None:
            raise TemplateConflict(template_id)
        self._validate(channels, content_template)

        now = self.clock()
        template = NotificationTemplate(
            id=template_id,
            name=name,
            description=description,
            channels=list(dict.fromkeys(channels)),
            content_template=content_template,
            required_variables=list(required_variables or []),
            default_locale=default_locale,
            version=1,
            active=True,
            created_by=created_by,
            created_at=now,
            updated_at=now,
        )
        self.db.add(template)
        await self.db.commit()

        logger.info("template_created", template_id=template_id, channels=template.channels)
        return template

    async def update_template(self, template_id: str, **changes) -> NotificationTemplate:
        """
        Apply changes to an active template and bump its version.

        Raises:
            TemplateNotFound: unknown or inactive template
            InvalidNotification: the result has bad channels or content
        """
        template = await self.get_active_template(template_id)
        unknown = set(changes) - set(EDITABLE_FIELDS)
        if unknown:
            raise InvalidNotification(f"Cannot update template fields: {', '.join(sorted(unknown))}")

        channels = changes.get("channels", template.channels)
        content_template = changes.get("content_template", template.content_template)
        self._validate(channels, content_template)

        for field, value in changes.items():
            setattr(template, field, value)
        template.version += 1
        template.updated_at = self.clock()
        await self.db.commit()

        logger.info("template_updated", template_id=template_id, version=template.version)
        return template

    async def deactivate_template(self, template_id: str) -> NotificationTemplate:
        template = await self.get_active_template(template_id)
        template.active = False
        template.updated_at = self.clock()
        await self.db.commit()

        logger.info("template_deactivated", template_id=template_id)
        return template

    async def get_active_template(self, template_id: str) -> NotificationTemplate:
        template = await self.db.get(NotificationTemplate, template_id, populate_existing=True)
        if template is None or not template.active:
            raise TemplateNotFound(template_id)
        return template

    async def preview(self, template_id: str, variables: dict) -> dict[str, dict]:
        """Render a template without creating anything."""
        return render_content(await self.get_active_template(template_id), variables)

    @staticmethod
    def _validate(channels: list[str], content_template: dict):
        if not channels:
            raise InvalidNotification("At least one channel is required")
        for value in channels:
            try:
                Channel(value)
            except ValueError:
                raise InvalidNotification(f"Unknown channel: {value}") from None
        extra = set(content_template) - set(channels)
        if extra:
            raise InvalidNotification(f"Content for unlisted channels: {', '.join(sorted(extra))}")
