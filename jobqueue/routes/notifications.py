"""
Notification API routes.

Creating a notification stores it with its content snapshot and enqueues the
dispatch job in the same transaction; delivery happens on the workers.
"""
from datetime import datetime

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field

from jobqueue.dependencies.auth import TokenPayload, get_current_principal, require_admin
from jobqueue.dependencies.services import get_dispatch_service, get_notification_service
from jobqueue.errors import (
    InvalidNotification,
    NotificationNotFound,
    NotificationNotQueued,
    TemplateNotFound,
    VariableMissing,
)
from jobqueue.models.dispatch_attempt import DispatchAttempt
from jobqueue.models.notification import Notification
from jobqueue.services.dispatch_service import DispatchService
from jobqueue.services.notification_service import NotificationService


router = APIRouter(prefix="/api/notifications", tags=["notifications"])


class Recipient(BaseModel):
    user_id: str
    email: str | None = None


class CreateNotificationRequest(BaseModel):
    """Request model for creating a notification."""
    type: str = Field(..., min_length=1, max_length=64)
    recipients: list[Recipient] = Field(..., min_length=1)
    channels: list[str] = Field(..., min_length=1)
    content: dict[str, dict] = Field(default_factory=dict)
    template_id: str | None = None
    scheduled_at: datetime | None = None
    priority: int | None = Field(default=None, ge=0, le=100)


class CreateFromTemplateRequest(BaseModel):
    """Request model for creating a notification from a stored template."""
    template_id: str = Field(..., min_length=1, max_length=64)
    recipients: list[Recipient] = Field(..., min_length=1)
    variables: dict = Field(default_factory=dict)
    channels: list[str] | None = Field(default=None, min_length=1)
    scheduled_at: datetime | None = None
    priority: int | None = Field(default=None, ge=0, le=100)


class CreateNotificationResponse(BaseModel):
    id: str
    status: str
    job_id: str


class AttemptResponse(BaseModel):
    recipient_key: str
    channel: str
    attempt_number: int
    status: str
    provider: str | None = None
    provider_reference_id: str | None = None
    error_code: str | None = None
    error_message: str | None = None
    next_retry_at: datetime | None = None
    created_at: datetime


class NotificationResponse(BaseModel):
    id: str
    type: str
    template_id: str | None = None
    status: str
    channels: list[str]
    recipients: list[dict]
    content: dict[str, dict]
    scheduled_at: datetime | None = None
    dispatched_at: datetime | None = None
    created_at: datetime
    attempts: list[AttemptResponse] = []


def attempt_to_response(attempt: DispatchAttempt) -> AttemptResponse:
    return AttemptResponse(
        recipient_key=attempt.recipient_key,
        channel=attempt.channel.value,
        attempt_number=attempt.attempt_number,
        status=attempt.status.value,
        provider=attempt.provider,
        provider_reference_id=attempt.provider_reference_id,
        error_code=attempt.error_code,
        error_message=attempt.error_message,
        next_retry_at=attempt.next_retry_at,
        created_at=attempt.created_at,
    )


def notification_to_response(
    notification: Notification, attempts: list[DispatchAttempt]
) -> NotificationResponse:
    return NotificationResponse(
        id=notification.id,
        type=notification.type,
        template_id=notification.template_id,
        status=notification.status.value,
        channels=notification.channels,
        recipients=notification.recipients,
        content=notification.content,
        scheduled_at=notification.scheduled_at,
        dispatched_at=notification.dispatched_at,
        created_at=notification.created_at,
        attempts=[attempt_to_response(a) for a in attempts],
    )


@router.post("", response_model=CreateNotificationResponse, status_code=status.HTTP_201_CREATED)
async def create_notification(
    request: CreateNotificationRequest,
    principal: TokenPayload = Depends(get_current_principal),
    notification_service: NotificationService = Depends(get_notification_service),
):
    """Create a notification and enqueue its dispatch."""
    try:
        notification, job_id = await notification_service.create_notification(
            type=request.type,
            recipients=[r.model_dump(exclude_none=True) for r in request.recipients],
            content=request.content,
            channels=request.channels,
            template_id=request.template_id,
            scheduled_at=request.scheduled_at,
            created_by=principal.sub,
            priority=request.priority,
        )
    except InvalidNotification as e:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=e.message)

    return CreateNotificationResponse(
        id=notification.id,
        status=notification.status.value,
        job_id=job_id,
    )


@router.post("/from-template", response_model=CreateNotificationResponse, status_code=status.HTTP_201_CREATED)
async def create_notification_from_template(
    request: CreateFromTemplateRequest,
    principal: TokenPayload = Depends(get_current_principal),
    notification_service: NotificationService = Depends(get_notification_service),
):
    """Render a stored template into a notification and enqueue its dispatch."""
    try:
        notification, job_id = await notification_service.create_from_template(
            template_id=request.template_id,
            recipients=[r.model_dump(exclude_none=True) for r in request.recipients],
            variables=request.variables,
            channels=request.channels,
            scheduled_at=request.scheduled_at,
            created_by=principal.sub,
            priority=request.priority,
        )
    except TemplateNotFound as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=e.message)
    except VariableMissing as e:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail={"message": e.message, "missing": e.variables},
        )
    except InvalidNotification as e:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=e.message)

    return CreateNotificationResponse(
        id=notification.id,
        status=notification.status.value,
        job_id=job_id,
    )


@router.get("/{notification_id}", response_model=NotificationResponse)
async def get_notification(
    notification_id: str,
    principal: TokenPayload = Depends(get_current_principal),
    notification_service: NotificationService = Depends(get_notification_service),
    dispatch_service: DispatchService = Depends(get_dispatch_service),
):
    """Get a notification with its dispatch attempt ledger."""
    notification = await notification_service.get_notification(notification_id)
    if not notification:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Notification not found")

    attempts = await dispatch_service.list_attempts(notification_id)
    return notification_to_response(notification, attempts)


@router.post("/{notification_id}/dispatch", response_model=dict)
async def dispatch_notification(
    notification_id: str,
    principal: TokenPayload = Depends(require_admin),
    dispatch_service: DispatchService = Depends(get_dispatch_service),
):
    """Dispatch a queued notification immediately, bypassing the job queue."""
    try:
        outcome = await dispatch_service.dispatch(notification_id)
    except NotificationNotFound:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Notification not found")
    except NotificationNotQueued as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=e.message)

    return outcome.as_result()
