"""
Notification template API routes.

Managing templates is an admin action; any principal may preview one.
"""
from datetime import datetime

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field

from jobqueue.dependencies.auth import TokenPayload, get_current_principal, require_admin
from jobqueue.dependencies.services import get_template_service
from jobqueue.errors import InvalidNotification, TemplateConflict, TemplateNotFound, VariableMissing
from jobqueue.models.notification import NotificationTemplate
from jobqueue.services.template_service import TemplateService


router = APIRouter(prefix="/api/notification-templates", tags=["notification-templates"])


class CreateTemplateRequest(BaseModel):
    """Request model for creating a template."""
    id: str = Field(..., min_length=1, max_length=64)
    name: str = Field(..., min_length=1, max_length=255)
    description: str | None = None
    channels: list[str] = Field(..., min_length=1)
    content_template: dict[str, dict]
    required_variables: list[str] = Field(default_factory=list)
    default_locale: str = Field(default="en", max_length=16)


class UpdateTemplateRequest(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=255)
    description: str | None = None
    channels: list[str] | None = Field(default=None, min_length=1)
    content_template: dict[str, dict] | None = None
    required_variables: list[str] | None = None
    default_locale: str | None = Field(default=None, max_length=16)


class PreviewRequest(BaseModel):
    variables: dict = Field(default_factory=dict)


class TemplateResponse(BaseModel):
    id: str
    name: str
    description: str | None = None
    channels: list[str]
    content_template: dict[str, dict]
    required_variables: list[str]
    default_locale: str
    version: int
    active: bool
    updated_at: datetime


def template_to_response(template: NotificationTemplate) -> TemplateResponse:
    return TemplateResponse(
        id=template.id,
        name=template.name,
        description=template.description,
        channels=template.channels,
        content_template=template.content_template,
        required_variables=template.required_variables,
        default_locale=template.default_locale,
        version=template.version,
        active=template.active,
        updated_at=template.updated_at,
    )


@router.post("", response_model=TemplateResponse, status_code=status.HTTP_201_CREATED)
async def create_template(
    request: CreateTemplateRequest,
    principal: TokenPayload = Depends(require_admin),
    template_service: TemplateService = Depends(get_template_service),
):
    """Create a template at version 1."""
    try:
        template = await template_service.create_template(
            template_id=request.id,
            name=request.name,
            channels=request.channels,
            content_template=request.content_template,
            required_variables=request.required_variables,
            description=request.description,
            default_locale=request.default_locale,
            created_by=principal.sub,
        )
    except TemplateConflict as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=e.message)
    except InvalidNotification as e:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=e.message)

    return template_to_response(template)


@router.get("/{template_id}", response_model=TemplateResponse)
async def get_template(
    template_id: str,
    principal: TokenPayload = Depends(get_current_principal),
    template_service: TemplateService = Depends(get_template_service),
):
    try:
        template = await template_service.get_active_template(template_id)
    except TemplateNotFound as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=e.message)
    return template_to_response(template)


@router.patch("/{template_id}", response_model=TemplateResponse)
async def update_template(
    template_id: str,
    request: UpdateTemplateRequest,
    principal: TokenPayload = Depends(require_admin),
    template_service: TemplateService = Depends(get_template_service),
):
    """Edit a template; existing notifications keep their rendered content."""
    try:
        template = await template_service.update_template(
            template_id, **request.model_dump(exclude_unset=True, exclude_none=True)
        )
    except TemplateNotFound as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=e.message)
    except InvalidNotification as e:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=e.message)

    return template_to_response(template)


@router.delete("/{template_id}", response_model=TemplateResponse)
async def deactivate_template(
    template_id: str,
    principal: TokenPayload = Depends(require_admin),
    template_service: TemplateService = Depends(get_template_service),
):
    """Deactivate a template. It is kept for the notifications that reference it."""
    try:
        template = await template_service.deactivate_template(template_id)
    except TemplateNotFound as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=e.message)
    return template_to_response(template)


@router.post("/{template_id}/preview", response_model=dict)
async def preview_template(
    template_id: str,
    request: PreviewRequest,
    principal: TokenPayload = Depends(get_current_principal),
    template_service: TemplateService = Depends(get_template_service),
):
    """Render a template with the given variables without sending anything."""
    try:
        return await template_service.preview(template_id, request.variables)
    except TemplateNotFound as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=e.message)
    except VariableMissing as e:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail={"message": e.message, "missing": e.variables},
        )
