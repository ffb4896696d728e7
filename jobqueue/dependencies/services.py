"""
Service dependencies for FastAPI routes.

The registry and collaborators are built once in the app lifespan and kept
on ``app.state``.
"""
from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from jobqueue.collaborators import Collaborators
from jobqueue.database import get_db
from jobqueue.jobs.registry import JobTypeRegistry
from jobqueue.services.dispatch_service import DispatchService
from jobqueue.services.job_service import JobService
from jobqueue.services.notification_service import NotificationService
from jobqueue.services.template_service import TemplateService


def get_registry(request: Request) -> JobTypeRegistry:
    return request.app.state.registry


def get_collaborators(request: Request) -> Collaborators:
    return request.app.state.collaborators


def get_job_service(
    db: AsyncSession = Depends(get_db),
    registry: JobTypeRegistry = Depends(get_registry),
) -> JobService:
    return JobService(db, registry)


def get_notification_service(
    db: AsyncSession = Depends(get_db),
    job_service: JobService = Depends(get_job_service),
) -> NotificationService:
    return NotificationService(db, job_service)


def get_dispatch_service(
    db: AsyncSession = Depends(get_db),
    collaborators: Collaborators = Depends(get_collaborators),
) -> DispatchService:
    return DispatchService(db, collaborators.adapters)


def get_template_service(db: AsyncSession = Depends(get_db)) -> TemplateService:
    return TemplateService(db)
