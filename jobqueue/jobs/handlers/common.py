"""Helpers shared by job handlers."""
from typing import Type, TypeVar

from pydantic import BaseModel, ValidationError

from jobqueue.errors import CollaboratorRejected, JobDataMissing

P = TypeVar("P", bound=BaseModel)


def require_payload(job, model: Type[P]) -> P:
    """
    Parse a stored payload.

    Payloads are validated at enqueue time, so a failure here means the row
    was written around the API; report the first offending field.
    """
    try:
        return model.model_validate(job.payload or {})
    except ValidationError as exc:
        errors = exc.errors(include_url=False)
        field = ".".join(str(part) for part in errors[0]["loc"]) if errors and errors[0]["loc"] else "payload"
        raise JobDataMissing(field) from exc


def require_collaborator(ctx: dict, name: str):
    collaborator = getattr(ctx["collaborators"], name, None)
    if collaborator is None:
        raise CollaboratorRejected(f"{name} collaborator is not configured", code="collaborator_not_configured")
    return collaborator


async def renew_lease(ctx: dict) -> bool:
    """Ask the worker to extend the current lease, if it supports it."""
    renew = ctx.get("renew_lease")
    if renew is None:
        return True
    return await renew()
