"""
Job type registry.

A closed lookup from job type to payload schema, policy and handler. One
registry is built at start-up and passed to the job service, the worker and
the HTTP layer.
"""
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Type

from pydantic import BaseModel, ValidationError

from jobqueue.errors import JobTypeNotFound, PayloadValidationFailed
from jobqueue.jobs.retry_policy import JobPolicy

Handler = Callable[[dict, Any], Awaitable[dict | None]]


@dataclass(frozen=True)
class JobTypeDefinition:
    type: str
    payload_model: Type[BaseModel]
    policy: JobPolicy
    handler: Handler


class JobTypeRegistry:
    """Registry of job types."""

    def __init__(self):
        self._types: dict[str, JobTypeDefinition] = {}

    def register(
        self,
        job_type: str,
        payload_model: Type[BaseModel],
        policy: JobPolicy,
        handler: Handler,
    ) -> JobTypeDefinition:
        """Register a job type. Registering the same type twice is an error."""
        if job_type in self._types:
            raise ValueError(f"Job type already registered: {job_type}")
        definition = JobTypeDefinition(job_type, payload_model, policy, handler)
        self._types[job_type] = definition
        return definition

    def get(self, job_type: str) -> JobTypeDefinition:
        try:
            return self._types[job_type]
        except KeyError:
            raise JobTypeNotFound(job_type) from None

    def get_policy(self, job_type: str) -> JobPolicy:
        return self.get(job_type).policy

    def get_handler(self, job_type: str) -> Handler:
        return self.get(job_type).handler

    def validate_payload(self, job_type: str, payload: dict | None) -> dict:
        """
        Validate a payload against the type's schema.

        Returns the normalised payload (defaults filled in) as a plain dict.
        """
        model = self.get(job_type).payload_model
        try:
            parsed = model.model_validate(payload or {})
        except ValidationError as exc:
            raise PayloadValidationFailed(job_type, exc.errors(include_url=False)) from exc
        return parsed.model_dump(mode="json", by_alias=True)

    def types(self) -> list[str]:
        return sorted(self._types)

    def __contains__(self, job_type: str) -> bool:
        return job_type in self._types

    def __len__(self) -> int:
        return len(self._types)
