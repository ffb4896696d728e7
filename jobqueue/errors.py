"""
Error taxonomy for the job engine.

Every engine error carries a stable ``code`` and a ``retryable`` flag. The
worker uses :func:`classify_error` to turn whatever a handler raised into a
:class:`JobFailure` that decides between rescheduling and dead-lettering.
"""
from dataclasses import dataclass

import httpx


class JobEngineError(Exception):
    """Base class for errors raised by the engine and its handlers."""

    code = "job_engine_error"
    retryable = False

    def __init__(self, message: str = "", *, code: str | None = None):
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__
        if code is not None:
            self.code = code


# Data / configuration errors: never retried

class JobTypeNotFound(JobEngineError):
    code = "job_type_not_found"

    def __init__(self, job_type: str):
        super().__init__(f"Unknown job type: {job_type}")
        self.job_type = job_type


class PayloadValidationFailed(JobEngineError):
    code = "payload_validation_failed"

    def __init__(self, job_type: str, errors: list | None = None):
        super().__init__(f"Invalid payload for job type {job_type}")
        self.job_type = job_type
        self.errors = errors or []


class JobDataMissing(JobEngineError):
    code = "job_data_missing"

    def __init__(self, field: str):
        super().__init__(f"Missing required job data: {field}")
        self.field = field


class NoRecordsFound(JobEngineError):
    code = "no_records_found"


class CollaboratorRejected(JobEngineError):
    """A collaborator refused the request and repeating it will not help."""

    code = "collaborator_rejected"


# Not-found / state-conflict errors surfaced to callers

class NotificationNotFound(JobEngineError):
    code = "notification_not_found"

    def __init__(self, notification_id: str):
        super().__init__(f"Notification not found: {notification_id}")
        self.notification_id = notification_id


class NotificationNotQueued(JobEngineError):
    code = "notification_not_queued"

    def __init__(self, notification_id: str, status: str):
        super().__init__(f"Notification {notification_id} is {status}, expected queued")
        self.notification_id = notification_id
        self.status = status


class BatchNotFound(JobEngineError):
    code = "batch_not_found"

    def __init__(self, batch_id: str):
        super().__init__(f"Payout batch not found: {batch_id}")
        self.batch_id = batch_id


class InvalidNotification(JobEngineError):
    code = "invalid_notification"


class TemplateNotFound(JobEngineError):
    code = "template_not_found"

    def __init__(self, template_id: str):
        super().__init__(f"Template not found or inactive: {template_id}")
        self.template_id = template_id


class TemplateConflict(JobEngineError):
    code = "template_conflict"

    def __init__(self, template_id: str):
        super().__init__(f"Template already exists: {template_id}")
        self.template_id = template_id


class VariableMissing(JobEngineError):
    code = "variable_missing"

    def __init__(self, variables: list[str]):
        super().__init__(f"Missing template variables: {', '.join(variables)}")
        self.variables = variables


class JobNotFound(JobEngineError):
    code = "job_not_found"

    def __init__(self, job_id: str):
        super().__init__(f"Job not found: {job_id}")
        self.job_id = job_id


class JobNotCancellable(JobEngineError):
    code = "job_not_cancellable"

    def __init__(self, job_id: str, status: str):
        super().__init__(f"Job {job_id} is {status}; only queued jobs can be cancelled")
        self.job_id = job_id
        self.status = status


class JobNotDeadLettered(JobEngineError):
    code = "job_not_dead_lettered"

    def __init__(self, job_id: str, status: str):
        super().__init__(f"Job {job_id} is {status}; only dead-lettered jobs can be requeued")
        self.job_id = job_id
        self.status = status


class JobNotLeased(JobEngineError):
    """The caller no longer holds the lease it is trying to act on."""

    code = "job_not_leased"

    def __init__(self, job_id: str, worker_id: str):
        super().__init__(f"Job {job_id} is not leased by {worker_id}")
        self.job_id = job_id
        self.worker_id = worker_id


# Transient errors: retried up to max_attempts

class TransientError(JobEngineError):
    code = "transient_error"
    retryable = True


class PartialSubmissionFailure(TransientError):
    code = "partial_submission_failure"


# Channel adapter errors

class DeliveryError(Exception):
    """Raised by channel adapters when a send does not go through."""

    permanent = False

    def __init__(self, message: str, *, code: str = "delivery_error"):
        super().__init__(message)
        self.message = message
        self.code = code


class TransientDeliveryError(DeliveryError):
    pass


class PermanentDeliveryError(DeliveryError):
    """The destination is unusable (bounced address, revoked token, gone endpoint)."""

    permanent = True

    def __init__(self, message: str, *, code: str = "permanent_delivery_error", invalid_destination: bool = True):
        super().__init__(message, code=code)
        self.invalid_destination = invalid_destination


@dataclass(frozen=True)
class JobFailure:
    """Classified outcome of a failed handler execution."""

    code: str
    message: str
    retryable: bool


MAX_ERROR_MESSAGE_LENGTH = 2000


def classify_error(exc: BaseException) -> JobFailure:
    """
    Classify an exception raised by a handler.

    Engine errors carry their own classification. Network timeouts and
    transport failures are retryable. Anything else is treated as retryable
    too; ``max_attempts`` bounds how often it can recur.
    """
    message = str(exc)[:MAX_ERROR_MESSAGE_LENGTH]
    if isinstance(exc, JobEngineError):
        return JobFailure(code=exc.code, message=message, retryable=exc.retryable)
    if isinstance(exc, (httpx.TimeoutException, httpx.TransportError)):
        return JobFailure(code="network_error", message=message, retryable=True)
    if isinstance(exc, DeliveryError):
        return JobFailure(code=exc.code, message=message, retryable=not exc.permanent)
    return JobFailure(code="unexpected_error", message=f"{type(exc).__name__}: {message}", retryable=True)
