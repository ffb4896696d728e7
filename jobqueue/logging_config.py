"""
Structured logging configuration using structlog.

All logs are output as JSON with consistent context fields
(job_id, job_type, worker_id, notification_id, request_id).
"""
import structlog
import logging
import sys

from jobqueue.config import settings


def configure_logging(level: str | None = None):
    """Configure structlog for JSON output with context."""
    log_level = getattr(logging, (level or settings.LOG_LEVEL).upper(), logging.INFO)

    # Route stdlib loggers (uvicorn, sqlalchemy, httpx) to stdout too
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=log_level,
    )

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer()
        ],
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )

    return structlog.get_logger()


def get_logger(**context):
    """
    Get a logger with context bound. Resolved lazily, so module-level
    loggers pick up the configuration applied at start-up.

    Usage:
        log = get_logger(job_id=job.id, worker_id=worker_id)
        log.info("job_started", attempt=job.attempt)
    """
    return structlog.get_logger(**context)
