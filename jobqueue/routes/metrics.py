"""
Prometheus metrics endpoint.

Exposes job engine and dispatch metrics for monitoring.
"""
from fastapi import APIRouter, Response
from prometheus_client import Counter, Histogram, Gauge, generate_latest, CONTENT_TYPE_LATEST

router = APIRouter()

# ============================================
# HTTP Request Metrics
# ============================================

http_requests_total = Counter(
    'http_requests_total',
    'Total HTTP requests',
    ['method', 'endpoint', 'status']
)

http_request_duration = Histogram(
    'http_request_duration_seconds',
    'HTTP request duration in seconds',
    ['method', 'endpoint'],
    buckets=[0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0]
)

# ============================================
# Job Lifecycle Metrics
# ============================================

jobs_enqueued = Counter(
    'jobs_enqueued_total',
    'Total jobs enqueued',
    ['job_type']
)

jobs_claimed = Counter(
    'jobs_claimed_total',
    'Total job leases acquired',
    ['job_type']
)

jobs_succeeded = Counter(
    'jobs_succeeded_total',
    'Total jobs completed successfully',
    ['job_type']
)

jobs_retried = Counter(
    'jobs_retried_total',
    'Total jobs rescheduled after a retryable failure',
    ['job_type', 'error_code']
)

jobs_dead_lettered = Counter(
    'jobs_dead_lettered_total',
    'Total jobs moved to the dead-letter state',
    ['job_type', 'error_code']
)

job_duration = Histogram(
    'job_handler_duration_seconds',
    'Handler execution time in seconds',
    ['job_type'],
    buckets=[0.05, 0.1, 0.5, 1.0, 5.0, 15.0, 60.0, 300.0, 1800.0]
)

job_status_count = Gauge(
    'jobs_by_status',
    'Current number of jobs per status',
    ['status']
)

# ============================================
# Notification Dispatch Metrics
# ============================================

dispatch_attempts = Counter(
    'dispatch_attempts_total',
    'Total channel delivery attempts',
    ['channel', 'status']
)

notifications_dispatched = Counter(
    'notifications_dispatched_total',
    'Total notifications that reached an aggregate status',
    ['status']
)


# ============================================
# Metrics Helper Functions
# ============================================

def track_request(method: str, endpoint: str, status: int, duration_seconds: float):
    """
    Record HTTP request metrics.

    Call this after each request.
    """
    http_requests_total.labels(
        method=method,
        endpoint=endpoint,
        status=status
    ).inc()

    http_request_duration.labels(
        method=method,
        endpoint=endpoint
    ).observe(duration_seconds)


def track_job_enqueued(job_type: str):
    """Record a job being enqueued."""
    jobs_enqueued.labels(job_type=job_type).inc()


def track_job_claimed(job_type: str):
    """Record a lease being acquired."""
    jobs_claimed.labels(job_type=job_type).inc()


def track_job_succeeded(job_type: str, duration_seconds: float):
    """Record a job completing successfully."""
    jobs_succeeded.labels(job_type=job_type).inc()
    job_duration.labels(job_type=job_type).observe(duration_seconds)


def track_job_retried(job_type: str, error_code: str):
    """Record a job rescheduled for another attempt."""
    jobs_retried.labels(job_type=job_type, error_code=error_code).inc()


def track_job_dead_lettered(job_type: str, error_code: str):
    """Record a job dead-lettered."""
    jobs_dead_lettered.labels(job_type=job_type, error_code=error_code).inc()


def update_job_status_counts(counts: dict[str, int]):
    """Update per-status job gauges."""
    for status, count in counts.items():
        job_status_count.labels(status=status).set(count)


def track_dispatch_attempt(channel: str, status: str):
    """Record a settled dispatch attempt."""
    dispatch_attempts.labels(channel=channel, status=status).inc()


def track_notification_dispatched(status: str):
    """Record a notification's aggregate outcome."""
    notifications_dispatched.labels(status=status).inc()


# ============================================
# Prometheus Endpoint
# ============================================

@router.get("/metrics")
async def metrics():
    """
    Prometheus metrics endpoint.

    Returns all registered metrics in Prometheus format.
    """
    return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)
