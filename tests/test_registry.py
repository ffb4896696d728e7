"""Job type registry, policies and backoff."""
import pytest
from pydantic import BaseModel

from jobqueue.errors import JobTypeNotFound, PayloadValidationFailed
from jobqueue.jobs.registry import JobTypeRegistry
from jobqueue.jobs.retry_policy import JobPolicy, RetryPolicy


class EchoPayload(BaseModel):
    value: int


async def echo(ctx, job):
    return {"value": job.payload["value"]}


def test_catalog_registers_every_job_type(registry):
    assert registry.types() == [
        "audit.snapshot",
        "blockchain.anchor",
        "export.audit",
        "notification.dispatch",
        "notification.redeliver",
        "payout.execute",
        "pdf.generate",
        "reindex.batch",
        "thumbnail.create",
    ]


@pytest.mark.parametrize(
    "job_type, max_attempts, timeout_seconds",
    [
        ("notification.dispatch", 5, 120),
        ("notification.redeliver", 3, 120),
        ("payout.execute", 10, 60),
        ("blockchain.anchor", 10, 1800),
        ("pdf.generate", 5, 600),
        ("thumbnail.create", 3, 300),
        ("export.audit", 3, 3600),
        ("reindex.batch", 3, 3600),
        ("audit.snapshot", 3, 3600),
    ],
)
def test_catalog_policies(registry, job_type, max_attempts, timeout_seconds):
    policy = registry.get_policy(job_type)
    assert policy.max_attempts == max_attempts
    assert policy.timeout_seconds == timeout_seconds


def test_only_payouts_are_concurrency_limited(registry):
    limits = {t: registry.get_policy(t).concurrency_limit for t in registry.types()}
    assert limits.pop("payout.execute") == 5
    assert set(limits.values()) == {None}

    with pytest.raises(ValueError):
        JobPolicy(max_attempts=1, timeout_seconds=5, concurrency_limit=0)


def test_snapshot_payload_keeps_from_and_to(registry):
    payload = registry.validate_payload(
        "audit.snapshot", {"from": "2026-03-01T00:00:00", "to": "2026-03-02T00:00:00"}
    )
    assert payload == {"from": "2026-03-01T00:00:00", "to": "2026-03-02T00:00:00"}

    with pytest.raises(PayloadValidationFailed):
        registry.validate_payload("audit.snapshot", {"from": "2026-03-02T00:00:00", "to": "2026-03-01T00:00:00"})


def test_reindex_payload_requires_documents(registry):
    with pytest.raises(PayloadValidationFailed):
        registry.validate_payload("reindex.batch", {"doc_type": "creator", "doc_ids": []})
    with pytest.raises(PayloadValidationFailed):
        registry.validate_payload("reindex.batch", {"doc_type": "asset", "doc_ids": ["a"]})


def test_unknown_type_raises():
    registry = JobTypeRegistry()
    with pytest.raises(JobTypeNotFound) as exc_info:
        registry.get_handler("missing.type")
    assert exc_info.value.code == "job_type_not_found"
    assert "missing.type" not in registry


def test_duplicate_registration_rejected():
    registry = JobTypeRegistry()
    registry.register("echo", EchoPayload, JobPolicy(max_attempts=1, timeout_seconds=5), echo)
    with pytest.raises(ValueError):
        registry.register("echo", EchoPayload, JobPolicy(max_attempts=2, timeout_seconds=5), echo)
    assert len(registry) == 1


def test_validate_payload_fills_defaults(registry):
    payload = registry.validate_payload("thumbnail.create", {"asset_id": "ast_1", "version_number": 2})
    assert payload == {"asset_id": "ast_1", "version_number": 2, "sizes": [128, 512]}


def test_validate_payload_rejects_unknown_fields(registry):
    with pytest.raises(PayloadValidationFailed) as exc_info:
        registry.validate_payload("blockchain.anchor", {"agreement_id": "agr_1", "immutable_hash": "h", "extra": 1})
    assert exc_info.value.errors
    assert exc_info.value.retryable is False


def test_validate_payload_rejects_missing_fields(registry):
    with pytest.raises(PayloadValidationFailed) as exc_info:
        registry.validate_payload("payout.execute", {})
    assert exc_info.value.errors[0]["loc"] == ("batch_id",)


def test_backoff_doubles_and_caps():
    policy = RetryPolicy(base_delay_seconds=10, max_delay_seconds=100, jitter_ratio=0)
    assert [policy.backoff_seconds(n) for n in range(1, 7)] == [10, 20, 40, 80, 100, 100]
    assert policy.base_backoff(0) == 10
    assert policy.base_backoff(10_000) == 100


def test_jitter_never_exceeds_cap():
    policy = RetryPolicy(base_delay_seconds=10, max_delay_seconds=100, jitter_ratio=0.5)
    assert policy.backoff_seconds(1, rand=lambda: 1.0) == 15
    assert policy.backoff_seconds(4, rand=lambda: 1.0) == 100
    assert policy.backoff_seconds(2, rand=lambda: 0.0) == 20


@pytest.mark.parametrize(
    "kwargs",
    [
        {"base_delay_seconds": 0},
        {"base_delay_seconds": 10, "max_delay_seconds": 5},
        {"jitter_ratio": 1.5},
    ],
)
def test_invalid_retry_policy(kwargs):
    with pytest.raises(ValueError):
        RetryPolicy(**kwargs)


@pytest.mark.parametrize(
    "kwargs",
    [
        {"max_attempts": 0, "timeout_seconds": 10},
        {"max_attempts": 1, "timeout_seconds": 0},
        {"max_attempts": 1, "timeout_seconds": 10, "default_priority": 101},
    ],
)
def test_invalid_job_policy(kwargs):
    with pytest.raises(ValueError):
        JobPolicy(**kwargs)
