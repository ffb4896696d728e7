"""Job handlers: anchoring, documents, audit export and snapshots, reindexing, notifications."""
import csv
import hashlib
import io
import json

import pytest
from sqlalchemy import select

from conftest import FakeAdapter, make_job
from jobqueue.clients.signing import HmacManifestSigner
from jobqueue.errors import CollaboratorRejected, JobDataMissing, NoRecordsFound, TransientDeliveryError, TransientError
from jobqueue.jobs.handlers.anchor import handle_blockchain_anchor
from jobqueue.jobs.handlers.audit_export import handle_audit_export, render_csv, render_ndjson
from jobqueue.jobs.handlers.audit_snapshot import handle_audit_snapshot
from jobqueue.jobs.handlers.documents import handle_pdf_generate, handle_thumbnail_create
from jobqueue.jobs.handlers.notification import handle_notification_dispatch
from jobqueue.jobs.handlers.reindex import handle_reindex_batch
from jobqueue.models.job import Job, JobStatus
from jobqueue.models.notification import Channel, Notification
from jobqueue.services.job_service import JobService
from jobqueue.services.notification_service import NotificationService


class FakeAgreements:
    def __init__(self, agreements: dict):
        self.agreements = agreements
        self.pdf_assets: dict[str, str] = {}
        self.anchors: list[tuple] = []

    async def get_agreement(self, agreement_id):
        return self.agreements.get(agreement_id)

    async def set_pdf_asset(self, agreement_id, asset_id):
        self.pdf_assets[agreement_id] = asset_id

    async def record_anchor(self, agreement_id, immutable_hash, chain, tx_id):
        self.anchors.append((agreement_id, immutable_hash, chain, tx_id))


class FakeChain:
    def __init__(self):
        self.submissions: list[tuple] = []

    async def submit_anchor(self, immutable_hash, chain, idempotency_key):
        self.submissions.append((immutable_hash, chain, idempotency_key))
        return "0xfeed"


class FakeAssets:
    def __init__(self, assets: dict | None = None):
        self.assets = assets or {}
        self.registered: list[dict] = []
        self.processed: list[tuple] = []

    async def get_asset(self, asset_id):
        return self.assets.get(asset_id)

    async def register_asset(self, owner_id, filename, content_type, data, metadata=None):
        self.registered.append({
            "owner_id": owner_id,
            "filename": filename,
            "content_type": content_type,
            "data": data,
            "metadata": metadata,
        })
        return f"ast_new_{len(self.registered)}"

    async def mark_processed(self, asset_id, version_number, derived):
        self.processed.append((asset_id, version_number, derived))


class FakeRenderer:
    async def render_agreement_pdf(self, agreement, payload):
        return b"%PDF-1.7 " + agreement["id"].encode()

    async def render_thumbnail(self, asset, version_number, size):
        return f"webp-{size}".encode()


class FakeAuditLogs:
    def __init__(self, records):
        self.records = records
        self.filters = None
        self.sealed: list[tuple] = []

    async def fetch(self, filters):
        self.filters = filters
        return self.records

    async def seal(self, log_ids, snapshot_asset_id, signed_manifest):
        self.sealed.append((log_ids, snapshot_asset_id, signed_manifest))


class FakeSearch:
    def __init__(self, sources: dict, fail_ids: dict | None = None):
        self.sources = sources
        self.fail_ids = fail_ids or {}
        self.indexed: list[dict] = []

    async def fetch_sources(self, doc_type, doc_ids):
        return [self.sources[doc_id] for doc_id in doc_ids if doc_id in self.sources]

    async def index_document(self, document):
        failure = self.fail_ids.get(document["doc_id"])
        if failure is not None:
            raise failure()
        self.indexed.append(document)


# Anchoring

async def test_anchor_submits_and_records(collaborators, make_ctx):
    collaborators.agreements = FakeAgreements({"agr_1": {"id": "agr_1", "anchors": []}})
    collaborators.chain = FakeChain()

    result = await handle_blockchain_anchor(make_ctx(), make_job({"agreement_id": "agr_1", "immutable_hash": "abc"}))

    assert result == {"tx_id": "0xfeed", "chain": "polygon", "skipped": False}
    assert collaborators.chain.submissions == [("abc", "polygon", "anchor-agr_1-abc")]
    assert collaborators.agreements.anchors == [("agr_1", "abc", "polygon", "0xfeed")]


async def test_anchor_already_recorded_is_skipped(collaborators, make_ctx):
    existing = {"immutable_hash": "abc", "chain": "polygon", "tx_id": "0xold"}
    collaborators.agreements = FakeAgreements({"agr_1": {"id": "agr_1", "anchors": [existing]}})
    collaborators.chain = FakeChain()

    result = await handle_blockchain_anchor(make_ctx(), make_job({"agreement_id": "agr_1", "immutable_hash": "abc"}))

    assert result == {"tx_id": "0xold", "chain": "polygon", "skipped": True}
    assert collaborators.chain.submissions == []


async def test_anchor_unknown_agreement(collaborators, make_ctx):
    collaborators.agreements = FakeAgreements({})
    collaborators.chain = FakeChain()

    with pytest.raises(CollaboratorRejected) as exc_info:
        await handle_blockchain_anchor(make_ctx(), make_job({"agreement_id": "agr_x", "immutable_hash": "abc"}))
    assert exc_info.value.code == "agreement_not_found"


async def test_malformed_payload_reports_field(make_ctx):
    with pytest.raises(JobDataMissing) as exc_info:
        await handle_blockchain_anchor(make_ctx(), make_job({"agreement_id": "agr_1"}))
    assert exc_info.value.field == "immutable_hash"


# Documents

async def test_pdf_generate(collaborators, make_ctx):
    collaborators.agreements = FakeAgreements({"agr_1": {"id": "agr_1"}})
    collaborators.assets = FakeAssets()
    collaborators.renderer = FakeRenderer()

    result = await handle_pdf_generate(make_ctx(), make_job({"agreement_id": "agr_1"}, created_by="user_9"))

    assert result["asset_id"] == "ast_new_1"
    [asset] = collaborators.assets.registered
    assert asset["owner_id"] == "user_9"
    assert asset["content_type"] == "application/pdf"
    assert asset["data"].startswith(b"%PDF")
    assert collaborators.agreements.pdf_assets == {"agr_1": "ast_new_1"}


async def test_pdf_generate_requires_creator(collaborators, make_ctx):
    collaborators.agreements = FakeAgreements({"agr_1": {"id": "agr_1"}})
    collaborators.assets = FakeAssets()
    collaborators.renderer = FakeRenderer()

    with pytest.raises(JobDataMissing) as exc_info:
        await handle_pdf_generate(make_ctx(), make_job({"agreement_id": "agr_1"}, created_by=None))
    assert exc_info.value.field == "created_by"
    assert collaborators.assets.registered == []


async def test_thumbnail_create_renews_lease_per_size(collaborators, make_ctx):
    collaborators.assets = FakeAssets({"ast_1": {"id": "ast_1", "owner_id": "user_3"}})
    collaborators.renderer = FakeRenderer()
    ctx = make_ctx()

    result = await handle_thumbnail_create(ctx, make_job({"asset_id": "ast_1", "version_number": 2, "sizes": [64, 256]}))

    assert result["thumbnails"] == {"64": "ast_new_1", "256": "ast_new_2"}
    assert [a["owner_id"] for a in collaborators.assets.registered] == ["user_3", "user_3"]
    assert collaborators.assets.processed == [("ast_1", 2, {"64": "ast_new_1", "256": "ast_new_2"})]
    assert len(ctx["renewals"]) == 2


async def test_thumbnail_missing_asset(collaborators, make_ctx):
    collaborators.assets = FakeAssets()
    collaborators.renderer = FakeRenderer()

    with pytest.raises(CollaboratorRejected) as exc_info:
        await handle_thumbnail_create(make_ctx(), make_job({"asset_id": "ast_x", "version_number": 1}))
    assert exc_info.value.code == "asset_not_found"


# Audit export

RECORDS = [
    {"id": "log_1", "action": "agreement.signed", "actor": "user_1", "meta": {"ip": "10.0.0.1"}},
    {"id": "log_2", "action": "payout.sent", "actor": "user_2"},
]


def test_render_csv():
    rows = list(csv.DictReader(io.StringIO(render_csv(RECORDS).decode())))
    assert [r["id"] for r in rows] == ["log_1", "log_2"]
    assert json.loads(rows[0]["meta"]) == {"ip": "10.0.0.1"}
    assert rows[1]["meta"] == ""


def test_render_ndjson():
    lines = render_ndjson(RECORDS).decode().splitlines()
    assert [json.loads(line)["id"] for line in lines] == ["log_1", "log_2"]


async def test_audit_export_stores_file_and_notifies(db, collaborators, make_ctx):
    collaborators.audit_logs = FakeAuditLogs(RECORDS)
    collaborators.assets = FakeAssets()
    payload = {"export_filters": {"actor": "user_1"}, "format": "ndjson", "requester_id": "ops_1"}

    result = await handle_audit_export(make_ctx(), make_job(payload, job_id="job_export"))

    assert collaborators.audit_logs.filters == {"actor": "user_1"}
    [asset] = collaborators.assets.registered
    assert asset["filename"] == "audit-export-job_export.ndjson"
    assert asset["content_type"] == "application/x-ndjson"
    assert result["records"] == 2

    notification = await db.get(Notification, result["notification_id"])
    assert notification.type == "export.ready"
    assert notification.channels == ["in_app"]
    assert notification.recipients == [{"user_id": "ops_1"}]
    assert notification.content["in_app"]["data"]["asset_id"] == "ast_new_1"

    dispatch = (await db.execute(select(Job).where(Job.type == "notification.dispatch"))).scalar_one()
    assert dispatch.priority == 20
    assert dispatch.created_by == "job_export"


async def test_audit_export_without_records(collaborators, make_ctx):
    collaborators.audit_logs = FakeAuditLogs([])
    collaborators.assets = FakeAssets()

    with pytest.raises(NoRecordsFound):
        await handle_audit_export(make_ctx(), make_job({"requester_id": "ops_1"}))
    assert collaborators.assets.registered == []


# Audit snapshots

SNAPSHOT_RECORDS = [
    {"id": "log_2", "timestamp": "2026-03-01T12:00:00", "hash": "h2", "action": "payout.sent"},
    {"id": "log_1", "timestamp": "2026-03-01T08:00:00", "hash": "h1", "action": "agreement.signed"},
]
PERIOD = {"from": "2026-03-01T00:00:00", "to": "2026-03-02T00:00:00"}


async def test_audit_snapshot_signs_stores_and_seals(collaborators, make_ctx):
    collaborators.audit_logs = FakeAuditLogs(SNAPSHOT_RECORDS)
    collaborators.assets = FakeAssets()
    collaborators.manifest_signer = HmacManifestSigner("snapshot-key")

    result = await handle_audit_snapshot(make_ctx(), make_job(PERIOD))

    digest = hashlib.sha256(b"h1h2").hexdigest()
    assert result == {"snapshot_asset_id": "ast_new_1", "record_count": 2, "manifest_hash": digest}
    assert collaborators.audit_logs.filters == {**PERIOD, "immutable": False}

    [asset] = collaborators.assets.registered
    lines = [json.loads(line) for line in asset["data"].decode().splitlines()]
    manifest = lines[0]["manifest"]
    assert manifest["log_ids"] == ["log_1", "log_2"]
    assert manifest["signed_manifest"] == HmacManifestSigner("snapshot-key").sign(digest)
    assert [line["id"] for line in lines[1:]] == ["log_1", "log_2"]

    assert collaborators.audit_logs.sealed == [(["log_1", "log_2"], "ast_new_1", manifest["signed_manifest"])]


async def test_audit_snapshot_without_records_succeeds_empty(collaborators, make_ctx):
    collaborators.audit_logs = FakeAuditLogs([])
    collaborators.assets = FakeAssets()
    collaborators.manifest_signer = HmacManifestSigner("snapshot-key")

    result = await handle_audit_snapshot(make_ctx(), make_job(PERIOD))

    assert result == {"snapshot_asset_id": None, "record_count": 0}
    assert collaborators.assets.registered == []
    assert collaborators.audit_logs.sealed == []


async def test_audit_snapshot_requires_signer(collaborators, make_ctx):
    collaborators.audit_logs = FakeAuditLogs(SNAPSHOT_RECORDS)
    collaborators.assets = FakeAssets()

    with pytest.raises(CollaboratorRejected) as exc_info:
        await handle_audit_snapshot(make_ctx(), make_job(PERIOD))
    assert exc_info.value.code == "collaborator_not_configured"
    assert collaborators.audit_logs.sealed == []


# Search reindexing

CREATORS = {
    "c1": {"id": "c1", "user": {"preferred_name": "Ada"}, "skills": ["mixing"], "verified": True},
    "c2": {"id": "c2", "user": {"full_name": "Grace Hopper"}},
}


async def test_reindex_soft_fails_single_documents(collaborators, make_ctx):
    collaborators.search = FakeSearch(CREATORS, {"c2": lambda: TransientError("busy", code="platform_unavailable")})

    result = await handle_reindex_batch(make_ctx(), make_job({"doc_type": "creator", "doc_ids": ["c1", "c2", "c3", "c1"]}))

    assert result == {
        "doc_type": "creator",
        "requested": 3,
        "total_indexed": 1,
        "failed": ["c2"],
        "missing": ["c3"],
    }
    [document] = collaborators.search.indexed
    assert document["doc_id"] == "c1"
    assert document["payload"] == {"title": "Ada", "skills": ["mixing"], "verified": True, "status": "open"}


async def test_reindex_fails_when_nothing_indexed(collaborators, make_ctx):
    def failing():
        return TransientError("busy", code="platform_unavailable")

    collaborators.search = FakeSearch(CREATORS, {"c1": failing, "c2": failing})

    with pytest.raises(TransientError) as exc_info:
        await handle_reindex_batch(make_ctx(), make_job({"doc_type": "creator", "doc_ids": ["c1", "c2"]}))
    assert exc_info.value.code == "reindex_failed"


# Notifications

async def test_dispatch_handler_schedules_redelivery(db, registry, clock, collaborators, make_ctx):
    email = FakeAdapter("sendgrid", {"a@example.com": lambda: TransientDeliveryError("busy", code="sendgrid_unavailable")})
    collaborators.adapters = {Channel.EMAIL: email}
    service = NotificationService(db, JobService(db, registry, clock=clock), clock=clock)
    notification, job_id = await service.create_notification(
        type="agreement.signed",
        recipients=[{"user_id": "user_1", "email": "a@example.com"}],
        content={"email": {"subject": "Signed", "body": "Your agreement was signed."}},
        channels=["email"],
    )

    result = await handle_notification_dispatch(make_ctx(job_id), make_job({"notification_id": notification.id}, job_id=job_id))

    assert result["status"] == "failed"
    assert result["attempts"] == 1
    follow_up = (await db.execute(
        select(Job).where(Job.type == "notification.redeliver").execution_options(populate_existing=True)
    )).scalar_one()
    assert follow_up.status == JobStatus.QUEUED
    assert follow_up.payload == {"notification_id": notification.id}
    assert follow_up.created_by == job_id
    assert follow_up.next_run_at.isoformat() == result["next_retry_at"]
