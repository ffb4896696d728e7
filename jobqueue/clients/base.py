"""
Collaborator interfaces used by job handlers, and the HTTP error mapping
shared by their httpx implementations.
"""
from typing import Protocol

import httpx

from jobqueue.errors import CollaboratorRejected, TransientError


class AgreementClient(Protocol):
    async def get_agreement(self, agreement_id: str) -> dict | None: ...

    async def set_pdf_asset(self, agreement_id: str, asset_id: str) -> None: ...

    async def record_anchor(self, agreement_id: str, immutable_hash: str, chain: str, tx_id: str) -> None: ...


class AssetClient(Protocol):
    async def get_asset(self, asset_id: str) -> dict | None: ...

    async def register_asset(
        self,
        owner_id: str,
        filename: str,
        content_type: str,
        data: bytes,
        metadata: dict | None = None,
    ) -> str: ...

    async def mark_processed(self, asset_id: str, version_number: int, derived: dict) -> None: ...


class AuditLogSource(Protocol):
    async def fetch(self, filters: dict) -> list[dict]: ...

    async def seal(self, log_ids: list[str], snapshot_asset_id: str, signed_manifest: str) -> None: ...


class ManifestSigner(Protocol):
    def sign(self, digest: str) -> str: ...


class SearchIndex(Protocol):
    async def fetch_sources(self, doc_type: str, doc_ids: list[str]) -> list[dict]: ...

    async def index_document(self, document: dict) -> None: ...


class DocumentRenderer(Protocol):
    async def render_agreement_pdf(self, agreement: dict, payload: dict) -> bytes: ...

    async def render_thumbnail(self, asset: dict, version_number: int, size: int) -> bytes: ...


class ChainGateway(Protocol):
    async def submit_anchor(self, immutable_hash: str, chain: str, idempotency_key: str) -> str: ...


class PaymentProvider(Protocol):
    name: str

    async def create_transfer(
        self,
        amount_cents: int,
        currency: str,
        destination_account: str,
        idempotency_key: str,
        metadata: dict | None = None,
    ) -> str: ...


RETRYABLE_STATUS_CODES = frozenset({408, 425, 429})


def raise_for_collaborator_status(response: httpx.Response, service: str) -> None:
    """
    Map an HTTP error response onto the engine's error taxonomy.

    5xx and throttling are transient; any other 4xx is a rejection that a
    retry would not fix.
    """
    if response.is_success:
        return
    detail = f"{service} returned HTTP {response.status_code}: {response.text[:500]}"
    if response.status_code >= 500 or response.status_code in RETRYABLE_STATUS_CODES:
        raise TransientError(detail, code=f"{service}_unavailable")
    raise CollaboratorRejected(detail, code=f"{service}_rejected")
