"""
HTTP client for the platform API (agreements, assets, audit logs, search, rendering).
"""
import base64

import httpx

from jobqueue.clients.base import raise_for_collaborator_status
from jobqueue.config import settings


class PlatformClient:
    """
    Talks to the platform's internal API.

    Implements AgreementClient, AssetClient, AuditLogSource, SearchIndex and
    DocumentRenderer.
    """

    service = "platform"

    def __init__(self, client: httpx.AsyncClient):
        self.client = client

    @classmethod
    def from_settings(cls) -> "PlatformClient":
        headers = {}
        if settings.PLATFORM_API_TOKEN:
            headers["Authorization"] = f"Bearer {settings.PLATFORM_API_TOKEN}"
        client = httpx.AsyncClient(
            base_url=settings.PLATFORM_API_URL,
            headers=headers,
            timeout=settings.COLLABORATOR_TIMEOUT_SECONDS,
        )
        return cls(client)

    async def aclose(self):
        await self.client.aclose()

    async def _get_optional(self, path: str, **params) -> dict | None:
        response = await self.client.get(path, params=params or None)
        if response.status_code == 404:
            return None
        raise_for_collaborator_status(response, self.service)
        return response.json()

    # Agreements

    async def get_agreement(self, agreement_id: str) -> dict | None:
        return await self._get_optional(f"/internal/agreements/{agreement_id}")

    async def set_pdf_asset(self, agreement_id: str, asset_id: str) -> None:
        response = await self.client.patch(
            f"/internal/agreements/{agreement_id}",
            json={"pdf_asset_id": asset_id},
        )
        raise_for_collaborator_status(response, self.service)

    async def record_anchor(self, agreement_id: str, immutable_hash: str, chain: str, tx_id: str) -> None:
        response = await self.client.post(
            f"/internal/agreements/{agreement_id}/anchors",
            json={"immutable_hash": immutable_hash, "chain": chain, "tx_id": tx_id},
        )
        raise_for_collaborator_status(response, self.service)

    # Assets

    async def get_asset(self, asset_id: str) -> dict | None:
        return await self._get_optional(f"/internal/assets/{asset_id}")

    async def register_asset(
        self,
        owner_id: str,
        filename: str,
        content_type: str,
        data: bytes,
        metadata: dict | None = None,
    ) -> str:
        response = await self.client.post(
            "/internal/assets",
            json={
                "owner_id": owner_id,
                "filename": filename,
                "content_type": content_type,
                "data": base64.b64encode(data).decode(),
                "metadata": metadata or {},
            },
        )
        raise_for_collaborator_status(response, self.service)
        return response.json()["id"]

    async def mark_processed(self, asset_id: str, version_number: int, derived: dict) -> None:
        response = await self.client.post(
            f"/internal/assets/{asset_id}/versions/{version_number}/processed",
            json={"derived": derived},
        )
        raise_for_collaborator_status(response, self.service)

    # Audit logs

    async def fetch(self, filters: dict) -> list[dict]:
        response = await self.client.post("/internal/audit-logs/search", json={"filters": filters})
        raise_for_collaborator_status(response, self.service)
        return response.json().get("records", [])

    async def seal(self, log_ids: list[str], snapshot_asset_id: str, signed_manifest: str) -> None:
        response = await self.client.post(
            "/internal/audit-logs/seal",
            json={"ids": log_ids, "snapshot_asset_id": snapshot_asset_id, "signed_manifest": signed_manifest},
        )
        raise_for_collaborator_status(response, self.service)

    # Search index

    async def fetch_sources(self, doc_type: str, doc_ids: list[str]) -> list[dict]:
        response = await self.client.post(
            f"/internal/search/sources/{doc_type}",
            json={"ids": doc_ids},
        )
        raise_for_collaborator_status(response, self.service)
        return response.json().get("documents", [])

    async def index_document(self, document: dict) -> None:
        response = await self.client.put(
            f"/internal/search/documents/{document['doc_type']}/{document['doc_id']}",
            json=document,
        )
        raise_for_collaborator_status(response, self.service)

    # Rendering

    async def render_agreement_pdf(self, agreement: dict, payload: dict) -> bytes:
        response = await self.client.post(
            "/internal/render/agreement-pdf",
            json={"agreement": agreement, "data": payload},
        )
        raise_for_collaborator_status(response, self.service)
        return response.content

    async def render_thumbnail(self, asset: dict, version_number: int, size: int) -> bytes:
        response = await self.client.post(
            "/internal/render/thumbnail",
            json={"asset_id": asset["id"], "version_number": version_number, "size": size},
        )
        raise_for_collaborator_status(response, self.service)
        return response.content
