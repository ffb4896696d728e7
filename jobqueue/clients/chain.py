"""
Chain gateway client for anchoring agreement hashes.
"""
import httpx

from jobqueue.clients.base import raise_for_collaborator_status
from jobqueue.config import settings
from jobqueue.errors import TransientError


class ChainGatewayClient:
    """Submits anchor transactions through the chain gateway service."""

    service = "chain"

    def __init__(self, client: httpx.AsyncClient):
        self.client = client

    @classmethod
    def from_settings(cls) -> "ChainGatewayClient":
        headers = {}
        if settings.CHAIN_GATEWAY_API_KEY:
            headers["X-Api-Key"] = settings.CHAIN_GATEWAY_API_KEY
        client = httpx.AsyncClient(
            base_url=settings.CHAIN_GATEWAY_URL,
            headers=headers,
            timeout=settings.COLLABORATOR_TIMEOUT_SECONDS,
        )
        return cls(client)

    async def aclose(self):
        await self.client.aclose()

    async def submit_anchor(self, immutable_hash: str, chain: str, idempotency_key: str) -> str:
        response = await self.client.post(
            "/anchors",
            json={"hash": immutable_hash, "chain": chain},
            headers={"Idempotency-Key": idempotency_key},
        )
        # Gateway answers 503 when the network's mempool is saturated
        if response.status_code == 503:
            raise TransientError(f"Chain {chain} is busy", code="chain_network_busy")
        raise_for_collaborator_status(response, self.service)
        return response.json()["tx_id"]
