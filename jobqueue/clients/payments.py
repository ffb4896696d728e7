"""
Stripe transfers for payout execution.
"""
import httpx

from jobqueue.clients.base import raise_for_collaborator_status
from jobqueue.config import settings


class StripePaymentProvider:
    """
    Creates Stripe transfers to connected accounts.

    Every call carries an Idempotency-Key so a resubmitted item can never be
    paid twice by the provider.
    """

    name = "stripe"

    def __init__(self, client: httpx.AsyncClient):
        self.client = client

    @classmethod
    def from_settings(cls) -> "StripePaymentProvider":
        client = httpx.AsyncClient(
            base_url=settings.STRIPE_API_URL,
            auth=(settings.STRIPE_SECRET_KEY or "", ""),
            timeout=settings.COLLABORATOR_TIMEOUT_SECONDS,
        )
        return cls(client)

    async def aclose(self):
        await self.client.aclose()

    async def create_transfer(
        self,
        amount_cents: int,
        currency: str,
        destination_account: str,
        idempotency_key: str,
        metadata: dict | None = None,
    ) -> str:
        data = {
            "amount": str(amount_cents),
            "currency": currency,
            "destination": destination_account,
        }
        for key, value in (metadata or {}).items():
            data[f"metadata[{key}]"] = str(value)

        response = await self.client.post(
            "/v1/transfers",
            data=data,
            headers={"Idempotency-Key": idempotency_key},
        )
        raise_for_collaborator_status(response, self.name)
        return response.json()["id"]
