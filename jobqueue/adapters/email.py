"""SendGrid e-mail adapter."""
import httpx

from jobqueue.adapters.base import ChannelAdapter, DeliveryReceipt, Destination, post_or_transient
from jobqueue.config import settings
from jobqueue.errors import PermanentDeliveryError, TransientDeliveryError


class SendGridEmailAdapter(ChannelAdapter):
    provider = "sendgrid"

    def __init__(self, client: httpx.AsyncClient, api_url: str, api_key: str, from_address: str):
        self.client = client
        self.api_url = api_url
        self.api_key = api_key
        self.from_address = from_address

    @classmethod
    def from_settings(cls, client: httpx.AsyncClient) -> "SendGridEmailAdapter":
        return cls(client, settings.SENDGRID_API_URL, settings.SENDGRID_API_KEY or "", settings.EMAIL_FROM_ADDRESS)

    async def send(self, destination: Destination, content: dict, *, reference: str) -> DeliveryReceipt:
        body = {
            "personalizations": [{"to": [{"email": destination.address}]}],
            "from": {"email": self.from_address},
            "subject": content.get("subject") or content.get("title") or "",
            "content": [{"type": "text/plain", "value": content.get("body", "")}],
            "custom_args": {"reference": reference},
        }
        if content.get("html"):
            body["content"].append({"type": "text/html", "value": content["html"]})

        response = await post_or_transient(
            self.client,
            self.provider,
            self.api_url,
            json=body,
            headers={"Authorization": f"Bearer {self.api_key}"},
        )

        if response.status_code in (401, 403):
            raise TransientDeliveryError("SendGrid rejected credentials", code="provider_auth_error")
        if response.status_code == 400:
            # SendGrid reports malformed or blocked recipients as 400
            raise PermanentDeliveryError(f"SendGrid rejected {destination.address}", code="invalid_address")
        if response.status_code >= 500 or response.status_code == 429:
            raise TransientDeliveryError(f"SendGrid returned HTTP {response.status_code}", code="sendgrid_unavailable")
        if not response.is_success:
            raise PermanentDeliveryError(
                f"SendGrid returned HTTP {response.status_code}",
                code="sendgrid_rejected",
                invalid_destination=False,
            )

        return DeliveryReceipt(provider_reference_id=response.headers.get("X-Message-Id"))
