"""FCM push adapter."""
import httpx

from jobqueue.adapters.base import (
    ChannelAdapter,
    DeliveryReceipt,
    Destination,
    post_or_transient,
    raise_for_delivery_status,
)
from jobqueue.config import settings
from jobqueue.errors import PermanentDeliveryError, TransientDeliveryError

# FCM per-message errors meaning the token will never work again
DEAD_TOKEN_ERRORS = frozenset({"NotRegistered", "InvalidRegistration", "MismatchSenderId"})


class FCMPushAdapter(ChannelAdapter):
    provider = "fcm"

    def __init__(self, client: httpx.AsyncClient, api_url: str, server_key: str):
        self.client = client
        self.api_url = api_url
        self.server_key = server_key

    @classmethod
    def from_settings(cls, client: httpx.AsyncClient) -> "FCMPushAdapter":
        return cls(client, settings.FCM_API_URL, settings.FCM_SERVER_KEY or "")

    async def send(self, destination: Destination, content: dict, *, reference: str) -> DeliveryReceipt:
        response = await post_or_transient(
            self.client,
            self.provider,
            self.api_url,
            json={
                "to": destination.address,
                "notification": {"title": content.get("title", ""), "body": content.get("body", "")},
                "data": {**content.get("data", {}), "reference": reference},
            },
            headers={"Authorization": f"key={self.server_key}"},
        )
        if response.status_code in (401, 403):
            raise TransientDeliveryError("FCM rejected credentials", code="provider_auth_error")
        raise_for_delivery_status(response, self.provider)

        results = response.json().get("results") or [{}]
        outcome = results[0]
        error = outcome.get("error")
        if error in DEAD_TOKEN_ERRORS:
            raise PermanentDeliveryError(f"Push token rejected: {error}", code="invalid_token")
        if error:
            raise TransientDeliveryError(f"FCM error: {error}", code="fcm_error")
        return DeliveryReceipt(provider_reference_id=outcome.get("message_id"))
