"""
Webhook adapter.

Posts the notification payload to a subscriber URL, signed with the
subscription secret.
"""
import hashlib
import hmac
import json

import httpx

from jobqueue.adapters.base import (
    ChannelAdapter,
    DeliveryReceipt,
    Destination,
    post_or_transient,
    raise_for_delivery_status,
)

SIGNATURE_HEADER = "X-Webhook-Signature"


def generate_webhook_signature(payload: str, secret: str) -> str:
    """Generate HMAC-SHA256 signature for webhook payload."""
    return hmac.new(
        secret.encode(),
        payload.encode(),
        hashlib.sha256
    ).hexdigest()


class WebhookAdapter(ChannelAdapter):
    provider = "webhook"

    def __init__(self, client: httpx.AsyncClient):
        self.client = client

    async def send(self, destination: Destination, content: dict, *, reference: str) -> DeliveryReceipt:
        payload_str = json.dumps({"reference": reference, **content}, sort_keys=True, default=str)
        headers = {
            "Content-Type": "application/json",
            SIGNATURE_HEADER: generate_webhook_signature(payload_str, destination.secret or ""),
            "X-Webhook-Reference": reference,
        }
        response = await post_or_transient(
            self.client,
            self.provider,
            destination.address,
            content=payload_str,
            headers=headers,
        )
        # 404/410: the endpoint is gone and the subscription should be retired
        raise_for_delivery_status(response, self.provider, gone_statuses=frozenset({404, 410}))
        return DeliveryReceipt(provider_reference_id=response.headers.get("X-Request-Id"))
