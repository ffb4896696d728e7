"""
Channel adapter contract.

An adapter delivers rendered content to one destination. It returns a
receipt when the provider accepted the message and raises
TransientDeliveryError or PermanentDeliveryError otherwise.
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass

import httpx

from jobqueue.errors import PermanentDeliveryError, TransientDeliveryError


@dataclass(frozen=True)
class Destination:
    """
    Where to deliver on one channel.

    address: e-mail address, push token or webhook URL
    source_id: id of the record the address came from (token, subscription)
    secret: signing secret, webhooks only
    """
    address: str
    source_id: str | None = None
    secret: str | None = None


@dataclass(frozen=True)
class DeliveryReceipt:
    provider_reference_id: str | None
    status: str = "accepted"


class ChannelAdapter(ABC):
    """Base class for channel adapters."""

    provider: str = "unknown"

    @abstractmethod
    async def send(self, destination: Destination, content: dict, *, reference: str) -> DeliveryReceipt:
        """
        Deliver content to a destination.

        Args:
            destination: Resolved destination for this channel
            content: Rendered content snapshot for this channel
            reference: Stable reference for the (notification, recipient) pair
        """


def raise_for_delivery_status(response: httpx.Response, provider: str, gone_statuses: frozenset = frozenset()) -> None:
    """Translate a provider HTTP response into a delivery error."""
    if response.is_success:
        return
    message = f"{provider} returned HTTP {response.status_code}"
    if response.status_code >= 500 or response.status_code == 429:
        raise TransientDeliveryError(message, code=f"{provider}_unavailable")
    if response.status_code in gone_statuses:
        raise PermanentDeliveryError(message, code="destination_gone")
    raise PermanentDeliveryError(message, code=f"{provider}_rejected", invalid_destination=False)


async def post_or_transient(client: httpx.AsyncClient, provider: str, url: str, **kwargs) -> httpx.Response:
    """POST, turning network failures into transient delivery errors."""
    try:
        return await client.post(url, **kwargs)
    except httpx.TimeoutException as exc:
        raise TransientDeliveryError(f"{provider} timed out: {exc}", code="timeout") from exc
    except httpx.TransportError as exc:
        raise TransientDeliveryError(f"{provider} unreachable: {exc}", code="network_error") from exc
