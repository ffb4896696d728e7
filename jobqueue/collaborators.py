"""
External collaborators handed to job handlers through the worker context.
"""
from dataclasses import dataclass, field

import httpx

from jobqueue.adapters.base import ChannelAdapter
from jobqueue.adapters.email import SendGridEmailAdapter
from jobqueue.adapters.push import FCMPushAdapter
from jobqueue.adapters.webhook import WebhookAdapter
from jobqueue.clients.base import (
    AgreementClient,
    AssetClient,
    AuditLogSource,
    ChainGateway,
    DocumentRenderer,
    ManifestSigner,
    PaymentProvider,
    SearchIndex,
)
from jobqueue.clients.chain import ChainGatewayClient
from jobqueue.clients.payments import StripePaymentProvider
from jobqueue.clients.platform import PlatformClient
from jobqueue.clients.signing import HmacManifestSigner
from jobqueue.config import settings
from jobqueue.models.notification import Channel


@dataclass
class Collaborators:
    agreements: AgreementClient | None = None
    assets: AssetClient | None = None
    audit_logs: AuditLogSource | None = None
    renderer: DocumentRenderer | None = None
    search: SearchIndex | None = None
    manifest_signer: ManifestSigner | None = None
    chain: ChainGateway | None = None
    payments: PaymentProvider | None = None
    adapters: dict[Channel, ChannelAdapter] = field(default_factory=dict)
    http_clients: list[httpx.AsyncClient] = field(default_factory=list)

    async def aclose(self):
        for client in self.http_clients:
            await client.aclose()


def build_collaborators() -> Collaborators:
    """Wire the HTTP-backed collaborators from settings."""
    platform = PlatformClient.from_settings()
    chain = ChainGatewayClient.from_settings()
    payments = StripePaymentProvider.from_settings()
    delivery = httpx.AsyncClient(timeout=settings.WEBHOOK_TIMEOUT_SECONDS)

    adapters: dict[Channel, ChannelAdapter] = {Channel.WEBHOOK: WebhookAdapter(delivery)}
    if settings.SENDGRID_API_KEY:
        adapters[Channel.EMAIL] = SendGridEmailAdapter.from_settings(delivery)
    if settings.FCM_SERVER_KEY:
        adapters[Channel.PUSH] = FCMPushAdapter.from_settings(delivery)

    return Collaborators(
        agreements=platform,
        assets=platform,
        audit_logs=platform,
        renderer=platform,
        search=platform,
        manifest_signer=HmacManifestSigner.from_settings(),
        chain=chain,
        payments=payments if settings.STRIPE_SECRET_KEY else None,
        adapters=adapters,
        http_clients=[platform.client, chain.client, payments.client, delivery],
    )
