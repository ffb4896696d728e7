"""Channel adapters and collaborator clients against mocked HTTP."""
import json

import httpx
import pytest

from jobqueue.adapters.base import Destination
from jobqueue.adapters.email import SendGridEmailAdapter
from jobqueue.adapters.push import FCMPushAdapter
from jobqueue.adapters.webhook import SIGNATURE_HEADER, WebhookAdapter, generate_webhook_signature
from jobqueue.clients.base import raise_for_collaborator_status
from jobqueue.clients.chain import ChainGatewayClient
from jobqueue.clients.payments import StripePaymentProvider
from jobqueue.clients.platform import PlatformClient
from jobqueue.errors import CollaboratorRejected, PermanentDeliveryError, TransientDeliveryError, TransientError


def mock_client(handler, **kwargs) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler), **kwargs)


# Webhook

async def test_webhook_payload_is_signed():
    seen = {}

    def handler(request: httpx.Request):
        seen["request"] = request
        return httpx.Response(200, headers={"X-Request-Id": "req_42"})

    async with mock_client(handler) as client:
        adapter = WebhookAdapter(client)
        destination = Destination("https://hooks.example.com/n", source_id="whs_1", secret="s3cret")
        receipt = await adapter.send(destination, {"event": "payout.sent"}, reference="notif_1:user_1:webhook")

    request = seen["request"]
    body = request.content.decode()
    assert json.loads(body) == {"event": "payout.sent", "reference": "notif_1:user_1:webhook"}
    assert request.headers[SIGNATURE_HEADER] == generate_webhook_signature(body, "s3cret")
    assert request.headers["X-Webhook-Reference"] == "notif_1:user_1:webhook"
    assert receipt.provider_reference_id == "req_42"


@pytest.mark.parametrize("status_code", [404, 410])
async def test_webhook_gone_is_permanent(status_code):
    async with mock_client(lambda request: httpx.Response(status_code)) as client:
        with pytest.raises(PermanentDeliveryError) as exc_info:
            await WebhookAdapter(client).send(Destination("https://hooks.example.com/n"), {}, reference="r")
    assert exc_info.value.code == "destination_gone"
    assert exc_info.value.invalid_destination is True


async def test_webhook_client_error_keeps_subscription():
    async with mock_client(lambda request: httpx.Response(400)) as client:
        with pytest.raises(PermanentDeliveryError) as exc_info:
            await WebhookAdapter(client).send(Destination("https://hooks.example.com/n"), {}, reference="r")
    assert exc_info.value.invalid_destination is False


@pytest.mark.parametrize("status_code", [429, 500, 503])
async def test_webhook_server_errors_are_transient(status_code):
    async with mock_client(lambda request: httpx.Response(status_code)) as client:
        with pytest.raises(TransientDeliveryError):
            await WebhookAdapter(client).send(Destination("https://hooks.example.com/n"), {}, reference="r")


async def test_network_failure_is_transient():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    async with mock_client(handler) as client:
        with pytest.raises(TransientDeliveryError) as exc_info:
            await WebhookAdapter(client).send(Destination("https://hooks.example.com/n"), {}, reference="r")
    assert exc_info.value.code == "network_error"


# E-mail

async def test_sendgrid_accepts():
    seen = {}

    def handler(request):
        seen["body"] = json.loads(request.content)
        seen["auth"] = request.headers["Authorization"]
        return httpx.Response(202, headers={"X-Message-Id": "msg_1"})

    async with mock_client(handler) as client:
        adapter = SendGridEmailAdapter(client, "https://sendgrid.test/v3/mail/send", "sg_key", "noreply@example.com")
        receipt = await adapter.send(
            Destination("user@example.com"),
            {"subject": "Hi", "body": "Hello", "html": "<p>Hello</p>"},
            reference="ref",
        )

    assert receipt.provider_reference_id == "msg_1"
    assert seen["auth"] == "Bearer sg_key"
    assert seen["body"]["personalizations"] == [{"to": [{"email": "user@example.com"}]}]
    assert seen["body"]["subject"] == "Hi"
    assert [c["type"] for c in seen["body"]["content"]] == ["text/plain", "text/html"]


@pytest.mark.parametrize(
    "status_code, error, code",
    [
        (400, PermanentDeliveryError, "invalid_address"),
        (401, TransientDeliveryError, "provider_auth_error"),
        (503, TransientDeliveryError, "sendgrid_unavailable"),
        (413, PermanentDeliveryError, "sendgrid_rejected"),
    ],
)
async def test_sendgrid_errors(status_code, error, code):
    async with mock_client(lambda request: httpx.Response(status_code)) as client:
        adapter = SendGridEmailAdapter(client, "https://sendgrid.test/v3/mail/send", "sg_key", "noreply@example.com")
        with pytest.raises(error) as exc_info:
            await adapter.send(Destination("user@example.com"), {"body": "x"}, reference="ref")
    assert exc_info.value.code == code


# Push

async def test_fcm_dead_token_is_permanent():
    response = {"results": [{"error": "NotRegistered"}]}
    async with mock_client(lambda request: httpx.Response(200, json=response)) as client:
        adapter = FCMPushAdapter(client, "https://fcm.test/send", "server_key")
        with pytest.raises(PermanentDeliveryError) as exc_info:
            await adapter.send(Destination("tok_dead"), {"title": "t"}, reference="ref")
    assert exc_info.value.code == "invalid_token"
    assert exc_info.value.invalid_destination is True


async def test_fcm_other_errors_are_transient():
    response = {"results": [{"error": "Unavailable"}]}
    async with mock_client(lambda request: httpx.Response(200, json=response)) as client:
        adapter = FCMPushAdapter(client, "https://fcm.test/send", "server_key")
        with pytest.raises(TransientDeliveryError):
            await adapter.send(Destination("tok"), {"title": "t"}, reference="ref")


async def test_fcm_accepts():
    seen = {}

    def handler(request):
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"results": [{"message_id": "fcm_1"}]})

    async with mock_client(handler) as client:
        adapter = FCMPushAdapter(client, "https://fcm.test/send", "server_key")
        receipt = await adapter.send(Destination("tok"), {"title": "t", "body": "b", "data": {"k": "v"}}, reference="ref")

    assert receipt.provider_reference_id == "fcm_1"
    assert seen["body"]["to"] == "tok"
    assert seen["body"]["data"] == {"k": "v", "reference": "ref"}


# Collaborators

@pytest.mark.parametrize("status_code", [408, 429, 500, 502])
def test_collaborator_transient_statuses(status_code):
    with pytest.raises(TransientError) as exc_info:
        raise_for_collaborator_status(httpx.Response(status_code), "platform")
    assert exc_info.value.code == "platform_unavailable"


def test_collaborator_rejections():
    with pytest.raises(CollaboratorRejected) as exc_info:
        raise_for_collaborator_status(httpx.Response(422), "platform")
    assert exc_info.value.code == "platform_rejected"
    raise_for_collaborator_status(httpx.Response(201), "platform")


async def test_chain_gateway_busy_is_transient():
    async with mock_client(lambda request: httpx.Response(503), base_url="https://chain.test") as client:
        with pytest.raises(TransientError) as exc_info:
            await ChainGatewayClient(client).submit_anchor("abc", "polygon", idempotency_key="anchor-agr_1-abc")
    assert exc_info.value.code == "chain_network_busy"


async def test_chain_gateway_submits_with_idempotency_key():
    seen = {}

    def handler(request):
        seen["key"] = request.headers["Idempotency-Key"]
        seen["body"] = json.loads(request.content)
        return httpx.Response(201, json={"tx_id": "0xabc"})

    async with mock_client(handler, base_url="https://chain.test") as client:
        tx_id = await ChainGatewayClient(client).submit_anchor("abc", "polygon", idempotency_key="anchor-agr_1-abc")

    assert tx_id == "0xabc"
    assert seen == {"key": "anchor-agr_1-abc", "body": {"hash": "abc", "chain": "polygon"}}


async def test_stripe_transfer_carries_idempotency_key():
    seen = {}

    def handler(request):
        seen["key"] = request.headers["Idempotency-Key"]
        seen["form"] = request.content.decode()
        return httpx.Response(200, json={"id": "tr_123"})

    async with mock_client(handler, base_url="https://stripe.test") as client:
        provider = StripePaymentProvider(client)
        reference = await provider.create_transfer(
            amount_cents=2500,
            currency="usd",
            destination_account="acct_1",
            idempotency_key="payout-item-poi_1",
            metadata={"batch_id": "pob_1"},
        )

    assert reference == "tr_123"
    assert seen["key"] == "payout-item-poi_1"
    assert "amount=2500" in seen["form"]
    assert "destination=acct_1" in seen["form"]


async def test_platform_search_and_seal_endpoints():
    seen = []

    def handler(request):
        seen.append((request.method, request.url.path, json.loads(request.content)))
        if request.url.path == "/internal/search/sources/project":
            return httpx.Response(200, json={"documents": [{"id": "p1"}]})
        return httpx.Response(204)

    async with mock_client(handler, base_url="https://platform.test") as client:
        platform = PlatformClient(client)
        sources = await platform.fetch_sources("project", ["p1"])
        await platform.index_document({"doc_type": "project", "doc_id": "p1", "payload": {}})
        await platform.seal(["log_1"], "ast_9", "sig")

    assert sources == [{"id": "p1"}]
    assert [(method, path) for method, path, _ in seen] == [
        ("POST", "/internal/search/sources/project"),
        ("PUT", "/internal/search/documents/project/p1"),
        ("POST", "/internal/audit-logs/seal"),
    ]
    assert seen[2][2] == {"ids": ["log_1"], "snapshot_asset_id": "ast_9", "signed_manifest": "sig"}
