import asyncio
import json
from datetime import datetime, timezone

import pytest

httpx = pytest.importorskip("httpx")
pytest.importorskip("x402")

from jokepay_x402.codec import PaymentCredential
from jokepay_x402.config import ServerConfig
from jokepay_x402.facilitator import (
    ClientCredentialsTokenProvider,
    MockFacilitator,
    RemoteFacilitator,
    SettlementError,
    StaticKeyAuth,
    TokenError,
    Verification,
    build_facilitator,
)
from jokepay_x402.invoices import Invoice

NOW = datetime(2026, 1, 1, 12, 0, 0, tzinfo=timezone.utc)
BASE_URL = "http://fac.test"


def make_invoice(price_cents=1):
    return Invoice.issue(
        request_id="req-1",
        price_cents=price_cents,
        currency="USDC",
        resource="http://localhost:3000/joke",
        pay_to="0xdef",
        network="base-sepolia",
        scheme="exact",
        ttl_ms=60_000,
        now=NOW,
        nonce="nonce-1",
    )


def make_credential(nonce="nonce-1"):
    return PaymentCredential.x402(
        {
            "x402Version": 1,
            "scheme": "exact",
            "network": "base-sepolia",
            "payload": {"signature": "0xsig", "authorization": {"from": "0xabc", "nonce": nonce}},
        }
    )


def make_remote(handler, **kwargs):
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    facilitator = RemoteFacilitator(
        BASE_URL,
        asset_address="0xasset",
        asset_decimals=6,
        http_client=client,
        clock=lambda: NOW,
        **kwargs,
    )
    return facilitator, client


@pytest.mark.asyncio
async def test_mock_verify_and_settle():
    facilitator = MockFacilitator()
    invoice = make_invoice()
    verification = await facilitator.verify(PaymentCredential.demo("nonce-1"), invoice)
    assert verification.ok
    assert verification.payer == "mock-payer"

    settlement = await facilitator.settle(verification)
    assert settlement.tx_id.startswith("mock-tx-")
    assert settlement.network == "base-sepolia"


@pytest.mark.asyncio
async def test_mock_settle_refuses_rejected_verification():
    with pytest.raises(SettlementError):
        await MockFacilitator().settle(Verification.rejected("facilitator_rejected"))


def test_requirements_use_atomic_units_and_remaining_ttl():
    facilitator, _ = make_remote(lambda request: httpx.Response(500))
    requirements = facilitator.build_requirements(make_invoice(price_cents=150))
    dumped = requirements.model_dump(by_alias=True, exclude_none=True)
    assert dumped["amount"] == "1500000"
    assert dumped["payTo"] == "0xdef"
    assert dumped["maxTimeoutSeconds"] == 60
    assert dumped["extra"]["invoice_nonce"] == "nonce-1"


@pytest.mark.asyncio
async def test_remote_verify_and_settle_success():
    seen = {}

    def handler(request):
        body = json.loads(request.content.decode())
        seen[request.url.path] = (body, request.headers.get("authorization"))
        if request.url.path == "/verify":
            return httpx.Response(200, json={"isValid": True, "payer": "0xabc"})
        return httpx.Response(
            200,
            json={"success": True, "transaction": "0xtx", "network": "base-sepolia", "payer": "0xabc"},
        )

    facilitator, client = make_remote(handler, auth=StaticKeyAuth("secret"))
    try:
        verification = await facilitator.verify(make_credential(), make_invoice())
        assert verification.ok
        assert verification.payer == "0xabc"

        settlement = await facilitator.settle(verification)
        assert settlement.tx_id == "0xtx"
        assert settlement.network == "base-sepolia"
    finally:
        await client.aclose()

    verify_body, auth = seen["/verify"]
    assert auth == "Bearer secret"
    assert verify_body["x402Version"] == 1
    assert verify_body["paymentPayload"]["payload"]["signature"] == "0xsig"
    assert verify_body["paymentRequirements"]["amount"] == "10000"
    assert seen["/settle"][0]["paymentRequirements"] == verify_body["paymentRequirements"]


@pytest.mark.asyncio
async def test_remote_verify_rejection_surfaces_sub_reason():
    def handler(request):
        return httpx.Response(200, json={"isValid": False, "invalidReason": "insufficient_funds"})

    facilitator, client = make_remote(handler)
    try:
        verification = await facilitator.verify(make_credential(), make_invoice())
    finally:
        await client.aclose()
    assert not verification.ok
    assert verification.reason == "facilitator_rejected"
    assert verification.detail["facilitator_reason"] == "insufficient_funds"


@pytest.mark.asyncio
async def test_remote_verify_transport_error_is_facilitator_error():
    def handler(request):
        raise httpx.ConnectError("boom", request=request)

    facilitator, client = make_remote(handler)
    try:
        verification = await facilitator.verify(make_credential(), make_invoice())
    finally:
        await client.aclose()
    assert verification.reason == "facilitator_error"


@pytest.mark.asyncio
async def test_remote_verify_timeout_is_facilitator_error():
    def handler(request):
        raise httpx.ReadTimeout("slow", request=request)

    facilitator, client = make_remote(handler)
    try:
        verification = await facilitator.verify(make_credential(), make_invoice())
    finally:
        await client.aclose()
    assert verification.reason == "facilitator_error"
    assert "timed out" in verification.detail["message"]


@pytest.mark.asyncio
async def test_remote_verify_unexpected_shape():
    facilitator, client = make_remote(lambda request: httpx.Response(502, text="bad gateway"))
    try:
        verification = await facilitator.verify(make_credential(), make_invoice())
    finally:
        await client.aclose()
    assert verification.reason == "facilitator_error"


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "status,body",
    [
        (503, {"isValid": True, "payer": "0xabc"}),
        (401, {"isValid": False, "invalidReason": "unauthorized"}),
    ],
)
async def test_remote_verify_non_2xx_is_facilitator_error(status, body):
    facilitator, client = make_remote(lambda request: httpx.Response(status, json=body))
    try:
        verification = await facilitator.verify(make_credential(), make_invoice())
    finally:
        await client.aclose()
    assert not verification.ok
    assert verification.reason == "facilitator_error"
    assert verification.detail["status"] == status


@pytest.mark.asyncio
async def test_remote_settle_failure_raises():
    def handler(request):
        if request.url.path == "/verify":
            return httpx.Response(200, json={"isValid": True, "payer": "0xabc"})
        return httpx.Response(500, json={"error": "chain down"})

    facilitator, client = make_remote(handler)
    try:
        verification = await facilitator.verify(make_credential(), make_invoice())
        with pytest.raises(SettlementError):
            await facilitator.settle(verification)
    finally:
        await client.aclose()


@pytest.mark.asyncio
async def test_remote_settle_lenient_response():
    def handler(request):
        if request.url.path == "/verify":
            return httpx.Response(200, json={"isValid": True})
        return httpx.Response(200, json={"txHash": "0xlenient"})

    facilitator, client = make_remote(handler)
    try:
        verification = await facilitator.verify(make_credential(), make_invoice())
        settlement = await facilitator.settle(verification)
    finally:
        await client.aclose()
    assert settlement.tx_id == "0xlenient"
    assert settlement.payer == "0xabc"


@pytest.mark.asyncio
async def test_token_provider_single_flight():
    calls = []

    async def handler(request):
        calls.append(request)
        await asyncio.sleep(0.01)
        return httpx.Response(200, json={"access_token": "tok-1", "expires_in": 3600})

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    provider = ClientCredentialsTokenProvider("http://auth.test/token", "id", "secret", http_client=client)
    try:
        tokens = await asyncio.gather(*(provider.get_token() for _ in range(10)))
    finally:
        await client.aclose()
    assert tokens == ["tok-1"] * 10
    assert len(calls) == 1
    assert b"grant_type=client_credentials" in calls[0].content


@pytest.mark.asyncio
async def test_token_refreshes_inside_expiry_margin():
    now = [0.0]
    issued = []

    def handler(request):
        issued.append(f"tok-{len(issued) + 1}")
        return httpx.Response(200, json={"access_token": issued[-1], "expires_in": 30})

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    provider = ClientCredentialsTokenProvider(
        "http://auth.test/token", "id", "secret", http_client=client, clock=lambda: now[0]
    )
    try:
        assert await provider.get_token() == "tok-1"
        now[0] = 24.0
        assert await provider.get_token() == "tok-1"
        now[0] = 25.0
        assert await provider.get_token() == "tok-2"
    finally:
        await client.aclose()


@pytest.mark.asyncio
async def test_token_failure_maps_to_facilitator_error():
    def handler(request):
        if request.url.host == "auth.test":
            return httpx.Response(401, json={"error": "invalid_client"})
        return httpx.Response(200, json={"isValid": True})

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    provider = ClientCredentialsTokenProvider("http://auth.test/token", "id", "bad", http_client=client)
    facilitator = RemoteFacilitator(
        BASE_URL,
        asset_address="0xasset",
        asset_decimals=6,
        auth=provider,
        http_client=client,
        clock=lambda: NOW,
    )
    try:
        with pytest.raises(TokenError):
            await provider.get_token()
        verification = await facilitator.verify(make_credential(), make_invoice())
    finally:
        await client.aclose()
    assert verification.reason == "facilitator_error"


def test_build_facilitator_selects_implementation():
    assert isinstance(build_facilitator(ServerConfig()), MockFacilitator)
    remote = build_facilitator(ServerConfig(mock_facilitator=False, facilitator_url="http://fac.test/"))
    assert isinstance(remote, RemoteFacilitator)
    assert remote.url == "http://fac.test"
    assert remote.schemes == ("x402",)
