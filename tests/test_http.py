from datetime import datetime, timedelta, timezone

import pytest

pytest.importorskip("x402")
fastapi = pytest.importorskip("fastapi")

from fastapi.testclient import TestClient

from jokepay_x402.codec import PaymentCredential, encode_header
from jokepay_x402.config import ServerConfig
from jokepay_x402.facilitator import MockFacilitator, SettlementError
from jokepay_x402.http import create_app
from jokepay_x402.invoices import InvoiceStore


class FailingSettleFacilitator(MockFacilitator):
    async def settle(self, verification):
        raise SettlementError("chain unavailable")


class Clock:
    def __init__(self):
        self.now = datetime.now(timezone.utc)

    def __call__(self):
        return self.now


@pytest.fixture
def client():
    app = create_app(ServerConfig(), facilitator=MockFacilitator())
    with TestClient(app) as test_client:
        yield test_client


def challenge(client):
    response = client.get("/joke")
    assert response.status_code == 402
    return response.json()


def test_unpaid_request_returns_challenge(client):
    first = client.get("/joke", headers={"X-Request-Id": "req-abc"})
    second = challenge(client)

    assert first.status_code == 402
    assert first.headers["X-Request-Id"] == "req-abc"
    body = first.json()
    assert body["error"] == "payment_required"
    assert body["request_id"] == "req-abc"
    assert body["invoice_nonce"] != second["invoice_nonce"]
    assert body["price"] == {"amount": "0.01", "currency": "USDC"}
    assert body["price_cents"] == 1
    assert body["facilitator"]["pay_to"] == "demo.seller"
    assert body["payment"]["asset"]["decimals"] == 6
    assert body["seller"] == {"id": "demo.seller", "name": "1¢ Joke Agent"}
    assert body["policy"] == {"label": "daily-$1"}
    assert body["resource"] == "http://localhost:3000/joke"
    assert body["ttl_ms"] == 120000
    expires_at = datetime.fromisoformat(body["expires_at"].replace("Z", "+00:00"))
    assert expires_at > datetime.now(timezone.utc)


def test_generated_request_id_header(client):
    response = client.get("/joke")
    assert response.headers["X-Request-Id"] == response.json()["request_id"]


def test_demo_payment_returns_joke(client):
    nonce = challenge(client)["invoice_nonce"]
    response = client.get("/joke", headers={"X-PAYMENT": f"demo {nonce}"})
    assert response.status_code == 200
    body = response.json()
    assert isinstance(body["joke"], str) and body["joke"]
    assert body["audit"]["tx"].startswith("mock-tx-")
    assert body["audit"]["spent"] == "0.01"
    assert body["audit"]["vendor"] == "1¢ Joke Agent"
    assert body["audit"]["policy"] == "daily-$1"


def test_x402_payment_accepted_by_mock(client):
    nonce = challenge(client)["invoice_nonce"]
    header = encode_header(
        PaymentCredential.x402({"payload": {"authorization": {"from": "0xpayer", "nonce": nonce}}})
    )
    response = client.get("/joke", headers={"X-PAYMENT": header})
    assert response.status_code == 200
    assert response.json()["audit"]["payer"] == "0xpayer"


def test_never_issued_nonce_is_unknown(client):
    response = client.get("/joke", headers={"X-PAYMENT": "demo not-a-real-nonce"})
    assert response.status_code == 402
    assert response.json()["error"] == "payment_invalid"
    assert response.json()["reason"] == "unknown_invoice"


def test_replayed_header_is_rejected(client):
    header = f"demo {challenge(client)['invoice_nonce']}"
    assert client.get("/joke", headers={"X-PAYMENT": header}).status_code == 200
    replay = client.get("/joke", headers={"X-PAYMENT": header})
    assert replay.status_code == 402
    assert replay.json()["reason"] == "unknown_invoice"


def test_unsupported_scheme(client):
    response = client.get("/joke", headers={"X-PAYMENT": "foo abc"})
    assert response.status_code == 402
    assert response.json()["reason"] == "unsupported_scheme"


def test_malformed_header(client):
    response = client.get("/joke", headers={"X-PAYMENT": "garbage"})
    assert response.status_code == 402
    assert response.json()["reason"] == "invalid_header"


def test_expired_invoice_is_unknown():
    clock = Clock()
    store = InvoiceStore()
    app = create_app(ServerConfig(invoice_ttl_ms=1000), facilitator=MockFacilitator(), store=store, clock=clock)
    with TestClient(app) as client:
        nonce = challenge(client)["invoice_nonce"]
        clock.now += timedelta(seconds=2)
        response = client.get("/joke", headers={"X-PAYMENT": f"demo {nonce}"})
    assert response.json()["reason"] == "unknown_invoice"
    assert len(store) == 0


def test_settlement_failure_is_server_error_and_burns_invoice():
    store = InvoiceStore()
    app = create_app(ServerConfig(), facilitator=FailingSettleFacilitator(), store=store)
    with TestClient(app) as client:
        header = f"demo {challenge(client)['invoice_nonce']}"
        response = client.get("/joke", headers={"X-PAYMENT": header})
        assert response.status_code == 502
        assert response.json()["error"] == "settlement_failed"
        retry = client.get("/joke", headers={"X-PAYMENT": header})
    assert retry.status_code == 402
    assert retry.json()["reason"] == "unknown_invoice"


def test_remote_mode_rejects_demo_scheme():
    app = create_app(ServerConfig(mock_facilitator=False, facilitator_url="http://fac.invalid"))
    with TestClient(app) as client:
        header = f"demo {challenge(client)['invoice_nonce']}"
        response = client.get("/joke", headers={"X-PAYMENT": header})
    assert response.status_code == 402
    assert response.json()["reason"] == "unsupported_scheme"


def test_healthz(client):
    response = client.get("/healthz")
    assert response.status_code == 200
    assert response.json()["ok"] is True
    assert response.json()["uptime"] >= 0


def test_preflight_cors(client):
    response = client.options(
        "/joke",
        headers={"Origin": "http://app.test", "Access-Control-Request-Method": "GET"},
    )
    assert response.status_code == 204
    assert response.headers["Access-Control-Allow-Origin"] == "*"
    assert response.headers["Access-Control-Allow-Credentials"] == "true"
    assert response.headers["Access-Control-Allow-Methods"] == "GET,OPTIONS"
    assert "X-PAYMENT" in response.headers["Access-Control-Allow-Headers"]
    assert "X-Request-Id" in response.headers["Access-Control-Allow-Headers"]


def test_plain_options_has_no_method_list(client):
    response = client.options("/joke")
    assert response.status_code == 204
    assert "Access-Control-Allow-Methods" not in response.headers


def test_unknown_path(client):
    response = client.get("/nope")
    assert response.status_code == 404
    assert response.json() == {"error": "not_found"}
