import pytest
from fastapi.testclient import TestClient

from escrow_claims.api import app, get_engine
from escrow_claims.models import escrow_id_hex

from conftest import ESCROW_ID, RECEIVER, SENDER


@pytest.fixture
def client(funded):
    app.dependency_overrides[get_engine] = lambda: funded.engine
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.pop(get_engine, None)


def test_health(client):
    assert client.get("/health").json() == {"status": "ok"}


def test_config(client):
    data = client.get("/config").json()
    assert data["chain_id"] == 84532
    assert set(data["escrows"]) == {"USDC", "IDRX"}
    assert data["min_claim"] == "2"


def test_tokens(client):
    symbols = [t["symbol"] for t in client.get("/tokens").json()]
    assert "USDC" in symbols
    assert "IDRX" in symbols


def test_tokens_unsupported_chain(client):
    assert client.get("/tokens", params={"chain_id": 1}).status_code == 400


def test_evaluate_claim(client):
    response = client.post("/evaluate_claim", json={"escrow_id": ESCROW_ID, "receiver": RECEIVER, "amount": "1.0"})
    # 1 USDC is below the protocol minimum; evaluation still succeeds
    assert response.status_code == 200
    data = response.json()
    assert data["eligible"] is False
    assert data["requested"] == "1000000"
    assert [r["code"] for r in data["reasons"]] == ["BelowMinimum"]


def test_evaluate_claim_all(client):
    data = client.post("/evaluate_claim", json={"escrow_id": ESCROW_ID, "claim_all": True}).json()
    assert data["eligible"] is True
    assert data["claimable"] == "100000000"


def test_evaluate_malformed_escrow_id(client):
    response = client.post("/evaluate_claim", json={"escrow_id": "0xnothex", "amount": "10"})
    assert response.status_code == 400
    assert response.json()["detail"]["code"] == "MalformedEscrowId"


def test_evaluate_unknown_escrow(client):
    response = client.post("/evaluate_claim", json={"escrow_id": "0x" + "99" * 32, "amount": "10"})
    assert response.status_code == 404


def test_execute_claim(client, funded):
    response = client.post("/execute_claim", json={"escrow_id": ESCROW_ID, "amount": "10"})
    data = response.json()
    assert data["success"] is True
    assert data["state"] == "confirmed"
    assert data["amount"] == "10000000"
    assert [t["state"] for t in data["transitions"]] == ["evaluating", "submitting", "confirmed"]
    assert funded.wallet.sent[0].function == "withdrawTokenToCrypto"


def test_execute_claim_reports_failures_in_the_body(client):
    data = client.post("/execute_claim", json={"escrow_id": "0x12", "amount": "5000.5"}).json()
    assert data["success"] is False
    assert data["state"] == "failed"


def test_reconcile(client, funded):
    funded.indexer.available = False
    data = client.post("/reconcile", json={"addresses": [SENDER]}).json()
    assert data["indexer_available"] is False
    [escrow] = data["escrows"]
    assert escrow["escrow_id"] == escrow_id_hex(ESCROW_ID)
    assert escrow["total_allocated"] == "150000000"
    assert escrow["source"] == "chain"
    assert len(escrow["receivers"]) == 2


def test_reconcile_requires_addresses(client):
    assert client.post("/reconcile", json={"addresses": []}).status_code == 400
