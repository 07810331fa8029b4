"""
Tests for the HTTP surface.
Tests:
1. Register, login and bearer authentication; passwords are hashed and checked
2. Envelope shape for success, validation and domain errors
3. Connect, sync and revoke through the API with a fake aggregator
4. Upstream failures render a generic retry message
"""

from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient

from conftest import FakeAggregatorClient, raw_account, raw_tx
from finanbot.backend import app as app_module
from finanbot.backend.security import create_access_token
from finanbot.backend.services import banking
from finanbot.core import database
from finanbot.core.errors import UpstreamError

PASSWORD = "s3nha-segura"


@pytest.fixture
def client():
    return TestClient(app_module.create_app())


@pytest.fixture
def fake(monkeypatch):
    fake = FakeAggregatorClient(
        accounts=[raw_account("0001-1", 250.0)],
        transactions=[raw_tx("tx-1", -30.0, "Farmácia", datetime.now(timezone.utc) - timedelta(days=1))],
        consent_id="item-api",
    )
    monkeypatch.setattr(banking, "build_aggregator_client", lambda provider=None: fake)
    return fake


def _auth(user) -> dict:
    return {"Authorization": f"Bearer {create_access_token(user.id)}"}


def _register(client, email="carla@example.com", password=PASSWORD):
    return client.post("/api/auth/register", json={"email": email, "name": "Carla", "password": password})


def test_register_login_me(client):
    """Test 1"""
    response = _register(client)
    assert response.status_code == 201
    body = response.json()
    assert body["success"] is True
    token = body["data"]["token"]

    me = client.get("/api/auth/me", headers={"Authorization": f"Bearer {token}"})
    assert me.json()["data"]["email"] == "carla@example.com"

    login = client.post("/api/auth/login", json={"email": "carla@example.com", "password": PASSWORD})
    assert login.status_code == 200
    assert login.json()["data"]["user"]["id"] == body["data"]["user"]["id"]


def test_duplicate_registration(client, user):
    response = client.post("/api/auth/register", json={"email": user.email, "name": "Ana", "password": PASSWORD})
    assert response.status_code == 409
    assert response.json()["error"]["code"] == "DUPLICATE_ENTRY"


def test_unknown_login(client):
    response = client.post("/api/auth/login", json={"email": "ghost@example.com", "password": PASSWORD})
    assert response.status_code == 401
    assert response.json() == {"success": False, "error": {"code": "UNAUTHORIZED", "message": "Invalid credentials"}}


def test_wrong_password_is_rejected(client):
    """Test 1b: a registered email with the wrong password gets 401"""
    assert _register(client).status_code == 201

    response = client.post("/api/auth/login", json={"email": "carla@example.com", "password": "outra-senha"})

    assert response.status_code == 401, "Login must check the password"
    assert response.json() == {"success": False, "error": {"code": "UNAUTHORIZED", "message": "Invalid credentials"}}


def test_password_is_stored_hashed(client):
    """Test 1c: only a bcrypt hash reaches the users table"""
    user_id = _register(client).json()["data"]["user"]["id"]

    with database.get_db_connection() as conn:
        stored = conn.execute("SELECT password_hash FROM users WHERE id = ?", (user_id,)).fetchone()[0]

    assert stored and stored != PASSWORD, "Plain-text password must never be stored"
    assert stored.startswith("$2"), "Stored value must be a bcrypt hash"
    assert "password" not in _register(client, email="dora@example.com").json()["data"]["user"]


def test_login_requires_password_field(client):
    _register(client)
    response = client.post("/api/auth/login", json={"email": "carla@example.com"})
    assert response.status_code == 400
    assert response.json()["error"]["code"] == "VALIDATION_ERROR"


def test_user_without_password_cannot_log_in(client, user):
    """Test 1d: accounts created without a password have no usable login"""
    response = client.post("/api/auth/login", json={"email": user.email, "password": PASSWORD})
    assert response.status_code == 401


def test_register_rejects_short_password(client):
    response = _register(client, password="curta")
    assert response.status_code == 400


def test_missing_and_invalid_tokens(client):
    assert client.get("/api/dashboard/overview").status_code == 401
    response = client.get("/api/dashboard/overview", headers={"Authorization": "Bearer not-a-jwt"})
    assert response.status_code == 401
    assert response.json()["error"]["code"] == "UNAUTHORIZED"


def test_validation_error_envelope(client, user):
    """Test 2"""
    response = client.post("/api/chat/message", json={"message": ""}, headers=_auth(user))
    assert response.status_code == 400
    body = response.json()
    assert body["success"] is False
    assert body["error"]["code"] == "VALIDATION_ERROR"


def test_domain_error_envelope(client, user):
    response = client.get("/api/dashboard/expenses/breakdown?period=decade", headers=_auth(user))
    assert response.status_code == 400
    assert response.json()["error"]["code"] == "VALIDATION_ERROR"

    response = client.patch("/api/dashboard/insights/missing/read", headers=_auth(user))
    assert response.status_code == 404
    assert response.json()["error"]["code"] == "RECORD_NOT_FOUND"


def test_health(client):
    assert client.get("/health").json()["status"] == "OK"


def test_banks_flag_connected_institutions(client, user, connection):
    response = client.get("/api/open-finance/banks", headers=_auth(user))
    banks = {bank["id"]: bank for bank in response.json()["data"]["banks"]}
    assert banks["201"]["connected"] is True
    assert banks["280"]["connected"] is False


def test_connect_sync_and_revoke(client, user, fake):
    """Test 3"""
    headers = _auth(user)
    connect = client.post("/api/open-finance/connect", json={"institution_id": "201"}, headers=headers)
    assert connect.status_code == 200
    connection_id = connect.json()["data"]["connection_id"]
    assert connect.json()["data"]["authorization_url"] == "https://link.example/item-api"

    synced = client.post(f"/api/open-finance/connections/{connection_id}/sync-accounts", headers=headers)
    assert synced.json()["data"]["count"] == 1
    account_id = synced.json()["data"]["accounts"][0]["id"]

    txs = client.post(f"/api/open-finance/accounts/{account_id}/sync-transactions", headers=headers)
    assert txs.json()["data"]["transactions"][0]["category"] == "Saúde"

    balances = client.get("/api/dashboard/accounts/balances", headers=headers).json()["data"]
    assert balances["total_balance"] == 250.0

    revoked = client.delete(f"/api/open-finance/connections/{connection_id}", headers=headers)
    assert revoked.json()["data"] == {
        "connection_id": connection_id,
        "deactivated_accounts": 1,
        "already_revoked": False,
    }
    balances = client.get("/api/dashboard/accounts/balances", headers=headers).json()["data"]
    assert balances["account_count"] == 0
    assert fake.closed == 0, "Patched factory hands out a shared client"


def test_connection_summaries_hide_tokens(client, user, connection):
    data = client.get("/api/open-finance/connections", headers=_auth(user)).json()["data"]
    assert data[0]["id"] == connection.id
    assert "access_token" not in data[0]


def test_foreign_connection_is_not_found(client, other_user, connection, fake):
    response = client.post(f"/api/open-finance/connections/{connection.id}/sync-accounts", headers=_auth(other_user))
    assert response.status_code == 404


def test_upstream_failure_message(client, user, connection, fake):
    """Test 4: provider details stay in the logs"""
    fake.list_error = UpstreamError("pluggy responded with HTTP 503", provider="pluggy", status=503)
    response = client.post(f"/api/open-finance/connections/{connection.id}/sync-accounts", headers=_auth(user))

    assert response.status_code == 502
    assert response.json()["error"] == {"code": "UPSTREAM_ERROR", "message": "Sync failed, please try again"}


def test_missing_aggregator_credentials(client, user, monkeypatch):
    monkeypatch.setattr(banking.settings, "pluggy_client_id", None)
    response = client.post("/api/open-finance/connect", json={"institution_id": "201"}, headers=_auth(user))
    assert response.status_code == 502


def test_chat_context_includes_savings_rate(client, user):
    data = client.get("/api/chat/context", headers=_auth(user)).json()["data"]
    assert data["savings_rate"] == 0.0
    assert data["accounts"] == []


def test_webhook_rejects_unsigned(client, monkeypatch):
    monkeypatch.setattr(banking.settings, "pluggy_webhook_secret", "whsec")
    response = client.post("/api/webhooks/pluggy", content=b'{"event": "item/updated"}')
    assert response.status_code == 401
