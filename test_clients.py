"""
Tests for the aggregator HTTP clients against a mocked transport.
Tests:
1. Pluggy authenticates once and maps accounts and transactions
2. Open Finance consent, token exchange and account mapping; the client-credentials token is reused
3. HTTP failures and malformed payloads surface as UpstreamError
"""

import asyncio
import json
from datetime import datetime, timezone

import httpx
import pytest
from tenacity import wait_none

from finanbot.core.aggregator import AggregatorClient
from finanbot.core.errors import UpstreamError
from finanbot.core.open_finance_client import CONSENT_PERMISSIONS, OpenFinanceClient
from finanbot.core.pluggy_client import PluggyClient

FROM = datetime(2026, 7, 1, tzinfo=timezone.utc)
TO = datetime(2026, 10, 1, tzinfo=timezone.utc)


@pytest.fixture(autouse=True)
def no_retry_wait(monkeypatch):
    monkeypatch.setattr(AggregatorClient._send.retry, "wait", wait_none())


def _pluggy(handler) -> PluggyClient:
    return PluggyClient("https://pluggy.test", "cid", "secret", transport=httpx.MockTransport(handler))


def _open_finance(handler) -> OpenFinanceClient:
    return OpenFinanceClient(
        "https://of.test",
        "cid",
        "secret",
        redirect_uri="http://localhost:3000/auth/callback",
        transport=httpx.MockTransport(handler),
    )


def _run(client, coro):
    async def go():
        try:
            return await coro
        finally:
            await client.close()

    return asyncio.run(go())


class PluggyStub:
    """Minimal Pluggy API: /auth, /items, /accounts, /transactions."""

    def __init__(self, item_status="UPDATED", accounts=None):
        self.item_status = item_status
        self.accounts = accounts
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        if path == "/auth":
            return httpx.Response(200, json={"apiKey": "key-123"})
        if request.headers.get("Authorization") != "Bearer key-123":
            return httpx.Response(401, json={"message": "unauthorized"})
        if path == "/items" and request.method == "POST":
            body = json.loads(request.content)
            return httpx.Response(200, json={"id": f"item-{body['connectorId']}", "connector": {"name": "Itaú"}})
        if path.startswith("/items/"):
            return httpx.Response(200, json={"id": path.rsplit("/", 1)[-1], "status": self.item_status})
        if path == "/accounts":
            accounts = self.accounts or [
                {"id": "acc-1", "number": "0001-1", "type": "BANK", "balance": 1520.3, "currencyCode": "BRL", "name": "Conta"},
                {"id": "acc-2", "number": "5555", "type": "CREDIT", "balance": -80.0},
            ]
            return httpx.Response(200, json={"results": accounts})
        if path == "/transactions":
            return httpx.Response(
                200,
                json={
                    "results": [
                        {
                            "id": "tx-1",
                            "amount": -45.9,
                            "date": "2026-09-10T14:00:00.000Z",
                            "description": "SUPERMERCADO EXTRA",
                            "category": "Groceries",
                            "merchant": {"businessName": "Extra LTDA"},
                            "status": "POSTED",
                        }
                    ]
                },
            )
        return httpx.Response(404)


def test_pluggy_accounts_and_transactions(connection):
    """Test 1: API key is fetched once and reused"""
    stub = PluggyStub()
    client = _pluggy(stub)

    async def scenario():
        accounts = await client.list_accounts(connection)
        transactions = await client.list_transactions(connection, "0001-1", FROM, TO)
        return accounts, transactions

    accounts, transactions = _run(client, scenario())

    assert [a.number for a in accounts] == ["0001-1", "5555"]
    assert accounts[0].balance == 1520.3 and accounts[0].external_id == "acc-1"
    assert accounts[1].type == "CREDIT" and accounts[1].currency == "BRL"
    tx = transactions[0]
    assert tx.external_id == "tx-1" and tx.amount == -45.9
    assert tx.direction is None, "Pluggy encodes direction in the amount sign"
    assert tx.category_hint == "Groceries"
    assert tx.merchant_name == "Extra LTDA"
    assert tx.timestamp == datetime(2026, 9, 10, 14, 0, tzinfo=timezone.utc)

    assert [r.url.path for r in stub.requests].count("/auth") == 1
    accounts_request = stub.requests[1]
    assert accounts_request.url.params["itemId"] == connection.consent_id
    tx_request = stub.requests[2]
    assert tx_request.url.params["accountId"] == "0001-1"
    assert tx_request.url.params["from"] == "2026-07-01"
    assert tx_request.url.params["to"] == "2026-10-01"


def test_pluggy_create_link():
    stub = PluggyStub()
    client = _pluggy(stub)
    link = _run(client, client.create_link("201", "user-1"))

    assert link.consent_id == "item-201"
    assert link.access_token == "item-201", "Item id is the session handle"
    assert link.authorization_url.startswith("https://connect.pluggy.ai?connectorId=201&itemId=item-201")
    assert link.institution_name == "Itaú"


def test_pluggy_rejects_non_numeric_connector():
    client = _pluggy(PluggyStub())
    with pytest.raises(UpstreamError):
        _run(client, client.create_link("itau", "user-1"))


def test_pluggy_login_error_requires_reauth(connection):
    """Test 1b: items in LOGIN_ERROR cannot be refreshed"""
    client = _pluggy(PluggyStub(item_status="LOGIN_ERROR"))
    with pytest.raises(UpstreamError) as excinfo:
        _run(client, client.refresh_session(connection))
    assert excinfo.value.reauth_required
    assert excinfo.value.details["item_status"] == "LOGIN_ERROR"


def test_pluggy_refresh_keeps_item_handle(connection):
    client = _pluggy(PluggyStub())
    session = _run(client, client.refresh_session(connection))
    assert session.access_token == connection.access_token


def test_pluggy_malformed_account_payload(connection):
    """Test 3a: a record missing its number is malformed"""
    client = _pluggy(PluggyStub(accounts=[{"id": "acc-1", "balance": 10}]))
    with pytest.raises(UpstreamError) as excinfo:
        _run(client, client.list_accounts(connection))
    assert "malformed" in excinfo.value.message


class OpenFinanceStub:
    def __init__(self):
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        if path == "/token":
            form = dict(httpx.QueryParams(request.content.decode()))
            grant = form["grant_type"]
            if grant == "client_credentials":
                return httpx.Response(200, json={"access_token": "cc-token"})
            if grant == "authorization_code":
                return httpx.Response(
                    200, json={"access_token": "user-token", "refresh_token": "user-refresh", "expires_in": 3600}
                )
            return httpx.Response(200, json={"access_token": "renewed", "expires_in": 600})
        if path == "/consents":
            return httpx.Response(201, json={"data": {"consentId": "urn:consent:1", "status": "AWAITING_AUTHORISATION"}})
        if path == "/accounts":
            return httpx.Response(
                200,
                json={
                    "data": [
                        {
                            "accountId": "of-acc-1",
                            "accountNumber": "12345-6",
                            "type": "CONTA_DEPOSITO_A_VISTA",
                            "balance": {"current": 2500.0},
                            "branchCode": "0001",
                            "compeCode": "341",
                        }
                    ]
                },
            )
        if path == "/accounts/12345-6/transactions":
            return httpx.Response(
                200,
                json={
                    "data": [
                        {
                            "transactionId": "of-tx-1",
                            "amount": 150.0,
                            "creditDebitType": "DEBITO",
                            "bookingDateTime": "2026-09-02T08:30:00Z",
                            "transactionInformation": "Posto Shell",
                        }
                    ]
                },
            )
        return httpx.Response(404)


def test_open_finance_create_link():
    """Test 2: consent is created with a client-credentials token"""
    stub = OpenFinanceStub()
    client = _open_finance(stub)
    link = _run(client, client.create_link("itau", "user-1"))

    assert link.consent_id == "urn:consent:1"
    assert link.permissions == CONSENT_PERMISSIONS
    assert link.access_token == "", "Open Finance needs a code exchange first"
    assert "redirect_uri=http%3A%2F%2Flocalhost%3A3000%2Fauth%2Fcallback" in link.authorization_url
    consent_request = stub.requests[1]
    assert consent_request.headers["Authorization"] == "Bearer cc-token"
    assert json.loads(consent_request.content)["institutionId"] == "itau"


def test_open_finance_reuses_client_credentials_token():
    """Test 2b: one token request serves consecutive consents until it expires"""
    stub = OpenFinanceStub()
    client = _open_finance(stub)

    async def scenario():
        await client.create_link("itau", "user-1")
        await client.create_link("nubank", "user-2")

    _run(client, scenario())

    token_requests = [r for r in stub.requests if r.url.path == "/token"]
    consent_requests = [r for r in stub.requests if r.url.path == "/consents"]
    assert len(token_requests) == 1, "Client-credentials token must be cached between calls"
    assert len(consent_requests) == 2
    assert all(r.headers["Authorization"] == "Bearer cc-token" for r in consent_requests)


def test_open_finance_exchange_and_refresh(connection):
    stub = OpenFinanceStub()
    client = _open_finance(stub)

    async def scenario():
        session = await client.exchange_code("auth-code", "urn:consent:1")
        connection.refresh_token = session.refresh_token
        renewed = await client.refresh_session(connection)
        return session, renewed

    session, renewed = _run(client, scenario())

    assert session.access_token == "user-token"
    assert session.refresh_token == "user-refresh"
    assert session.expires_at is not None
    assert renewed.access_token == "renewed"
    assert renewed.refresh_token == "user-refresh", "Refresh token is kept when not rotated"


def test_open_finance_exchange_requires_code():
    client = _open_finance(OpenFinanceStub())
    with pytest.raises(UpstreamError):
        _run(client, client.exchange_code(None, "urn:consent:1"))


def test_open_finance_refresh_without_refresh_token(connection):
    connection.refresh_token = ""
    client = _open_finance(OpenFinanceStub())
    with pytest.raises(UpstreamError) as excinfo:
        _run(client, client.refresh_session(connection))
    assert excinfo.value.reauth_required


def test_open_finance_accounts_and_transactions(connection):
    stub = OpenFinanceStub()
    client = _open_finance(stub)

    async def scenario():
        accounts = await client.list_accounts(connection)
        transactions = await client.list_transactions(connection, "12345-6", FROM, TO)
        return accounts, transactions

    accounts, transactions = _run(client, scenario())

    assert accounts[0].number == "12345-6"
    assert accounts[0].balance == 2500.0
    assert accounts[0].compe_code == "341"
    assert transactions[0].direction == "DEBITO"
    assert transactions[0].description == "Posto Shell"
    assert stub.requests[0].headers["Authorization"] == f"Bearer {connection.access_token}"
    assert "x-fapi-interaction-id" in stub.requests[0].headers


def test_client_error_carries_status(connection):
    """Test 3b: 4xx is not retried and keeps the status"""
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(403, json={"message": "forbidden"})

    client = _open_finance(handler)
    with pytest.raises(UpstreamError) as excinfo:
        _run(client, client.list_accounts(connection))

    assert excinfo.value.status == 403
    assert excinfo.value.reauth_required
    assert len(calls) == 1


def test_server_error_is_retried(connection):
    """Test 3c: 5xx is retried up to three attempts"""
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(503)

    client = _open_finance(handler)
    with pytest.raises(UpstreamError) as excinfo:
        _run(client, client.list_accounts(connection))

    assert excinfo.value.status == 503
    assert not excinfo.value.reauth_required
    assert len(calls) == 3


def test_transport_error_is_unreachable(connection):
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    client = _open_finance(handler)
    with pytest.raises(UpstreamError) as excinfo:
        _run(client, client.list_accounts(connection))
    assert excinfo.value.status is None
    assert "unreachable" in excinfo.value.message


def test_non_json_body(connection):
    client = _open_finance(lambda request: httpx.Response(200, text="<html>oops</html>"))
    with pytest.raises(UpstreamError):
        _run(client, client.list_accounts(connection))


def test_missing_credentials_rejected():
    with pytest.raises(ValueError):
        PluggyClient("https://pluggy.test", "", "secret")
