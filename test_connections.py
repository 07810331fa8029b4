"""
Tests for the connection lifecycle.
Tests:
1. Initiating stores a connection with provider defaults
2. Completing stores the session; terminal connections are rejected
3. Refresh failures mark the connection EXPIRED
4. Revoking deactivates only that connection's accounts and is idempotent
"""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from conftest import FakeAggregatorClient, raw_account
from finanbot.backend.services import connections, reconciliation
from finanbot.core import database
from finanbot.core.data_models import ConnectionStatus
from finanbot.core.errors import InvalidState, NotFound, UpstreamError


def test_initiate_pluggy_connection(user):
    """Test 1: Pluggy items are usable right away"""
    client = FakeAggregatorClient(provider="pluggy", consent_id="item-42")
    result = asyncio.run(connections.initiate_connection(user.id, "201", client=client))

    stored = database.get_connection(result.connection_id)
    assert result.authorization_url == "https://link.example/item-42"
    assert stored.consent_id == "item-42"
    assert stored.status == ConnectionStatus.ACTIVE
    assert stored.access_token == "item-42"
    assert stored.institution_name == "Itaú"
    remaining = stored.expires_at - datetime.now(timezone.utc)
    assert timedelta(days=179) < remaining <= timedelta(days=180)


def test_initiate_open_finance_connection_is_pending(user):
    """Test 1b: Open Finance waits for the code exchange"""
    client = FakeAggregatorClient(provider="open_finance", consent_id="consent-1")
    result = asyncio.run(connections.initiate_connection(user.id, "nubank", client=client))

    stored = database.get_connection(result.connection_id)
    assert stored.is_pending_activation, "Placeholder credentials mean pending activation"
    assert not stored.is_usable
    assert stored.expires_at - datetime.now(timezone.utc) > timedelta(days=364)


def test_initiate_unknown_institution(user):
    with pytest.raises(NotFound):
        asyncio.run(connections.initiate_connection(user.id, "999999", client=FakeAggregatorClient()))


def test_initiate_reuses_connection_for_same_consent(user):
    client = FakeAggregatorClient(consent_id="item-dup")
    first = asyncio.run(connections.initiate_connection(user.id, "201", client=client))
    second = asyncio.run(connections.initiate_connection(user.id, "201", client=client))
    assert first.connection_id == second.connection_id


def test_complete_open_finance_connection(user):
    """Test 2: code exchange stores tokens and expiry"""
    client = FakeAggregatorClient(provider="open_finance", consent_id="consent-1")
    asyncio.run(connections.initiate_connection(user.id, "itau", client=client))

    completed = asyncio.run(connections.complete_connection("consent-1", code="abc", client=client))

    assert completed.access_token == "access-abc"
    assert completed.refresh_token == "refresh-abc"
    assert completed.is_usable
    assert completed.expires_at < datetime.now(timezone.utc) + timedelta(hours=2)


def test_complete_unknown_consent():
    with pytest.raises(NotFound):
        asyncio.run(connections.complete_connection("nope", code="x", client=FakeAggregatorClient()))


def test_complete_revoked_connection(user, connection):
    connections.revoke_connection(user.id, connection.id)
    with pytest.raises(InvalidState):
        asyncio.run(connections.complete_connection(connection.consent_id, client=FakeAggregatorClient()))


def test_refresh_success_stores_new_session(connection):
    refreshed = asyncio.run(connections.refresh_connection(connection.id, client=FakeAggregatorClient()))
    assert refreshed.access_token == "renewed-token"
    assert refreshed.status == ConnectionStatus.ACTIVE


def test_refresh_failure_marks_expired(user, connection):
    """Test 3: any refresh failure expires the connection"""
    client = FakeAggregatorClient(refresh_error=UpstreamError("LOGIN_ERROR", provider="pluggy", reauth_required=True))

    with pytest.raises(UpstreamError) as excinfo:
        asyncio.run(connections.refresh_connection(connection.id, client=client))

    assert excinfo.value.reauth_required
    assert database.get_connection(connection.id).status == ConnectionStatus.EXPIRED
    assert database.get_recent_bank_status_logs(user.id)[0]["operation"] == "refresh_connection"


def test_refresh_network_failure_marks_expired(connection):
    """Test 3b"""
    client = FakeAggregatorClient(refresh_error=UpstreamError("unreachable", provider="pluggy"))
    with pytest.raises(UpstreamError):
        asyncio.run(connections.refresh_connection(connection.id, client=client))
    assert database.get_connection(connection.id).status == ConnectionStatus.EXPIRED


def test_refresh_terminal_connection_is_rejected(connection):
    database.update_connection_status(connection.id, ConnectionStatus.EXPIRED.value)
    client = FakeAggregatorClient()
    with pytest.raises(InvalidState):
        asyncio.run(connections.refresh_connection(connection.id, client=client))
    assert client.calls == [], "No aggregator call for terminal connections"


def test_revoke_cascades_to_connection_accounts(user, connection):
    """Test 4: only accounts sourced from the revoked connection are deactivated"""
    other = database.create_connection(
        user_id=user.id,
        provider="pluggy",
        institution_id="280",
        institution_name="Nubank",
        consent_id="item-2",
        expires_at=datetime.now(timezone.utc) + timedelta(days=180),
        permissions=[],
        access_token="item-2",
    )
    reconciliation.reconcile_accounts(user.id, connection, [raw_account("A-1"), raw_account("A-2")])
    reconciliation.reconcile_accounts(user.id, other, [raw_account("B-1")])

    result = connections.revoke_connection(user.id, connection.id)

    assert result.deactivated_accounts == 2
    assert not result.already_revoked
    assert database.get_connection(connection.id).status == ConnectionStatus.REVOKED
    active_numbers = {a.account_number for a in database.list_accounts(user.id)}
    assert active_numbers == {"B-1"}
    assert len(database.list_accounts(user.id, active_only=False)) == 3, "Accounts are deactivated, never deleted"


def test_revoke_twice_is_noop(user, connection):
    """Test 4b"""
    connections.revoke_connection(user.id, connection.id)
    again = connections.revoke_connection(user.id, connection.id)
    assert again.already_revoked
    assert again.deactivated_accounts == 0


def test_revoke_foreign_connection(connection, other_user):
    with pytest.raises(NotFound):
        connections.revoke_connection(other_user.id, connection.id)


def test_list_connections_hides_credentials(user, connection):
    summaries = connections.list_connections(user.id)
    assert len(summaries) == 1
    assert "access_token" not in summaries[0]
    assert summaries[0]["institution_name"] == "Itaú"
