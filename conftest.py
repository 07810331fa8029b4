from datetime import datetime, timedelta, timezone
from typing import List, Optional

import pytest

from finanbot.backend.state import dashboard_cache
from finanbot.core import database
from finanbot.core.aggregator import LinkResult, LinkStatus, SessionRefresh
from finanbot.core.data_models import RawAccount, RawTransaction
from finanbot.core.errors import UpstreamError


class FakeAggregatorClient:
    """In-memory aggregator used in place of the HTTP clients."""

    def __init__(
        self,
        provider: str = "pluggy",
        accounts: Optional[List[RawAccount]] = None,
        transactions: Optional[List[RawTransaction]] = None,
        refresh_error: Optional[UpstreamError] = None,
        list_error: Optional[UpstreamError] = None,
        consent_id: str = "item-1",
    ):
        self.provider = provider
        self.accounts = accounts or []
        self.transactions = transactions or []
        self.refresh_error = refresh_error
        self.list_error = list_error
        self.consent_id = consent_id
        self.calls: List[tuple] = []
        self.closed = 0

    async def list_accounts(self, connection):
        self.calls.append(("list_accounts", connection.id))
        if self.list_error:
            raise self.list_error
        return list(self.accounts)

    async def list_transactions(self, connection, account_ref, from_date, to_date):
        self.calls.append(("list_transactions", account_ref, from_date, to_date))
        if self.list_error:
            raise self.list_error
        return list(self.transactions)

    async def create_link(self, institution_id, user_id):
        self.calls.append(("create_link", institution_id, user_id))
        token = self.consent_id if self.provider == "pluggy" else ""
        return LinkResult(
            consent_id=self.consent_id,
            authorization_url=f"https://link.example/{self.consent_id}",
            permissions=["ACCOUNTS_READ"],
            access_token=token,
        )

    async def check_link_status(self, handle):
        return LinkStatus(handle=handle, status="UPDATED")

    async def exchange_code(self, code, consent_id):
        self.calls.append(("exchange_code", code, consent_id))
        if self.provider == "pluggy":
            return SessionRefresh(access_token=consent_id)
        return SessionRefresh(
            access_token=f"access-{code}",
            refresh_token=f"refresh-{code}",
            expires_at=datetime.now(timezone.utc) + timedelta(hours=1),
        )

    async def refresh_session(self, connection):
        self.calls.append(("refresh_session", connection.id))
        if self.refresh_error:
            raise self.refresh_error
        return SessionRefresh(access_token="renewed-token", refresh_token="renewed-refresh")

    async def close(self):
        self.closed += 1


@pytest.fixture(autouse=True)
def temp_db(tmp_path, monkeypatch):
    monkeypatch.setattr(database, "DB_FILE", str(tmp_path / "finanbot-test.db"))
    database.init_db()
    dashboard_cache.clear()
    yield
    dashboard_cache.clear()


@pytest.fixture
def user():
    return database.create_user("ana@example.com", "Ana Souza")


@pytest.fixture
def other_user():
    return database.create_user("bruno@example.com", "Bruno Lima")


@pytest.fixture
def connection(user):
    return database.create_connection(
        user_id=user.id,
        provider="pluggy",
        institution_id="201",
        institution_name="Itaú",
        consent_id="item-1",
        expires_at=datetime.now(timezone.utc) + timedelta(days=180),
        permissions=["ACCOUNTS_READ"],
        access_token="item-1",
    )


@pytest.fixture
def fake_client():
    return FakeAggregatorClient()


def raw_account(
    number: str, balance: float = 100.0, type_: str = "BANK", external_id: Optional[str] = None
) -> RawAccount:
    return RawAccount(number=number, type=type_, balance=balance, external_id=external_id)


def raw_tx(
    external_id: str,
    amount: float,
    description: str,
    when: datetime,
    direction: Optional[str] = None,
    category_hint: Optional[str] = None,
) -> RawTransaction:
    return RawTransaction(
        external_id=external_id,
        amount=amount,
        direction=direction,
        timestamp=when,
        description=description,
        category_hint=category_hint,
    )
