"""
Reconciliation of aggregator snapshots into the local store.

Accounts are matched on (user, account number) and transactions on their
aggregator id, so replaying the same snapshot never duplicates rows.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Iterable, List, Optional

from finanbot.core import database
from finanbot.core.aggregator import AggregatorClient
from finanbot.core.categorizer import TransactionClassifier, default_classifier
from finanbot.core.data_models import (
    BankAccount,
    OpenFinanceConnection,
    RawAccount,
    RawTransaction,
    Transaction,
    TransactionStatus,
)
from finanbot.core.errors import ConflictError, InvalidState, NotFound, UpstreamError
from finanbot.core.normalizer import normalize_account_type, normalize_transaction_type

from ..config import settings
from ..state import invalidate_user_cache
from .banking import bank_code_for, use_client

logger = logging.getLogger("finanbot.backend.reconciliation")


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _map_status(raw_status: Optional[str]) -> TransactionStatus:
    if not raw_status:
        return TransactionStatus.COMPLETED
    value = raw_status.strip().upper()
    if value == "PENDING":
        return TransactionStatus.PENDING
    if value in ("CANCELLED", "CANCELED"):
        return TransactionStatus.CANCELLED
    return TransactionStatus.COMPLETED


def reconcile_accounts(
    user_id: str,
    connection: OpenFinanceConnection,
    fetched_accounts: Iterable[RawAccount],
    now: Optional[datetime] = None,
) -> List[BankAccount]:
    """
    Create or refresh one BankAccount per fetched account, in fetch order.

    A known account fetched through a different or revoked connection is
    moved onto ``connection`` and reactivated.
    """
    synced_at = _as_utc(now or database.utcnow())
    results: List[BankAccount] = []
    created = 0

    for raw in fetched_accounts:
        existing = database.find_account_by_number(user_id, raw.number)
        if existing is None:
            account = BankAccount(
                id=database.new_id(),
                user_id=user_id,
                connection_id=connection.id,
                external_id=raw.external_id,
                bank_code=raw.compe_code or bank_code_for(connection.institution_id, connection.provider.value),
                bank_name=connection.institution_name,
                account_type=normalize_account_type(raw.type),
                account_number=raw.number,
                agency=raw.branch_code,
                balance=round(raw.balance, 2),
                currency=raw.currency or "BRL",
                is_active=True,
                connected_at=synced_at,
                last_sync_at=synced_at,
            )
            try:
                results.append(database.create_account(account))
                created += 1
                continue
            except ConflictError:
                logger.info("Account %s was created concurrently; updating instead", raw.number)
                existing = database.find_account_by_number(user_id, raw.number)
                if existing is None:
                    raise

        if existing.connection_id != connection.id or not existing.is_active:
            database.reattach_account(existing.id, connection.id)
            logger.info("Account %s reattached to connection %s", existing.id, connection.id)
        results.append(
            database.update_account_sync(existing.id, round(raw.balance, 2), synced_at, external_id=raw.external_id)
        )

    invalidate_user_cache(user_id)
    logger.info(
        "Reconciled %d accounts for user %s (%d new) from connection %s",
        len(results),
        user_id,
        created,
        connection.id,
    )
    return results


def reconcile_transactions(
    account_id: str,
    fetched_transactions: Iterable[RawTransaction],
    from_date: Optional[datetime] = None,
    to_date: Optional[datetime] = None,
    classifier: Optional[TransactionClassifier] = None,
    now: Optional[datetime] = None,
) -> List[Transaction]:
    """
    Upsert fetched transactions under their aggregator id.

    New rows get category (aggregator hint, else classifier), absolute
    amount and normalized type. Known rows only get amount and status
    refreshed. Records dated outside [from_date, to_date] are skipped; the
    window is compared by calendar day, so both end days are included.
    """
    account = database.get_account(account_id)
    if account is None:
        raise NotFound(f"Account {account_id} not found")

    classifier = classifier or default_classifier
    lower = _as_utc(from_date).date() if from_date else None
    upper = _as_utc(to_date).date() if to_date else None
    results: List[Transaction] = []
    skipped = 0

    for raw in fetched_transactions:
        occurred_at = _as_utc(raw.timestamp)
        if (lower and occurred_at.date() < lower) or (upper and occurred_at.date() > upper):
            skipped += 1
            continue

        direction = raw.direction if raw.direction else raw.amount
        tx = Transaction(
            id=raw.external_id,
            account_id=account.id,
            amount=round(abs(raw.amount), 2),
            type=normalize_transaction_type(direction),
            category=raw.category_hint or classifier.classify(raw.description),
            description=raw.description,
            merchant_name=raw.merchant_name,
            date=occurred_at,
            status=_map_status(raw.status),
        )
        stored, _ = database.upsert_transaction(tx)
        results.append(stored)

    database.touch_account_sync(account.id, _as_utc(now or database.utcnow()))
    invalidate_user_cache(account.user_id)
    if skipped:
        logger.info("Skipped %d transactions outside the requested window for account %s", skipped, account_id)
    logger.info("Reconciled %d transactions for account %s", len(results), account_id)
    return results


def _require_usable(connection: Optional[OpenFinanceConnection], ref: str) -> OpenFinanceConnection:
    if connection is None:
        raise NotFound(f"Connection {ref} not found")
    if not connection.is_usable:
        raise InvalidState(
            f"Connection {connection.id} is not active",
            details={"status": connection.status.value, "pending_activation": connection.is_pending_activation},
        )
    return connection


async def sync_connection_accounts(
    connection_id: str,
    client: Optional[AggregatorClient] = None,
    user_id: Optional[str] = None,
) -> List[BankAccount]:
    """Fetch the connection's accounts from its aggregator and reconcile them."""
    connection = database.get_connection(connection_id)
    if connection is not None and user_id and connection.user_id != user_id:
        connection = None
    connection = _require_usable(connection, connection_id)

    try:
        async with use_client(connection.provider.value, client) as aggregator:
            fetched = await aggregator.list_accounts(connection)
    except UpstreamError as exc:
        database.add_bank_status_log(connection.user_id, connection.id, "sync_accounts", "error", exc.message)
        raise

    accounts = reconcile_accounts(connection.user_id, connection, fetched)
    database.add_bank_status_log(
        connection.user_id, connection.id, "sync_accounts", "success", f"{len(accounts)} accounts"
    )
    return accounts


def _resolve_account_connection(account: BankAccount) -> Optional[OpenFinanceConnection]:
    if account.connection_id:
        return database.get_connection(account.connection_id)
    return database.find_first_active_connection(account.user_id)


async def sync_account_transactions(
    account_id: str,
    from_date: Optional[datetime] = None,
    to_date: Optional[datetime] = None,
    client: Optional[AggregatorClient] = None,
    user_id: Optional[str] = None,
) -> List[Transaction]:
    """Fetch one account's transactions (default: the last sync window) and reconcile them."""
    account = database.get_account(account_id)
    if account is None or (user_id and account.user_id != user_id):
        raise NotFound(f"Account {account_id} not found")

    connection = _require_usable(_resolve_account_connection(account), account.connection_id or account_id)

    to_date = _as_utc(to_date) if to_date else database.utcnow()
    from_date = _as_utc(from_date) if from_date else to_date - timedelta(days=settings.sync_window_days)

    try:
        async with use_client(connection.provider.value, client) as aggregator:
            account_ref = account.external_id or account.account_number
            fetched = await aggregator.list_transactions(connection, account_ref, from_date, to_date)
    except UpstreamError as exc:
        database.add_bank_status_log(account.user_id, connection.id, "sync_transactions", "error", exc.message)
        raise

    transactions = reconcile_transactions(account.id, fetched, from_date, to_date)
    database.add_bank_status_log(
        account.user_id,
        connection.id,
        "sync_transactions",
        "success",
        f"{len(transactions)} transactions for account {account.id}",
    )
    return transactions
