import json
import logging
import os
import sqlite3
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence, Tuple

from .data_models import (
    BankAccount,
    ChatMessage,
    ConnectionStatus,
    FinancialInsight,
    OpenFinanceConnection,
    Transaction,
    TransactionType,
    User,
)
from .errors import ConflictError

DB_FILE = os.getenv("FINANBOT_DB_FILE", "finanbot.db")
logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


def _iso(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def get_db_connection() -> sqlite3.Connection:
    """Open a connection to the application database."""
    conn = sqlite3.connect(DB_FILE)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    return conn


def _ensure_column(conn: sqlite3.Connection, table: str, column: str, definition: str) -> None:
    """Ensure the given column exists on the table, adding it if necessary."""
    cursor = conn.execute(f"PRAGMA table_info({table})")
    columns = {row[1] for row in cursor.fetchall()}
    if column not in columns:
        logger.info("Adding column %s to table %s", column, table)
        conn.execute(f"ALTER TABLE {table} ADD COLUMN {column} {definition};")


def init_db() -> None:
    """Create all required tables for the application if they are absent."""
    try:
        with get_db_connection() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS users (
                    id TEXT PRIMARY KEY,
                    email TEXT NOT NULL UNIQUE,
                    name TEXT NOT NULL,
                    avatar TEXT,
                    password_hash TEXT NOT NULL DEFAULT '',
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                );
                """
            )
            _ensure_column(conn, "users", "password_hash", "TEXT NOT NULL DEFAULT ''")
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS connections (
                    id TEXT PRIMARY KEY,
                    user_id TEXT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
                    provider TEXT NOT NULL,
                    institution_id TEXT NOT NULL,
                    institution_name TEXT NOT NULL,
                    consent_id TEXT NOT NULL UNIQUE,
                    access_token TEXT NOT NULL DEFAULT '',
                    refresh_token TEXT NOT NULL DEFAULT '',
                    expires_at TEXT NOT NULL,
                    permissions TEXT NOT NULL DEFAULT '[]',
                    status TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                );
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS bank_accounts (
                    id TEXT PRIMARY KEY,
                    user_id TEXT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
                    connection_id TEXT REFERENCES connections(id),
                    external_id TEXT,
                    bank_code TEXT NOT NULL,
                    bank_name TEXT NOT NULL,
                    account_type TEXT NOT NULL,
                    account_number TEXT NOT NULL,
                    agency TEXT,
                    balance REAL NOT NULL DEFAULT 0,
                    currency TEXT NOT NULL DEFAULT 'BRL',
                    is_active INTEGER NOT NULL DEFAULT 1,
                    connected_at TEXT NOT NULL,
                    last_sync_at TEXT,
                    UNIQUE(user_id, account_number)
                );
                """
            )
            _ensure_column(conn, "bank_accounts", "connection_id", "TEXT REFERENCES connections(id)")
            _ensure_column(conn, "bank_accounts", "external_id", "TEXT")
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS transactions (
                    id TEXT PRIMARY KEY,
                    account_id TEXT NOT NULL REFERENCES bank_accounts(id) ON DELETE CASCADE,
                    amount REAL NOT NULL,
                    type TEXT NOT NULL,
                    category TEXT NOT NULL,
                    subcategory TEXT,
                    description TEXT NOT NULL,
                    merchant_name TEXT,
                    date TEXT NOT NULL,
                    status TEXT NOT NULL,
                    tags TEXT NOT NULL DEFAULT '[]',
                    latitude REAL,
                    longitude REAL,
                    address TEXT
                );
                """
            )
            conn.execute("CREATE INDEX IF NOT EXISTS idx_transactions_account_date ON transactions(account_id, date)")
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS chat_messages (
                    id TEXT PRIMARY KEY,
                    user_id TEXT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
                    role TEXT NOT NULL,
                    content TEXT NOT NULL,
                    timestamp TEXT NOT NULL,
                    tokens INTEGER,
                    model TEXT,
                    context TEXT
                );
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS financial_insights (
                    id TEXT PRIMARY KEY,
                    user_id TEXT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
                    type TEXT NOT NULL,
                    title TEXT NOT NULL,
                    description TEXT NOT NULL,
                    data TEXT NOT NULL,
                    priority TEXT NOT NULL,
                    is_read INTEGER NOT NULL DEFAULT 0,
                    created_at TEXT NOT NULL
                );
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS bank_status_log (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id TEXT NOT NULL,
                    bank_id TEXT NOT NULL,
                    operation TEXT NOT NULL,
                    status TEXT NOT NULL,
                    message TEXT,
                    timestamp TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                );
                """
            )
            conn.commit()
        logger.info("Database initialised at %s", DB_FILE)
    except sqlite3.Error as exc:
        logger.error("Database initialization failed: %s", exc)
        raise


# ============================================================
# Users
# ============================================================


def _row_to_user(row: sqlite3.Row) -> User:
    data = dict(row)
    data.pop("password_hash", None)
    return User(**data)


def create_user(email: str, name: str, avatar: Optional[str] = None, password_hash: str = "") -> User:
    now = _iso(utcnow())
    user_id = new_id()
    try:
        with get_db_connection() as conn:
            conn.execute(
                """
                INSERT INTO users (id, email, name, avatar, password_hash, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (user_id, email.lower(), name, avatar, password_hash, now, now),
            )
            conn.commit()
    except sqlite3.IntegrityError as exc:
        raise ConflictError(f"User with email {email} already exists") from exc
    logger.info("Created user %s", user_id)
    return get_user(user_id)


def get_user(user_id: str) -> Optional[User]:
    with get_db_connection() as conn:
        row = conn.execute("SELECT * FROM users WHERE id = ?", (user_id,)).fetchone()
    return _row_to_user(row) if row else None


def find_user_credentials(email: str) -> Optional[Tuple[User, str]]:
    """User plus stored password hash, for login only."""
    with get_db_connection() as conn:
        row = conn.execute("SELECT * FROM users WHERE email = ?", (email.lower(),)).fetchone()
    if row is None:
        return None
    return _row_to_user(row), row["password_hash"] or ""


# ============================================================
# Open Finance connections
# ============================================================


def _row_to_connection(row: sqlite3.Row) -> OpenFinanceConnection:
    data = dict(row)
    data["permissions"] = json.loads(data.get("permissions") or "[]")
    return OpenFinanceConnection(**data)


def create_connection(
    user_id: str,
    provider: str,
    institution_id: str,
    institution_name: str,
    consent_id: str,
    expires_at: datetime,
    permissions: List[str],
    access_token: str = "",
    refresh_token: str = "",
    status: str = ConnectionStatus.ACTIVE.value,
) -> OpenFinanceConnection:
    """Insert a connection row; the consent id is unique across all users."""
    connection_id = new_id()
    now = _iso(utcnow())
    try:
        with get_db_connection() as conn:
            conn.execute(
                """
                INSERT INTO connections (
                    id, user_id, provider, institution_id, institution_name, consent_id,
                    access_token, refresh_token, expires_at, permissions, status, created_at, updated_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    connection_id,
                    user_id,
                    provider,
                    institution_id,
                    institution_name,
                    consent_id,
                    access_token,
                    refresh_token,
                    _iso(expires_at),
                    json.dumps(permissions),
                    status,
                    now,
                    now,
                ),
            )
            conn.commit()
    except sqlite3.IntegrityError as exc:
        raise ConflictError(f"Connection for consent {consent_id} already exists") from exc
    return get_connection(connection_id)


def get_connection(connection_id: str) -> Optional[OpenFinanceConnection]:
    with get_db_connection() as conn:
        row = conn.execute("SELECT * FROM connections WHERE id = ?", (connection_id,)).fetchone()
    return _row_to_connection(row) if row else None


def find_connection_by_consent_id(consent_id: str) -> Optional[OpenFinanceConnection]:
    with get_db_connection() as conn:
        row = conn.execute("SELECT * FROM connections WHERE consent_id = ?", (consent_id,)).fetchone()
    return _row_to_connection(row) if row else None


def list_connections(user_id: str) -> List[OpenFinanceConnection]:
    with get_db_connection() as conn:
        rows = conn.execute(
            "SELECT * FROM connections WHERE user_id = ? ORDER BY created_at DESC",
            (user_id,),
        ).fetchall()
    return [_row_to_connection(row) for row in rows]


def find_first_active_connection(user_id: str) -> Optional[OpenFinanceConnection]:
    """Oldest ACTIVE connection with real credentials for the user."""
    with get_db_connection() as conn:
        row = conn.execute(
            """
            SELECT * FROM connections
            WHERE user_id = ? AND status = 'ACTIVE' AND access_token != ''
            ORDER BY created_at ASC
            LIMIT 1
            """,
            (user_id,),
        ).fetchone()
    return _row_to_connection(row) if row else None


def update_connection_credentials(
    connection_id: str,
    access_token: str,
    refresh_token: Optional[str],
    expires_at: Optional[datetime],
) -> bool:
    """Store a fresh session; refresh token and expiry are kept when not supplied."""
    with get_db_connection() as conn:
        cursor = conn.execute(
            """
            UPDATE connections
            SET access_token = ?,
                refresh_token = COALESCE(?, refresh_token),
                expires_at = COALESCE(?, expires_at),
                updated_at = ?
            WHERE id = ?
            """,
            (access_token, refresh_token, _iso(expires_at), _iso(utcnow()), connection_id),
        )
        conn.commit()
        return cursor.rowcount > 0


def update_connection_status(connection_id: str, status: str) -> bool:
    """Set connection status; returns True if a row was updated."""
    with get_db_connection() as conn:
        cursor = conn.execute(
            "UPDATE connections SET status = ?, updated_at = ? WHERE id = ?",
            (status, _iso(utcnow()), connection_id),
        )
        conn.commit()
        return cursor.rowcount > 0


# ============================================================
# Bank accounts
# ============================================================


def _row_to_account(row: sqlite3.Row) -> BankAccount:
    return BankAccount(**dict(row))


def get_account(account_id: str) -> Optional[BankAccount]:
    with get_db_connection() as conn:
        row = conn.execute("SELECT * FROM bank_accounts WHERE id = ?", (account_id,)).fetchone()
    return _row_to_account(row) if row else None


def find_account_by_number(user_id: str, account_number: str) -> Optional[BankAccount]:
    with get_db_connection() as conn:
        row = conn.execute(
            "SELECT * FROM bank_accounts WHERE user_id = ? AND account_number = ?",
            (user_id, account_number),
        ).fetchone()
    return _row_to_account(row) if row else None


def create_account(account: BankAccount) -> BankAccount:
    """Insert a new account; raises ConflictError if (user_id, account_number) exists."""
    try:
        with get_db_connection() as conn:
            conn.execute(
                """
                INSERT INTO bank_accounts (
                    id, user_id, connection_id, external_id, bank_code, bank_name, account_type,
                    account_number, agency, balance, currency, is_active, connected_at, last_sync_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    account.id,
                    account.user_id,
                    account.connection_id,
                    account.external_id,
                    account.bank_code,
                    account.bank_name,
                    account.account_type.value,
                    account.account_number,
                    account.agency,
                    account.balance,
                    account.currency,
                    int(account.is_active),
                    _iso(account.connected_at),
                    _iso(account.last_sync_at),
                ),
            )
            conn.commit()
    except sqlite3.IntegrityError as exc:
        raise ConflictError(
            f"Account {account.account_number} already exists for user {account.user_id}"
        ) from exc
    return account


def update_account_sync(
    account_id: str,
    balance: float,
    synced_at: datetime,
    external_id: Optional[str] = None,
) -> Optional[BankAccount]:
    """Refresh balance and last-sync time; descriptive fields stay as first created."""
    with get_db_connection() as conn:
        conn.execute(
            """
            UPDATE bank_accounts
            SET balance = ?, last_sync_at = ?, external_id = COALESCE(?, external_id)
            WHERE id = ?
            """,
            (balance, _iso(synced_at), external_id, account_id),
        )
        conn.commit()
    return get_account(account_id)


def reattach_account(account_id: str, connection_id: str) -> bool:
    """Move an account onto ``connection_id`` and reactivate it."""
    with get_db_connection() as conn:
        cursor = conn.execute(
            "UPDATE bank_accounts SET connection_id = ?, is_active = 1 WHERE id = ?",
            (connection_id, account_id),
        )
        conn.commit()
        return cursor.rowcount > 0



def touch_account_sync(account_id: str, synced_at: datetime) -> None:
    with get_db_connection() as conn:
        conn.execute(
            "UPDATE bank_accounts SET last_sync_at = ? WHERE id = ?",
            (_iso(synced_at), account_id),
        )
        conn.commit()


def deactivate_connection_accounts(user_id: str, connection_id: str) -> int:
    """Deactivate (never delete) the user's accounts sourced from the connection."""
    with get_db_connection() as conn:
        cursor = conn.execute(
            """
            UPDATE bank_accounts SET is_active = 0
            WHERE user_id = ? AND connection_id = ? AND is_active = 1
            """,
            (user_id, connection_id),
        )
        conn.commit()
        return cursor.rowcount


def list_accounts(user_id: str, active_only: bool = True) -> List[BankAccount]:
    sql = "SELECT * FROM bank_accounts WHERE user_id = ?"
    if active_only:
        sql += " AND is_active = 1"
    sql += " ORDER BY connected_at ASC"
    with get_db_connection() as conn:
        rows = conn.execute(sql, (user_id,)).fetchall()
    return [_row_to_account(row) for row in rows]


# ============================================================
# Transactions
# ============================================================


def _row_to_transaction(row: sqlite3.Row) -> Transaction:
    data = dict(row)
    data["tags"] = json.loads(data.get("tags") or "[]")
    lat, lng, address = data.pop("latitude", None), data.pop("longitude", None), data.pop("address", None)
    if lat is not None and lng is not None:
        data["location"] = {"lat": lat, "lng": lng, "address": address}
    for extra in ("bank_name", "account_type"):
        data.pop(extra, None)
    return Transaction(**data)


def upsert_transaction(tx: Transaction) -> Tuple[Transaction, bool]:
    """
    Insert a transaction or, when its external id is already stored, update
    only amount and status. Returns the stored row and whether it was created.
    """
    location = tx.location
    with get_db_connection() as conn:
        existed = conn.execute("SELECT 1 FROM transactions WHERE id = ?", (tx.id,)).fetchone() is not None
        conn.execute(
            """
            INSERT INTO transactions (
                id, account_id, amount, type, category, subcategory, description, merchant_name,
                date, status, tags, latitude, longitude, address
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                amount = excluded.amount,
                status = excluded.status
            """,
            (
                tx.id,
                tx.account_id,
                tx.amount,
                tx.type.value,
                tx.category,
                tx.subcategory,
                tx.description,
                tx.merchant_name,
                _iso(tx.date),
                tx.status.value,
                json.dumps(tx.tags),
                location.lat if location else None,
                location.lng if location else None,
                location.address if location else None,
            ),
        )
        conn.commit()
        row = conn.execute("SELECT * FROM transactions WHERE id = ?", (tx.id,)).fetchone()
    return _row_to_transaction(row), not existed


def get_transaction(transaction_id: str) -> Optional[Transaction]:
    with get_db_connection() as conn:
        row = conn.execute("SELECT * FROM transactions WHERE id = ?", (transaction_id,)).fetchone()
    return _row_to_transaction(row) if row else None


def list_user_transactions(
    user_id: str,
    since: Optional[datetime] = None,
    until: Optional[datetime] = None,
    tx_type: Optional[TransactionType] = None,
    limit: Optional[int] = None,
    newest_first: bool = True,
) -> List[Transaction]:
    """Transactions across all of the user's accounts; ``until`` is exclusive."""
    sql = (
        "SELECT t.* FROM transactions t JOIN bank_accounts a ON a.id = t.account_id "
        "WHERE a.user_id = ?"
    )
    params: List[Any] = [user_id]
    if since is not None:
        sql += " AND t.date >= ?"
        params.append(_iso(since))
    if until is not None:
        sql += " AND t.date < ?"
        params.append(_iso(until))
    if tx_type is not None:
        sql += " AND t.type = ?"
        params.append(tx_type.value)
    sql += " ORDER BY t.date DESC" if newest_first else " ORDER BY t.date ASC"
    if limit is not None:
        sql += " LIMIT ?"
        params.append(limit)
    with get_db_connection() as conn:
        rows = conn.execute(sql, params).fetchall()
    return [_row_to_transaction(row) for row in rows]


def list_recent_transactions_with_account(user_id: str, limit: int = 10) -> List[Dict[str, Any]]:
    with get_db_connection() as conn:
        rows = conn.execute(
            """
            SELECT t.*, a.bank_name AS bank_name, a.account_type AS account_type
            FROM transactions t JOIN bank_accounts a ON a.id = t.account_id
            WHERE a.user_id = ?
            ORDER BY t.date DESC
            LIMIT ?
            """,
            (user_id, limit),
        ).fetchall()
    results: List[Dict[str, Any]] = []
    for row in rows:
        tx = _row_to_transaction(row)
        results.append({**tx.model_dump(), "bank_name": row["bank_name"], "account_type": row["account_type"]})
    return results


# ============================================================
# Chat messages
# ============================================================


def _row_to_chat_message(row: sqlite3.Row) -> ChatMessage:
    data = dict(row)
    data["context"] = json.loads(data["context"]) if data.get("context") else None
    return ChatMessage(**data)


def save_chat_message(message: ChatMessage) -> ChatMessage:
    with get_db_connection() as conn:
        conn.execute(
            """
            INSERT INTO chat_messages (id, user_id, role, content, timestamp, tokens, model, context)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                message.id,
                message.user_id,
                message.role,
                message.content,
                _iso(message.timestamp),
                message.tokens,
                message.model,
                message.context.model_dump_json() if message.context else None,
            ),
        )
        conn.commit()
    return message


def list_chat_messages(user_id: str, offset: int = 0, limit: int = 20) -> List[ChatMessage]:
    with get_db_connection() as conn:
        rows = conn.execute(
            "SELECT * FROM chat_messages WHERE user_id = ? ORDER BY timestamp DESC LIMIT ? OFFSET ?",
            (user_id, limit, offset),
        ).fetchall()
    return [_row_to_chat_message(row) for row in rows]


def count_chat_messages(user_id: str) -> int:
    with get_db_connection() as conn:
        row = conn.execute("SELECT COUNT(*) FROM chat_messages WHERE user_id = ?", (user_id,)).fetchone()
    return int(row[0])


def delete_chat_messages(user_id: str) -> int:
    with get_db_connection() as conn:
        cursor = conn.execute("DELETE FROM chat_messages WHERE user_id = ?", (user_id,))
        conn.commit()
        return cursor.rowcount


# ============================================================
# Financial insights
# ============================================================


def _row_to_insight(row: sqlite3.Row) -> FinancialInsight:
    data = dict(row)
    data["data"] = json.loads(data["data"])
    return FinancialInsight(**data)


def save_insight(insight: FinancialInsight) -> FinancialInsight:
    with get_db_connection() as conn:
        conn.execute(
            """
            INSERT INTO financial_insights (id, user_id, type, title, description, data, priority, is_read, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                insight.id,
                insight.user_id,
                insight.type.value,
                insight.title,
                insight.description,
                insight.data.model_dump_json(),
                insight.priority.value,
                int(insight.is_read),
                _iso(insight.created_at),
            ),
        )
        conn.commit()
    return insight


def delete_unread_insights(user_id: str, kinds: Sequence[str]) -> int:
    """Drop unread insights whose payload kind is in ``kinds``; read ones are kept."""
    if not kinds:
        return 0
    placeholders = ", ".join("?" for _ in kinds)
    with get_db_connection() as conn:
        cursor = conn.execute(
            f"""
            DELETE FROM financial_insights
            WHERE user_id = ? AND is_read = 0 AND json_extract(data, '$.kind') IN ({placeholders})
            """,
            (user_id, *kinds),
        )
        conn.commit()
        return cursor.rowcount



def list_insights(user_id: str, limit: int = 10) -> List[FinancialInsight]:
    with get_db_connection() as conn:
        rows = conn.execute(
            """
            SELECT * FROM financial_insights
            WHERE user_id = ?
            ORDER BY CASE priority WHEN 'HIGH' THEN 3 WHEN 'MEDIUM' THEN 2 ELSE 1 END DESC,
                     created_at DESC
            LIMIT ?
            """,
            (user_id, limit),
        ).fetchall()
    return [_row_to_insight(row) for row in rows]


def mark_insight_read(user_id: str, insight_id: str) -> bool:
    with get_db_connection() as conn:
        cursor = conn.execute(
            "UPDATE financial_insights SET is_read = 1 WHERE id = ? AND user_id = ?",
            (insight_id, user_id),
        )
        conn.commit()
        return cursor.rowcount > 0


# ============================================================
# Aggregator audit log
# ============================================================


def add_bank_status_log(user_id: str, bank_id: str, operation: str, status: str, message: str) -> None:
    """Log the status of an aggregator operation."""
    with get_db_connection() as conn:
        conn.execute(
            """
            INSERT INTO bank_status_log (user_id, bank_id, operation, status, message)
            VALUES (?, ?, ?, ?, ?);
            """,
            (user_id, bank_id, operation, status, message),
        )
        conn.commit()


def get_recent_bank_status_logs(user_id: str, limit: int = 10) -> List[Dict[str, Any]]:
    """Fetch recent aggregator operation logs for a user."""
    with get_db_connection() as conn:
        cursor = conn.execute(
            "SELECT * FROM bank_status_log WHERE user_id = ? ORDER BY id DESC LIMIT ?",
            (user_id, limit),
        )
        rows = cursor.fetchall()
    return [dict(row) for row in rows]
